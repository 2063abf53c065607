from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any


def _stable_extra_value(value: Any) -> str:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def billing_period(moment: date | datetime) -> str:
    """Month bucket (``YYYY-MM``) used to scope recurring charge keys."""
    return f"{moment.year:04d}-{moment.month:02d}"


def make_stripe_idempotency_key(
    purpose: str,
    *,
    order_id: str | None = None,
    customer_id: str | None = None,
    amount_pence: int | None = None,
    currency: str | None = None,
    extra: dict | None = None,
) -> str:
    """Deterministic idempotency key for a Stripe mutation.

    Retrying the same logical operation produces the same key, so Stripe
    returns the original object instead of creating a second charge, refund
    or customer.

    Format: ``<prefix8>-<sha256hex32>``. The prefix is the first 8 characters
    of *purpose* with underscores turned into hyphens, which keeps keys
    recognisable in the Stripe dashboard.

    Args:
        purpose: Operation name, e.g. ``"checkout_card_payment"``.
        order_id: Order the mutation belongs to, when there is one.
        customer_id: Local customer id, when the mutation is customer scoped.
        amount_pence: Amount in minor units.
        currency: ISO 4217 code, case-insensitive.
        extra: Additional key/value pairs folded into the hash. Keys are
            sorted so insertion order does not matter.
    """
    parts: list[str] = [purpose]
    if order_id is not None:
        parts.append(f"o:{order_id}")
    if customer_id is not None:
        parts.append(f"c:{customer_id}")
    if amount_pence is not None:
        parts.append(f"a:{amount_pence}")
    if currency is not None:
        parts.append(f"cur:{currency.lower()}")
    if extra:
        for key in sorted(extra.keys()):
            parts.append(f"x:{key}:{_stable_extra_value(extra[key])}")

    digest = hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
    prefix = purpose[:8].replace("_", "-").rstrip("-")
    return f"{prefix}-{digest}"
