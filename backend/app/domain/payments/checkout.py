from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.customers.db_models import Customer
from app.domain.errors import ExternalServiceError, NotFoundError, NothingOwedError, ValidationError
from app.domain.orders import statuses as order_statuses
from app.domain.orders.db_models import Order
from app.domain.payments import amounts, ledger, notifications, statuses
from app.infra import stripe_client as stripe_infra
from app.infra.metrics import metrics
from app.infra.stripe_idempotency import make_stripe_idempotency_key
from app.settings import settings
from app.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

FLOW_CARD_PAYMENT = "card_payment"
FLOW_BANK_PAYMENT = "bank_payment"
FLOW_MANDATE_SETUP = "mandate_setup"

FLOW_ALIASES = {
    "card": FLOW_CARD_PAYMENT,
    "bacs_payment": FLOW_BANK_PAYMENT,
    "bacs_setup": FLOW_MANDATE_SETUP,
}
FLOWS = {FLOW_CARD_PAYMENT, FLOW_BANK_PAYMENT, FLOW_MANDATE_SETUP}

_PAYMENT_METHOD_TYPES = {
    FLOW_CARD_PAYMENT: ["card"],
    FLOW_BANK_PAYMENT: ["bacs_debit"],
    FLOW_MANDATE_SETUP: ["bacs_debit"],
}


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    session_id: str
    amount_pence: int
    flow: str
    category: str


def normalize_flow(flow: str) -> str:
    normalized = FLOW_ALIASES.get((flow or "").strip().lower(), (flow or "").strip().lower())
    if normalized not in FLOWS:
        raise ValidationError(
            detail=f"Unsupported checkout flow: {flow}",
            errors=[{"field": "flow", "message": "must be card_payment, bank_payment or mandate_setup"}],
        )
    return normalized


def normalize_category(category: str | None) -> str:
    normalized = (category or statuses.CATEGORY_FULL).strip().lower()
    if normalized not in statuses.ORDER_CATEGORIES:
        raise ValidationError(
            detail=f"Unsupported payment category: {category}",
            errors=[{"field": "category", "message": "must be deposit, balance or full"}],
        )
    return normalized


def _field(source: Any, key: str) -> Any:
    if isinstance(source, dict):
        return source.get(key)
    return getattr(source, key, None)


def _external_error(exc: Exception, *, operation: str, flow: str, order_id: str | None) -> ExternalServiceError:
    retryable = isinstance(exc, CircuitBreakerOpenError)
    logger.warning(
        "stripe_checkout_circuit_open" if retryable else "stripe_checkout_creation_failed",
        extra={
            "extra": {
                "operation": operation,
                "flow": flow,
                "order_id": order_id,
                "reason": type(exc).__name__,
            }
        },
    )
    metrics.record_checkout(flow, "unavailable" if retryable else "error")
    detail = "Stripe temporarily unavailable" if retryable else "Stripe checkout unavailable"
    return ExternalServiceError(detail=detail, retryable=retryable)


def _line_item_name(order: Order, category: str, flow: str) -> str:
    name = f"{category.capitalize()} — {order.title}"
    if flow == FLOW_BANK_PAYMENT:
        name += " (Direct Debit)"
    return name


async def ensure_stripe_customer(session: AsyncSession, stripe_client, customer: Customer) -> str:
    """Return the customer's Stripe id, creating and persisting it on first use."""
    if customer.stripe_customer_id:
        return customer.stripe_customer_id
    stripe_customer = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_customer",
        name=customer.business or customer.name,
        email=customer.email,
        address=customer.stripe_address(),
        metadata={"customer_id": customer.customer_id},
        idempotency_key=make_stripe_idempotency_key("customer_create", customer_id=customer.customer_id),
    )
    customer.stripe_customer_id = str(_field(stripe_customer, "id"))
    await session.commit()
    logger.info(
        "stripe_customer_created",
        extra={"extra": {"customer_id": customer.customer_id, "stripe_customer_id": customer.stripe_customer_id}},
    )
    return customer.stripe_customer_id


async def _load_order(session: AsyncSession, order_id: str) -> Order:
    order = await session.get(Order, order_id)
    if order is None:
        raise NotFoundError(detail="Order not found")
    return order


async def _load_customer(session: AsyncSession, customer_id: str) -> Customer:
    customer = await session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(detail="Customer not found")
    return customer


async def create_checkout(
    session: AsyncSession,
    stripe_client,
    email_adapter,
    *,
    flow: str,
    order_id: str | None = None,
    customer_id: str | None = None,
    category: str | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    """Open a hosted Stripe Checkout session for an order balance or a mandate.

    Nothing is written to the ledger here; the webhook records the payment
    once Stripe confirms it. The customer is emailed the link, best effort.
    """
    flow = normalize_flow(flow)
    moment = now or datetime.now(tz=timezone.utc)

    order: Order | None = None
    if flow == FLOW_MANDATE_SETUP:
        if order_id:
            order = await _load_order(session, order_id)
            customer_id = order.customer_id
        if not customer_id:
            raise ValidationError(
                detail="customer_id or order_id is required",
                errors=[{"field": "customer_id", "message": "required for mandate setup"}],
            )
        customer = await _load_customer(session, customer_id)
        category = statuses.CATEGORY_MONTHLY
        amount_pence = 0
    else:
        if not order_id:
            raise ValidationError(
                detail="order_id is required",
                errors=[{"field": "order_id", "message": "required for payments"}],
            )
        category = normalize_category(category)
        order = await _load_order(session, order_id)
        if order.status == order_statuses.ORDER_STATUS_CANCELLED:
            raise ValidationError(detail="Order is cancelled")
        customer = await _load_customer(session, order.customer_id)
        payments = await ledger.order_ledger(session, order.order_id)
        amount_pence = amounts.amount_owed(order, category, payments)
        if amount_pence <= 0:
            metrics.record_checkout(flow, "nothing_owed")
            raise NothingOwedError(detail=f"Nothing owed for {category} on this order")

    try:
        stripe_customer_id = await ensure_stripe_customer(session, stripe_client, customer)
    except Exception as exc:  # noqa: BLE001
        raise _external_error(
            exc, operation="create_customer", flow=flow, order_id=getattr(order, "order_id", None)
        ) from exc

    metadata = {
        "customer_id": customer.customer_id,
        "category": category,
        "flow": flow,
    }
    if order is not None:
        metadata["order_id"] = order.order_id

    idempotency_key = make_stripe_idempotency_key(
        f"checkout_{flow}",
        order_id=getattr(order, "order_id", None),
        customer_id=customer.customer_id,
        amount_pence=amount_pence or None,
        currency=settings.stripe_currency,
        extra={"category": category, "window": moment.strftime("%Y%m%d%H")},
    )
    if flow == FLOW_MANDATE_SETUP:
        request: dict[str, Any] = {
            "mode": "setup",
            "success_url": settings.mandate_success_url,
            "cancel_url": settings.checkout_cancel_url,
        }
    else:
        request = {
            "mode": "payment",
            "success_url": settings.checkout_success_url,
            "cancel_url": settings.checkout_cancel_url,
            "amount_pence": amount_pence,
            "currency": settings.stripe_currency,
            "product_name": _line_item_name(order, category, flow),
        }
    try:
        checkout_session = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_checkout_session",
            payment_method_types=_PAYMENT_METHOD_TYPES[flow],
            customer=stripe_customer_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
            **request,
        )
    except Exception as exc:  # noqa: BLE001
        raise _external_error(
            exc, operation="create_checkout_session", flow=flow, order_id=getattr(order, "order_id", None)
        ) from exc

    url = str(_field(checkout_session, "url") or "")
    session_id = str(_field(checkout_session, "id") or "")
    metrics.record_checkout(flow, "created")
    logger.info(
        "stripe_checkout_created",
        extra={
            "extra": {
                "flow": flow,
                "category": category,
                "order_id": metadata.get("order_id"),
                "customer_id": customer.customer_id,
                "checkout_session_id": session_id,
                "amount_pence": amount_pence,
            }
        },
    )

    if customer.email:
        if flow == FLOW_MANDATE_SETUP:
            message = notifications.mandate_request(
                recipient=customer.email, customer_name=customer.name, url=url
            )
        else:
            message = notifications.payment_request(
                recipient=customer.email,
                customer_name=customer.name,
                order_title=order.title,
                category=category,
                amount_pence=amount_pence,
                url=url,
            )
        await notifications.deliver(email_adapter, [message])

    return CheckoutResult(
        url=url,
        session_id=session_id,
        amount_pence=amount_pence,
        flow=flow,
        category=category,
    )
