"""Apply verified Stripe events to the local ledger.

Every handler follows the same shape: correlate the event with an order or a
customer through the metadata written at checkout time, lock that row, write
or advance one ledger entry, then recompute the order totals from the ledger.
Handlers return a :class:`ReconcileResult`; emails are collected, not sent,
so the caller can deliver them after the transaction commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.customers.db_models import Customer
from app.domain.orders.db_models import Order
from app.domain.payments import ledger, notifications, statuses
from app.domain.payments.db_models import Payment
from app.infra import stripe_client as stripe_infra

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    processed: bool
    order_id: str | None = None
    customer_id: str | None = None
    notifications: list[notifications.Notification] = field(default_factory=list)


def safe_get(source: Any, key: str, default: Any | None = None) -> Any:
    if source is None:
        return default
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def _object_id(value: Any) -> str | None:
    """Stripe fields may hold an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    identifier = safe_get(value, "id")
    return str(identifier) if identifier else None


def event_object(event: Any) -> Any:
    return safe_get(safe_get(event, "data", {}) or {}, "object", {}) or {}


def event_metadata(event: Any) -> dict[str, str]:
    metadata = safe_get(event_object(event), "metadata") or {}
    try:
        return {str(key): str(value) for key, value in dict(metadata).items() if value is not None}
    except (TypeError, ValueError):
        return {}


def _category(metadata: dict[str, str], event_id: str) -> str:
    category = (metadata.get("category") or "").strip().lower()
    if category in statuses.CHARGE_CATEGORIES:
        return category
    logger.warning(
        "stripe_event_category_defaulted",
        extra={"extra": {"event_id": event_id, "category": category or None}},
    )
    return statuses.CATEGORY_FULL


def _method(metadata: dict[str, str], obj: Any) -> str:
    if metadata.get("flow") in {"bank_payment", "mandate_setup"} or metadata.get("category") == "monthly":
        return statuses.METHOD_BANK_DEBIT
    method_types = safe_get(obj, "payment_method_types") or []
    if "bacs_debit" in list(method_types):
        return statuses.METHOD_BANK_DEBIT
    return statuses.METHOD_CARD


def _ignored(reason: str, event_id: str, **fields: Any) -> ReconcileResult:
    logger.info(
        "stripe_event_ignored",
        extra={"extra": {"event_id": event_id, "reason": reason, **fields}},
    )
    return ReconcileResult(processed=False, order_id=fields.get("order_id"), customer_id=fields.get("customer_id"))


async def _apply_charge(
    session: AsyncSession,
    event: Any,
    *,
    status: str,
    amount_pence: int | None,
    external_ref: str | None,
    stripe_session_id: str | None = None,
) -> ReconcileResult:
    event_id = str(safe_get(event, "id"))
    obj = event_object(event)
    metadata = event_metadata(event)
    stripe_status = safe_get(obj, "status")
    category = _category(metadata, event_id) if metadata.get("category") or metadata.get("order_id") else None

    if category == statuses.CATEGORY_MONTHLY:
        return await _apply_customer_charge(
            session,
            event_id,
            metadata,
            status=status,
            amount_pence=amount_pence,
            external_ref=external_ref,
            stripe_status=stripe_status,
            description=safe_get(obj, "description") or "your monthly plan",
        )

    order_id = metadata.get("order_id")
    if not order_id or category is None:
        return _ignored("missing_order_metadata", event_id)

    order = await ledger.lock_order(session, order_id)
    if order is None:
        return _ignored("order_not_found", event_id, order_id=order_id)
    customer_id = metadata.get("customer_id")
    if customer_id and customer_id != order.customer_id:
        return _ignored("customer_mismatch", event_id, order_id=order_id, customer_id=customer_id)

    if not amount_pence or amount_pence <= 0:
        existing = await ledger.find_charge_by_external_ref(session, external_ref) if external_ref else None
        if existing is None:
            return _ignored("missing_amount", event_id, order_id=order_id)
        amount_pence = existing.amount_pence

    write = await ledger.record_entry(
        session,
        order_id=order.order_id,
        customer_id=order.customer_id,
        amount_pence=int(amount_pence),
        category=category,
        status=status,
        method=_method(metadata, obj),
        external_ref=external_ref,
        stripe_event_id=event_id,
        stripe_session_id=stripe_session_id,
        stripe_status=str(stripe_status) if stripe_status else None,
        reference="stripe_webhook",
    )
    result = ReconcileResult(processed=write.changed, order_id=order.order_id, customer_id=order.customer_id)
    if not write.changed or write.entry is None:
        return result

    totals = await ledger.recompute_order_totals(session, order)
    customer = await session.get(Customer, order.customer_id)
    if write.entry.status == statuses.PAYMENT_STATUS_PAID:
        if customer is not None and customer.email:
            result.notifications.append(
                notifications.receipt(
                    recipient=customer.email,
                    customer_name=customer.name,
                    order_title=order.title,
                    category=category,
                    amount_pence=write.entry.amount_pence,
                    balance_due_pence=totals.balance_due_pence,
                )
            )
        admin_notice = notifications.admin_payment_notice(
            order_title=order.title,
            customer_name=getattr(customer, "name", None),
            category=category,
            amount_pence=write.entry.amount_pence,
            order_id=order.order_id,
        )
        if admin_notice is not None:
            result.notifications.append(admin_notice)
    elif write.entry.status == statuses.PAYMENT_STATUS_FAILED and customer is not None and customer.email:
        result.notifications.append(
            notifications.payment_failed(
                recipient=customer.email,
                customer_name=customer.name,
                description=order.title,
                amount_pence=write.entry.amount_pence,
            )
        )
    return result


async def _apply_customer_charge(
    session: AsyncSession,
    event_id: str,
    metadata: dict[str, str],
    *,
    status: str,
    amount_pence: int | None,
    external_ref: str | None,
    stripe_status: str | None,
    description: str,
) -> ReconcileResult:
    customer_id = metadata.get("customer_id")
    if not customer_id:
        return _ignored("missing_customer_metadata", event_id)
    customer = await ledger.lock_customer(session, customer_id)
    if customer is None:
        return _ignored("customer_not_found", event_id, customer_id=customer_id)
    if not amount_pence or amount_pence <= 0:
        existing = await ledger.find_charge_by_external_ref(session, external_ref) if external_ref else None
        if existing is None:
            return _ignored("missing_amount", event_id, customer_id=customer_id)
        amount_pence = existing.amount_pence

    write = await ledger.record_entry(
        session,
        customer_id=customer.customer_id,
        amount_pence=int(amount_pence),
        category=statuses.CATEGORY_MONTHLY,
        status=status,
        method=statuses.METHOD_BANK_DEBIT,
        external_ref=external_ref,
        stripe_event_id=event_id,
        stripe_status=str(stripe_status) if stripe_status else None,
        reference="stripe_webhook",
    )
    result = ReconcileResult(processed=write.changed, customer_id=customer.customer_id)
    if write.changed and status == statuses.PAYMENT_STATUS_FAILED and customer.email:
        result.notifications.append(
            notifications.recurring_failed(
                recipient=customer.email,
                customer_name=customer.name,
                description=description,
                amount_pence=int(amount_pence),
            )
        )
    return result


async def _find_customer_for_setup(session: AsyncSession, obj: Any, metadata: dict[str, str]) -> Customer | None:
    stripe_customer_id = _object_id(safe_get(obj, "customer"))
    if stripe_customer_id:
        customer = await session.scalar(
            select(Customer).where(Customer.stripe_customer_id == stripe_customer_id).with_for_update()
        )
        if customer is not None:
            return customer
    customer_id = metadata.get("customer_id")
    if customer_id:
        return await ledger.lock_customer(session, customer_id)
    return None


async def _handle_mandate_setup(session: AsyncSession, event: Any, stripe_client) -> ReconcileResult:
    event_id = str(safe_get(event, "id"))
    obj = event_object(event)
    metadata = event_metadata(event)
    setup_intent_id = _object_id(safe_get(obj, "setup_intent"))
    if not setup_intent_id:
        return _ignored("missing_setup_intent", event_id)

    setup_intent = await stripe_infra.call_stripe_client_method(
        stripe_client, "retrieve_setup_intent", setup_intent_id
    )
    payment_method_id = _object_id(safe_get(setup_intent, "payment_method"))
    mandate_id: str | None = None
    if payment_method_id:
        payment_method = await stripe_infra.call_stripe_client_method(
            stripe_client, "retrieve_payment_method", payment_method_id
        )
        mandate_id = _object_id(safe_get(safe_get(payment_method, "bacs_debit"), "mandate"))
    mandate_id = mandate_id or _object_id(safe_get(setup_intent, "mandate"))
    if not mandate_id:
        logger.warning(
            "stripe_mandate_missing",
            extra={"extra": {"event_id": event_id, "setup_intent_id": setup_intent_id}},
        )
        return ReconcileResult(processed=False)

    customer = await _find_customer_for_setup(session, obj, metadata)
    if customer is None:
        return _ignored("customer_not_found", event_id, customer_id=metadata.get("customer_id"))

    unchanged = (
        customer.direct_debit_active
        and customer.stripe_mandate_id == mandate_id
        and customer.stripe_payment_method_id == payment_method_id
    )
    if unchanged:
        return ReconcileResult(processed=False, customer_id=customer.customer_id)
    customer.stripe_mandate_id = mandate_id
    if payment_method_id:
        customer.stripe_payment_method_id = payment_method_id
    customer.direct_debit_active = True
    await session.flush()
    logger.info(
        "direct_debit_mandate_activated",
        extra={"extra": {"customer_id": customer.customer_id, "event_id": event_id}},
    )
    return ReconcileResult(processed=True, customer_id=customer.customer_id)


async def _handle_session_completed(session: AsyncSession, event: Any, stripe_client) -> ReconcileResult:
    obj = event_object(event)
    mode = safe_get(obj, "mode")
    if mode == "setup":
        return await _handle_mandate_setup(session, event, stripe_client)
    if mode != "payment":
        return _ignored("unsupported_mode", str(safe_get(event, "id")), mode=mode)
    payment_status = safe_get(obj, "payment_status")
    if payment_status == "paid":
        status = statuses.PAYMENT_STATUS_PAID
    elif payment_status == "unpaid":
        # Bacs debits confirm days later through async_payment_succeeded.
        status = statuses.PAYMENT_STATUS_PENDING
    else:
        return _ignored("no_payment_required", str(safe_get(event, "id")))
    return await _apply_charge(
        session,
        event,
        status=status,
        amount_pence=safe_get(obj, "amount_total"),
        external_ref=_object_id(safe_get(obj, "payment_intent")),
        stripe_session_id=_object_id(safe_get(obj, "id")),
    )


async def _handle_session_async_result(
    session: AsyncSession, event: Any, status: str
) -> ReconcileResult:
    obj = event_object(event)
    return await _apply_charge(
        session,
        event,
        status=status,
        amount_pence=safe_get(obj, "amount_total"),
        external_ref=_object_id(safe_get(obj, "payment_intent")),
        stripe_session_id=_object_id(safe_get(obj, "id")),
    )


async def _handle_session_expired(session: AsyncSession, event: Any) -> ReconcileResult:
    event_id = str(safe_get(event, "id"))
    obj = event_object(event)
    session_id = _object_id(safe_get(obj, "id"))
    entry = None
    if session_id:
        entry = await session.scalar(
            select(Payment).where(
                Payment.stripe_session_id == session_id, Payment.status == statuses.PAYMENT_STATUS_PENDING
            )
        )
    if entry is None:
        return _ignored("no_pending_entry", event_id)
    order, entry = await _lock_entry(session, entry)
    return await _transition_existing(session, order, entry, statuses.PAYMENT_STATUS_CANCELLED, event_id)


async def _lock_entry(session: AsyncSession, entry: Payment) -> tuple[Order | None, Payment]:
    """Lock the owning order (or customer) first, then the ledger row itself.

    Refunds and charge writes take their locks in this order too, so a
    webhook racing an admin refund waits instead of deadlocking.
    """
    order: Order | None = None
    if entry.order_id:
        order = await ledger.lock_order(session, entry.order_id)
    elif entry.customer_id:
        await ledger.lock_customer(session, entry.customer_id)
    locked = await ledger.lock_payment(session, entry.payment_id)
    return order, locked or entry


async def _transition_existing(
    session: AsyncSession,
    order: Order | None,
    entry: Payment,
    status: str,
    event_id: str,
    stripe_status: str | None = None,
) -> ReconcileResult:
    changed = await ledger.transition_entry(
        session, entry, status, stripe_status=stripe_status, stripe_event_id=event_id
    )
    if changed and order is not None:
        await ledger.recompute_order_totals(session, order)
    return ReconcileResult(processed=changed, order_id=entry.order_id, customer_id=entry.customer_id)


async def _handle_payment_intent_succeeded(session: AsyncSession, event: Any) -> ReconcileResult:
    obj = event_object(event)
    return await _apply_charge(
        session,
        event,
        status=statuses.PAYMENT_STATUS_PAID,
        amount_pence=safe_get(obj, "amount_received") or safe_get(obj, "amount"),
        external_ref=_object_id(safe_get(obj, "id")),
    )


async def _handle_payment_intent_processing(session: AsyncSession, event: Any) -> ReconcileResult:
    obj = event_object(event)
    return await _apply_charge(
        session,
        event,
        status=statuses.PAYMENT_STATUS_PENDING,
        amount_pence=safe_get(obj, "amount"),
        external_ref=_object_id(safe_get(obj, "id")),
    )


async def _handle_payment_intent_failed(session: AsyncSession, event: Any) -> ReconcileResult:
    obj = event_object(event)
    return await _apply_charge(
        session,
        event,
        status=statuses.PAYMENT_STATUS_FAILED,
        amount_pence=safe_get(obj, "amount"),
        external_ref=_object_id(safe_get(obj, "id")),
    )


async def _handle_payment_intent_canceled(session: AsyncSession, event: Any) -> ReconcileResult:
    event_id = str(safe_get(event, "id"))
    intent_id = _object_id(safe_get(event_object(event), "id"))
    entry = await ledger.find_charge_by_external_ref(session, intent_id, for_update=False) if intent_id else None
    if entry is None:
        return _ignored("no_matching_entry", event_id)
    order, entry = await _lock_entry(session, entry)
    target = (
        statuses.PAYMENT_STATUS_REFUNDED
        if entry.status == statuses.PAYMENT_STATUS_PAID
        else statuses.PAYMENT_STATUS_CANCELLED
    )
    return await _transition_existing(session, order, entry, target, event_id, stripe_status="canceled")


def _latest_refund_id(charge: Any) -> str | None:
    refunds = safe_get(safe_get(charge, "refunds"), "data") or []
    for refund in refunds:
        refund_id = _object_id(refund)
        if refund_id:
            return refund_id
    return None


async def _handle_charge_refunded(session: AsyncSession, event: Any) -> ReconcileResult:
    """Bring the ledger up to the refunded total Stripe reports for a charge.

    Refunds issued from the back office are already recorded, so only the
    difference between ``amount_refunded`` and the local refund rows is added.
    """
    event_id = str(safe_get(event, "id"))
    charge = event_object(event)
    intent_id = _object_id(safe_get(charge, "payment_intent"))
    charge_id = _object_id(safe_get(charge, "id"))

    entry = None
    for reference in (intent_id, charge_id):
        if reference:
            entry = await ledger.find_charge_by_external_ref(session, reference, for_update=False)
            if entry is not None:
                break
    if entry is None:
        return _ignored("no_matching_entry", event_id)

    order, entry = await _lock_entry(session, entry)
    amount_refunded = int(safe_get(charge, "amount_refunded") or 0)
    already = await ledger.refunded_so_far(session, entry)
    missing = min(amount_refunded, entry.amount_pence) - already

    changed = False
    if missing > 0:
        write = await ledger.record_entry(
            session,
            order_id=entry.order_id,
            customer_id=entry.customer_id,
            amount_pence=-missing,
            category=statuses.CATEGORY_REFUND,
            status=statuses.PAYMENT_STATUS_REFUNDED,
            method=entry.method,
            external_ref=_latest_refund_id(charge) or charge_id,
            stripe_event_id=event_id,
            stripe_status="refunded",
            refund_of_id=entry.payment_id,
            reference="stripe_webhook",
        )
        changed = write.changed
    if amount_refunded >= entry.amount_pence:
        changed = (
            await ledger.transition_entry(session, entry, statuses.PAYMENT_STATUS_REFUNDED, stripe_status="refunded")
            or changed
        )

    result = ReconcileResult(processed=changed, order_id=entry.order_id, customer_id=entry.customer_id)
    if not changed:
        return result
    if order is not None:
        await ledger.recompute_order_totals(session, order)
    if missing > 0:
        customer = await session.get(Customer, entry.customer_id) if entry.customer_id else None
        if customer is not None and customer.email:
            result.notifications.append(
                notifications.refund_issued(
                    recipient=customer.email,
                    customer_name=customer.name,
                    order_title=order.title if order is not None else "your payment",
                    amount_pence=missing,
                )
            )
    return result


Handler = Callable[[AsyncSession, Any, Any], Awaitable[ReconcileResult]]

HANDLERS: dict[str, Handler] = {
    "checkout.session.completed": _handle_session_completed,
    "checkout.session.async_payment_succeeded": lambda session, event, _client: _handle_session_async_result(
        session, event, statuses.PAYMENT_STATUS_PAID
    ),
    "checkout.session.async_payment_failed": lambda session, event, _client: _handle_session_async_result(
        session, event, statuses.PAYMENT_STATUS_FAILED
    ),
    "checkout.session.expired": lambda session, event, _client: _handle_session_expired(session, event),
    "payment_intent.succeeded": lambda session, event, _client: _handle_payment_intent_succeeded(session, event),
    "payment_intent.processing": lambda session, event, _client: _handle_payment_intent_processing(session, event),
    "payment_intent.payment_failed": lambda session, event, _client: _handle_payment_intent_failed(session, event),
    "payment_intent.canceled": lambda session, event, _client: _handle_payment_intent_canceled(session, event),
    "charge.refunded": lambda session, event, _client: _handle_charge_refunded(session, event),
}


async def reconcile_event(session: AsyncSession, event: Any, stripe_client) -> ReconcileResult:
    """Dispatch one verified event. Unknown event types are acknowledged and ignored."""
    event_type = safe_get(event, "type")
    handler = HANDLERS.get(str(event_type))
    if handler is None:
        return _ignored("unhandled_event_type", str(safe_get(event, "id")), event_type=event_type)
    return await handler(session, event, stripe_client)
