from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.domain.customers.db_models import Customer
from app.domain.errors import NotFoundError
from app.domain.orders.db_models import Order
from app.domain.payments import amounts, statuses
from app.domain.payments.db_models import Payment
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class LedgerWrite:
    entry: Payment | None
    changed: bool


@dataclass(frozen=True)
class OrderTotals:
    total_paid_pence: int
    deposit_paid: bool
    balance_paid: bool
    balance_due_pence: int


async def lock_order(session: AsyncSession, order_id: str) -> Order | None:
    stmt = select(Order).where(Order.order_id == order_id).with_for_update()
    return await session.scalar(stmt)


async def lock_customer(session: AsyncSession, customer_id: str) -> Customer | None:
    stmt = select(Customer).where(Customer.customer_id == customer_id).with_for_update()
    return await session.scalar(stmt)


async def order_ledger(session: AsyncSession, order_id: str) -> list[Payment]:
    result = await session.scalars(
        select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at, Payment.payment_id)
    )
    return list(result)


async def refunded_so_far(session: AsyncSession, charge: Payment) -> int:
    """Positive pence already refunded against ``charge``."""
    total = await session.scalar(
        select(func.coalesce(func.sum(Payment.amount_pence), 0)).where(
            Payment.refund_of_id == charge.payment_id,
            Payment.category == statuses.CATEGORY_REFUND,
        )
    )
    return -int(total or 0)


async def find_charge_by_external_ref(
    session: AsyncSession, external_ref: str, *, for_update: bool = True
) -> Payment | None:
    """Charge row for a PaymentIntent or charge id.

    Only lock here once the owning order (or customer) row is already locked;
    otherwise pass ``for_update=False`` and go through :func:`lock_payment`.
    """
    stmt = (
        select(Payment)
        .where(
            Payment.external_ref == external_ref,
            Payment.category != statuses.CATEGORY_REFUND,
        )
        .order_by(Payment.created_at)
        .limit(1)
    )
    return await session.scalar(stmt.with_for_update() if for_update else stmt)


async def find_entry_by_event_id(session: AsyncSession, stripe_event_id: str) -> Payment | None:
    return await session.scalar(select(Payment).where(Payment.stripe_event_id == stripe_event_id))


async def lock_payment(session: AsyncSession, payment_id: str) -> Payment | None:
    return await session.get(Payment, payment_id, with_for_update=True, populate_existing=True)


async def recompute_order_totals(session: AsyncSession, order: Order) -> OrderTotals:
    """Rebuild the order's running totals from the ledger.

    ``total_paid = sum(paid charges) + sum(refunds whose charge is still paid)``.
    A charge flipped to ``refunded`` drops out together with its refunds.
    Must run after the order row is locked, inside the caller's transaction.
    """
    await session.flush()
    paid_charges = await session.scalar(
        select(func.coalesce(func.sum(Payment.amount_pence), 0)).where(
            Payment.order_id == order.order_id,
            Payment.category != statuses.CATEGORY_REFUND,
            Payment.status == statuses.PAYMENT_STATUS_PAID,
        )
    )
    parent = aliased(Payment)
    live_refunds = await session.scalar(
        select(func.coalesce(func.sum(Payment.amount_pence), 0))
        .select_from(Payment)
        .join(parent, Payment.refund_of_id == parent.payment_id)
        .where(
            Payment.order_id == order.order_id,
            Payment.category == statuses.CATEGORY_REFUND,
            parent.status == statuses.PAYMENT_STATUS_PAID,
        )
    )
    total_paid = int(paid_charges or 0) + int(live_refunds or 0)

    summary = amounts.breakdown(order, await order_ledger(session, order.order_id))
    order.total_paid_pence = total_paid
    order.deposit_paid = summary.deposit_settled
    order.balance_paid = summary.balance_settled
    await session.flush()
    logger.info(
        "order_totals_recomputed",
        extra={
            "extra": {
                "order_id": order.order_id,
                "total_paid_pence": total_paid,
                "deposit_paid": order.deposit_paid,
                "balance_paid": order.balance_paid,
            }
        },
    )
    return OrderTotals(
        total_paid_pence=total_paid,
        deposit_paid=order.deposit_paid,
        balance_paid=order.balance_paid,
        balance_due_pence=order.balance_due_pence,
    )


def _advance(entry: Payment, status: str, *, stripe_status: str | None, stripe_event_id: str | None) -> bool:
    if entry.status == status:
        return False
    if not statuses.can_transition(entry.status, status):
        logger.info(
            "ledger_transition_ignored",
            extra={"extra": {"payment_id": entry.payment_id, "from": entry.status, "to": status}},
        )
        return False
    entry.status = status
    if stripe_status:
        entry.stripe_status = stripe_status
    if stripe_event_id and not entry.stripe_event_id:
        entry.stripe_event_id = stripe_event_id
    metrics.record_ledger_entry(entry.category, status)
    return True


async def transition_entry(
    session: AsyncSession,
    entry: Payment,
    status: str,
    *,
    stripe_status: str | None = None,
    stripe_event_id: str | None = None,
) -> bool:
    changed = _advance(entry, status, stripe_status=stripe_status, stripe_event_id=stripe_event_id)
    if changed:
        await session.flush()
    return changed


async def record_entry(
    session: AsyncSession,
    *,
    amount_pence: int,
    category: str,
    status: str,
    method: str,
    order_id: str | None = None,
    customer_id: str | None = None,
    external_ref: str | None = None,
    stripe_event_id: str | None = None,
    stripe_session_id: str | None = None,
    stripe_status: str | None = None,
    refund_of_id: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
    recorded_by: str | None = None,
) -> LedgerWrite:
    """Insert a ledger row at most once.

    Dedupe order: the Stripe event id, then the payment intent (a checkout
    completion and the matching ``payment_intent.*`` event describe the same
    money and must land on one row, moved forward only). A racing insert that
    trips the unique event id constraint degrades to a no-op.
    """
    if stripe_event_id:
        existing = await find_entry_by_event_id(session, stripe_event_id)
        if existing is not None:
            logger.info(
                "ledger_event_duplicate",
                extra={"extra": {"stripe_event_id": stripe_event_id, "payment_id": existing.payment_id}},
            )
            return LedgerWrite(entry=existing, changed=False)

    if external_ref and category != statuses.CATEGORY_REFUND:
        existing = await find_charge_by_external_ref(session, external_ref)
        if existing is not None:
            if stripe_session_id and not existing.stripe_session_id:
                existing.stripe_session_id = stripe_session_id
            changed = await transition_entry(
                session,
                existing,
                status,
                stripe_status=stripe_status,
                stripe_event_id=stripe_event_id,
            )
            return LedgerWrite(entry=existing, changed=changed)

    entry = Payment(
        order_id=order_id,
        customer_id=customer_id,
        amount_pence=amount_pence,
        category=category,
        method=method,
        status=status,
        external_ref=external_ref,
        stripe_event_id=stripe_event_id,
        stripe_session_id=stripe_session_id,
        stripe_status=stripe_status,
        refund_of_id=refund_of_id,
        reference=reference,
        notes=notes,
        recorded_by=recorded_by,
    )
    try:
        async with session.begin_nested():
            session.add(entry)
            await session.flush()
    except IntegrityError:
        logger.info(
            "ledger_insert_duplicate",
            extra={"extra": {"stripe_event_id": stripe_event_id, "external_ref": external_ref}},
        )
        return LedgerWrite(entry=None, changed=False)
    metrics.record_ledger_entry(category, status)
    logger.info(
        "ledger_entry_recorded",
        extra={
            "extra": {
                "payment_id": entry.payment_id,
                "order_id": order_id,
                "customer_id": customer_id,
                "category": category,
                "status": status,
                "amount_pence": amount_pence,
            }
        },
    )
    return LedgerWrite(entry=entry, changed=True)


async def resolve_amount_owed(session: AsyncSession, order_id: str, category: str) -> int:
    order = await session.get(Order, order_id)
    if order is None:
        raise NotFoundError(detail="Order not found")
    return amounts.amount_owed(order, category, await order_ledger(session, order_id))
