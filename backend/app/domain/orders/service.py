from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.errors import NotFoundError, ValidationError
from app.domain.orders import statuses as order_statuses
from app.domain.orders.db_models import Order
from app.domain.payments import amounts, ledger, statuses
from app.domain.payments.db_models import Payment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TotalsSnapshot:
    total_paid_pence: int
    deposit_paid: bool
    balance_paid: bool


@dataclass(frozen=True)
class OrderPaymentSummary:
    order: Order
    payments: list[Payment]
    total_paid_pence: int
    balance_due_pence: int
    deposit_owed_pence: int
    balance_owed_pence: int


def _snapshot(order: Order) -> TotalsSnapshot:
    return TotalsSnapshot(
        total_paid_pence=int(order.total_paid_pence or 0),
        deposit_paid=bool(order.deposit_paid),
        balance_paid=bool(order.balance_paid),
    )


async def get_order(session: AsyncSession, order_id: str) -> Order:
    order = await session.get(Order, order_id)
    if order is None:
        raise NotFoundError(detail="Order not found")
    return order


async def payment_summary(session: AsyncSession, order_id: str) -> OrderPaymentSummary:
    order = await get_order(session, order_id)
    payments = await ledger.order_ledger(session, order_id)
    summary = amounts.breakdown(order, payments)
    return OrderPaymentSummary(
        order=order,
        payments=payments,
        total_paid_pence=int(order.total_paid_pence or 0),
        balance_due_pence=order.balance_due_pence,
        deposit_owed_pence=summary.deposit_owed,
        balance_owed_pence=summary.balance_owed,
    )


async def record_manual_payment(
    session: AsyncSession,
    order_id: str,
    *,
    amount_pence: int,
    category: str,
    method: str,
    reference: str | None = None,
    notes: str | None = None,
    recorded_by: str | None = None,
) -> Payment:
    """Record money received outside Stripe (bank transfer, cash).

    The row has no external reference, so it can never be refunded through
    Stripe. Totals are recomputed from the ledger like every other write.
    """
    if amount_pence <= 0:
        raise ValidationError(detail="Amount must be positive")
    if category not in statuses.ORDER_CATEGORIES:
        raise ValidationError(detail=f"Unsupported payment category: {category}")
    if method not in statuses.PAYMENT_METHODS:
        raise ValidationError(detail=f"Unsupported payment method: {method}")

    order = await ledger.lock_order(session, order_id)
    if order is None:
        raise NotFoundError(detail="Order not found")
    if order.status == order_statuses.ORDER_STATUS_CANCELLED:
        raise ValidationError(detail="Order is cancelled")
    write = await ledger.record_entry(
        session,
        order_id=order.order_id,
        customer_id=order.customer_id,
        amount_pence=amount_pence,
        category=category,
        status=statuses.PAYMENT_STATUS_PAID,
        method=method,
        reference=reference,
        notes=notes,
        recorded_by=recorded_by,
    )
    await ledger.recompute_order_totals(session, order)
    await session.commit()
    await session.refresh(write.entry)
    logger.info(
        "manual_payment_recorded",
        extra={
            "extra": {
                "order_id": order.order_id,
                "payment_id": write.entry.payment_id,
                "amount_pence": amount_pence,
                "method": method,
            }
        },
    )
    return write.entry


async def reconcile_order(session: AsyncSession, order_id: str) -> tuple[TotalsSnapshot, TotalsSnapshot]:
    order = await ledger.lock_order(session, order_id)
    if order is None:
        raise NotFoundError(detail="Order not found")
    before = _snapshot(order)
    await ledger.recompute_order_totals(session, order)
    after = _snapshot(order)
    await session.commit()
    if before != after:
        logger.warning(
            "order_totals_drift_corrected",
            extra={
                "extra": {
                    "order_id": order_id,
                    "before_pence": before.total_paid_pence,
                    "after_pence": after.total_paid_pence,
                }
            },
        )
    return before, after


async def delete_order(session: AsyncSession, order_id: str) -> None:
    order = await get_order(session, order_id)
    await session.delete(order)
    await session.commit()
    logger.info("order_deleted", extra={"extra": {"order_id": order_id}})
