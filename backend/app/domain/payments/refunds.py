from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.customers.db_models import Customer
from app.domain.errors import (
    ExternalServiceError,
    NoExternalReferenceError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.domain.orders.db_models import Order
from app.domain.payments import ledger, notifications, statuses
from app.domain.payments.db_models import Payment
from app.infra import stripe_client as stripe_infra
from app.infra.metrics import metrics
from app.infra.stripe_idempotency import make_stripe_idempotency_key
from app.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundResult:
    refund_payment_id: str | None
    stripe_refund_id: str
    amount_pence: int
    order_total_paid_pence: int | None


async def refund_payment(
    session: AsyncSession,
    stripe_client,
    email_adapter,
    payment_id: str,
    amount_pence: int,
    *,
    recorded_by: str | None = None,
) -> RefundResult:
    """Refund part or all of a Stripe-backed charge.

    Stripe is called before anything is written, so a processor failure
    leaves no local trace. A ``charge.refunded`` webhook that lands first is
    detected after the order lock and the refund row is not written twice.
    """
    charge = await session.get(Payment, payment_id)
    if charge is None:
        raise NotFoundError(detail="Payment not found")
    if charge.is_refund:
        raise ValidationError(detail="Refund entries cannot be refunded")
    if not charge.external_ref:
        raise NoExternalReferenceError(
            detail="Payment was recorded manually and has no Stripe reference to refund"
        )
    if charge.status != statuses.PAYMENT_STATUS_PAID:
        raise ValidationError(detail=f"Only paid payments can be refunded (status is {charge.status})")

    refunded_before = await ledger.refunded_so_far(session, charge)
    remaining = charge.amount_pence - refunded_before
    if amount_pence <= 0 or amount_pence > remaining:
        raise ValidationError(
            detail=f"Refund amount must be between 1 and {remaining} pence",
            errors=[{"field": "amount", "message": "exceeds the refundable amount"}],
        )
    reference_kwarg = "charge" if charge.external_ref.startswith("ch_") else "payment_intent"
    try:
        refund = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_refund",
            amount_pence=amount_pence,
            metadata={"payment_id": charge.payment_id, "order_id": charge.order_id or ""},
            idempotency_key=make_stripe_idempotency_key(
                "refund",
                order_id=charge.order_id,
                amount_pence=amount_pence,
                extra={"payment_id": charge.payment_id, "refunded_before": refunded_before},
            ),
            **{reference_kwarg: charge.external_ref},
        )
    except Exception as exc:  # noqa: BLE001
        retryable = isinstance(exc, CircuitBreakerOpenError)
        metrics.record_refund("unavailable" if retryable else "error")
        logger.warning(
            "stripe_refund_failed",
            extra={"extra": {"payment_id": charge.payment_id, "reason": type(exc).__name__}},
        )
        raise ExternalServiceError(
            detail="Stripe temporarily unavailable" if retryable else "Stripe refund failed",
            retryable=retryable,
        ) from exc

    refund_id = str(refund.get("id") if isinstance(refund, dict) else getattr(refund, "id", ""))
    refund_entry: Payment | None = None
    order: Order | None = None
    try:
        if charge.order_id:
            order = await ledger.lock_order(session, charge.order_id)
        charge = await ledger.lock_payment(session, payment_id)
        already = await ledger.refunded_so_far(session, charge)
        if already >= refunded_before + amount_pence:
            logger.info(
                "stripe_refund_already_recorded",
                extra={"extra": {"payment_id": charge.payment_id, "stripe_refund_id": refund_id}},
            )
        else:
            write = await ledger.record_entry(
                session,
                order_id=charge.order_id,
                customer_id=charge.customer_id,
                amount_pence=-amount_pence,
                category=statuses.CATEGORY_REFUND,
                status=statuses.PAYMENT_STATUS_REFUNDED,
                method=charge.method,
                external_ref=refund_id,
                stripe_status="refunded",
                refund_of_id=charge.payment_id,
                reference="admin_refund",
                recorded_by=recorded_by,
            )
            refund_entry = write.entry
            already += amount_pence
        if already >= charge.amount_pence:
            await ledger.transition_entry(
                session, charge, statuses.PAYMENT_STATUS_REFUNDED, stripe_status="refunded"
            )
        total_paid = None
        if order is not None:
            total_paid = (await ledger.recompute_order_totals(session, order)).total_paid_pence
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        metrics.record_refund("persistence_error")
        logger.exception(
            "refund_persist_failed",
            extra={"extra": {"payment_id": payment_id, "stripe_refund_id": refund_id}},
        )
        raise PersistenceError(detail="Refund issued but could not be recorded") from exc

    metrics.record_refund("succeeded")
    logger.info(
        "refund_recorded",
        extra={
            "extra": {
                "payment_id": payment_id,
                "stripe_refund_id": refund_id,
                "amount_pence": amount_pence,
                "order_id": charge.order_id,
            }
        },
    )

    customer = await session.get(Customer, charge.customer_id) if charge.customer_id else None
    if customer is not None and customer.email:
        await notifications.deliver(
            email_adapter,
            [
                notifications.refund_issued(
                    recipient=customer.email,
                    customer_name=customer.name,
                    order_title=order.title if order is not None else "your payment",
                    amount_pence=amount_pence,
                )
            ],
        )

    return RefundResult(
        refund_payment_id=refund_entry.payment_id if refund_entry is not None else None,
        stripe_refund_id=refund_id,
        amount_pence=amount_pence,
        order_total_paid_pence=total_paid,
    )
