from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.customers.db_models import Customer
from app.domain.errors import ValidationError
from app.domain.payments import ledger, notifications, statuses
from app.infra import stripe_client as stripe_infra
from app.infra.metrics import metrics
from app.infra.stripe_idempotency import billing_period, make_stripe_idempotency_key
from app.settings import settings

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"


@dataclass
class CustomerChargeResult:
    customer_id: str
    outcome: str
    amount_pence: int
    payment_intent_id: str | None = None
    payment_id: str | None = None
    error: str | None = None


@dataclass
class RecurringBillingReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[CustomerChargeResult] = field(default_factory=list)


async def _mandated_customers(session: AsyncSession) -> list[Customer]:
    result = await session.scalars(
        select(Customer)
        .where(
            Customer.direct_debit_active.is_(True),
            Customer.stripe_mandate_id.is_not(None),
            Customer.stripe_customer_id.is_not(None),
        )
        .order_by(Customer.created_at, Customer.customer_id)
    )
    return list(result)


def _field(source, key: str):
    if isinstance(source, dict):
        return source.get(key)
    return getattr(source, key, None)



def _declined_intent_id(exc: Exception) -> str | None:
    """PaymentIntent id Stripe attaches to a decline raised while confirming."""
    intent = _field(getattr(exc, "error", None), "payment_intent")
    if intent is None or isinstance(intent, str):
        return intent
    intent_id = _field(intent, "id")
    return str(intent_id) if intent_id else None


async def _charge_customer(
    session: AsyncSession,
    stripe_client,
    customer: Customer,
    *,
    amount_pence: int,
    description: str,
    period: str,
) -> tuple[CustomerChargeResult, notifications.Notification | None]:
    metadata = {
        "customer_id": customer.customer_id,
        "category": statuses.CATEGORY_MONTHLY,
        "billing_period": period,
    }
    try:
        intent = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_off_session_payment",
            customer=customer.stripe_customer_id,
            payment_method=customer.stripe_payment_method_id,
            mandate=customer.stripe_mandate_id,
            amount_pence=amount_pence,
            description=description,
            metadata=metadata,
            currency=settings.stripe_currency,
            idempotency_key=make_stripe_idempotency_key(
                "recurring_charge",
                customer_id=customer.customer_id,
                amount_pence=amount_pence,
                currency=settings.stripe_currency,
                extra={"description": description, "period": period},
            ),
        )
    except Exception as exc:  # noqa: BLE001
        intent_id = _declined_intent_id(exc)
        logger.warning(
            "recurring_charge_failed",
            extra={
                "extra": {
                    "customer_id": customer.customer_id,
                    "payment_intent_id": intent_id,
                    "reason": type(exc).__name__,
                }
            },
        )
        # Keyed by the declined intent so its payment_intent.payment_failed webhook folds onto this row.
        write = await ledger.record_entry(
            session,
            customer_id=customer.customer_id,
            amount_pence=amount_pence,
            category=statuses.CATEGORY_MONTHLY,
            status=statuses.PAYMENT_STATUS_FAILED,
            method=statuses.METHOD_BANK_DEBIT,
            external_ref=intent_id,
            stripe_status="requires_payment_method" if intent_id else None,
            reference=f"recurring:{period}",
            notes=f"{description}: {type(exc).__name__}",
        )
        result = CustomerChargeResult(
            customer_id=customer.customer_id,
            outcome=OUTCOME_FAILED,
            amount_pence=amount_pence,
            payment_intent_id=intent_id,
            payment_id=write.entry.payment_id if write.entry is not None else None,
            error=type(exc).__name__,
        )
        message = None
        if customer.email:
            message = notifications.recurring_failed(
                recipient=customer.email,
                customer_name=customer.name,
                description=description,
                amount_pence=amount_pence,
            )
        return result, message

    intent_id = _field(intent, "id")
    status = (
        statuses.PAYMENT_STATUS_PAID
        if _field(intent, "status") == "succeeded"
        else statuses.PAYMENT_STATUS_PENDING
    )
    write = await ledger.record_entry(
        session,
        customer_id=customer.customer_id,
        amount_pence=amount_pence,
        category=statuses.CATEGORY_MONTHLY,
        status=status,
        method=statuses.METHOD_BANK_DEBIT,
        external_ref=str(intent_id) if intent_id else None,
        stripe_status=_field(intent, "status"),
        reference=f"recurring:{period}",
        notes=description,
    )
    logger.info(
        "recurring_charge_submitted",
        extra={
            "extra": {
                "customer_id": customer.customer_id,
                "payment_intent_id": intent_id,
                "status": status,
            }
        },
    )
    result = CustomerChargeResult(
        customer_id=customer.customer_id,
        outcome=OUTCOME_SUCCEEDED,
        amount_pence=amount_pence,
        payment_intent_id=str(intent_id) if intent_id else None,
        payment_id=write.entry.payment_id if write.entry is not None else None,
    )
    message = None
    if customer.email:
        message = notifications.recurring_success(
            recipient=customer.email,
            customer_name=customer.name,
            description=description,
            amount_pence=amount_pence,
        )
    return result, message


async def bill_recurring(
    session: AsyncSession,
    stripe_client,
    email_adapter,
    *,
    amount_pence: int,
    description: str,
    now: datetime | None = None,
) -> RecurringBillingReport:
    """Charge every customer with an active Direct Debit mandate.

    Customers are billed one at a time and committed independently; a failure
    is recorded against that customer and the batch moves on. Keys are scoped
    to the billing month, so re-running the job in the same month does not
    debit anyone twice.
    """
    if amount_pence <= 0:
        raise ValidationError(
            detail="Recurring amount must be positive",
            errors=[{"field": "amount", "message": "must be greater than zero"}],
        )
    if not description or not description.strip():
        raise ValidationError(
            detail="Description is required",
            errors=[{"field": "description", "message": "required"}],
        )
    description = description.strip()
    period = billing_period(now or datetime.now(tz=timezone.utc))

    report = RecurringBillingReport()
    customers = await _mandated_customers(session)
    logger.info(
        "recurring_billing_started",
        extra={"extra": {"customers": len(customers), "amount_pence": amount_pence, "period": period}},
    )
    for customer_id in [customer.customer_id for customer in customers]:
        report.attempted += 1
        try:
            customer = await session.get(Customer, customer_id, populate_existing=True)
            result, message = await _charge_customer(
                session,
                stripe_client,
                customer,
                amount_pence=amount_pence,
                description=description,
                period=period,
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception(
                "recurring_charge_persist_failed",
                extra={"extra": {"customer_id": customer_id}},
            )
            result = CustomerChargeResult(
                customer_id=customer_id,
                outcome=OUTCOME_FAILED,
                amount_pence=amount_pence,
                error=type(exc).__name__,
            )
            message = None

        report.results.append(result)
        if result.outcome == OUTCOME_SUCCEEDED:
            report.succeeded += 1
        else:
            report.failed += 1
        metrics.record_recurring_charge(result.outcome)
        await notifications.deliver(email_adapter, [message])

    logger.info(
        "recurring_billing_finished",
        extra={
            "extra": {
                "attempted": report.attempted,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "period": period,
            }
        },
    )
    return report
