from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_auth import AdminIdentity, require_admin
from app.domain.errors import PersistenceError, SignatureError
from app.domain.payments import checkout, notifications, recurring, refunds
from app.domain.payments import schemas as payment_schemas
from app.domain.payments.db_models import StripeEvent
from app.domain.payments.money import to_major, to_pence
from app.domain.payments.reconciler import ReconcileResult, event_metadata, reconcile_event, safe_get
from app.infra import stripe_client as stripe_infra
from app.infra.db import get_db_session
from app.infra.email import resolve_app_email_adapter
from app.infra.metrics import metrics
from app.infra.tracing import annotate_current_span
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

EVENT_STATUS_PROCESSING = "processing"
EVENT_STATUS_SUCCEEDED = "succeeded"
EVENT_STATUS_IGNORED = "ignored"
EVENT_STATUS_ERROR = "error"


def _stripe_client(request: Request):
    return stripe_infra.resolve_client(request.app.state)


def _coerce_event_created_at(event: Any) -> datetime | None:
    created_raw = safe_get(event, "created")
    if isinstance(created_raw, (int, float)):
        return datetime.fromtimestamp(created_raw, tz=timezone.utc)
    if isinstance(created_raw, datetime):
        return created_raw.astimezone(timezone.utc)
    return None


@router.post(
    "/v1/payments/checkout",
    response_model=payment_schemas.CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout(
    payload: payment_schemas.CheckoutRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> payment_schemas.CheckoutResponse:
    result = await checkout.create_checkout(
        session,
        _stripe_client(http_request),
        resolve_app_email_adapter(http_request.app),
        flow=payload.flow,
        order_id=payload.order_id,
        customer_id=payload.customer_id,
        category=payload.category,
    )
    annotate_current_span(checkout_flow=result.flow, checkout_session_id=result.session_id, order_id=payload.order_id)
    return payment_schemas.CheckoutResponse(
        url=result.url,
        session_id=result.session_id,
        flow=result.flow,
        category=result.category,
        amount_pence=result.amount_pence,
        amount=to_major(result.amount_pence),
    )


async def _verify_event(http_request: Request, payload: bytes) -> Any:
    signature = http_request.headers.get("Stripe-Signature")
    try:
        return await stripe_infra.call_stripe_client_method(
            _stripe_client(http_request), "verify_webhook", payload=payload, signature=signature
        )
    except Exception as exc:  # noqa: BLE001
        metrics.record_webhook_error("invalid_signature")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
        raise SignatureError(detail="Invalid Stripe webhook") from exc


async def _stripe_webhook_handler(http_request: Request, session: AsyncSession) -> dict[str, bool]:
    """Verify, log and apply one Stripe event.

    The ``stripe_events`` row and every ledger write for the event commit
    together. Processing runs in a savepoint: when it raises, its writes are
    discarded, the event row is kept as ``error`` and the response is a 500
    so Stripe redelivers the whole event.
    """
    payload = await http_request.body()
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    outcome = "error"
    try:
        event = await _verify_event(http_request, payload)
        event_id = safe_get(event, "id")
        if not event_id:
            metrics.record_webhook_error("missing_event_id")
            raise SignatureError(detail="Missing event id")
        event_id = str(event_id)
        payload_hash = hashlib.sha256(payload or b"").hexdigest()
        event_type = safe_get(event, "type")
        metadata = event_metadata(event)
        annotate_current_span(
            stripe_event_id=event_id,
            stripe_event_type=event_type,
            order_id=metadata.get("order_id"),
            customer_id=metadata.get("customer_id"),
        )

        result: ReconcileResult | None = None
        processing_error: Exception | None = None
        try:
            async with session.begin():
                existing = await session.scalar(
                    select(StripeEvent).where(StripeEvent.event_id == event_id).with_for_update()
                )
                if existing is not None:
                    if existing.payload_hash != payload_hash:
                        logger.warning("stripe_webhook_replayed_mismatch", extra={"extra": {"event_id": event_id}})
                        metrics.record_webhook_error("payload_mismatch")
                        raise SignatureError(detail="Event payload mismatch")
                    if existing.status in {EVENT_STATUS_SUCCEEDED, EVENT_STATUS_IGNORED, EVENT_STATUS_PROCESSING}:
                        logger.info(
                            "stripe_webhook_duplicate",
                            extra={"extra": {"event_id": event_id, "status": existing.status}},
                        )
                        outcome = "duplicate"
                        return {"received": True, "processed": False}
                    record = existing
                    record.status = EVENT_STATUS_PROCESSING
                else:
                    record = StripeEvent(
                        event_id=event_id,
                        status=EVENT_STATUS_PROCESSING,
                        payload_hash=payload_hash,
                        event_type=str(event_type) if event_type else None,
                        event_created_at=_coerce_event_created_at(event),
                        order_id=metadata.get("order_id"),
                        customer_id=metadata.get("customer_id"),
                    )
                    session.add(record)
                    await session.flush()

                try:
                    async with session.begin_nested():
                        result = await reconcile_event(session, event, _stripe_client(http_request))
                except Exception as exc:  # noqa: BLE001
                    processing_error = exc
                    record.status = EVENT_STATUS_ERROR
                    record.last_error = f"{type(exc).__name__}: {exc}"[:2000]
                    logger.exception(
                        "stripe_webhook_error",
                        extra={"extra": {"event_id": event_id, "event_type": event_type}},
                    )
                    metrics.record_webhook_error("processing_error")
                else:
                    record.status = EVENT_STATUS_SUCCEEDED if result.processed else EVENT_STATUS_IGNORED
                    record.last_error = None
                    record.order_id = record.order_id or result.order_id
                    record.customer_id = record.customer_id or result.customer_id
        except SQLAlchemyError as exc:
            metrics.record_webhook_error("persistence_error")
            logger.exception("stripe_webhook_persist_failed", extra={"extra": {"event_id": event_id}})
            raise PersistenceError(detail="Stripe webhook could not be recorded") from exc

        if processing_error is not None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stripe webhook processing error",
            ) from processing_error

        processed = bool(result and result.processed)
        outcome = "processed" if processed else "ignored"
        logger.info(
            "stripe_webhook_handled",
            extra={"extra": {"event_id": event_id, "event_type": event_type, "outcome": outcome}},
        )
        if result is not None and result.notifications:
            await notifications.deliver(resolve_app_email_adapter(http_request.app), result.notifications)
        return {"received": True, "processed": processed}
    finally:
        metrics.record_stripe_webhook(outcome)


@router.post(
    "/v1/payments/stripe/webhook",
    response_model=payment_schemas.WebhookAck,
    status_code=status.HTTP_200_OK,
)
async def stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, bool]:
    return await _stripe_webhook_handler(http_request, session)


@router.post(
    "/api/payments/webhook",
    response_model=payment_schemas.WebhookAck,
    status_code=status.HTTP_200_OK,
    include_in_schema=False,
)
async def legacy_stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, bool]:
    return await _stripe_webhook_handler(http_request, session)


@router.post(
    "/v1/payments/{payment_id}/refund",
    response_model=payment_schemas.RefundResponse,
)
async def refund_payment(
    payment_id: str,
    payload: payment_schemas.RefundRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_admin),
) -> payment_schemas.RefundResponse:
    result = await refunds.refund_payment(
        session,
        _stripe_client(http_request),
        resolve_app_email_adapter(http_request.app),
        payment_id,
        to_pence(payload.amount),
        recorded_by=identity.username,
    )
    return payment_schemas.RefundResponse(
        payment_id=payment_id,
        refund_payment_id=result.refund_payment_id,
        stripe_refund_id=result.stripe_refund_id,
        amount_pence=result.amount_pence,
        order_total_paid_pence=result.order_total_paid_pence,
    )


@router.post(
    "/v1/payments/bill-recurring",
    response_model=payment_schemas.RecurringBillingResponse,
)
async def bill_recurring(
    payload: payment_schemas.RecurringBillingRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> payment_schemas.RecurringBillingResponse:
    report = await recurring.bill_recurring(
        session,
        _stripe_client(http_request),
        resolve_app_email_adapter(http_request.app),
        amount_pence=to_pence(payload.amount),
        description=payload.description,
    )
    return payment_schemas.RecurringBillingResponse(
        attempted=report.attempted,
        succeeded=report.succeeded,
        failed=report.failed,
        results=[payment_schemas.CustomerChargeOutcome(**result.__dict__) for result in report.results],
    )
