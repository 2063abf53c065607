import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_auth import AdminIdentity, require_admin
from app.domain.orders import schemas as order_schemas
from app.domain.orders import service as order_service
from app.domain.payments import ledger
from app.domain.payments import schemas as payment_schemas
from app.domain.payments.money import to_major, to_pence
from app.infra.db import get_db_session

router = APIRouter()
logger = logging.getLogger(__name__)


async def _payments_response(session: AsyncSession, order_id: str) -> order_schemas.OrderPaymentsResponse:
    summary = await order_service.payment_summary(session, order_id)
    order = summary.order
    return order_schemas.OrderPaymentsResponse(
        order_id=order.order_id,
        status=order.status,
        deposit_pence=order.deposit_pence,
        balance_pence=order.balance_pence,
        total_paid_pence=summary.total_paid_pence,
        balance_due_pence=summary.balance_due_pence,
        deposit_owed_pence=summary.deposit_owed_pence,
        balance_owed_pence=summary.balance_owed_pence,
        deposit_paid=order.deposit_paid,
        balance_paid=order.balance_paid,
        payments=[payment_schemas.PaymentResponse.model_validate(entry) for entry in summary.payments],
    )


@router.get(
    "/v1/orders/{order_id}/amount-owed",
    response_model=order_schemas.AmountOwedResponse,
)
async def get_amount_owed(
    order_id: str,
    category: str = Query("full"),
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> order_schemas.AmountOwedResponse:
    normalized = category.strip().lower()
    owed = await ledger.resolve_amount_owed(session, order_id, normalized)
    return order_schemas.AmountOwedResponse(
        order_id=order_id,
        category=normalized,
        amount_pence=owed,
        amount=to_major(owed),
    )


@router.get(
    "/v1/orders/{order_id}/payments",
    response_model=order_schemas.OrderPaymentsResponse,
)
async def list_order_payments(
    order_id: str,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> order_schemas.OrderPaymentsResponse:
    return await _payments_response(session, order_id)


@router.post(
    "/v1/orders/{order_id}/payments",
    response_model=order_schemas.OrderPaymentsResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_manual_payment(
    order_id: str,
    payload: payment_schemas.ManualPaymentRequest,
    session: AsyncSession = Depends(get_db_session),
    identity: AdminIdentity = Depends(require_admin),
) -> order_schemas.OrderPaymentsResponse:
    await order_service.record_manual_payment(
        session,
        order_id,
        amount_pence=to_pence(payload.amount),
        category=payload.category,
        method=payload.method,
        reference=payload.reference,
        notes=payload.notes,
        recorded_by=identity.username,
    )
    return await _payments_response(session, order_id)


@router.post(
    "/v1/admin/orders/{order_id}/reconcile",
    response_model=order_schemas.ReconcileResponse,
)
async def reconcile_order(
    order_id: str,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> order_schemas.ReconcileResponse:
    before, after = await order_service.reconcile_order(session, order_id)
    return order_schemas.ReconcileResponse(
        order_id=order_id,
        before=order_schemas.TotalsSnapshotResponse(**asdict(before)),
        after=order_schemas.TotalsSnapshotResponse(**asdict(after)),
        changed=before != after,
    )


@router.delete("/v1/admin/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: str,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> Response:
    await order_service.delete_order(session, order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
