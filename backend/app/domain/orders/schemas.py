from decimal import Decimal
from typing import List

from pydantic import BaseModel

from app.domain.payments.schemas import PaymentResponse


class AmountOwedResponse(BaseModel):
    order_id: str
    category: str
    amount_pence: int
    amount: Decimal


class OrderPaymentsResponse(BaseModel):
    order_id: str
    status: str
    deposit_pence: int
    balance_pence: int
    total_paid_pence: int
    balance_due_pence: int
    deposit_owed_pence: int
    balance_owed_pence: int
    deposit_paid: bool
    balance_paid: bool
    payments: List[PaymentResponse]


class TotalsSnapshotResponse(BaseModel):
    total_paid_pence: int
    deposit_paid: bool
    balance_paid: bool


class ReconcileResponse(BaseModel):
    order_id: str
    before: TotalsSnapshotResponse
    after: TotalsSnapshotResponse
    changed: bool
