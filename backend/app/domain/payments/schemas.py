from datetime import datetime
from decimal import Decimal
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.payments import statuses


class CheckoutRequest(BaseModel):
    order_id: str | None = Field(default=None, max_length=36)
    customer_id: str | None = Field(default=None, max_length=36)
    flow: str = Field(min_length=1, max_length=32)
    category: str | None = Field(default=None, max_length=32)


class CheckoutResponse(BaseModel):
    url: str
    session_id: str
    flow: str
    category: str
    amount_pence: int
    amount: Decimal


class WebhookAck(BaseModel):
    received: bool = True
    processed: bool = False


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class RefundResponse(BaseModel):
    payment_id: str
    refund_payment_id: str | None
    stripe_refund_id: str
    amount_pence: int
    order_total_paid_pence: int | None = None


class RecurringBillingRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    description: str = Field(min_length=1, max_length=255)

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("description must not be blank")
        return stripped


class CustomerChargeOutcome(BaseModel):
    customer_id: str
    outcome: str
    amount_pence: int
    payment_intent_id: str | None = None
    payment_id: str | None = None
    error: str | None = None


class RecurringBillingResponse(BaseModel):
    attempted: int
    succeeded: int
    failed: int
    results: List[CustomerChargeOutcome]


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    order_id: str | None = None
    customer_id: str | None = None
    amount_pence: int
    category: str
    method: str
    status: str
    external_ref: str | None = None
    stripe_event_id: str | None = None
    refund_of_id: str | None = None
    reference: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


class ManualPaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    category: Literal["deposit", "balance", "full"] = statuses.CATEGORY_FULL
    method: Literal["bank_transfer", "cash", "card", "bank_debit"] = statuses.METHOD_BANK_TRANSFER
    reference: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=1000)
