from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.domain.payments import statuses
from app.infra.db import Base


class Payment(Base):
    """One money movement against an order or a Direct Debit customer.

    Charges carry a positive ``amount_pence`` and refunds a negative one.
    Amounts are never edited after insert; only ``status`` moves forward.
    """

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    order_id: Mapped[str | None] = mapped_column(
        ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=True, index=True
    )
    customer_id: Mapped[str | None] = mapped_column(
        ForeignKey("customers.customer_id", ondelete="SET NULL"), nullable=True, index=True
    )
    amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default=statuses.METHOD_CARD)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String(255))
    stripe_session_id: Mapped[str | None] = mapped_column(String(255))
    stripe_event_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    stripe_status: Mapped[str | None] = mapped_column(String(64))
    refund_of_id: Mapped[str | None] = mapped_column(
        ForeignKey("payments.payment_id", ondelete="CASCADE"), nullable=True, index=True
    )
    reference: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text())
    recorded_by: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    order: Mapped["Order | None"] = relationship("Order", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_order_status", "order_id", "status"),
        Index("ix_payments_external_ref", "external_ref"),
        Index("ix_payments_stripe_session", "stripe_session_id"),
    )

    @property
    def is_refund(self) -> bool:
        return self.category == statuses.CATEGORY_REFUND


class StripeEvent(Base):
    __tablename__ = "stripe_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(128))
    event_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    order_id: Mapped[str | None] = mapped_column(String(64))
    customer_id: Mapped[str | None] = mapped_column(String(64))
    last_error: Mapped[str | None] = mapped_column(Text())
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_stripe_events_payload_hash", "payload_hash"),
        Index("ix_stripe_events_order_id", "order_id"),
    )
