from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.domain.orders import statuses
from app.infra.db import Base


class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    customer_id: Mapped[str] = mapped_column(
        ForeignKey("customers.customer_id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text())
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=statuses.ORDER_STATUS_IN_PROGRESS
    )
    deposit_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
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

    customer: Mapped["Customer"] = relationship("Customer", back_populates="orders")
    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Payment.created_at",
    )

    __table_args__ = (Index("ix_orders_customer_status", "customer_id", "status"),)

    @property
    def total_pence(self) -> int:
        return int(self.deposit_pence or 0) + int(self.balance_pence or 0)

    @property
    def balance_due_pence(self) -> int:
        return max(self.total_pence - int(self.total_paid_pence or 0), 0)
