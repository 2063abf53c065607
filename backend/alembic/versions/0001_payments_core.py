"""payments core

Revision ID: 0001_payments_core
Revises:
Create Date: 2026-10-18 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_payments_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("customer_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255)),
        sa.Column("business", sa.String(length=255)),
        sa.Column("phone", sa.String(length=64)),
        sa.Column("address1", sa.String(length=255)),
        sa.Column("city", sa.String(length=128)),
        sa.Column("postcode", sa.String(length=16)),
        sa.Column("stripe_customer_id", sa.String(length=255)),
        sa.Column("stripe_mandate_id", sa.String(length=255)),
        sa.Column("stripe_payment_method_id", sa.String(length=255)),
        sa.Column("direct_debit_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("stripe_customer_id", name="uq_customers_stripe_customer_id"),
    )
    op.create_index("ix_customers_direct_debit_active", "customers", ["direct_debit_active"])

    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "customer_id",
            sa.String(length=36),
            sa.ForeignKey("customers.customer_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="in_progress"),
        sa.Column("deposit_pence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_pence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_paid_pence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deposit_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("balance_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_customer_status", "orders", ["customer_id", "status"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "order_id",
            sa.String(length=36),
            sa.ForeignKey("orders.order_id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "customer_id",
            sa.String(length=36),
            sa.ForeignKey("customers.customer_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount_pence", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("method", sa.String(length=32), nullable=False, server_default="card"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("external_ref", sa.String(length=255)),
        sa.Column("stripe_session_id", sa.String(length=255)),
        sa.Column("stripe_event_id", sa.String(length=255)),
        sa.Column("stripe_status", sa.String(length=64)),
        sa.Column(
            "refund_of_id",
            sa.String(length=36),
            sa.ForeignKey("payments.payment_id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("reference", sa.String(length=255)),
        sa.Column("notes", sa.Text()),
        sa.Column("recorded_by", sa.String(length=128)),
        *_timestamps(),
        sa.UniqueConstraint("stripe_event_id", name="uq_payments_stripe_event_id"),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"])
    op.create_index("ix_payments_customer_id", "payments", ["customer_id"])
    op.create_index("ix_payments_refund_of_id", "payments", ["refund_of_id"])
    op.create_index("ix_payments_order_status", "payments", ["order_id", "status"])
    op.create_index("ix_payments_external_ref", "payments", ["external_ref"])
    op.create_index("ix_payments_stripe_session", "payments", ["stripe_session_id"])

    op.create_table(
        "stripe_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=128)),
        sa.Column("event_created_at", sa.DateTime(timezone=True)),
        sa.Column("order_id", sa.String(length=64)),
        sa.Column("customer_id", sa.String(length=64)),
        sa.Column("last_error", sa.Text()),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_stripe_events_payload_hash", "stripe_events", ["payload_hash"])
    op.create_index("ix_stripe_events_order_id", "stripe_events", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_stripe_events_order_id", table_name="stripe_events")
    op.drop_index("ix_stripe_events_payload_hash", table_name="stripe_events")
    op.drop_table("stripe_events")

    op.drop_index("ix_payments_stripe_session", table_name="payments")
    op.drop_index("ix_payments_external_ref", table_name="payments")
    op.drop_index("ix_payments_order_status", table_name="payments")
    op.drop_index("ix_payments_refund_of_id", table_name="payments")
    op.drop_index("ix_payments_customer_id", table_name="payments")
    op.drop_index("ix_payments_order_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_orders_customer_status", table_name="orders")
    op.drop_index("ix_orders_customer_id", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_customers_direct_debit_active", table_name="customers")
    op.drop_table("customers")
