"""Initial schema - membership read model and Stripe webhook tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users (membership read model)
    op.create_table(
        "users",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(255)),
        sa.Column("display_name", sa.String(100)),
        sa.Column("membership", sa.String(10), nullable=False, server_default="free"),
        sa.Column("stripe_customer_id", sa.String(100)),
        sa.Column("stripe_subscription_id", sa.String(100)),
        sa.Column("payment_status", sa.String(20)),
        sa.Column("membership_updated_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_stripe_subscription_id", "users", ["stripe_subscription_id"])
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"])

    # Idempotency ledger
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("livemode", sa.Boolean, server_default=sa.false()),
        sa.Column("created", sa.DateTime(timezone=True)),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("applied_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_processed_webhook_events_applied_at", "processed_webhook_events", ["applied_at"])
    op.create_index("ix_processed_webhook_events_processed_at", "processed_webhook_events", ["processed_at"])

    # Delivery history (metrics source)
    op.create_table(
        "webhook_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("livemode", sa.Boolean, server_default=sa.false()),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("error", sa.Text),
        sa.Column("processing_time_ms", sa.Integer),
        sa.Column("details", postgresql.JSONB),
        sa.Column("correlation_id", sa.String(64)),
    )
    op.create_index("ix_webhook_deliveries_received_at", "webhook_deliveries", ["received_at"])
    op.create_index("ix_webhook_deliveries_event_type", "webhook_deliveries", ["event_type"])
    op.create_index("ix_webhook_deliveries_event_id", "webhook_deliveries", ["event_id"])

    # Payment failures
    op.create_table(
        "payment_failures",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("subscription_id", sa.String(100), nullable=False),
        sa.Column("customer_id", sa.String(100)),
        sa.Column("invoice_id", sa.String(100)),
        sa.Column("amount", sa.Integer),
        sa.Column("currency", sa.String(10)),
        sa.Column("attempt_count", sa.Integer),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payment_failures_subscription_id", "payment_failures", ["subscription_id"])
    op.create_index("ix_payment_failures_failed_at", "payment_failures", ["failed_at"])

    # Alerts
    op.create_table(
        "webhook_alerts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("alert_type", sa.String(50), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_alerts_created_at", "webhook_alerts", ["created_at"])
    op.create_index("ix_webhook_alerts_resolved", "webhook_alerts", ["resolved"])


def downgrade() -> None:
    op.drop_table("webhook_alerts")
    op.drop_table("payment_failures")
    op.drop_table("webhook_deliveries")
    op.drop_table("processed_webhook_events")
    op.drop_table("users")
