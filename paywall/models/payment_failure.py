"""
Payment failure audit trail - append-only, written on invoice.payment_failed.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from paywall.database import Base


class PaymentFailure(Base):
    __tablename__ = "payment_failures"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(100))
    invoice_id: Mapped[Optional[str]] = mapped_column(String(100))
    amount: Mapped[Optional[int]] = mapped_column(Integer)  # smallest currency unit
    currency: Mapped[Optional[str]] = mapped_column(String(10))
    attempt_count: Mapped[Optional[int]] = mapped_column(Integer)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_payment_failures_subscription_id", "subscription_id"),
        Index("ix_payment_failures_failed_at", "failed_at"),
    )
