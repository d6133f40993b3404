"""
Processed webhook events - the idempotency ledger.

A row here means "this provider event id has been claimed". It is written
inside the claim transaction before any membership change and removed only
when processing fails (compensation) or the claim goes stale unapplied.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from paywall.database import Base


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    # Provider-side creation time of the event
    created: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    # Set once the membership mutation has committed. NULL means claimed-but-not-applied.
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_processed_webhook_events_applied_at", "applied_at"),
        Index("ix_processed_webhook_events_processed_at", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.event_id} ({self.event_type})>"
