"""
Webhook alerts raised by the monitoring loop. Resolved externally by operators.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Boolean, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from paywall.database import Base


class WebhookAlert(Base):
    __tablename__ = "webhook_alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # info, warning, critical
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_webhook_alerts_created_at", "created_at"),
        Index("ix_webhook_alerts_resolved", "resolved"),
    )

    def __repr__(self) -> str:
        return f"<WebhookAlert {self.alert_type} ({self.severity})>"
