"""
User model - the membership read model for a site account.

Only the membership/billing columns are owned by the webhook pipeline.
Rows are created by the account signup flow and are never deleted here.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from paywall.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    display_name: Mapped[Optional[str]] = mapped_column(String(100))

    # Membership
    membership: Mapped[str] = mapped_column(
        String(10), default="free", server_default="free", nullable=False
    )  # free, paid
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(100))
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(100))
    payment_status: Mapped[Optional[str]] = mapped_column(
        String(20)
    )  # active, past_due, canceled, unpaid
    membership_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_users_stripe_subscription_id", "stripe_subscription_id"),
        Index("ix_users_stripe_customer_id", "stripe_customer_id"),
    )

    def __repr__(self) -> str:
        return f"<User {self.id} ({self.membership})>"
