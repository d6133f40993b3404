"""
Webhook delivery log - structured log line plus a persisted history row for
each delivery outcome. The history feeds webhook metrics and anomaly detection.

Persistence is best-effort: a failed insert is logged and never changes the
webhook response.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from paywall.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

SERVICE_NAME = "stripe-webhook"


@dataclass
class WebhookLog:
    event_id: str
    event_type: str
    success: bool
    livemode: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    details: Optional[dict] = None


def emit_webhook_log(entry: WebhookLog) -> None:
    """Structured log only - INFO on success, ERROR on failure."""
    extra = {
        "service": SERVICE_NAME,
        "event_id": entry.event_id,
        "event_type": entry.event_type,
        "livemode": entry.livemode,
        "success": entry.success,
        "error": entry.error,
        "processing_time_ms": entry.processing_time_ms,
        "details": entry.details,
    }
    if entry.success:
        logger.info("Webhook %s %s processed", entry.event_type, entry.event_id, extra=extra)
    else:
        logger.error(
            "Webhook %s %s failed: %s", entry.event_type, entry.event_id, entry.error,
            extra=extra,
        )


async def log_webhook_event(
    entry: WebhookLog,
    session_factory: Optional[Callable] = None,
) -> None:
    """Emit the structured log line and append the delivery history row."""
    emit_webhook_log(entry)

    try:
        if session_factory is None:
            from paywall.database import async_session_factory
            session_factory = async_session_factory
        from paywall.models.webhook_delivery import WebhookDelivery

        async with session_factory() as db:
            db.add(
                WebhookDelivery(
                    event_id=entry.event_id,
                    event_type=entry.event_type,
                    livemode=entry.livemode,
                    received_at=entry.received_at,
                    processed_at=entry.processed_at,
                    success=entry.success,
                    error=entry.error,
                    processing_time_ms=entry.processing_time_ms,
                    details=entry.details,
                    correlation_id=get_correlation_id(),
                )
            )
            await db.commit()
    except Exception as e:
        logger.warning("Failed to persist webhook delivery %s: %s", entry.event_id, str(e))
