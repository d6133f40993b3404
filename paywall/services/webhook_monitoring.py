"""
Webhook monitoring - metrics over the delivery history and anomaly detection.

Metrics come from webhook_deliveries, which holds one row per processed
delivery (success or failure). duplicate_subscription_attempt rows are
diagnostic markers, not deliveries, so they are counted separately.

Anomaly rules (trailing window, 1h by default):
- error rate: total > min_events AND failed/total > threshold
  (small samples never alert on ratio alone)
- latency: average processing time > avg_processing_ms
- duplicate subscription attempts: any at all
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func, select

from paywall.models.webhook_delivery import WebhookDelivery
from paywall.services.membership_reducer import DUPLICATE_SUBSCRIPTION_ATTEMPT
from paywall.utils.alerting import AlertType

logger = logging.getLogger(__name__)


@dataclass
class MetricsSnapshot:
    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0
    average_processing_time: float = 0.0
    slowest_processing_time: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        if not self.total_events:
            return 0.0
        return self.failed_events / self.total_events

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Anomaly:
    alert_type: str
    message: str
    severity: str = "warning"


@dataclass
class AnomalyThresholds:
    window_hours: int = 1
    min_events: int = 10
    error_rate: float = 0.10
    avg_processing_ms: int = 3000

    @classmethod
    def from_settings(cls, settings) -> "AnomalyThresholds":
        return cls(
            window_hours=settings.anomaly_window_hours,
            min_events=settings.anomaly_min_events,
            error_rate=settings.anomaly_error_rate_threshold,
            avg_processing_ms=settings.anomaly_avg_processing_ms,
        )


def _session_factory(session_factory: Optional[Callable]) -> Callable:
    if session_factory is None:
        from paywall.database import async_session_factory
        return async_session_factory
    return session_factory


async def collect_webhook_metrics(
    time_range_hours: float = 24,
    session_factory: Optional[Callable] = None,
) -> MetricsSnapshot:
    """Aggregate delivery outcomes received within the trailing window."""
    since = datetime.now(timezone.utc) - timedelta(hours=time_range_hours)
    factory = _session_factory(session_factory)

    async with factory() as db:
        result = await db.execute(
            select(
                WebhookDelivery.success,
                WebhookDelivery.error,
                WebhookDelivery.processing_time_ms,
            ).where(
                WebhookDelivery.received_at >= since,
                WebhookDelivery.event_type != DUPLICATE_SUBSCRIPTION_ATTEMPT,
            )
        )
        rows = result.all()

    metrics = MetricsSnapshot()
    total_processing_time = 0

    for success, error, processing_time_ms in rows:
        metrics.total_events += 1
        if success:
            metrics.successful_events += 1
        else:
            metrics.failed_events += 1
            error_type = error or "unknown"
            metrics.errors_by_type[error_type] = metrics.errors_by_type.get(error_type, 0) + 1

        if processing_time_ms:
            total_processing_time += processing_time_ms
            metrics.slowest_processing_time = max(
                metrics.slowest_processing_time, processing_time_ms
            )

    if metrics.total_events > 0:
        metrics.average_processing_time = total_processing_time / metrics.total_events

    return metrics


async def count_duplicate_subscription_attempts(
    time_range_hours: float = 1,
    session_factory: Optional[Callable] = None,
) -> int:
    since = datetime.now(timezone.utc) - timedelta(hours=time_range_hours)
    factory = _session_factory(session_factory)
    async with factory() as db:
        result = await db.execute(
            select(func.count()).select_from(WebhookDelivery).where(
                WebhookDelivery.event_type == DUPLICATE_SUBSCRIPTION_ATTEMPT,
                WebhookDelivery.received_at >= since,
            )
        )
        return int(result.scalar() or 0)


def evaluate_metrics(
    metrics: MetricsSnapshot,
    duplicate_attempts: int,
    thresholds: AnomalyThresholds,
) -> list[Anomaly]:
    """Pure threshold checks over one window's metrics."""
    anomalies = []

    if metrics.total_events > thresholds.min_events and metrics.error_rate > thresholds.error_rate:
        anomalies.append(
            Anomaly(
                AlertType.WEBHOOK_HIGH_ERROR_RATE,
                f"High error rate detected: {metrics.error_rate * 100:.1f}% "
                f"in the last {thresholds.window_hours}h "
                f"({metrics.failed_events}/{metrics.total_events})",
                severity="critical",
            )
        )

    if metrics.average_processing_time > thresholds.avg_processing_ms:
        anomalies.append(
            Anomaly(
                AlertType.WEBHOOK_SLOW_PROCESSING,
                f"Slow webhook processing: average {metrics.average_processing_time:.0f}ms",
            )
        )

    if duplicate_attempts > 0:
        anomalies.append(
            Anomaly(
                AlertType.WEBHOOK_DUPLICATE_SUBSCRIPTIONS,
                f"{duplicate_attempts} duplicate subscription attempts "
                f"in the last {thresholds.window_hours}h",
            )
        )

    return anomalies


async def detect_anomalies(
    thresholds: Optional[AnomalyThresholds] = None,
    session_factory: Optional[Callable] = None,
) -> list[Anomaly]:
    """
    Scan the trailing window and return anomalies. A failing scan is itself
    reported as an anomaly rather than raised.
    """
    thresholds = thresholds or AnomalyThresholds()
    try:
        metrics = await collect_webhook_metrics(thresholds.window_hours, session_factory)
        duplicates = await count_duplicate_subscription_attempts(
            thresholds.window_hours, session_factory
        )
    except Exception as e:
        logger.error("Failed to detect anomalies: %s", str(e))
        return [
            Anomaly(
                AlertType.WEBHOOK_MONITOR_FAILED,
                f"Anomaly detection failed: {e}",
                severity="critical",
            )
        ]

    return evaluate_metrics(metrics, duplicates, thresholds)
