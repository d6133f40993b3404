"""
Tests for paywall/services/webhook_monitoring.py - metrics and anomaly detection
over the delivery history.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from paywall.models.webhook_delivery import WebhookDelivery
from paywall.services.webhook_monitoring import (
    AnomalyThresholds,
    MetricsSnapshot,
    collect_webhook_metrics,
    detect_anomalies,
    evaluate_metrics,
)
from paywall.utils.alerting import AlertType


async def _seed(db, successes=0, failures=0, processing_time_ms=100, minutes_ago=5,
                event_type="customer.subscription.updated", error="store unavailable"):
    received_at = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    for i in range(successes + failures):
        failed = i >= successes
        db.add(
            WebhookDelivery(
                event_id=f"evt_{event_type}_{minutes_ago}_{i}",
                event_type=event_type,
                received_at=received_at,
                success=not failed,
                error=error if failed else None,
                processing_time_ms=processing_time_ms,
            )
        )
    await db.commit()


class TestCollectWebhookMetrics:
    async def test_empty_history(self, session_factory):
        metrics = await collect_webhook_metrics(24, session_factory)
        assert metrics.total_events == 0
        assert metrics.average_processing_time == 0.0
        assert metrics.error_rate == 0.0

    async def test_aggregates_window(self, db, session_factory):
        await _seed(db, successes=3, failures=1, processing_time_ms=200)
        await _seed(db, successes=1, processing_time_ms=1000, event_type="checkout.session.completed")

        metrics = await collect_webhook_metrics(24, session_factory)

        assert metrics.total_events == 5
        assert metrics.successful_events == 4
        assert metrics.failed_events == 1
        assert metrics.average_processing_time == 360.0
        assert metrics.slowest_processing_time == 1000
        assert metrics.errors_by_type == {"store unavailable": 1}

    async def test_excludes_old_and_duplicate_markers(self, db, session_factory):
        await _seed(db, successes=2)
        await _seed(db, successes=5, minutes_ago=60 * 48)
        await _seed(db, failures=3, event_type="duplicate_subscription_attempt")

        metrics = await collect_webhook_metrics(24, session_factory)

        assert metrics.total_events == 2


class TestEvaluateMetrics:
    def test_ten_events_never_alert_on_rate(self):
        metrics = MetricsSnapshot(total_events=10, successful_events=5, failed_events=5)
        assert evaluate_metrics(metrics, 0, AnomalyThresholds()) == []

    def test_eleven_events_over_threshold_alert(self):
        metrics = MetricsSnapshot(total_events=11, successful_events=6, failed_events=5)
        anomalies = evaluate_metrics(metrics, 0, AnomalyThresholds())
        assert len(anomalies) == 1
        assert anomalies[0].alert_type == AlertType.WEBHOOK_HIGH_ERROR_RATE
        assert anomalies[0].severity == "critical"
        assert "High error rate detected: 45.5%" in anomalies[0].message

    def test_rate_at_threshold_does_not_alert(self):
        metrics = MetricsSnapshot(total_events=20, successful_events=18, failed_events=2)
        assert evaluate_metrics(metrics, 0, AnomalyThresholds()) == []

    def test_slow_average_alerts(self):
        metrics = MetricsSnapshot(total_events=2, successful_events=2, average_processing_time=3500)
        anomalies = evaluate_metrics(metrics, 0, AnomalyThresholds())
        assert [a.alert_type for a in anomalies] == [AlertType.WEBHOOK_SLOW_PROCESSING]
        assert "3500ms" in anomalies[0].message

    def test_any_duplicate_attempt_alerts(self):
        anomalies = evaluate_metrics(MetricsSnapshot(), 1, AnomalyThresholds())
        assert [a.alert_type for a in anomalies] == [AlertType.WEBHOOK_DUPLICATE_SUBSCRIPTIONS]
        assert "1 duplicate subscription attempts" in anomalies[0].message


class TestDetectAnomalies:
    async def test_error_rate_over_last_hour(self, db, session_factory):
        await _seed(db, successes=6, failures=5)

        anomalies = await detect_anomalies(AnomalyThresholds(), session_factory)

        assert [a.alert_type for a in anomalies] == [AlertType.WEBHOOK_HIGH_ERROR_RATE]

    async def test_ten_events_half_failed_is_quiet(self, db, session_factory):
        await _seed(db, successes=5, failures=5)
        assert await detect_anomalies(AnomalyThresholds(), session_factory) == []

    async def test_older_failures_outside_window_ignored(self, db, session_factory):
        await _seed(db, successes=1, failures=20, minutes_ago=120)
        assert await detect_anomalies(AnomalyThresholds(), session_factory) == []

    async def test_duplicate_attempts_reported(self, db, session_factory):
        await _seed(db, failures=2, event_type="duplicate_subscription_attempt")
        anomalies = await detect_anomalies(AnomalyThresholds(), session_factory)
        assert [a.alert_type for a in anomalies] == [AlertType.WEBHOOK_DUPLICATE_SUBSCRIPTIONS]
        assert anomalies[0].message.startswith("2 duplicate subscription attempts")

    async def test_scan_failure_reported_as_anomaly(self):
        broken = MagicMock()
        broken.return_value.__aenter__ = AsyncMock(side_effect=OSError("database unreachable"))
        broken.return_value.__aexit__ = AsyncMock(return_value=False)

        anomalies = await detect_anomalies(AnomalyThresholds(), broken)

        assert len(anomalies) == 1
        assert anomalies[0].message.startswith("Anomaly detection failed")
        assert "database unreachable" in anomalies[0].message

    def test_thresholds_from_settings(self, settings):
        thresholds = AnomalyThresholds.from_settings(settings)
        assert thresholds.window_hours == 1
        assert thresholds.min_events == 10
        assert thresholds.error_rate == 0.10
        assert thresholds.avg_processing_ms == 3000
