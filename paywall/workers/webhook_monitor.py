"""
Webhook monitor worker - runs every 5 minutes.

Phase 1: Anomaly detection over the delivery history (error rate, latency,
         duplicate subscription attempts) -> alerts
Phase 2: Stale claim reconciliation - releases claims whose membership write
         never landed so Stripe's next redelivery is processed
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from paywall.config import get_settings
from paywall.services.idempotency import IdempotencyStore
from paywall.services.webhook_monitoring import AnomalyThresholds, detect_anomalies
from paywall.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 300  # 5 minutes
HEARTBEAT_KEY = "paywall:worker_health:webhook_monitor"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from paywall.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY,
            datetime.now(timezone.utc).isoformat(),
            ex=600,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def monitor_cycle(
    idempotency: Optional[IdempotencyStore] = None,
    session_factory=None,
) -> dict:
    """One monitoring pass. Returns counts for logging and tests."""
    settings = get_settings()
    idempotency = idempotency or IdempotencyStore()

    # Phase 1: anomalies
    anomalies = await detect_anomalies(
        AnomalyThresholds.from_settings(settings),
        session_factory=session_factory,
    )
    for anomaly in anomalies:
        await send_alert(
            anomaly.alert_type,
            anomaly.message,
            severity=anomaly.severity,
            session_factory=session_factory,
        )

    # Phase 2: stale claims
    released: list[str] = []
    try:
        released = await idempotency.reconcile_stale_claims(settings.stale_claim_minutes)
    except Exception as e:
        logger.error("Stale claim reconciliation failed: %s", str(e))

    if released:
        await send_alert(
            AlertType.WEBHOOK_STALE_CLAIMS,
            f"Released {len(released)} stale webhook claims older than "
            f"{settings.stale_claim_minutes} minutes",
            severity="warning",
            extra={"event_ids": ", ".join(released[:10])},
            session_factory=session_factory,
        )

    if anomalies or released:
        logger.info(
            "Webhook monitor: anomalies=%d stale_claims_released=%d",
            len(anomalies), len(released),
        )
    return {"anomalies": len(anomalies), "released": len(released)}


async def run_webhook_monitor():
    """Main loop - anomaly detection + claim reconciliation every interval."""
    settings = get_settings()
    interval = settings.webhook_monitor_interval_seconds or POLL_INTERVAL_SECONDS
    logger.info("Webhook monitor started (poll every %ds)", interval)

    while True:
        try:
            await monitor_cycle()
        except Exception as e:
            logger.error("Webhook monitor error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(interval)
