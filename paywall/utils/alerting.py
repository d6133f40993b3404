"""
Operator alerts raised by the webhook monitor.

Each alert goes to three places: the log (level follows severity), the
webhook_alerts table, and the chat webhook at ALERT_WEBHOOK_URL when one
is configured. A per-type cooldown keeps a lasting condition from
alerting on every monitor cycle; it is held in Redis and falls back to
process memory when Redis is down.

send_alert never raises. Undeliverable alerts are logged and dropped.
"""
import logging
import time
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

# Conditions re-evaluated every monitor cycle
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_high_error_rate": 3600,
    "webhook_slow_processing": 3600,
    "webhook_duplicate_subscriptions": 3600,
}

SEVERITIES = ("info", "warning", "critical")

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "critical": logging.CRITICAL,
}

_CHAT_ICONS = {
    "info": "ℹ️",
    "warning": "⚠️",
    "critical": "\U0001f6a8",
}

# alert_type -> monotonic expiry, used only while Redis is unreachable
_local_cooldowns: dict[str, float] = {}


class AlertType:
    WEBHOOK_HIGH_ERROR_RATE = "webhook_high_error_rate"
    WEBHOOK_SLOW_PROCESSING = "webhook_slow_processing"
    WEBHOOK_DUPLICATE_SUBSCRIPTIONS = "webhook_duplicate_subscriptions"
    WEBHOOK_STALE_CLAIMS = "webhook_stale_claims"
    WEBHOOK_MONITOR_FAILED = "webhook_monitor_failed"


async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "warning",
    extra: Optional[dict] = None,
    session_factory: Optional[Callable] = None,
) -> bool:
    """Publish an alert unless its type is cooling down. True when a row was stored."""
    if severity not in SEVERITIES:
        logger.warning("Unknown alert severity %r, using 'warning'", severity)
        severity = "warning"

    if not await _start_cooldown(alert_type):
        logger.debug("Alert %s suppressed by cooldown", alert_type)
        return False

    from paywall.utils.logging import get_correlation_id

    correlation_id = get_correlation_id()
    logger.log(
        _LOG_LEVELS[severity],
        "ALERT [%s] [%s]: %s%s",
        alert_type,
        severity.upper(),
        message,
        f" (correlation_id={correlation_id})" if correlation_id else "",
    )

    stored = await _store_alert(alert_type, message, severity, session_factory)
    await _post_to_chat(_chat_message(alert_type, message, severity, correlation_id, extra))
    return stored


async def _start_cooldown(alert_type: str) -> bool:
    """Claim the cooldown window for alert_type. False if one is already running."""
    seconds = ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)
    try:
        from paywall.utils.redis_client import get_redis

        redis = await get_redis()
        return bool(
            await redis.set(f"paywall:alert_cooldown:{alert_type}", "1", nx=True, ex=seconds)
        )
    except Exception as e:
        logger.debug("Redis cooldown unavailable, using process memory: %s", str(e))

    now = time.monotonic()
    if _local_cooldowns.get(alert_type, 0.0) > now:
        return False
    _local_cooldowns[alert_type] = now + seconds
    return True


async def _store_alert(
    alert_type: str,
    message: str,
    severity: str,
    session_factory: Optional[Callable],
) -> bool:
    from paywall.models.webhook_alert import WebhookAlert

    try:
        if session_factory is None:
            from paywall.database import async_session_factory
            session_factory = async_session_factory

        async with session_factory() as db:
            db.add(WebhookAlert(alert_type=alert_type, message=message, severity=severity))
            await db.commit()
    except Exception as e:
        logger.error("Failed to store alert %s: %s", alert_type, str(e))
        return False
    return True


def _chat_message(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> str:
    lines = [f"{_CHAT_ICONS[severity]} **{alert_type}**", message]
    if correlation_id:
        lines.append(f"`correlation_id: {correlation_id}`")
    lines.extend(f"`{key}: {value}`" for key, value in (extra or {}).items())
    return "\n".join(lines)


async def _post_to_chat(content: str) -> None:
    """Discord reads "content", Slack reads "text"; both are sent."""
    try:
        from paywall.config import get_settings

        url = get_settings().alert_webhook_url
        if not url:
            return
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(url, json={"content": content, "text": content})
    except Exception as e:
        logger.warning("Failed to post alert to chat webhook: %s", str(e))
