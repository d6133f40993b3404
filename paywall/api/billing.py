"""
Billing API - Stripe webhook ingress and webhook monitoring endpoints.

The webhook endpoint has NO auth beyond Stripe itself. Security layers (in order):
1. Source IP allowlist (production only)
2. Rate limiting per source IP
3. Signature verification on the raw body
4. Idempotency claim, then membership reconciliation

Monitoring endpoints require the X-Admin-Key header.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from paywall.config import get_settings
from paywall.exceptions import (
    BusinessLogicError,
    IdempotencyStoreError,
    RateLimitExceeded,
    UntrustedSourceError,
    WebhookConfigurationError,
    WebhookSignatureError,
)
from paywall.services.billing import WebhookProcessor
from paywall.services.webhook_log import WebhookLog, emit_webhook_log
from paywall.services.webhook_monitoring import (
    AnomalyThresholds,
    collect_webhook_metrics,
    detect_anomalies,
)
from paywall.utils.rate_limiter import RateLimiter
from paywall.utils.source_ip import get_client_ip, is_trusted_source

logger = logging.getLogger(__name__)
router = APIRouter(tags=["billing"])


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


def _log_rejection(reason: str, client_ip: Optional[str]) -> None:
    """Security rejections are logged only; they never reach the delivery history."""
    emit_webhook_log(
        WebhookLog(
            event_id="unknown",
            event_type="unknown",
            success=False,
            error=reason,
            details={"ip": client_ip},
        )
    )


async def _admit(request: Request, settings, rate_limiter: RateLimiter) -> Optional[str]:
    """Origin and rate-limit checks. Returns the client IP of an admitted request."""
    client_ip = get_client_ip(request)
    if not is_trusted_source(client_ip, settings):
        raise UntrustedSourceError(f"Untrusted source IP {client_ip}")

    allowed, retry_after = await rate_limiter.check(client_ip or "unknown")
    if not allowed:
        raise RateLimitExceeded(client_ip or "unknown", retry_after or rate_limiter.window)
    return client_ip


@router.post("/api/stripe/webhook")
@router.post("/api/v1/billing/webhook")
async def stripe_webhook(
    request: Request,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Stripe webhook endpoint. No JWT auth - origin, rate limit and signature checks.
    """
    settings = processor.settings

    try:
        client_ip = await _admit(request, settings, rate_limiter)
    except UntrustedSourceError as e:
        logger.warning("Rejected Stripe webhook: %s", str(e))
        _log_rejection("Untrusted source IP", get_client_ip(request))
        return _error(403, "Forbidden")
    except RateLimitExceeded as e:
        logger.warning("Stripe webhook rate limit exceeded for %s", e.key)
        return _error(429, "Too many requests", headers={"Retry-After": str(e.retry_after)})

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Stripe webhook without signature header from %s", client_ip)
        return _error(400, "Missing stripe-signature header")

    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        return _error(500, "Webhook secret not configured")

    payload = await request.body()

    try:
        result = await processor.process(payload, sig_header)
    except WebhookSignatureError as e:
        _log_rejection(str(e), client_ip)
        return _error(400, str(e))
    except WebhookConfigurationError as e:
        logger.error("Webhook configuration error: %s", str(e))
        return _error(500, "Webhook secret not configured")
    except IdempotencyStoreError as e:
        logger.error("Webhook claim failed: %s", str(e))
        return _error(500, "Database error")
    except BusinessLogicError as e:
        logger.error("Webhook processing error: %s", str(e))
        return _error(500, "Webhook processing failed")

    logger.debug("Stripe webhook %s handled: %s", result.event_id, result.outcome)
    return {"received": True}


# === Monitoring (admin) ===

async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API key not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")


@router.get("/api/v1/billing/webhook/metrics", dependencies=[Depends(require_admin_key)])
async def webhook_metrics(hours: Optional[int] = Query(default=None, ge=1, le=24 * 30)):
    """Delivery metrics over the trailing window, WEBHOOK_METRICS_WINDOW_HOURS unless given."""
    hours = hours or get_settings().webhook_metrics_window_hours
    metrics = await collect_webhook_metrics(hours)
    return {"hours": hours, **metrics.to_dict(), "error_rate": round(metrics.error_rate, 4)}


@router.get("/api/v1/billing/webhook/anomalies", dependencies=[Depends(require_admin_key)])
async def webhook_anomalies():
    """Run anomaly detection now and return what it found (no alerts sent)."""
    anomalies = await detect_anomalies(AnomalyThresholds.from_settings(get_settings()))
    return {
        "anomalies": [
            {"type": a.alert_type, "message": a.message, "severity": a.severity}
            for a in anomalies
        ]
    }
