"""
Paywall - Stripe webhook ingestion and membership reconciliation.

Run with: uvicorn paywall.main:app
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from paywall.api.router import api_router
from paywall.config import Settings, get_settings
from paywall.services.billing import WebhookProcessor
from paywall.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from paywall.utils.rate_limiter import RateLimiter, build_rate_limiter

logger = logging.getLogger("paywall")

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses the caller's correlation ID or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(correlation_id)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def _warn_on_missing_secrets(settings: Settings) -> None:
    if not settings.stripe_webhook_secret:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not set - Stripe deliveries will get 500 until it is configured"
        )
    if not settings.admin_api_key:
        logger.warning("ADMIN_API_KEY not set - webhook metrics and anomaly endpoints are disabled")


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.app_env,
            traces_sample_rate=0.1,
        )
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))
    else:
        logger.info("Sentry error reporting enabled")


def _start_background_workers(settings: Settings) -> list[asyncio.Task]:
    if not settings.webhook_monitor_enabled:
        logger.info("Webhook monitor disabled (WEBHOOK_MONITOR_ENABLED=false)")
        return []

    from paywall.workers.webhook_monitor import run_webhook_monitor

    logger.info("Starting webhook monitor worker")
    return [asyncio.create_task(run_webhook_monitor(), name="webhook_monitor")]


async def _release_resources(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    from paywall.database import dispose_engine
    from paywall.utils.redis_client import close_redis

    await close_redis()
    await dispose_engine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("Paywall starting (env=%s)", settings.app_env)
    _warn_on_missing_secrets(settings)
    _init_sentry(settings)

    tasks = _start_background_workers(settings)
    try:
        yield
    finally:
        logger.info("Paywall stopping %d background worker(s)", len(tasks))
        await _release_resources(tasks)
        logger.info("Paywall stopped")


def create_app(
    settings: Optional[Settings] = None,
    rate_limiter: Optional[RateLimiter] = None,
    processor: Optional[WebhookProcessor] = None,
) -> FastAPI:
    """Build the ASGI app. Tests pass their own limiter and processor."""
    settings = settings or get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Paywall",
        description="Stripe webhook ingestion and membership reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.rate_limiter = rate_limiter or build_rate_limiter(settings)
    application.state.webhook_processor = processor or WebhookProcessor(settings)

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
