"""
Liveness and readiness probes.

/health answers as long as the process serves requests. /health/ready
reports each dependency; the monitor heartbeat is informational only.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))
        return False
    return True


async def _redis_probe() -> tuple[bool, Optional[str]]:
    """Ping Redis and read the webhook monitor heartbeat in one connection."""
    from paywall.utils.redis_client import get_redis
    from paywall.workers.webhook_monitor import HEARTBEAT_KEY

    try:
        redis = await get_redis()
        await redis.ping()
        return True, await redis.get(HEARTBEAT_KEY)
    except Exception as e:
        logger.warning("Readiness: redis unreachable: %s", str(e))
        return False, None


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    redis_ok, heartbeat = await _redis_probe()
    checks = {"database": await _database_ok(db), "redis": redis_ok}
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "webhook_monitor_heartbeat": heartbeat,
        "timestamp": _now(),
    }
