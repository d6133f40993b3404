"""
Fixed-window rate limiters for the webhook ingress.

The limiter is an explicit dependency of the app (app.state.rate_limiter),
never module state. InMemoryRateLimiter only sees the requests of its own
process: with more than one instance behind a load balancer the effective
ceiling is multiplied by the instance count. Multi-instance deployments must
use RedisRateLimiter (RATE_LIMITER_BACKEND=redis).
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10  # requests per window per source
WINDOW_SECONDS = 60
MAX_TRACKED_KEYS = 10000


@dataclass
class RateLimitWindow:
    count: int
    window_reset_at: float


class RateLimiter(ABC):
    """Caps requests per source identity per time window."""

    def __init__(self, limit: int = DEFAULT_LIMIT, window: int = WINDOW_SECONDS):
        self.limit = limit
        self.window = window

    @abstractmethod
    async def check(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Record one request for key.

        Returns: (allowed: bool, retry_after_seconds: int | None)
        """


class InMemoryRateLimiter(RateLimiter):
    """Process-local fixed window. Suitable for a single instance only."""

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window: int = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(limit, window)
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}

    async def check(self, key: str) -> tuple[bool, Optional[int]]:
        now = self._clock()
        current = self._windows.get(key)

        if current is None or now > current.window_reset_at:
            if len(self._windows) >= MAX_TRACKED_KEYS:
                self._prune(now)
            self._windows[key] = RateLimitWindow(count=1, window_reset_at=now + self.window)
            return True, None

        if current.count >= self.limit:
            retry_after = max(int(current.window_reset_at - now), 1)
            logger.warning(
                "Rate limit exceeded: key=%s count=%d limit=%d",
                key, current.count, self.limit,
            )
            return False, retry_after

        current.count += 1
        return True, None

    def _prune(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now > w.window_reset_at]
        for k in expired:
            del self._windows[k]


class RedisRateLimiter(RateLimiter):
    """Shared fixed window. Works across instances."""

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window: int = WINDOW_SECONDS,
        key_prefix: str = "paywall:ratelimit",
    ):
        super().__init__(limit, window)
        self.key_prefix = key_prefix

    async def check(self, key: str) -> tuple[bool, Optional[int]]:
        try:
            from paywall.utils.redis_client import get_redis
            redis = await get_redis()

            redis_key = f"{self.key_prefix}:{key}"
            # EXPIRE NX runs with every INCR so a counter can never outlive its window
            pipe = redis.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, self.window, nx=True)
            current, _ = await pipe.execute()

            if current > self.limit:
                ttl = await redis.ttl(redis_key)
                logger.warning(
                    "Rate limit exceeded: key=%s count=%d limit=%d",
                    key, current, self.limit,
                )
                return False, max(int(ttl), 1) if ttl and ttl > 0 else self.window

            return True, None
        except Exception as e:
            # Redis failure should not block webhooks - allow through
            logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
            return True, None


def build_rate_limiter(settings) -> RateLimiter:
    """Construct the configured limiter backend."""
    if settings.rate_limiter_backend == "redis":
        return RedisRateLimiter(settings.webhook_rate_limit, settings.webhook_rate_window_seconds)
    if settings.is_production:
        logger.warning(
            "Using in-memory webhook rate limiter in production. "
            "Limits are per-process; set RATE_LIMITER_BACKEND=redis for multiple instances."
        )
    return InMemoryRateLimiter(settings.webhook_rate_limit, settings.webhook_rate_window_seconds)
