"""
Latency measurement for webhook processing.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

SLOW_PROCESSING_MS = 5000


class Timer:
    """Wall-clock stopwatch on the monotonic clock, reporting whole milliseconds."""

    def __init__(self):
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None

    def start(self) -> "Timer":
        self._started_at = time.monotonic()
        self._stopped_at = None
        return self

    def stop(self) -> int:
        self._stopped_at = time.monotonic()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> int:
        # Still running: measure up to now
        if self._started_at is None:
            return 0
        until = self._stopped_at if self._stopped_at is not None else time.monotonic()
        return int((until - self._started_at) * 1000)

    def log_duration(self, label: str, slow_ms: int = SLOW_PROCESSING_MS) -> int:
        """Log how long label took. Anything above slow_ms is a warning."""
        duration = self.elapsed_ms
        if duration > slow_ms:
            logger.warning(
                "Slow webhook processing detected for %s: %dms (threshold %dms)",
                label, duration, slow_ms,
            )
        else:
            logger.info("Webhook processing time for %s: %dms", label, duration)
        return duration
