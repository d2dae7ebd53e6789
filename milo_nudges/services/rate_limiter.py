"""
Per-Operation Rate Limiter

Counts calls per (operation, minute bucket) and rejects calls beyond the
per-minute budget. Buckets are absolute epoch minutes, so every call within
the same wall-clock minute shares one counter. Stale windows are dropped by
the periodic sweep, never on the hot path.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Tuple

import structlog

from milo_nudges.errors import RateLimitExceeded

logger = structlog.get_logger(__name__)

WINDOW = timedelta(minutes=1)


@dataclass
class RateLimitWindow:
    count: int
    window_start: datetime


class RateLimiter:
    """
    Fixed one-minute windows keyed by operation name.

    Args:
        limit_per_minute: Calls allowed per operation and minute
        clock: Returns the current time
    """

    def __init__(self, limit_per_minute: int, clock: Callable[[], datetime]):
        self.limit_per_minute = limit_per_minute
        self._clock = clock
        self._windows: Dict[Tuple[str, int], RateLimitWindow] = {}

    @staticmethod
    def minute_bucket(moment: datetime) -> int:
        return int(moment.timestamp() // 60)

    def check(self, operation_key: str) -> None:
        """
        Count one call of `operation_key`.

        Raises:
            RateLimitExceeded: If this call exceeds the per-minute budget
        """
        now = self._clock()
        key = (operation_key, self.minute_bucket(now))

        window = self._windows.get(key)
        if window is None:
            window = RateLimitWindow(count=0, window_start=now)
            self._windows[key] = window
        window.count += 1

        if window.count > self.limit_per_minute:
            logger.warning("rate_limit_exceeded", operation=operation_key, count=window.count)
            raise RateLimitExceeded(
                f"Rate limit exceeded for operation: {operation_key}",
                context={"operation": operation_key, "limit": self.limit_per_minute}
            )

    def purge_stale(self) -> int:
        """Drop windows that started more than a minute ago."""
        now = self._clock()
        stale = [key for key, window in self._windows.items() if now - window.window_start > WINDOW]
        for key in stale:
            del self._windows[key]
        return len(stale)

    def count_for(self, operation_key: str) -> int:
        """Calls of `operation_key` in the current minute."""
        window = self._windows.get((operation_key, self.minute_bucket(self._clock())))
        return window.count if window else 0

    def __len__(self) -> int:
        return len(self._windows)
