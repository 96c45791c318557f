"""
Sliding-window rate limiter for job starts.

Caps how many jobs the worker pool may begin within a trailing window
(default 10 per 60 seconds).  Waiting happens outside the lock so other
workers can keep checking while one sleeps.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("reelforge.rate_limit")


class JobRateLimiter:
    """At most *max_starts* acquisitions per *window_seconds*."""

    def __init__(
        self,
        max_starts: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_starts <= 0 or window_seconds <= 0:
            raise ValueError("rate limit needs a positive max and window")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: List[float] = []
        self._lock = asyncio.Lock()
        self.throttled_count = 0

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        ts = self._timestamps
        i = 0
        while i < len(ts) and ts[i] <= cutoff:
            i += 1
        if i:
            del ts[:i]

    def _check(self, now: float) -> tuple[bool, float]:
        """Return (can_proceed, wait_seconds)."""
        self._prune(now)
        if len(self._timestamps) < self.max_starts:
            return True, 0.0
        oldest = self._timestamps[0]
        return False, max((oldest + self.window_seconds) - now, 0.01)

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now, without waiting."""
        now = self._clock()
        ok, _ = self._check(now)
        if ok:
            self._timestamps.append(now)
        return ok

    async def acquire(self, max_wait: Optional[float] = None) -> bool:
        """Wait for a slot.

        Returns False only when *max_wait* is given and the next free slot
        is further away than that.
        """
        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                ok, wait = self._check(now)
                if ok:
                    self._timestamps.append(now)
                    return True
                if max_wait is not None and waited + wait > max_wait:
                    self.throttled_count += 1
                    return False
            self.throttled_count += 1
            logger.debug("Job starts throttled; waiting %.2fs", wait)
            await asyncio.sleep(wait)
            waited += wait

    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "max_starts": self.max_starts,
            "window_seconds": self.window_seconds,
            "in_window": self.in_window(),
            "throttled_count": self.throttled_count,
        }
