"""
security/rate_limit.py -- Fixed-window attempt counters kept in the session.

Used to throttle login attempts, registrations and the brute-force demo. This
is a coarse fixed window, not a token bucket: a client can spend max attempts
at the end of one window and max again at the start of the next. The per-IP
slowapi limit in api/limiter.py sits in front of it for the login endpoints.

Counters live at session.data["rate_limits"][key] = {"count", "window_start"}.
The session middleware holds the per-session lock for the whole request, so
check_and_increment() is atomic from the caller's point of view: the reset and
the first increment of a new window are written together.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Optional

from core.models import RateLimitCounter
from sessions.models import RATE_LIMITS, Session


class RateLimiter:
    def __init__(
        self,
        enabled: bool = True,
        max_requests: int = 5,
        period_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.enabled = enabled
        self.max_requests = max_requests
        self.period_seconds = period_seconds
        self._clock = clock

    def check_and_increment(
        self,
        session: Session,
        key: str,
        max_requests: Optional[int] = None,
        period_seconds: Optional[int] = None,
    ) -> bool:
        """Count one attempt for key and return True if the caller is now limited."""
        if not self.enabled:
            return False
        max_requests = self.max_requests if max_requests is None else max_requests
        period = self.period_seconds if period_seconds is None else period_seconds
        now = self._clock()

        counters = session.data.setdefault(RATE_LIMITS, {})
        counter = self.counter(session, key)
        if counter is None or now - counter.window_start > period:
            counters[key] = {"count": 1, "window_start": now}
            return False

        counter.count += 1
        counters[key] = {"count": counter.count, "window_start": counter.window_start}
        return counter.count > max_requests

    def counter(self, session: Session, key: str) -> Optional[RateLimitCounter]:
        entry = session.get(RATE_LIMITS, {}).get(key)
        if not isinstance(entry, dict):
            return None
        return RateLimitCounter(count=int(entry["count"]), window_start=float(entry["window_start"]))

    def retry_after(self, session: Session, key: str, period_seconds: Optional[int] = None) -> int:
        """Seconds until the current window for key resets (0 if no window is open)."""
        counter = self.counter(session, key)
        if counter is None:
            return 0
        period = self.period_seconds if period_seconds is None else period_seconds
        remaining = counter.window_start + period - self._clock()
        return max(0, math.ceil(remaining))

    def reset(self, session: Session, key: str) -> None:
        session.get(RATE_LIMITS, {}).pop(key, None)
