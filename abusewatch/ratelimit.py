"""
Daily-quota state machine.

NORMAL   – reports go straight to the API
LIMITED  – the daily quota is used up; reports are buffered until the next
           UTC midnight, when the dispatcher sends the buffer in bulk

The state is a single enum so "limited but not buffering" can't happen.
"""
from __future__ import annotations

import enum
import time
from typing import Callable

from abusewatch.timeutil import next_utc_midnight

STATUS_LOG_INTERVAL = 10 * 60  # seconds


class RateLimitState(str, enum.Enum):
    NORMAL = "normal"
    LIMITED = "limited"


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.state = RateLimitState.NORMAL
        self.reset_at: float = next_utc_midnight(clock())
        self.limited_since: float | None = None
        self.bulk_sent = False
        self._last_status_log: float | None = None

    @property
    def is_limited(self) -> bool:
        return self.state is RateLimitState.LIMITED

    def enter_limited(self) -> bool:
        """Record a quota-exceeded answer. True only on the NORMAL -> LIMITED edge."""
        if self.is_limited:
            return False
        now = self._clock()
        self.state = RateLimitState.LIMITED
        self.limited_since = now
        self.reset_at = next_utc_midnight(now)
        self.bulk_sent = False
        self._last_status_log = None
        return True

    def reset_due(self) -> bool:
        return self.is_limited and self._clock() >= self.reset_at

    def release(self) -> None:
        """LIMITED -> NORMAL. Schedules the following day's reset."""
        now = self._clock()
        self.state = RateLimitState.NORMAL
        self.limited_since = None
        self.reset_at = next_utc_midnight(now)
        self._last_status_log = None

    def seconds_remaining(self) -> float:
        return max(0.0, self.reset_at - self._clock())

    def status_due(self) -> bool:
        """True at most once per ``STATUS_LOG_INTERVAL`` while limited."""
        if not self.is_limited:
            return False
        now = self._clock()
        if self._last_status_log is not None and now - self._last_status_log < STATUS_LOG_INTERVAL:
            return False
        self._last_status_log = now
        return True
