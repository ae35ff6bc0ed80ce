"""
LATENCY MONITOR
===============

Detects sustained high round-trip latency for one agent.

A reading above ``threshold_ms`` starts a streak; once the streak has lasted
``sustained_seconds`` the monitor reports it. Readings below 10 ms are treated
as 50 ms (the driven process reports near-zero values while loading).
"""

from datetime import datetime, timedelta
from typing import Optional

MIN_VALID_READING_MS = 10.0
SUBSTITUTE_READING_MS = 50.0


class LatencyMonitor:

    def __init__(
        self,
        threshold_ms: float = 500.0,
        sustained_seconds: float = 30.0,
        check_interval_seconds: float = 2.0,
    ):
        self.threshold_ms = threshold_ms
        self.sustained = timedelta(seconds=sustained_seconds)
        self.check_interval = timedelta(seconds=check_interval_seconds)
        self.high_since: Optional[datetime] = None
        self.last_check: Optional[datetime] = None
        self.last_reading: Optional[float] = None

    def observe(self, latency_ms: Optional[float], now: datetime) -> bool:
        """Record a reading; True once high latency has been sustained."""
        if latency_ms is None:
            return False
        if self.last_check is not None and now - self.last_check < self.check_interval:
            return self._sustained(now)
        self.last_check = now

        if latency_ms < MIN_VALID_READING_MS:
            latency_ms = SUBSTITUTE_READING_MS
        self.last_reading = latency_ms

        if latency_ms > self.threshold_ms:
            if self.high_since is None:
                self.high_since = now
        else:
            self.high_since = None
        return self._sustained(now)

    def _sustained(self, now: datetime) -> bool:
        return self.high_since is not None and now - self.high_since >= self.sustained

    def reset(self) -> None:
        self.high_since = None
        self.last_check = None
        self.last_reading = None
