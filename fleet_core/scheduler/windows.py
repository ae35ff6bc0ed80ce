"""
TIME WINDOWS
============

Wall-clock helpers shared by the scheduler evaluators and read-only queries.

- ``parse_hhmm``: "HH:MM" -> ``datetime.time`` (raises TimeWindowError)
- ``window_contains``: daily ``[start, stop)`` containment, wrapping midnight
  when stop is earlier than start
- ``deterministic_offset``: stable per (agent, date, context) jitter drawn
  from Normal(0, variance/2) via Box-Muller, clamped to ``±variance``
"""

import hashlib
import math
import random
from datetime import date, datetime, time, timedelta
from typing import Tuple


class TimeWindowError(ValueError):
    """An unparsable "HH:MM" value in a schedule."""
    pass


def parse_hhmm(value: str) -> time:
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except (AttributeError, ValueError) as e:
        raise TimeWindowError(f"Invalid time of day {value!r}: expected HH:MM") from e
    return parsed.time()


def at_time(day: datetime, tod: time) -> datetime:
    """``day``'s date combined with time-of-day ``tod``."""
    return day.replace(hour=tod.hour, minute=tod.minute, second=0, microsecond=0)


def window_contains(now: datetime, start: time, stop: time) -> bool:
    """
    True when ``now`` falls in the daily ``[start, stop)`` window.

    A stop earlier than start wraps past midnight. Equal start and stop
    describes a window that never closes.
    """
    current = now.time()
    if stop > start:
        return start <= current < stop
    return current >= start or current < stop


# ============================================================================
# DETERMINISTIC OFFSETS
# ============================================================================

def stable_seed(*parts: str) -> int:
    """Process-independent integer seed for the given string parts."""
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def deterministic_offset(name: str, day: date, context: str, variance: int) -> int:
    """
    Minutes of offset for ``name`` on ``day``; identical inputs give identical output.

    Sampled from Normal(0, variance/2) so most days land near the configured
    time, then clamped to ``[-variance, +variance]``.
    """
    if variance <= 0:
        return 0

    rng = random.Random(stable_seed(name, day.isoformat(), context))
    u1, u2 = rng.random(), rng.random()
    if u1 < 1e-10:
        u1 = 1e-10
    z = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)

    offset = int(round(z * variance / 2.0))
    return max(-variance, min(variance, offset))


def jittered_range(
    name: str,
    day: datetime,
    start: time,
    end: time,
    start_variance: int,
    end_variance: int,
) -> Tuple[datetime, datetime]:
    """Today's ``(start, end)`` datetimes for one time-slot range."""
    start_dt = at_time(day, start) + timedelta(
        minutes=deterministic_offset(name, day.date(), "start", start_variance)
    )
    end_dt = at_time(day, end) + timedelta(
        minutes=deterministic_offset(name, day.date(), "end", end_variance)
    )
    return start_dt, end_dt
