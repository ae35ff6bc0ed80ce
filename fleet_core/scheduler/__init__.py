"""
SCHEDULER MODULE
=================

Time-window scheduling for supervised agents.

Features:
- Simple daily windows (wrapping past midnight)
- Weekly time slots with deterministic per-day offsets
- Duration day plans with randomized wake time, play length and breaks
- Per-agent state and 30-day history persistence
- Read-only "within window" and "next window" queries
"""

from .breaks import PlannedBreak, apply_jitter, pick_meal_slots, plan_breaks, random_in_range
from .scheduler import Scheduler
from .state import DurationState, HistoryEntry, Phase, ScheduledBreak, StateStore
from .windows import TimeWindowError, deterministic_offset, parse_hhmm, window_contains

__all__ = [
    'Scheduler',
    'DurationState',
    'HistoryEntry',
    'Phase',
    'ScheduledBreak',
    'StateStore',
    'PlannedBreak',
    'plan_breaks',
    'apply_jitter',
    'pick_meal_slots',
    'random_in_range',
    'TimeWindowError',
    'deterministic_offset',
    'parse_hhmm',
    'window_contains',
]
