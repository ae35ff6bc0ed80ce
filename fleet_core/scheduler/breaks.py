"""
BREAK PLANNER
=============

Builds one day's break list for duration mode.

Algorithm
---------
1. ``total = meal_breaks + short_breaks``; the play window (``play_hours*60``
   minutes) is cut into ``total + 1`` equal segments.
2. One candidate slot sits at the end of each of the first ``total``
   segments, moved by its own random timing jitter. Slots are sorted.
3. Meal breaks claim the slots nearest the ideal offsets (4h, 11h) by greedy
   nearest-unused-slot assignment; every other slot is a short break.
4. Each break gets its type's base duration plus random jitter, floored at
   one minute, and is kept inside the play window.

Offsets are minutes from the start of play. The result is sorted ascending.
"""

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

MEAL = "meal"
SHORT = "short"

MEAL_IDEAL_OFFSETS = (4 * 60, 11 * 60)


@dataclass
class PlannedBreak:
    type: str
    offset_minutes: int
    duration_minutes: int

    @property
    def end_minutes(self) -> int:
        return self.offset_minutes + self.duration_minutes


# ============================================================================
# JITTER HELPERS
# ============================================================================

def apply_jitter(
    base_variance: int,
    jitter_min: int,
    jitter_max: int,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Scale a variance by a random multiplier between jitter_min% and jitter_max%.

    Both zero returns the variance untouched; one zero takes 50 or 150.
    """
    if jitter_min == 0 and jitter_max == 0:
        return base_variance
    rng = rng or random

    if jitter_min == 0:
        jitter_min = 50
    if jitter_max == 0:
        jitter_max = 150

    min_mult = jitter_min / 100.0
    max_mult = jitter_max / 100.0
    multiplier = min_mult + rng.random() * (max_mult - min_mult)
    return int(base_variance * multiplier)


def random_in_range(low: int, high: int, rng: Optional[random.Random] = None) -> int:
    """Uniform integer in ``[low, high]``; ``low`` when the range is empty."""
    if low >= high:
        return low
    return (rng or random).randint(low, high)


def pick_meal_slots(slots: Sequence[int], meal_count: int) -> List[int]:
    """Indices of the slots nearest each ideal meal offset, greedy and unique."""
    if meal_count <= 0 or not slots:
        return []

    selected: List[int] = []
    for ideal in MEAL_IDEAL_OFFSETS:
        if len(selected) >= meal_count:
            break
        best_idx = None
        best_dist = None
        for i, slot in enumerate(slots):
            if i in selected:
                continue
            dist = abs(slot - ideal)
            if best_dist is None or dist < best_dist:
                best_idx, best_dist = i, dist
        if best_idx is not None:
            selected.append(best_idx)
    return selected


# ============================================================================
# PLANNER
# ============================================================================

def plan_breaks(config, play_hours: int, rng: Optional[random.Random] = None) -> List[PlannedBreak]:
    """
    Plan the day's breaks for ``play_hours`` hours of play.

    Args:
        config: DurationConfig (break counts, durations, variances, jitter).
        play_hours: Actual play hours for the day (at least 1).
        rng: Random source; the module-level generator when omitted.
    """
    rng = rng or random.Random()
    total_breaks = max(0, config.meal_breaks) + max(0, config.short_breaks)
    if total_breaks == 0:
        return []

    total_minutes = max(1, play_hours) * 60
    segment = total_minutes // (total_breaks + 1)

    slots = []
    for i in range(total_breaks):
        variance = apply_jitter(config.break_timing_variance, config.jitter_min, config.jitter_max, rng)
        slots.append(segment * (i + 1) + random_in_range(-variance, variance, rng))
    slots.sort()

    meal_indices = pick_meal_slots(slots, config.meal_breaks)

    breaks = []
    for i, slot in enumerate(slots):
        if i in meal_indices:
            kind, base, variance = MEAL, config.meal_break_duration, config.meal_break_variance
        else:
            kind, base, variance = SHORT, config.short_break_duration, config.short_break_variance

        jittered = apply_jitter(variance, config.jitter_min, config.jitter_max, rng)
        duration = max(1, base + random_in_range(-jittered, jittered, rng))
        duration = min(duration, total_minutes)
        offset = max(0, min(slot, total_minutes - duration))
        breaks.append(PlannedBreak(type=kind, offset_minutes=offset, duration_minutes=duration))

    breaks.sort(key=lambda b: b.offset_minutes)
    return breaks
