"""Tests for fleet_core.scheduler.breaks."""

import random
from unittest.mock import MagicMock

import pytest

from fleet_core.config import DurationConfig
from fleet_core.scheduler.breaks import (
    MEAL,
    SHORT,
    apply_jitter,
    pick_meal_slots,
    plan_breaks,
    random_in_range,
)


class TestApplyJitter:
    def test_disabled_when_both_zero(self):
        """Zero bounds leave the variance untouched."""
        assert apply_jitter(40, 0, 0) == 40

    def test_scales_within_bounds(self):
        """The multiplier lies between jitter_min% and jitter_max%."""
        rng = random.Random(7)
        for _ in range(100):
            assert 20 <= apply_jitter(40, 50, 150, rng) <= 60

    def test_missing_bound_takes_default(self):
        """A single zero bound defaults to 50 or 150 percent."""
        rng = MagicMock()
        rng.random.return_value = 1.0
        assert apply_jitter(100, 80, 0, rng) == 150
        rng.random.return_value = 0.0
        assert apply_jitter(100, 0, 120, rng) == 50


class TestRandomInRange:
    def test_inclusive(self):
        """Both ends of the range can be drawn."""
        rng = random.Random(1)
        seen = {random_in_range(-1, 1, rng) for _ in range(200)}
        assert seen == {-1, 0, 1}

    def test_empty_range_returns_low(self):
        """A degenerate range returns its lower bound."""
        assert random_in_range(5, 5) == 5
        assert random_in_range(5, 2) == 5


class TestPickMealSlots:
    def test_nearest_to_ideal_offsets(self):
        """Meals land on the slots closest to 4h and 11h."""
        slots = [60, 230, 400, 650, 800]
        assert pick_meal_slots(slots, 2) == [1, 3]

    def test_slots_are_unique(self):
        """A slot already claimed is not reused for the second meal."""
        assert pick_meal_slots([240], 2) == [0]

    def test_zero_meals(self):
        """No meals selects nothing."""
        assert pick_meal_slots([100, 200], 0) == []


class TestPlanBreaks:
    def test_no_breaks_configured(self):
        """Zero break counts produce an empty plan."""
        assert plan_breaks(DurationConfig(meal_breaks=0, short_breaks=0), 8) == []

    def test_count_and_types(self):
        """One break per configured break, meals capped at two."""
        config = DurationConfig(meal_breaks=3, short_breaks=2)
        breaks = plan_breaks(config, 8, random.Random(3))
        assert len(breaks) == 5
        assert sum(1 for b in breaks if b.type == MEAL) == 2
        assert sum(1 for b in breaks if b.type == SHORT) == 3

    def test_evenly_spaced_without_variance(self):
        """With no variance breaks sit on equal segment boundaries."""
        config = DurationConfig(meal_breaks=0, short_breaks=3, short_break_duration=10)
        breaks = plan_breaks(config, 8, random.Random(0))
        assert [b.offset_minutes for b in breaks] == [120, 240, 360]
        assert all(b.duration_minutes == 10 for b in breaks)

    @pytest.mark.parametrize("seed", range(20))
    def test_sorted_and_inside_play_window(self, seed):
        """Breaks are ordered and fit inside the play window under heavy jitter."""
        config = DurationConfig(
            meal_breaks=2,
            short_breaks=4,
            meal_break_duration=45,
            short_break_duration=10,
            meal_break_variance=30,
            short_break_variance=8,
            break_timing_variance=90,
            jitter_min=50,
            jitter_max=200,
        )
        play_hours = 1 + seed % 6
        breaks = plan_breaks(config, play_hours, random.Random(seed))
        offsets = [b.offset_minutes for b in breaks]
        assert offsets == sorted(offsets)
        for b in breaks:
            assert b.duration_minutes >= 1
            assert b.offset_minutes >= 0
            assert b.end_minutes <= play_hours * 60

    def test_single_meal(self):
        """One configured meal yields exactly one meal break."""
        config = DurationConfig(meal_breaks=1, short_breaks=2)
        breaks = plan_breaks(config, 8, random.Random(11))
        assert [b.type for b in breaks].count(MEAL) == 1
