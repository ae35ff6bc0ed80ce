"""Tests for fleet_core.health."""

from datetime import datetime, timedelta

from fleet_core.health import LatencyMonitor

T0 = datetime(2024, 5, 6, 12, 0)


class TestLatencyMonitor:
    def test_short_spike_is_ignored(self):
        """A spike shorter than the sustained period does not trip."""
        monitor = LatencyMonitor(threshold_ms=500, sustained_seconds=30, check_interval_seconds=2)
        assert not monitor.observe(800, T0)
        assert not monitor.observe(800, T0 + timedelta(seconds=10))
        assert not monitor.observe(100, T0 + timedelta(seconds=20))
        assert monitor.high_since is None
        assert not monitor.observe(800, T0 + timedelta(seconds=40))

    def test_sustained_latency_trips(self):
        """Latency high for the whole period trips the monitor."""
        monitor = LatencyMonitor(threshold_ms=500, sustained_seconds=30, check_interval_seconds=2)
        for second in range(0, 30, 2):
            assert not monitor.observe(700, T0 + timedelta(seconds=second))
        assert monitor.observe(700, T0 + timedelta(seconds=30))

    def test_tiny_readings_are_substituted(self):
        """Readings under 10 ms count as 50 ms."""
        monitor = LatencyMonitor()
        monitor.observe(3, T0)
        assert monitor.last_reading == 50.0

    def test_checks_are_rate_limited(self):
        """Readings inside the check interval are not sampled."""
        monitor = LatencyMonitor(check_interval_seconds=2)
        monitor.observe(100, T0)
        monitor.observe(900, T0 + timedelta(seconds=1))
        assert monitor.last_reading == 100
        assert monitor.high_since is None

    def test_unknown_latency(self):
        """A missing reading never trips the monitor."""
        assert not LatencyMonitor().observe(None, T0)

    def test_reset(self):
        """Reset forgets any streak."""
        monitor = LatencyMonitor()
        monitor.observe(900, T0)
        monitor.reset()
        assert monitor.high_since is None and monitor.last_reading is None
