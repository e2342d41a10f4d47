"""
Tests for Performance Monitor
==============================
"""

import time

import pytest

from modules.utils.performance_monitor import PerformanceMonitor


class TestPerformanceMonitor:
    """Test suite for PerformanceMonitor class."""

    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor(window_size=5, budget_ms=20)

    def test_tick_rate(self, monitor):
        """Simulate ticks at ~50 Hz."""
        for _ in range(6):
            time.sleep(0.02)
            monitor.tick()
        assert 30 < monitor.tick_rate < 55

    def test_tick_rate_needs_samples(self, monitor):
        monitor.tick()
        assert monitor.tick_rate == 0.0

    def test_stage_timing(self, monitor):
        with monitor.measure("inference"):
            time.sleep(0.01)
        assert monitor.get_stage_latency("inference") >= 9

    def test_unknown_stage(self, monitor):
        assert monitor.get_stage_latency("nonexistent") == 0.0

    def test_budget_overruns(self, monitor):
        with monitor.measure("total"):
            time.sleep(0.03)
        with monitor.measure("total"):
            pass
        assert monitor.overruns == 1

    def test_report(self, monitor):
        monitor.tick()
        monitor.record_skip()
        report = monitor.get_report()
        assert report["ticks"] == 1
        assert report["skipped_ticks"] == 1
        assert "readback" in report["latencies_ms"]

    def test_reset(self, monitor):
        with monitor.measure("total"):
            pass
        monitor.tick()
        monitor.reset()
        assert monitor.get_report()["ticks"] == 0
        assert monitor.total_latency_ms == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
