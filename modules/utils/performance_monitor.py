"""
Per-stage latency tracking for the control tick.
Thread-safe metrics collection with rolling windows and a tick budget.
"""

import time
import threading
import logging
from collections import deque
from contextlib import contextmanager

logger = logging.getLogger(__name__)

STAGES = ("capture", "preprocess", "inference", "readback", "validate", "total")


class PerformanceMonitor:
    """Tracks tick rate, per-stage latency, skipped ticks and budget overruns.

    ``budget_ms`` is the control tick period; ticks whose total stage time
    exceeds it are counted as overruns (the pipeline does not try to make
    them up).
    """

    def __init__(self, window_size=100, budget_ms=None):
        self._window_size = window_size
        self._budget_ms = budget_ms
        self._lock = threading.Lock()

        self._tick_intervals = deque(maxlen=window_size)
        self._last_tick = None
        self._stage_times = {name: deque(maxlen=window_size) for name in STAGES}

        self._tick_count = 0
        self._skipped = 0
        self._overruns = 0
        self._start_time = time.time()

    @contextmanager
    def measure(self, stage_name: str):
        """Context manager to measure a pipeline stage's duration."""
        start = time.perf_counter()
        yield
        elapsed_ms = (time.perf_counter() - start) * 1000
        with self._lock:
            if stage_name not in self._stage_times:
                self._stage_times[stage_name] = deque(maxlen=self._window_size)
            self._stage_times[stage_name].append(elapsed_ms)
            if (stage_name == "total" and self._budget_ms is not None
                    and elapsed_ms > self._budget_ms):
                self._overruns += 1

    def tick(self):
        """Call once per control tick."""
        now = time.perf_counter()
        with self._lock:
            if self._last_tick is not None:
                self._tick_intervals.append(now - self._last_tick)
            self._last_tick = now
            self._tick_count += 1

    def record_skip(self):
        """Record a tick that had no frame to process."""
        with self._lock:
            self._skipped += 1

    @property
    def tick_rate(self) -> float:
        """Control ticks per second (rolling average)."""
        with self._lock:
            if len(self._tick_intervals) < 2:
                return 0.0
            avg_interval = sum(self._tick_intervals) / len(self._tick_intervals)
            return 1.0 / avg_interval if avg_interval > 0 else 0.0

    @property
    def total_latency_ms(self) -> float:
        """Average total tick latency in ms."""
        return self.get_stage_latency("total")

    @property
    def overruns(self) -> int:
        with self._lock:
            return self._overruns

    def get_stage_latency(self, stage_name: str) -> float:
        """Get average latency for a specific stage in ms."""
        with self._lock:
            times = self._stage_times.get(stage_name)
            if not times:
                return 0.0
            return sum(times) / len(times)

    def get_report(self) -> dict:
        """Generate a performance report."""
        with self._lock:
            latencies = {
                name: (sum(times) / len(times) if times else 0.0)
                for name, times in self._stage_times.items()
            }
            ticks, skipped, overruns = self._tick_count, self._skipped, self._overruns
        return {
            "tick_rate": round(self.tick_rate, 1),
            "ticks": ticks,
            "skipped_ticks": skipped,
            "budget_overruns": overruns,
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "latencies_ms": {k: round(v, 2) for k, v in latencies.items()},
        }

    def print_report(self):
        """Log a formatted performance report."""
        report = self.get_report()
        logger.info("=" * 60)
        logger.info("PERFORMANCE REPORT")
        logger.info("=" * 60)
        logger.info("Tick rate:      %.1f Hz", report["tick_rate"])
        logger.info("Ticks:          %d (skipped %d, over budget %d)",
                    report["ticks"], report["skipped_ticks"], report["budget_overruns"])
        logger.info("Uptime:         %.1fs", report["uptime_seconds"])
        logger.info("-" * 40)
        logger.info("Stage Latencies (avg ms):")
        for stage, latency in report["latencies_ms"].items():
            logger.info("  %-18s %7.2f ms", stage, latency)
        logger.info("=" * 60)

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self._tick_intervals.clear()
            self._last_tick = None
            for times in self._stage_times.values():
                times.clear()
            self._tick_count = 0
            self._skipped = 0
            self._overruns = 0
            self._start_time = time.time()
