"""
Accounting for device-resident buffers allocated by the pipeline.

Every temporary image, input tensor, output handle and readback request
registers here when acquired and unregisters when released, so a leak across
ticks shows up as a non-zero ``outstanding`` count.
"""

import logging
import threading
from collections import Counter

logger = logging.getLogger(__name__)


class ResourceLedger:
    """Thread-safe acquire/release counters grouped by resource kind."""

    def __init__(self):
        self._lock = threading.Lock()
        self._live = Counter()
        self._acquired_total = 0

    def acquire(self, kind: str) -> None:
        with self._lock:
            self._live[kind] += 1
            self._acquired_total += 1

    def release(self, kind: str) -> None:
        with self._lock:
            if self._live[kind] <= 0:
                # Double release is a bug in the caller, not a reason to crash a tick
                logger.warning("Release of '%s' without matching acquire", kind)
                return
            self._live[kind] -= 1

    @property
    def outstanding(self) -> int:
        """Number of buffers acquired and not yet released."""
        with self._lock:
            return sum(self._live.values())

    def outstanding_by_kind(self) -> dict:
        with self._lock:
            return {k: v for k, v in self._live.items() if v}

    @property
    def acquired_total(self) -> int:
        with self._lock:
            return self._acquired_total

    def reset(self):
        """Reset counters (for testing)."""
        with self._lock:
            self._live.clear()
            self._acquired_total = 0
