"""
Extraction of the predicted class index from the engine's argmax output.

Synchronous mode reads the scalar straight into host memory and reflects
the execution that just finished.

Asynchronous mode copies the argmax output into a device staging buffer,
issues a non-blocking readback, and hands the request to a completion
thread. ``read_latest_index()`` returns whatever the completion thread has
stored *so far*, so the value may lag the current frame by a few ticks:

    tick k:  execute -> stage -> request(k) -> return StagedIndex (<= k)
    worker:  wait(request j) -> decode -> StagedIndex.store(value, j)

Only one readback is in flight by default; a tick that finds it still
pending skips its request, which only adds to the lag. Failed transfers
leave the stored value untouched. Async mode is forced
off when the backend's summary does not advertise device-resident outputs.
"""

import logging
import queue
import threading

import numpy as np

from core.events import Events
from core.resources import ResourceLedger
from core.types import INVALID_INDEX
from models.backends import DEVICE_OUTPUTS_TAG

logger = logging.getLogger(__name__)

_STOP = object()


class StagedIndex:
    """Single shared cell holding the last completed class index.

    Written only by the completion thread and read by the control tick.
    Each value carries the execution sequence it came from; an older
    sequence never overwrites a newer one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value = INVALID_INDEX
        self._sequence = -1

    def store(self, value: int, sequence: int) -> bool:
        with self._lock:
            if sequence < self._sequence:
                return False
            self._value = int(value)
            self._sequence = sequence
            return True

    def load(self) -> int:
        with self._lock:
            return self._value

    def snapshot(self) -> tuple:
        """``(value, sequence)`` read together."""
        with self._lock:
            return self._value, self._sequence


def decode_index(data) -> int:
    """Decode the first element of a staged argmax output."""
    flat = np.asarray(data).ravel()
    if flat.size == 0:
        raise ValueError("Empty argmax output")
    return int(flat[0])


class ResultTransfer:
    """Reads the argmax output of each execution, synchronously or not."""

    def __init__(self, engine, argmax_layer: str, use_async: bool = True,
                 ledger: ResourceLedger = None, event_bus=None, max_in_flight: int = 1):
        self._engine = engine
        self._argmax_layer = argmax_layer
        self._ledger = ledger or ResourceLedger()
        self._bus = event_bus
        self._cell = StagedIndex()
        self._staging = None
        self._queue = None
        self._worker = None
        self._max_in_flight = max(1, int(max_in_flight))
        self._in_flight = 0
        self._completed = 0
        self._errors = 0
        self._skipped = 0
        self._stats_lock = threading.Lock()

        summary = engine.summary()
        if use_async and DEVICE_OUTPUTS_TAG not in summary:
            logger.info("Async readback disabled: backend has no device-resident outputs (%s)",
                        summary)
            use_async = False
        self._use_async = use_async

        if self._use_async:
            self._staging = engine.allocate_staging(argmax_layer)
            self._queue = queue.Queue()
            self._worker = threading.Thread(target=self._completion_loop,
                                            name="readback-completion", daemon=True)
            self._worker.start()
        logger.info("Result transfer mode: %s", "async" if self._use_async else "sync")

    @property
    def use_async(self) -> bool:
        return self._use_async

    @property
    def staged(self) -> StagedIndex:
        return self._cell

    @property
    def completed_transfers(self) -> int:
        with self._stats_lock:
            return self._completed

    @property
    def failed_transfers(self) -> int:
        with self._stats_lock:
            return self._errors

    @property
    def skipped_requests(self) -> int:
        """Ticks that issued no readback because earlier ones were still in flight."""
        with self._stats_lock:
            return self._skipped

    def read_latest_index(self) -> int:
        """Best-effort latest class index for the current tick.

        In async mode at most ``max_in_flight`` readbacks are outstanding;
        a tick that finds them all busy issues none and returns the cell.
        The output handle is released on every path.
        """
        handle = self._engine.peek_output(self._argmax_layer)
        try:
            if not self._use_async:
                index = decode_index(handle.to_host())
                self._cell.store(index, self._engine.execution_count)
                return index

            if not self._reserve_slot():
                return self._cell.load()
            try:
                handle.copy_to(self._staging)
                request = self._staging.request_readback(self._ledger)
            except Exception:
                self._release_slot()
                raise
            self._queue.put((request, self._engine.execution_count))
            return self._cell.load()
        finally:
            handle.release()

    def _reserve_slot(self) -> bool:
        with self._stats_lock:
            if self._in_flight >= self._max_in_flight:
                self._skipped += 1
                return False
            self._in_flight += 1
            return True

    def _release_slot(self):
        with self._stats_lock:
            self._in_flight -= 1

    def _completion_loop(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                request, sequence = item
                try:
                    self._on_complete(request, sequence)
                finally:
                    self._release_slot()
            finally:
                self._queue.task_done()

    def _on_complete(self, request, sequence):
        try:
            data = request.wait()
            index = decode_index(data)
        except Exception as e:
            with self._stats_lock:
                self._errors += 1
            logger.warning("GPU readback error detected (execution %d): %s", sequence, e)
            if self._bus is not None:
                self._bus.emit(Events.READBACK_ERROR, sequence=sequence, error=str(e))
            return
        finally:
            request.release()

        with self._stats_lock:
            self._completed += 1
        if not self._cell.store(index, sequence):
            logger.debug("Discarded stale readback from execution %d", sequence)

    def flush(self):
        """Block until every issued readback has completed or failed."""
        if self._queue is not None:
            self._queue.join()

    def close(self):
        """Drain outstanding readbacks, stop the completion thread and free staging."""
        if self._worker is not None:
            self._queue.put(_STOP)
            self._worker.join(timeout=5.0)
            if self._worker.is_alive():
                logger.warning("Readback completion thread did not stop")
            self._worker = None
        if self._staging is not None:
            self._staging.free()
            self._staging = None
