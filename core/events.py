"""
Publish/subscribe hub for one application session.

The pipeline publishes predictions and recoverable faults here; the action
dispatcher, the prediction logger and any game-side consumer subscribe
without the pipeline knowing about them.

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe(Events.PREDICTION_UPDATED, on_prediction)
    bus.emit(Events.PREDICTION_UPDATED, prediction=prediction)
    unsubscribe()
"""

import time
import logging
import threading
from collections import defaultdict, deque
from typing import Callable

logger = logging.getLogger(__name__)


class EventBus:
    """Synchronous, priority-ordered event dispatch.

    Handlers run on the emitting thread (the control tick, or the readback
    completion thread for ``READBACK_ERROR``), highest priority first. A
    handler that raises is logged and counted; the remaining handlers
    still run and the emitter never sees the exception.
    """

    def __init__(self, max_history: int = 100):
        self._lock = threading.Lock()
        self._handlers = defaultdict(list)  # event -> [(priority, seq, callback)]
        self._seq = 0
        self._history = deque(maxlen=max_history)
        self._handler_errors = 0
        self._enabled = True

    def subscribe(self, event_name: str, callback: Callable, priority: int = 0) -> Callable:
        """Register ``callback(**payload)`` for ``event_name``.

        Equal priorities run in subscription order. Returns a no-argument
        function that removes this subscription.
        """
        with self._lock:
            self._seq += 1
            handlers = self._handlers[event_name]
            handlers.append((priority, self._seq, callback))
            handlers.sort(key=lambda h: (-h[0], h[1]))
        logger.debug("Subscribed %s to '%s' (priority=%d)",
                     getattr(callback, "__name__", callback), event_name, priority)
        return lambda: self.unsubscribe(event_name, callback)

    def unsubscribe(self, event_name: str, callback: Callable):
        with self._lock:
            remaining = [h for h in self._handlers.get(event_name, []) if h[2] is not callback]
            if remaining:
                self._handlers[event_name] = remaining
            else:
                self._handlers.pop(event_name, None)

    def emit(self, event_name: str, **payload):
        """Deliver ``payload`` to every handler of ``event_name``."""
        if not self._enabled:
            return
        with self._lock:
            handlers = [h[2] for h in self._handlers.get(event_name, ())]
            self._history.append((time.time(), event_name, tuple(payload)))

        for callback in handlers:
            try:
                callback(**payload)
            except Exception as e:
                with self._lock:
                    self._handler_errors += 1
                logger.error("Handler %s failed on '%s': %s",
                             getattr(callback, "__name__", callback), event_name, e)

    def set_enabled(self, enabled: bool):
        """Mute or unmute the bus; muted emits are dropped, not queued."""
        self._enabled = enabled

    def clear(self, event_name: str = None):
        with self._lock:
            if event_name is None:
                self._handlers.clear()
            else:
                self._handlers.pop(event_name, None)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._handlers.values())

    @property
    def handler_errors(self) -> int:
        with self._lock:
            return self._handler_errors

    def get_history(self, last_n: int = 10) -> list:
        """Most recent emits as ``{"event", "time", "data_keys"}`` dicts."""
        with self._lock:
            recent = list(self._history)[-last_n:]
        return [{"event": name, "time": ts, "data_keys": list(keys)}
                for ts, name, keys in recent]


class Events:
    """Event names published on the session bus."""

    # payload: prediction=Prediction
    PREDICTION_UPDATED = "prediction_updated"
    # payload: action=str, label=str | None
    ACTION_REQUESTED = "action_requested"

    # payload: reason=str
    CAMERA_ERROR = "camera_error"
    # payload: sequence=int, error=str
    READBACK_ERROR = "readback_error"

    SYSTEM_STARTED = "system_started"
    SYSTEM_SHUTDOWN = "system_shutdown"
