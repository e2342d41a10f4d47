"""
Logging setup plus the per-tick prediction log.
"""

import os
import logging
import logging.handlers
import time
from collections import deque
from functools import wraps

CONSOLE_FORMAT = "%(asctime)s  %(levelname)-5s  %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)-32s | %(message)s"
DATE_FORMAT = "%H:%M:%S"


def setup_logging(level="INFO", log_file=None, max_size_mb=10, backup_count=3):
    """Install a console handler and, optionally, a rotating file handler.

    The file always receives DEBUG so per-tick diagnostics can be recovered
    after a run without making the console noisy.
    """
    root = logging.getLogger()
    root_level = getattr(logging, str(level).upper(), logging.INFO)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(root_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(console)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=int(max_size_mb * 1024 * 1024), backupCount=backup_count)
        rotating.setLevel(logging.DEBUG)
        rotating.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(rotating)
        root.setLevel(logging.DEBUG)
    else:
        root.setLevel(root_level)

    return root


class PredictionLogger:
    """Event-bus consumer that logs predictions and requested actions.

    Per-tick ``Class Index`` / ``Predicted Class`` lines go out at DEBUG,
    or INFO when ``print_messages`` is on. A change of label is always
    logged at INFO.
    """

    def __init__(self, print_messages=False, history_size=500):
        self.logger = logging.getLogger("prediction_events")
        self._tick_level = logging.INFO if print_messages else logging.DEBUG
        self._history = deque(maxlen=history_size)
        self._last_label = None
        self._actions = 0

    def on_prediction(self, prediction=None, **kwargs):
        if prediction is None:
            return
        self._history.append((time.time(), prediction))
        self.logger.log(self._tick_level, "Class Index: %d", prediction.class_index)
        self.logger.log(self._tick_level, "Predicted Class: %s",
                        prediction.label if prediction.is_valid else "Invalid index")

        if prediction.label != self._last_label:
            self.logger.info("Prediction changed: %s -> %s (frame %d)",
                             self._last_label or "none", prediction.label or "invalid",
                             prediction.frame_id)
            self._last_label = prediction.label

    def on_action(self, action=None, label=None, **kwargs):
        self._actions += 1
        self.logger.log(self._tick_level, "Action: %-8s | Sign: %s", action, label or "keyboard")

    def get_history(self, last_n=None):
        """Recent predictions as dicts, oldest first."""
        entries = list(self._history)
        if last_n:
            entries = entries[-last_n:]
        return [{
            "timestamp": ts,
            "class_index": p.class_index,
            "label": p.label,
            "frame_id": p.frame_id,
        } for ts, p in entries]

    @property
    def action_count(self):
        return self._actions


def log_timing(func):
    """Log a call's wall time at DEBUG on the function's module logger."""
    logger = logging.getLogger(func.__module__)

    @wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logger.debug("%s took %.2fms", func.__qualname__,
                         (time.perf_counter() - start) * 1000)

    return wrapper
