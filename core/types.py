"""
Shared domain types for the gesture control pipeline.

Centralizes enums, data classes, and type definitions used across modules
to eliminate circular imports and ensure type consistency.
"""

import time
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from core.resources import ResourceLedger


# Sentinel for "not yet valid" or "out of range" class indices
INVALID_INDEX = -1


# =============================================================================
# Layout
# =============================================================================

class ChannelOrder(Enum):
    """Tensor channel layout expected by the graph input."""
    CHANNEL_FIRST = "nchw"
    CHANNEL_LAST = "nhwc"

    @classmethod
    def from_string(cls, name: str) -> 'ChannelOrder':
        """Accept 'nchw'/'nhwc' as well as 'channel_first'/'channel_last'."""
        value = str(name).strip().lower().replace("-", "_")
        aliases = {
            "channel_first": cls.CHANNEL_FIRST,
            "channels_first": cls.CHANNEL_FIRST,
            "channel_last": cls.CHANNEL_LAST,
            "channels_last": cls.CHANNEL_LAST,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)


# =============================================================================
# Data Containers
# =============================================================================

@dataclass(frozen=True)
class Frame:
    """A captured image with its source metadata. Never mutated after capture."""
    image: np.ndarray
    timestamp: float
    frame_id: int

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def dims(self) -> Tuple[int, int]:
        return (self.width, self.height)


class InputTensor:
    """A 3-channel model input owned by the engine for one execute call.

    ``data`` is either a host ``np.ndarray`` or a device buffer exposing
    ``ptr``/``free()`` (PyCUDA allocation). ``release()`` frees the device
    buffer, unregisters it from the ledger, and is safe to call twice.
    """

    __slots__ = ("data", "shape", "channel_order", "on_device",
                 "_ledger", "_released")

    def __init__(self, data, shape: Tuple[int, ...], channel_order: ChannelOrder,
                 on_device: bool = False, ledger: Optional[ResourceLedger] = None):
        self.data = data
        self.shape = tuple(shape)
        self.channel_order = channel_order
        self.on_device = on_device
        self._ledger = ledger
        self._released = False
        if self._ledger is not None:
            self._ledger.acquire("input_tensor")

    @property
    def released(self) -> bool:
        return self._released

    def host(self) -> np.ndarray:
        """Return the tensor contents as a host array (downloads device data)."""
        if self._released:
            raise RuntimeError("InputTensor used after release")
        if not self.on_device:
            return self.data
        import pycuda.driver as cuda
        out = np.empty(self.shape, dtype=np.float32)
        cuda.memcpy_dtoh(out, self.data)
        return out

    def release(self):
        if self._released:
            return
        self._released = True
        if self.on_device and self.data is not None:
            self.data.free()
        self.data = None
        if self._ledger is not None:
            self._ledger.release("input_tensor")

    def __repr__(self):
        where = "device" if self.on_device else "host"
        return f"InputTensor({self.shape}, {self.channel_order.value}, {where})"


@dataclass(frozen=True)
class Prediction:
    """Latest validated prediction handed to the dispatcher and the overlay."""
    class_index: int = INVALID_INDEX
    label: Optional[str] = None
    frame_id: int = 0
    timestamp: float = 0.0

    @property
    def is_valid(self) -> bool:
        return self.label is not None


class PredictionState:
    """Session-owned latest prediction.

    Written once per control tick and read by the presentation loop, so the
    whole ``Prediction`` is swapped under a lock rather than field by field.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._prediction = Prediction()
        self._ticks = 0
        self._skipped_ticks = 0
        self._updated_at = 0.0

    def update(self, prediction: Prediction):
        with self._lock:
            self._prediction = prediction
            self._ticks += 1
            self._updated_at = time.time()

    def record_skip(self):
        """A tick that produced no update (e.g. camera not ready)."""
        with self._lock:
            self._skipped_ticks += 1

    @property
    def current(self) -> Prediction:
        with self._lock:
            return self._prediction

    @property
    def tick_count(self) -> int:
        with self._lock:
            return self._ticks

    @property
    def skipped_ticks(self) -> int:
        with self._lock:
            return self._skipped_ticks

    def to_overlay_dict(self) -> dict:
        """Convert to the dict format expected by PredictionOverlay.render()."""
        prediction = self.current
        return {
            "class_index": prediction.class_index,
            "label": prediction.label,
            "valid": prediction.is_valid,
            "frame_id": prediction.frame_id,
        }
