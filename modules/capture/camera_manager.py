"""
Threaded camera capture with readiness tracking and restart-on-drop.

The control tick never blocks on the device: a daemon thread keeps the
latest frame, and ``is_ready()`` reports whether that frame is fresh. A
device that is missing or has silently stopped is reopened by
``ensure_ready()`` at most once per ``reopen_interval_ms``.
"""

import glob
import os
import time
import threading
import logging
import cv2

from core.errors import DeviceUnavailableError
from core.types import Frame

logger = logging.getLogger(__name__)

_BACKENDS = {
    "v4l2": cv2.CAP_V4L2,
    "gstreamer": cv2.CAP_GSTREAMER,
    "auto": cv2.CAP_ANY,
}


def list_devices(max_probe=10) -> list:
    """Enumerate capture devices as ``(index, name)`` pairs.

    Uses ``/dev/video*`` where it exists, otherwise probes indices.
    """
    nodes = sorted(glob.glob("/dev/video*"))
    devices = []
    if nodes:
        for node in nodes:
            suffix = node[len("/dev/video"):]
            if suffix.isdigit():
                devices.append((int(suffix), node))
        return sorted(devices)

    for index in range(max_probe):
        cap = cv2.VideoCapture(index)
        try:
            if cap.isOpened():
                devices.append((index, "camera%d" % index))
        finally:
            cap.release()
    return devices


class CameraManager:
    """Live capture device with threaded frame acquisition."""

    def __init__(self, config: dict):
        self._device = config.get("device", 0)
        self._width = config.get("width", 1280)
        self._height = config.get("height", 720)
        self._fps = config.get("fps", 60)
        self._backend = config.get("backend", "auto")
        self._flip_h = config.get("flip_horizontal", False)
        self._warmup_frames = config.get("warmup_frames", 5)
        self._stall_timeout_s = config.get("stall_timeout_ms", 2000) / 1000.0
        self._reopen_interval_s = config.get("reopen_interval_ms", 1000) / 1000.0

        self._cap = None
        self._frame = None
        self._frame_id = 0
        self._lock = threading.Lock()
        self._running = False
        self._thread = None
        self._opened_at = 0.0
        self._last_frame_at = 0.0
        self._last_open_attempt = None
        self._open_count = 0

    def _resolve_device(self, device):
        """Map a selector (index, device path or name) to a VideoCapture argument."""
        if device is None:
            devices = list_devices()
            return devices[0][0] if devices else 0
        if isinstance(device, int):
            return device
        text = str(device)
        if text.isdigit():
            return int(text)
        if text.startswith("/dev/video") and text[len("/dev/video"):].isdigit():
            return int(text[len("/dev/video"):])
        return text

    def _open_capture(self, selector):
        backend = _BACKENDS.get(self._backend, cv2.CAP_ANY)
        logger.info("Selected camera: %s", selector)
        cap = cv2.VideoCapture(selector, backend)
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailableError(
                "Failed to open camera %s with backend %s" % (selector, self._backend),
                details={"device": selector, "backend": self._backend},
            )
        return cap

    def open(self, device=None, width=None, height=None, fps=None) -> bool:
        """Open (or reopen) the capture device and start the capture thread.

        Any device already open on this manager is stopped and released first.
        Returns False when the device cannot be opened; that is recoverable.
        """
        if device is not None:
            self._device = device
        self._width = width or self._width
        self._height = height or self._height
        self._fps = fps or self._fps

        self.stop()
        self._last_open_attempt = time.monotonic()
        self._open_count += 1

        try:
            cap = self._open_capture(self._resolve_device(self._device))
        except DeviceUnavailableError as e:
            logger.warning("%s", e)
            return False

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        cap.set(cv2.CAP_PROP_FPS, self._fps)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        # The device may negotiate a different mode
        logger.info(
            "Camera opened: %dx%d @ %.0f FPS (requested %dx%d @ %d)",
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            cap.get(cv2.CAP_PROP_FPS), self._width, self._height, self._fps,
        )

        for _ in range(self._warmup_frames):
            cap.read()

        self._cap = cap
        self._opened_at = time.monotonic()
        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()
        return True

    def _capture_loop(self):
        """Background capture thread - always holds the latest frame."""
        # stop() or a reopen may swap self._cap out during a slow read
        cap = self._cap
        while self._running and cap is not None and self._cap is cap:
            ret, image = cap.read()
            if not ret or image is None:
                time.sleep(0.005)
                continue
            if self._flip_h:
                image = cv2.flip(image, 1)
            with self._lock:
                self._frame_id += 1
                self._frame = Frame(image=image, timestamp=time.time(),
                                    frame_id=self._frame_id)
                self._last_frame_at = time.monotonic()

    def is_ready(self) -> bool:
        """True when the device is open and delivering fresh frames."""
        if not self.is_open or self._thread is None or not self._thread.is_alive():
            return False
        with self._lock:
            if self._frame is None:
                return False
            return (time.monotonic() - self._last_frame_at) <= self._stall_timeout_s

    def _is_stalled(self) -> bool:
        with self._lock:
            reference = self._last_frame_at if self._frame is not None else self._opened_at
        return (time.monotonic() - reference) > self._stall_timeout_s

    def ensure_ready(self) -> bool:
        """Reopen a missing or stopped device. Never raises.

        Returns True only when a fresh frame is available now; a freshly
        reopened device usually needs a few ticks before it is ready.
        """
        if self.is_ready():
            return True
        now = time.monotonic()
        if (self._last_open_attempt is not None
                and now - self._last_open_attempt < self._reopen_interval_s):
            return False
        if not self.is_open or self._is_stalled():
            logger.info("Camera not ready, reopening")
            try:
                self.open()
            except cv2.error as e:
                logger.warning("Camera reopen failed: %s", e)
                return False
        return self.is_ready()

    def latest_frame(self):
        """Latest frame, or None when the device is not ready."""
        if not self.is_ready():
            return None
        with self._lock:
            return self._frame

    @property
    def resolution(self) -> tuple:
        return (self._width, self._height)

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    @property
    def open_count(self) -> int:
        """Number of open attempts, including reopens."""
        return self._open_count

    def stop(self):
        """Stop capture and release the device."""
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera stopped")
        with self._lock:
            self._frame = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.stop()


class StaticFrameSource:
    """Replays a still image or a video file with the CameraManager interface.

    Used when ``camera.use_webcam`` is off. Videos loop at their end.
    """

    _IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".bmp")

    def __init__(self, path: str):
        self._path = path
        self._image = None
        self._cap = None
        self._frame_id = 0

    def open(self, *args, **kwargs) -> bool:
        self.stop()
        if not os.path.isfile(self._path):
            logger.warning("Frame source not found: %s", self._path)
            return False
        if self._path.lower().endswith(self._IMAGE_EXTS):
            self._image = cv2.imread(self._path)
            if self._image is None:
                logger.warning("Could not decode image: %s", self._path)
                return False
        else:
            self._cap = cv2.VideoCapture(self._path)
            if not self._cap.isOpened():
                logger.warning("Could not open video: %s", self._path)
                self._cap = None
                return False
        logger.info("Using static frame source: %s", self._path)
        return True

    def is_ready(self) -> bool:
        return self._image is not None or self._cap is not None

    def ensure_ready(self) -> bool:
        return self.is_ready() or self.open()

    def latest_frame(self):
        if self._image is not None:
            image = self._image
        elif self._cap is not None:
            ret, image = self._cap.read()
            if not ret:
                self._cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ret, image = self._cap.read()
                if not ret:
                    return None
        else:
            return None
        self._frame_id += 1
        return Frame(image=image, timestamp=time.time(), frame_id=self._frame_id)

    def stop(self):
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        self._image = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.stop()
