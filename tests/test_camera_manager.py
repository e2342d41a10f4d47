"""
Tests for Camera Manager
=========================
"""

import time

import cv2
import numpy as np
import pytest
from unittest.mock import MagicMock, patch

from modules.capture.camera_manager import CameraManager, StaticFrameSource


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _slow_read(image):
    def read():
        time.sleep(0.002)
        return True, image
    return read


class TestCameraManager:
    """Test suite for CameraManager with a mocked device."""

    @pytest.fixture
    def config(self):
        return {
            "device": 0, "width": 640, "height": 480, "fps": 30,
            "warmup_frames": 0, "stall_timeout_ms": 500, "reopen_interval_ms": 0,
        }

    @pytest.fixture
    def mock_cv2(self):
        """Mock OpenCV VideoCapture with a working device."""
        with patch('modules.capture.camera_manager.cv2') as mock:
            mock_cap = MagicMock()
            mock_cap.isOpened.return_value = True
            mock_cap.read.side_effect = _slow_read(np.zeros((480, 640, 3), dtype=np.uint8))
            mock_cap.get.return_value = 30.0
            mock.VideoCapture.return_value = mock_cap
            yield mock

    @pytest.fixture
    def missing_cv2(self):
        """Mock OpenCV VideoCapture with no device attached."""
        with patch('modules.capture.camera_manager.cv2') as mock:
            mock_cap = MagicMock()
            mock_cap.isOpened.return_value = False
            mock.VideoCapture.return_value = mock_cap
            yield mock

    def test_initial_state(self, config):
        camera = CameraManager(config)
        assert not camera.is_open

    def test_capture_loop_survives_device_dropped_mid_read(self, config):
        """stop() can give up on a slow read and drop the device under the thread."""
        camera = CameraManager(config)
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        cap = MagicMock()

        def read():
            camera._cap = None
            return True, image

        cap.read.side_effect = read
        camera._cap = cap
        camera._running = True
        camera._capture_loop()
        assert cap.read.call_count == 1
        assert camera._frame is not None
        assert not camera.is_ready()
        assert camera.latest_frame() is None
        assert camera.resolution == (640, 480)

    def test_open_success(self, config, mock_cv2):
        camera = CameraManager(config)
        try:
            assert camera.open() is True
            assert wait_for(camera.is_ready)
            frame = camera.latest_frame()
            assert frame is not None
            assert frame.dims == (640, 480)
            assert frame.frame_id >= 1
        finally:
            camera.stop()
        assert not camera.is_ready()

    def test_open_requests_mode(self, config, mock_cv2):
        camera = CameraManager(config)
        try:
            camera.open(width=1280, height=720, fps=60)
            cap = mock_cv2.VideoCapture.return_value
            cap.set.assert_any_call(mock_cv2.CAP_PROP_FRAME_WIDTH, 1280)
            cap.set.assert_any_call(mock_cv2.CAP_PROP_FRAME_HEIGHT, 720)
            cap.set.assert_any_call(mock_cv2.CAP_PROP_FPS, 60)
        finally:
            camera.stop()

    def test_reopen_releases_previous_device(self, config, mock_cv2):
        camera = CameraManager(config)
        try:
            camera.open()
            first = mock_cv2.VideoCapture.return_value
            second = MagicMock()
            second.isOpened.return_value = True
            second.read.side_effect = _slow_read(np.zeros((480, 640, 3), dtype=np.uint8))
            mock_cv2.VideoCapture.return_value = second
            camera.open()
            first.release.assert_called()
            assert camera.open_count == 2
        finally:
            camera.stop()

    def test_open_failure_is_recoverable(self, config, missing_cv2):
        camera = CameraManager(config)
        assert camera.open() is False
        assert not camera.is_ready()
        assert camera.latest_frame() is None

    def test_ensure_ready_reopens_missing_device(self, config, missing_cv2):
        """Device not ready at start-up: each ensure_ready() attempts a reopen."""
        camera = CameraManager(config)
        camera.open()
        assert camera.ensure_ready() is False
        assert camera.ensure_ready() is False
        assert camera.open_count == 3

    def test_ensure_ready_rate_limited(self, config, missing_cv2):
        config["reopen_interval_ms"] = 60000
        camera = CameraManager(config)
        camera.open()
        for _ in range(10):
            assert camera.ensure_ready() is False
        assert camera.open_count == 1

    def test_ensure_ready_survives_cv2_error(self, config):
        with patch('modules.capture.camera_manager.cv2.VideoCapture',
                   side_effect=cv2.error("no backend")):
            camera = CameraManager(config)
            assert camera.ensure_ready() is False

    def test_stalled_device_not_ready(self, config, mock_cv2):
        config["stall_timeout_ms"] = 50
        mock_cv2.VideoCapture.return_value.read.side_effect = None
        mock_cv2.VideoCapture.return_value.read.return_value = (False, None)
        camera = CameraManager(config)
        try:
            camera.open()
            time.sleep(0.1)
            assert camera.is_open
            assert not camera.is_ready()
        finally:
            camera.stop()

    def test_context_manager(self, config, mock_cv2):
        with CameraManager(config) as camera:
            assert camera.is_open
        assert not camera.is_open


class TestStaticFrameSource:
    """Test suite for file-backed frame sources."""

    def test_image_source(self, tmp_path):
        path = tmp_path / "sign.png"
        cv2.imwrite(str(path), np.full((90, 160, 3), 128, dtype=np.uint8))
        with StaticFrameSource(str(path)) as source:
            assert source.is_ready()
            first = source.latest_frame()
            second = source.latest_frame()
            assert first.dims == (160, 90)
            assert second.frame_id == first.frame_id + 1

    def test_missing_file(self, tmp_path):
        source = StaticFrameSource(str(tmp_path / "missing.png"))
        assert source.open() is False
        assert source.ensure_ready() is False
        assert source.latest_frame() is None
