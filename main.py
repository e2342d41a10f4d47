#!/usr/bin/env python3
"""
ASL Gesture Control - real-time sign classification driving game actions.

Architecture:
    - core.Pipeline runs capture -> preprocess -> execute -> readback -> validate
      once per fixed-rate control tick
    - the presentation loop runs as fast as the display allows and only reads
      the latest validated prediction for the overlay
    - core.EventBus carries predictions to the action dispatcher and logger

Usage:
    python main.py                          # Webcam, settings from config/config.yaml
    python main.py --backend cpu --sync     # Force ONNX Runtime CPU, blocking readback
    python main.py --source clip.mp4        # Replay a video instead of the webcam
    python main.py --headless --ticks 500   # No window, stop after 500 control ticks
"""

import sys
import os
import time
import signal
import argparse
import logging

import cv2

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.errors import CatalogLoadError
from core.events import EventBus, Events
from core.pipeline import Pipeline
from core.resources import ResourceLedger
from core.types import PredictionState
from models.backends import BackendConfig
from models.graph import ClassificationGraph
from models.inference_engine import InferenceEngine
from modules.capture.camera_manager import CameraManager, StaticFrameSource, list_devices
from modules.capture.frame_processor import FrameProcessor, compute_input_dims, tensor_shape
from modules.control.action_dispatcher import ActionDispatcher
from modules.recognition.classifier import Classifier, LabelCatalog
from modules.recognition.result_transfer import ResultTransfer
from modules.utils.config import Config
from modules.utils.logger import setup_logging, PredictionLogger
from modules.utils.performance_monitor import PerformanceMonitor
from modules.visualization.overlay import PredictionOverlay

logger = logging.getLogger(__name__)

# Control ticks run back-to-back at most this many times to catch up
MAX_CATCH_UP_TICKS = 3


class GestureControlApp:
    """Wires the pipeline together and runs the control/presentation loops."""

    def __init__(self, config: Config, headless: bool = False):
        self._config = config
        self._headless = headless or not config.get("visualization.enabled", True)
        self._running = False
        self._last_frame = None

        self._ledger = ResourceLedger()
        self._bus = EventBus()
        self._state = PredictionState()

        # Labels first: a bad catalog must stop start-up before devices open
        labels_path = config.resolve_path(config.get("output.labels_path"))
        self._classifier = Classifier(LabelCatalog.load(labels_path))

        # --- Capture ---
        self._camera = self._create_frame_source()
        self._frame_processor = FrameProcessor(config.preprocessing, ledger=self._ledger)

        # --- Inference ---
        inference = config.inference
        graph = ClassificationGraph.load(
            config.resolve_path(inference.get("model_path")),
            output_layer_index=inference.get("output_layer_index", 0),
            softmax_layer=inference.get("softmax_layer", "softmax_layer"),
            argmax_layer=inference.get("argmax_layer", "argmax_layer"),
        )
        backend_config = BackendConfig.from_dict(inference)
        expected_dims = compute_input_dims(
            (config.get("camera.width", 1280), config.get("camera.height", 720)),
            self._frame_processor.target_min_dim,
        )
        self._engine = InferenceEngine(
            graph, backend_config, ledger=self._ledger,
            expected_input_shape=tensor_shape(expected_dims, backend_config.channel_order),
        )
        self._transfer = ResultTransfer(
            self._engine, graph.argmax_layer,
            use_async=config.get("output.use_async_transfer", True),
            ledger=self._ledger, event_bus=self._bus,
        )

        # --- Performance ---
        tick_hz = float(config.get("control.tick_hz", 50))
        self._tick_period = 1.0 / tick_hz
        self._perf = PerformanceMonitor(budget_ms=self._tick_period * 1000)

        # --- Build Pipeline ---
        self._pipeline = Pipeline(
            camera=self._camera,
            frame_processor=self._frame_processor,
            engine=self._engine,
            result_transfer=self._transfer,
            classifier=self._classifier,
            performance_monitor=self._perf,
            state=self._state,
            event_bus=self._bus,
            config={"print_messages": config.get("debug.print_messages", False)},
        )

        # --- Consumers ---
        self._dispatcher = ActionDispatcher(config.control, event_bus=self._bus)
        self._dispatcher.on_action(self._on_action)
        self._prediction_logger = PredictionLogger(
            print_messages=config.get("debug.print_messages", False))
        self._bus.subscribe(Events.PREDICTION_UPDATED, self._prediction_logger.on_prediction)
        self._bus.subscribe(Events.ACTION_REQUESTED, self._prediction_logger.on_action)
        self._overlay = PredictionOverlay(config.visualization)

        logger.info("GestureControlApp initialized (backend=%s, async=%s, %.0f Hz)",
                    self._engine.backend.value, self._transfer.use_async, tick_hz)

    def _create_frame_source(self):
        camera_cfg = self._config.camera
        use_webcam = camera_cfg.get("use_webcam", True)
        if use_webcam:
            devices = list_devices()
            for index, name in devices:
                logger.info("Capture device %d: %s", index, name)
            if not devices:
                logger.warning("No capture devices found; webcam input disabled")
                use_webcam = False

        if use_webcam:
            return CameraManager(camera_cfg)
        source_path = camera_cfg.get("source_path")
        if source_path:
            return StaticFrameSource(self._config.resolve_path(source_path))
        logger.warning("No frame source configured; waiting for a camera to appear")
        return CameraManager(camera_cfg)

    def _on_action(self, action, label):
        if action == "quit":
            logger.info("Quit requested by '%s' sign", label)
            self._running = False
        else:
            logger.debug("Action requested: %s (%s)", action, label)

    def run(self, max_ticks=None):
        """Run until quit, a signal, or ``max_ticks`` control ticks."""
        if not self._camera.open():
            logger.warning("Frame source not ready at start-up; will keep retrying")

        self._running = True
        self._bus.emit(Events.SYSTEM_STARTED)
        window_name = self._config.get("visualization.window_name", "ASL Gesture Control")
        ticks = 0
        next_tick = time.perf_counter()

        try:
            while self._running:
                # --- Control ticks (fixed rate) ---
                now = time.perf_counter()
                caught_up = 0
                while now >= next_tick and caught_up < MAX_CATCH_UP_TICKS:
                    result = self._pipeline.tick()
                    if result.frame is not None:
                        self._last_frame = result.frame
                    ticks += 1
                    caught_up += 1
                    next_tick += self._tick_period
                if now - next_tick > self._tick_period * MAX_CATCH_UP_TICKS:
                    next_tick = now
                if max_ticks is not None and ticks >= max_ticks:
                    break

                # --- Presentation ---
                if self._headless:
                    time.sleep(max(0.0, next_tick - time.perf_counter()))
                    continue
                if self._last_frame is not None:
                    display = self._last_frame.image.copy()
                    self._overlay.render(display, self._pipeline.build_state())
                    cv2.imshow(window_name, display)
                self._handle_key(cv2.waitKey(1) & 0xFF)
        finally:
            self.cleanup()

    def _handle_key(self, key):
        if key == 27:  # Esc
            self._running = False
        elif key == ord(" "):
            self._bus.emit(Events.ACTION_REQUESTED, action="jump", label=None)
        elif key == ord("p"):
            self._perf.print_report()

    def cleanup(self):
        """Release the camera, readback staging and engine buffers."""
        logger.info("Shutting down...")
        self._running = False
        self._bus.emit(Events.SYSTEM_SHUTDOWN)
        self._transfer.close()
        self._engine.close()
        self._camera.stop()
        if not self._headless:
            cv2.destroyAllWindows()

        self._perf.print_report()
        if self._ledger.outstanding:
            logger.warning("Unreleased device buffers at shutdown: %s",
                           self._ledger.outstanding_by_kind())
        logger.info("Shutdown complete.")

    def handle_signal(self, signum, frame):
        """Handle SIGINT/SIGTERM for graceful shutdown."""
        logger.info("Signal %d received, shutting down...", signum)
        self._running = False


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="ASL Gesture Control - real-time sign classification"
    )
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--model", type=str, default=None, help="Path to the ONNX graph")
    parser.add_argument("--labels", type=str, default=None, help="Path to labels.json")
    parser.add_argument(
        "--backend", choices=["auto", "tensorrt", "cuda", "cpu"], default=None,
        help="Execution backend"
    )
    parser.add_argument(
        "--channel-order", choices=["nchw", "nhwc"], default=None,
        help="Input tensor layout expected by the graph"
    )
    parser.add_argument("--camera", type=str, default=None, help="Camera index or device path")
    parser.add_argument("--source", type=str, default=None,
                        help="Image or video file to use instead of the webcam")
    parser.add_argument("--sync", action="store_true", help="Disable async readback")
    parser.add_argument("--headless", action="store_true", help="Do not open a window")
    parser.add_argument("--ticks", type=int, default=None, help="Stop after N control ticks")
    parser.add_argument("--debug", action="store_true", help="Print per-tick diagnostics")
    return parser.parse_args(argv)


def apply_overrides(config: Config, args):
    """Apply command-line flags on top of the loaded configuration."""
    if args.model:
        config.set("inference.model_path", args.model)
    if args.labels:
        config.set("output.labels_path", args.labels)
    if args.backend:
        config.set("inference.execution_backend", args.backend)
    if args.channel_order:
        config.set("inference.channel_order", args.channel_order)
    if args.camera is not None:
        config.set("camera.device", int(args.camera) if args.camera.isdigit() else args.camera)
    if args.source:
        config.set("camera.use_webcam", False)
        config.set("camera.source_path", args.source)
    if args.sync:
        config.set("output.use_async_transfer", False)
    if args.debug:
        config.set("debug.print_messages", True)


def main(argv=None):
    args = parse_args(argv)

    config = Config()
    config.load(config_path=args.config)
    apply_overrides(config, args)

    log_cfg = config.get_section("logging")
    setup_logging(
        level="DEBUG" if args.debug else log_cfg.get("level", "INFO"),
        log_file=log_cfg.get("file"),
        max_size_mb=log_cfg.get("max_size_mb", 10),
        backup_count=log_cfg.get("backup_count", 3),
    )

    logger.info("=" * 60)
    logger.info("  ASL GESTURE CONTROL")
    logger.info("  Backend: %s", config.get("inference.execution_backend"))
    logger.info("=" * 60)

    try:
        app = GestureControlApp(config, headless=args.headless)
    except CatalogLoadError as e:
        logger.error("Cannot start: %s", e)
        return 1
    except FileNotFoundError as e:
        logger.error("Cannot start: %s", e)
        return 1

    signal.signal(signal.SIGINT, app.handle_signal)
    signal.signal(signal.SIGTERM, app.handle_signal)

    app.run(max_ticks=args.ticks)
    return 0


if __name__ == "__main__":
    sys.exit(main())
