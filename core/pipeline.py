"""
Control-tick orchestrator for the gesture classification pipeline.

One ``tick()`` runs, strictly in order:

    FrameSource -> FrameProcessor -> InferenceEngine.execute
    -> ResultTransfer.read_latest_index -> Classifier.validate
    -> PredictionState / Events.PREDICTION_UPDATED

Ticks without a ready camera carry the previous prediction forward and
allocate nothing. Every buffer a tick allocates is released before the
tick returns, on every exit path.
"""

import time
import logging

from core.events import EventBus, Events
from core.types import Prediction, PredictionState

logger = logging.getLogger(__name__)


class PipelineResult:
    """Result of a single control tick."""

    __slots__ = (
        "frame", "frame_id", "input_dims", "class_index", "label",
        "updated", "latency_ms", "timestamp", "error",
    )

    def __init__(self):
        self.frame = None
        self.frame_id = 0
        self.input_dims = None
        self.class_index = -1
        self.label = None
        self.updated = False
        self.latency_ms = 0.0
        self.timestamp = 0.0
        self.error = None


class Pipeline:
    """Composable gesture classification pipeline.

    All collaborators are injected so tests can swap the camera or the
    engine for fakes.
    """

    def __init__(
        self,
        camera,
        frame_processor,
        engine,
        result_transfer,
        classifier,
        performance_monitor,
        state=None,
        event_bus=None,
        config=None,
    ):
        self._camera = camera
        self._frame_processor = frame_processor
        self._engine = engine
        self._transfer = result_transfer
        self._classifier = classifier
        self._perf = performance_monitor
        self._state = state or PredictionState()
        self._bus = event_bus or EventBus()

        config = config or {}
        self._print_debug = config.get("print_messages", False)

        self._camera_ready = None
        self._frame_count = 0
        self._error_count = 0

    def tick(self) -> PipelineResult:
        """Execute one control tick.

        Returns:
            PipelineResult; ``updated`` is False when the camera was not ready
        """
        result = PipelineResult()
        result.timestamp = time.time()

        with self._perf.measure("total"):
            with self._perf.measure("capture"):
                ready = self._camera.is_ready() or self._camera.ensure_ready()
                frame = self._camera.latest_frame() if ready else None

            self._note_camera_state(frame is not None)
            if frame is None:
                self._state.record_skip()
                self._perf.record_skip()
                previous = self._state.current
                result.class_index = previous.class_index
                result.label = previous.label
                return result

            self._frame_count += 1
            result.frame = frame
            result.frame_id = frame.frame_id

            input_dims = self._frame_processor.compute_input_dims(frame.dims)
            result.input_dims = input_dims
            if self._print_debug:
                logger.info("Input Dims: %d x %d", input_dims[0], input_dims[1])

            tensor = None
            try:
                with self._perf.measure("preprocess"):
                    tensor = self._frame_processor.normalize(
                        frame, input_dims, self._engine.config.channel_order)
                with self._perf.measure("inference"):
                    self._engine.execute(tensor)
                with self._perf.measure("readback"):
                    index = self._transfer.read_latest_index()
            except Exception as e:
                self._error_count += 1
                logger.warning("Tick failed for frame %d, keeping last prediction: %s",
                               frame.frame_id, e)
                self._state.record_skip()
                self._perf.record_skip()
                previous = self._state.current
                result.class_index = previous.class_index
                result.label = previous.label
                result.error = str(e)
                return result
            finally:
                if tensor is not None:
                    tensor.release()

            with self._perf.measure("validate"):
                validated = self._classifier.validate(index)

            prediction = Prediction(
                class_index=validated.index,
                label=validated.label,
                frame_id=frame.frame_id,
                timestamp=frame.timestamp,
            )
            self._state.update(prediction)
            result.class_index = prediction.class_index
            result.label = prediction.label
            result.updated = True

        self._bus.emit(Events.PREDICTION_UPDATED, prediction=prediction)
        self._perf.tick()
        result.latency_ms = self._perf.total_latency_ms
        return result

    def _note_camera_state(self, ready: bool):
        """Log and publish readiness transitions only, not every tick."""
        if ready == self._camera_ready:
            return
        self._camera_ready = ready
        if ready:
            logger.info("Camera ready")
        else:
            logger.warning("Camera not ready; holding last prediction")
            self._bus.emit(Events.CAMERA_ERROR, reason="not_ready")

    def build_state(self) -> dict:
        """State dict for the presentation loop."""
        state = self._state.to_overlay_dict()
        state["tick_rate"] = self._perf.tick_rate
        state["latency_ms"] = self._perf.total_latency_ms
        return state

    @property
    def state(self) -> PredictionState:
        return self._state

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def error_count(self) -> int:
        """Ticks whose processing failed and fell back to the last prediction."""
        return self._error_count
