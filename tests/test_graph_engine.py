"""
Tests for Classification Graph and Inference Engine
====================================================
"""

import numpy as np
import onnx
import pytest
from unittest.mock import MagicMock, patch

from conftest import build_classifier_model, solid_frame
from core.errors import BackendUnsupportedError
from core.resources import ResourceLedger
from core.types import ChannelOrder
from models import backends
from models.backends import (
    BackendConfig, BackendType, DEVICE_OUTPUTS_TAG, available_backends, validate_backend,
)
from models.graph import ClassificationGraph
from models.inference_engine import InferenceEngine
from modules.capture.frame_processor import FrameProcessor

RED = (0, 0, 255)
BLACK = (0, 0, 0)


class TestClassificationGraph:
    """Test suite for softmax/argmax augmentation."""

    def test_augment_appends_layers(self, classifier_model):
        graph = ClassificationGraph.augment(classifier_model)
        assert graph.outputs == ("logits", "softmax_layer", "argmax_layer")
        assert graph.source_output == "logits"
        assert graph.input_name == "image"
        assert graph.input_shape == (1, 3, None, None)

    def test_augmented_outputs_declare_shapes(self, classifier_model):
        graph = ClassificationGraph.augment(classifier_model)
        model = onnx.load_from_string(graph.serialized)
        onnx.checker.check_model(model)
        shapes = {o.name: [d.dim_value for d in o.type.tensor_type.shape.dim]
                  for o in model.graph.output}
        assert shapes["softmax_layer"] == [1, 5]
        assert shapes["argmax_layer"] == [1, 1]
        assert model.graph.output[-1].type.tensor_type.elem_type == onnx.TensorProto.INT64

    def test_augment_does_not_modify_source(self, classifier_model):
        ClassificationGraph.augment(classifier_model)
        assert [o.name for o in classifier_model.graph.output] == ["logits"]

    def test_custom_layer_names(self, classifier_model):
        graph = ClassificationGraph.augment(classifier_model, softmax_layer="probs",
                                            argmax_layer="top1")
        assert graph.argmax_layer == "top1"
        assert "probs" in graph.outputs

    def test_output_index_out_of_range(self, classifier_model):
        with pytest.raises(ValueError):
            ClassificationGraph.augment(classifier_model, output_layer_index=1)

    def test_name_collision(self, classifier_model):
        with pytest.raises(ValueError):
            ClassificationGraph.augment(classifier_model, softmax_layer="logits")

    def test_channel_order_detection(self):
        nchw = ClassificationGraph.augment(build_classifier_model())
        nhwc = ClassificationGraph.augment(build_classifier_model(channel_last=True))
        assert nchw.input_channel_order() == ChannelOrder.CHANNEL_FIRST
        assert nhwc.input_channel_order() == ChannelOrder.CHANNEL_LAST

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ClassificationGraph.load(str(tmp_path / "missing.onnx"))

    def test_load_from_file(self, model_path):
        graph = ClassificationGraph.load(model_path, output_layer_index=1)
        assert graph.source_output == "features"


class TestBackendSelection:

    def test_cpu_always_available(self):
        assert available_backends()[-1] == BackendType.CPU

    def test_auto_resolves_to_platform_default(self):
        assert validate_backend(BackendType.AUTO) == available_backends()[0]

    def test_unknown_name_falls_back(self):
        assert validate_backend("quantum") == available_backends()[0]

    @pytest.mark.skipif(backends.TRT_AVAILABLE, reason="TensorRT installed")
    def test_unavailable_tensorrt_falls_back(self):
        assert validate_backend("tensorrt") != BackendType.TENSORRT

    def test_config_from_dict(self):
        config = BackendConfig.from_dict({
            "execution_backend": "CPU", "channel_order": "channels_last", "fp16": False,
        })
        assert config.backend == BackendType.CPU
        assert config.channel_order == ChannelOrder.CHANNEL_LAST
        assert not config.fp16

    def test_unknown_channel_order_uses_default(self):
        config = BackendConfig.from_dict({"channel_order": "chwn"})
        assert config.channel_order == ChannelOrder.CHANNEL_FIRST


class TestInferenceEngine:
    """Test suite for ONNX Runtime execution on CPU."""

    @pytest.fixture
    def ledger(self):
        return ResourceLedger()

    @pytest.fixture
    def processor(self, ledger):
        return FrameProcessor({"target_min_dim": 64, "use_gpu": False}, ledger=ledger)

    def _predict(self, engine, processor, bgr, order=ChannelOrder.CHANNEL_FIRST):
        frame = solid_frame(bgr)
        tensor = processor.normalize(frame, processor.compute_input_dims(frame.dims), order)
        try:
            engine.execute(tensor)
        finally:
            tensor.release()
        handle = engine.peek_output(engine.graph.argmax_layer)
        try:
            return int(handle.to_host().ravel()[0])
        finally:
            handle.release()

    @pytest.fixture
    def engine(self, classifier_model, ledger):
        graph = ClassificationGraph.augment(classifier_model)
        with InferenceEngine(graph, BackendConfig(backend=BackendType.CPU), ledger=ledger) as e:
            yield e

    def test_red_predicts_class_zero(self, engine, processor):
        assert self._predict(engine, processor, RED) == 0

    def test_black_predicts_class_three(self, engine, processor):
        assert self._predict(engine, processor, BLACK) == 3

    def test_softmax_sums_to_one(self, engine, processor, ledger):
        self._predict(engine, processor, RED)
        handle = engine.peek_output("softmax_layer")
        try:
            probs = handle.to_host()
        finally:
            handle.release()
        np.testing.assert_allclose(probs.sum(), 1.0, rtol=1e-5)
        assert ledger.outstanding == 0

    def test_execution_count(self, engine, processor):
        for _ in range(3):
            self._predict(engine, processor, RED)
        assert engine.execution_count == 3

    def test_host_outputs_only(self, engine):
        assert DEVICE_OUTPUTS_TAG not in engine.summary()
        with pytest.raises(BackendUnsupportedError):
            engine.allocate_staging("argmax_layer")

    def test_second_output_layer(self, ledger, processor):
        graph = ClassificationGraph.augment(build_classifier_model(extra_output=True),
                                            output_layer_index=1)
        with InferenceEngine(graph, BackendConfig(backend=BackendType.CPU), ledger=ledger) as e:
            # argmax over the channel means: B is the least negative for black
            assert self._predict(e, processor, BLACK) == 2
            assert self._predict(e, processor, RED) == 0

    def test_channel_last_graph(self, ledger, processor):
        graph = ClassificationGraph.augment(build_classifier_model(channel_last=True))
        config = BackendConfig(backend=BackendType.CPU, channel_order=ChannelOrder.CHANNEL_LAST)
        with InferenceEngine(graph, config, ledger=ledger) as e:
            assert self._predict(e, processor, RED, ChannelOrder.CHANNEL_LAST) == 0

    def test_layout_mismatch_rejected(self, engine, processor):
        frame = solid_frame(RED)
        tensor = processor.normalize(frame, (85, 64), ChannelOrder.CHANNEL_LAST)
        try:
            with pytest.raises(ValueError):
                engine.execute(tensor)
        finally:
            tensor.release()

    def test_overlapping_execute_refused(self, engine, processor):
        tensor = processor.normalize(solid_frame(RED), (85, 64))
        engine._exec_lock.acquire()
        try:
            with pytest.raises(RuntimeError):
                engine.execute(tensor)
        finally:
            engine._exec_lock.release()
            tensor.release()

    def test_execute_after_close(self, classifier_model, processor):
        graph = ClassificationGraph.augment(classifier_model)
        engine = InferenceEngine(graph, BackendConfig(backend=BackendType.CPU))
        engine.close()
        tensor = processor.normalize(solid_frame(RED), (85, 64))
        try:
            with pytest.raises(RuntimeError):
                engine.execute(tensor)
        finally:
            tensor.release()

    def test_falls_back_to_cpu_when_backend_fails(self, classifier_model):
        graph = ClassificationGraph.augment(classifier_model)
        real_create = backends.create_backend

        def create(graph, config, expected_input_shape=None):
            if config.backend != BackendType.CPU:
                raise BackendUnsupportedError("simulated build failure")
            return real_create(graph, config, expected_input_shape)

        with patch("models.inference_engine.validate_backend", return_value=BackendType.CUDA), \
                patch("models.inference_engine.create_backend", side_effect=create):
            engine = InferenceEngine(graph, BackendConfig(backend=BackendType.CUDA))
        try:
            assert engine.backend == BackendType.CPU
        finally:
            engine.close()


class TestTensorRTBuffers:
    """TensorRT host-input and readback buffers, with PyCUDA mocked out."""

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def fake_cuda(self, calls):
        cuda = MagicMock()
        cuda.pagelocked_empty.side_effect = lambda size, dtype: np.empty(size, dtype)

        def mem_alloc(nbytes):
            mem = MagicMock()
            mem.free.side_effect = lambda: calls.append("free")
            return mem

        cuda.mem_alloc.side_effect = mem_alloc
        cuda.memcpy_htod_async.side_effect = lambda *args: calls.append("copy")
        with patch.object(backends, "cuda", cuda, create=True), \
                patch.object(backends, "pycuda", MagicMock(), create=True):
            yield cuda

    @pytest.fixture
    def trt_backend(self, fake_cuda, calls):
        backend = backends.TensorRTBackend.__new__(backends.TensorRTBackend)
        backend._stream = MagicMock()
        backend._stream.synchronize.side_effect = lambda: calls.append("sync")
        backend._input_device = None
        backend._input_host = None
        backend._input_capacity = 0
        return backend

    def test_restaging_waits_for_previous_tick(self, trt_backend, calls):
        trt_backend._stage_host_input(np.ones(4, dtype=np.float32))
        trt_backend._stage_host_input(np.zeros(4, dtype=np.float32))
        assert calls == ["sync", "copy", "sync", "copy"]

    def test_growing_input_waits_before_free(self, trt_backend, calls):
        trt_backend._stage_host_input(np.ones(4, dtype=np.float32))
        trt_backend._stage_host_input(np.ones(8, dtype=np.float32))
        assert calls == ["sync", "copy", "sync", "free", "copy"]
        assert trt_backend._input_capacity == 8

    def test_readbacks_share_one_pinned_buffer(self, fake_cuda):
        staging = backends._TensorRTStaging({"host": np.zeros((1, 1), dtype=np.int64)})
        ledger = ResourceLedger()
        for _ in range(3):
            staging.request_readback(ledger).release()
        assert fake_cuda.pagelocked_empty.call_count == 1
        assert ledger.outstanding == 0
        staging.free()
        assert staging.device is None
