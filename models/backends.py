"""
Execution backends for the augmented classification graph.

Two runtimes are supported:

    - TensorRT + PyCUDA: builds an engine from the augmented ONNX graph at
      start-up, keeps every output resident on the GPU, and supports
      non-blocking device-to-host readback of the argmax output.
    - ONNX Runtime: CUDA or CPU execution provider. Outputs come back as
      host arrays, so it never advertises device-resident outputs.

``summary()`` of a backend contains ``DEVICE_OUTPUTS_TAG`` only when its
outputs live on the device; ResultTransfer inspects that string to decide
whether asynchronous readback is possible.

TensorRT/PyCUDA are pre-installed with JetPack on Jetson devices and
optional elsewhere.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
import onnxruntime as ort

from core.errors import AsyncTransferError, BackendUnsupportedError
from core.resources import ResourceLedger
from core.types import ChannelOrder, InputTensor

logger = logging.getLogger(__name__)

# TensorRT + PyCUDA: available on Jetson, optional on dev machines
try:
    import tensorrt as trt
    import pycuda.driver as cuda
    import pycuda.autoinit  # noqa: F401  (initialises CUDA context)
    TRT_AVAILABLE = True
    TRT_LOGGER = trt.Logger(trt.Logger.WARNING)
except ImportError:
    TRT_AVAILABLE = False
    logger.info("TensorRT/PyCUDA not available, TensorRT backend disabled")

DEVICE_OUTPUTS_TAG = "device-resident-outputs"


class BackendType(Enum):
    """Requested execution backend."""
    AUTO = "auto"
    TENSORRT = "tensorrt"
    CUDA = "cuda"
    CPU = "cpu"

    @classmethod
    def from_string(cls, name: str) -> 'BackendType':
        """Unknown names map to AUTO so validation can fall back."""
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            logger.warning("Unknown execution backend '%s', using auto", name)
            return cls.AUTO


@dataclass(frozen=True)
class BackendConfig:
    """Backend settings fixed at engine construction.

    The channel order lives here rather than in any process-wide setting,
    so two engines in one process can use different layouts.
    """
    backend: BackendType = BackendType.AUTO
    channel_order: ChannelOrder = ChannelOrder.CHANNEL_FIRST
    device_id: int = 0
    fp16: bool = True
    max_workspace_mb: int = 256

    @classmethod
    def from_dict(cls, config: dict) -> "BackendConfig":
        """Create config from the ``inference`` section (YAML parsed)."""
        return cls(
            backend=BackendType.from_string(config.get("execution_backend", "auto")),
            channel_order=_channel_order(config.get("channel_order", "nchw")),
            device_id=config.get("device_id", 0),
            fp16=config.get("fp16", True),
            max_workspace_mb=config.get("max_workspace_mb", 256),
        )


def _channel_order(name) -> ChannelOrder:
    try:
        return ChannelOrder.from_string(name)
    except ValueError:
        logger.warning("Unknown channel order '%s', using nchw", name)
        return ChannelOrder.CHANNEL_FIRST


def available_backends() -> list:
    """Backends usable on this platform, fastest first. CPU is always last."""
    found = []
    if TRT_AVAILABLE:
        found.append(BackendType.TENSORRT)
    if "CUDAExecutionProvider" in ort.get_available_providers():
        found.append(BackendType.CUDA)
    found.append(BackendType.CPU)
    return found


def validate_backend(requested) -> BackendType:
    """Resolve a requested backend to one that can run here.

    AUTO picks the platform default. An unavailable request falls back to
    the default with a warning instead of failing.
    """
    if not isinstance(requested, BackendType):
        requested = BackendType.from_string(requested)
    available = available_backends()
    if requested in available:
        return requested
    default = available[0]
    if requested != BackendType.AUTO:
        logger.warning("Execution backend '%s' not supported on this platform, using '%s'",
                       requested.value, default.value)
    return default


# =============================================================================
# Output handles and readback
# =============================================================================

class OutputHandle:
    """Reference to one named engine output for the current tick.

    Must be released every tick; the ledger catches handles that are not.
    """

    def __init__(self, name: str, ledger: ResourceLedger = None):
        self.name = name
        self._ledger = ledger
        self._released = False
        if ledger is not None:
            ledger.acquire("output_handle")

    def to_host(self) -> np.ndarray:
        """Blocking read of the output into host memory."""
        raise NotImplementedError

    def copy_to(self, staging) -> None:
        """Device-side copy into a staging buffer (device backends only)."""
        raise NotImplementedError("%s has no device-resident output" % type(self).__name__)

    def release(self):
        if self._released:
            return
        self._released = True
        if self._ledger is not None:
            self._ledger.release("output_handle")


class HostOutputHandle(OutputHandle):
    """Output already materialised on the host (ONNX Runtime)."""

    def __init__(self, name, array, ledger=None):
        super().__init__(name, ledger)
        self._array = array

    def to_host(self) -> np.ndarray:
        return np.array(self._array, copy=True)

    def release(self):
        self._array = None
        super().release()


class PendingReadback:
    """A non-blocking device-to-host transfer that completes later.

    ``wait()`` blocks until the transfer finishes and returns the staged
    bytes decoded as an array, or raises AsyncTransferError.
    """

    def __init__(self, ledger: ResourceLedger = None):
        self._ledger = ledger
        self._released = False
        if ledger is not None:
            ledger.acquire("readback_request")

    def wait(self) -> np.ndarray:
        raise NotImplementedError

    def release(self):
        if self._released:
            return
        self._released = True
        if self._ledger is not None:
            self._ledger.release("readback_request")


# =============================================================================
# ONNX Runtime
# =============================================================================

class OnnxRuntimeBackend:
    """Runs the graph with ONNX Runtime on the CUDA or CPU provider."""

    def __init__(self, graph, config: BackendConfig):
        self._graph = graph
        self._config = config

        if config.backend == BackendType.CUDA:
            providers = [("CUDAExecutionProvider", {"device_id": config.device_id}),
                         "CPUExecutionProvider"]
        else:
            providers = ["CPUExecutionProvider"]

        options = ort.SessionOptions()
        options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        try:
            self._session = ort.InferenceSession(
                graph.serialized, sess_options=options, providers=providers)
        except Exception as e:
            raise BackendUnsupportedError(
                "ONNX Runtime could not load the graph: %s" % e) from e

        self._output_names = [o.name for o in self._session.get_outputs()]
        self._outputs = {}
        self._on_cuda = self._session.get_providers()[0] == "CUDAExecutionProvider"
        logger.info("ONNX Runtime session ready (providers: %s)",
                    self._session.get_providers())

    def execute(self, tensor: InputTensor):
        if tensor.on_device and self._on_cuda:
            binding = self._session.io_binding()
            binding.bind_input(
                name=self._graph.input_name,
                device_type="cuda",
                device_id=self._config.device_id,
                element_type=np.float32,
                shape=tensor.shape,
                buffer_ptr=int(tensor.data),
            )
            for name in self._output_names:
                binding.bind_output(name)
            self._session.run_with_iobinding(binding)
            results = binding.copy_outputs_to_cpu()
        else:
            results = self._session.run(None, {self._graph.input_name: tensor.host()})
        self._outputs = dict(zip(self._output_names, results))

    def peek_output(self, name: str, ledger=None) -> OutputHandle:
        if name not in self._outputs:
            raise KeyError("Output '%s' not available; execute() first" % name)
        return HostOutputHandle(name, self._outputs[name], ledger)

    def allocate_staging(self, name: str):
        raise BackendUnsupportedError("ONNX Runtime outputs are not device resident")

    def summary(self) -> str:
        return "OnnxRuntimeBackend providers=%s outputs=%s host-outputs" % (
            ",".join(self._session.get_providers()), ",".join(self._output_names))

    def destroy(self):
        self._outputs = {}
        self._session = None
        logger.info("ONNX Runtime session released")


# =============================================================================
# TensorRT
# =============================================================================

class _DeviceOutputHandle(OutputHandle):
    """Output resident in a TensorRT device buffer."""

    def __init__(self, name, binding, stream, ledger=None):
        super().__init__(name, ledger)
        self._binding = binding
        self._stream = stream

    def to_host(self) -> np.ndarray:
        host = self._binding["host"]
        cuda.memcpy_dtoh_async(host, self._binding["device"], self._stream)
        self._stream.synchronize()
        return host.reshape(self._binding["shape"]).copy()

    def copy_to(self, staging) -> None:
        staging.capture(self._binding, self._stream)


class _TensorRTReadback(PendingReadback):
    """Copy from a staging buffer into the staging's page-locked host buffer.

    The host buffer is shared, so a staging object serves one request at a
    time; ResultTransfer keeps at most one in flight.
    """

    def __init__(self, staging, ledger=None):
        super().__init__(ledger)
        self._host = staging.host
        self._done = cuda.Event()
        self._context = pycuda.autoinit.context
        cuda.memcpy_dtoh_async(self._host, staging.device, staging.stream)
        self._done.record(staging.stream)

    def wait(self) -> np.ndarray:
        # Completion runs on the readback worker thread, which needs the context
        self._context.push()
        try:
            self._done.synchronize()
            return self._host.copy()
        except cuda.Error as e:
            raise AsyncTransferError("GPU readback failed: %s" % e) from e
        finally:
            self._context.pop()


class _TensorRTStaging:
    """Device-resident staging buffer for one output, with its own stream."""

    def __init__(self, binding):
        self.size = binding["host"].size
        self.dtype = binding["host"].dtype
        self.nbytes = binding["host"].nbytes
        self.device = cuda.mem_alloc(self.nbytes)
        self.host = cuda.pagelocked_empty(self.size, self.dtype)
        self.stream = cuda.Stream()

    def capture(self, binding, exec_stream):
        # Order the copy after the forward pass without blocking the host
        ready = cuda.Event()
        ready.record(exec_stream)
        self.stream.wait_for_event(ready)
        cuda.memcpy_dtod_async(self.device, binding["device"], self.nbytes, self.stream)

    def request_readback(self, ledger=None) -> PendingReadback:
        return _TensorRTReadback(self, ledger)

    def free(self):
        if self.device is not None:
            self.device.free()
            self.device = None
        self.host = None


class TensorRTBackend:
    """Builds and runs a TensorRT engine from the augmented ONNX graph.

    Input shapes may be dynamic; the optimization profile is centred on
    ``expected_input_shape`` and spans up to twice its spatial size.
    """

    def __init__(self, graph, config: BackendConfig, expected_input_shape=None):
        if not TRT_AVAILABLE:
            raise BackendUnsupportedError(
                "TensorRT and PyCUDA are required. "
                "These are pre-installed on Jetson devices with JetPack."
            )
        self._graph = graph
        self._config = config
        self._stream = cuda.Stream()
        self._bindings = {}
        self._stagings = []
        self._input_device = None
        self._input_host = None
        self._input_capacity = 0

        self._engine = self._build_engine(expected_input_shape)
        self._context = self._engine.create_execution_context()
        if self._context is None:
            raise BackendUnsupportedError("Failed to create TensorRT execution context")

        if expected_input_shape is not None:
            self._context.set_input_shape(graph.input_name, tuple(expected_input_shape))
        self._allocate_outputs()
        logger.info("TensorRT engine ready: %d outputs on device", len(self._bindings))

    def _build_engine(self, expected_input_shape):
        builder = trt.Builder(TRT_LOGGER)
        network_flags = 1 << int(trt.NetworkDefinitionCreationFlag.EXPLICIT_BATCH)
        network = builder.create_network(network_flags)
        parser = trt.OnnxParser(network, TRT_LOGGER)

        if not parser.parse(self._graph.serialized):
            for i in range(parser.num_errors):
                logger.error("ONNX parse error: %s", parser.get_error(i))
            raise BackendUnsupportedError("TensorRT could not parse the graph")

        config = builder.create_builder_config()
        config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE,
                                     self._config.max_workspace_mb * (1 << 20))
        if self._config.fp16 and builder.platform_has_fast_fp16:
            config.set_flag(trt.BuilderFlag.FP16)
            logger.info("FP16 mode enabled")

        input_tensor = network.get_input(0)
        if any(d < 0 for d in input_tensor.shape):
            if expected_input_shape is None:
                raise BackendUnsupportedError(
                    "Graph input has dynamic dimensions; an expected input shape is required")
            opt = tuple(int(d) for d in expected_input_shape)
            low = tuple(opt[i] if i in (0, _channel_axis(self._config)) else 64
                        for i in range(4))
            high = tuple(opt[i] if i in (0, _channel_axis(self._config)) else opt[i] * 2
                         for i in range(4))
            profile = builder.create_optimization_profile()
            profile.set_shape(input_tensor.name, min=low, opt=opt, max=high)
            config.add_optimization_profile(profile)

        logger.info("Building TensorRT engine (this may take a few minutes)...")
        serialized = builder.build_serialized_network(network, config)
        if serialized is None:
            raise BackendUnsupportedError("TensorRT engine build failed")
        runtime = trt.Runtime(TRT_LOGGER)
        return runtime.deserialize_cuda_engine(serialized)

    def _allocate_outputs(self):
        for i in range(self._engine.num_io_tensors):
            name = self._engine.get_tensor_name(i)
            if self._engine.get_tensor_mode(name) != trt.TensorIOMode.OUTPUT:
                continue
            shape = tuple(self._context.get_tensor_shape(name))
            dtype = trt.nptype(self._engine.get_tensor_dtype(name))
            size = abs(int(np.prod(shape)))
            host_mem = cuda.pagelocked_empty(size, dtype)
            device_mem = cuda.mem_alloc(host_mem.nbytes)
            self._context.set_tensor_address(name, int(device_mem))
            self._bindings[name] = {
                "host": host_mem,
                "device": device_mem,
                "shape": shape,
            }

    def _stage_host_input(self, array: np.ndarray) -> int:
        # The previous tick may still be copying from or executing on these buffers
        self._stream.synchronize()
        array = np.ascontiguousarray(array, dtype=np.float32).ravel()
        if array.size > self._input_capacity:
            if self._input_device is not None:
                self._input_device.free()
            self._input_host = cuda.pagelocked_empty(array.size, np.float32)
            self._input_device = cuda.mem_alloc(self._input_host.nbytes)
            self._input_capacity = array.size
        np.copyto(self._input_host[:array.size], array)
        cuda.memcpy_htod_async(self._input_device, self._input_host, self._stream)
        return int(self._input_device)

    def execute(self, tensor: InputTensor):
        name = self._graph.input_name
        self._context.set_input_shape(name, tensor.shape)
        if tensor.on_device:
            address = int(tensor.data)
        else:
            address = self._stage_host_input(tensor.data)
        self._context.set_tensor_address(name, address)

        if not self._context.execute_async_v3(stream_handle=self._stream.handle):
            raise RuntimeError("TensorRT execution failed to enqueue")

        # A caller-owned device input is freed right after execute()
        if tensor.on_device:
            self._stream.synchronize()

    def peek_output(self, name: str, ledger=None) -> OutputHandle:
        if name not in self._bindings:
            raise KeyError("Unknown output '%s'" % name)
        return _DeviceOutputHandle(name, self._bindings[name], self._stream, ledger)

    def allocate_staging(self, name: str) -> _TensorRTStaging:
        staging = _TensorRTStaging(self._bindings[name])
        self._stagings.append(staging)
        return staging

    def summary(self) -> str:
        return "TensorRTBackend [%s] input=%s outputs=%s" % (
            DEVICE_OUTPUTS_TAG, self._graph.input_name, ",".join(self._bindings))

    def destroy(self):
        """Release GPU resources."""
        self._stream.synchronize()
        for staging in self._stagings:
            staging.free()
        self._stagings.clear()
        for binding in self._bindings.values():
            binding["device"].free()
        self._bindings.clear()
        if self._input_device is not None:
            self._input_device.free()
            self._input_device = None
        self._context = None
        self._engine = None
        logger.info("TensorRT engine destroyed")


def _channel_axis(config: BackendConfig) -> int:
    return 1 if config.channel_order == ChannelOrder.CHANNEL_FIRST else 3


def create_backend(graph, config: BackendConfig, expected_input_shape=None):
    """Instantiate the backend named by an already-validated config."""
    if config.backend == BackendType.TENSORRT:
        return TensorRTBackend(graph, config, expected_input_shape)
    if config.backend in (BackendType.CUDA, BackendType.CPU):
        return OnnxRuntimeBackend(graph, config)
    raise BackendUnsupportedError("Backend must be validated before creation: %s"
                                  % config.backend)
