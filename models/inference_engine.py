"""
InferenceEngine: one forward pass per control tick over a shared graph.

Resolves the execution backend once at construction (falling back to the
platform default when the requested one is unavailable or fails to build)
and never changes it afterwards.
"""

import dataclasses
import logging
import threading

from core.errors import BackendUnsupportedError
from core.resources import ResourceLedger
from core.types import InputTensor
from models.backends import (
    BackendConfig, BackendType, create_backend, validate_backend,
)
from modules.utils.logger import log_timing

logger = logging.getLogger(__name__)


class InferenceEngine:
    """Executes the augmented classification graph on the resolved backend.

    Usage::

        engine = InferenceEngine(graph, BackendConfig(backend=BackendType.AUTO))
        engine.execute(tensor)
        handle = engine.peek_output(graph.argmax_layer)
        try:
            index = int(handle.to_host().ravel()[0])
        finally:
            handle.release()
    """

    def __init__(self, graph, config: BackendConfig = None,
                 ledger: ResourceLedger = None, expected_input_shape=None):
        """
        Args:
            graph: augmented :class:`ClassificationGraph`
            config: backend selection and channel order
            ledger: resource accounting for output handles
            expected_input_shape: shape the tensors will usually have, used
                to size TensorRT optimization profiles
        """
        config = config or BackendConfig()
        self._graph = graph
        self._ledger = ledger
        self._exec_lock = threading.Lock()
        self._execution_count = 0
        self._closed = False

        declared = graph.input_channel_order()
        if declared is not None and declared != config.channel_order:
            logger.warning("Graph input %s looks %s but channel order is set to %s",
                           list(graph.input_shape), declared.value,
                           config.channel_order.value)

        resolved = validate_backend(config.backend)
        self._config = dataclasses.replace(config, backend=resolved)
        self._backend = self._create_backend(expected_input_shape)
        logger.info("Inference engine using %s backend (%s)",
                    self._config.backend.value, self._config.channel_order.value)

    @log_timing
    def _create_backend(self, expected_input_shape):
        try:
            return create_backend(self._graph, self._config, expected_input_shape)
        except BackendUnsupportedError as e:
            if self._config.backend == BackendType.CPU:
                raise
            logger.warning("%s backend unavailable (%s), falling back to cpu",
                           self._config.backend.value, e)
            self._config = dataclasses.replace(self._config, backend=BackendType.CPU)
            return create_backend(self._graph, self._config, expected_input_shape)

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------

    def execute(self, tensor: InputTensor):
        """Run one forward pass. Overlapping calls are refused."""
        if self._closed:
            raise RuntimeError("InferenceEngine used after close()")
        if tensor.channel_order != self._config.channel_order:
            raise ValueError("Tensor layout %s does not match engine layout %s"
                             % (tensor.channel_order.value, self._config.channel_order.value))
        if not self._exec_lock.acquire(blocking=False):
            raise RuntimeError("InferenceEngine.execute() called while another execution is running")
        try:
            self._backend.execute(tensor)
            self._execution_count += 1
        finally:
            self._exec_lock.release()

    def peek_output(self, name: str):
        """Handle to a named output of the last execution. Caller releases it."""
        return self._backend.peek_output(name, self._ledger)

    def allocate_staging(self, name: str):
        """Device staging buffer for async readback of ``name``."""
        return self._backend.allocate_staging(name)

    def summary(self) -> str:
        return self._backend.summary()

    @property
    def backend(self) -> BackendType:
        return self._config.backend

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def graph(self):
        return self._graph

    @property
    def execution_count(self) -> int:
        """Number of completed executions; used to order readbacks."""
        return self._execution_count

    def close(self):
        """Release all device buffers owned by the backend."""
        if self._closed:
            return
        self._closed = True
        self._backend.destroy()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
