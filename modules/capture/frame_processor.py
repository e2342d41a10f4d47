"""
Frame preprocessing: aspect-preserving resize and ImageNet normalization.

Two normalization paths produce the same values:

    - GPU: a CUDA kernel (8x8 thread groups) reads a temporary device copy
      of the resized image and writes straight into a device tensor that
      the engine binds without a host round trip.
    - CPU fallback: the same formula with OpenCV/numpy on the host, used
      when PyCUDA or a CUDA device is unavailable.

Temporary device images are freed before ``normalize()`` returns on every
path; the tensor itself is released by the caller after execution.
"""

import logging
import cv2
import numpy as np

from core.resources import ResourceLedger
from core.types import ChannelOrder, Frame, InputTensor

logger = logging.getLogger(__name__)

MIN_TARGET_DIM = 64
THREAD_GROUP = 8

try:
    import pycuda.driver as cuda
    import pycuda.autoinit  # noqa: F401  (initialises CUDA context)
    from pycuda.compiler import SourceModule
    CUDA_AVAILABLE = True
except ImportError:
    CUDA_AVAILABLE = False

_NORMALIZE_KERNEL = r"""
__global__ void normalize_image(const unsigned char* src, float* dst,
                                int width, int height, int channel_first,
                                float m0, float m1, float m2,
                                float s0, float s1, float s2)
{
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;

    int pixel = y * width + x;
    int plane = width * height;
    const unsigned char* px = src + pixel * 3;
    float mean[3] = {m0, m1, m2};
    float stdv[3] = {s0, s1, s2};

    for (int c = 0; c < 3; ++c) {
        float v = ((float)px[c] / 255.0f - mean[c]) / stdv[c];
        if (channel_first) dst[c * plane + pixel] = v;
        else dst[pixel * 3 + c] = v;
    }
}
"""


def compute_input_dims(source_dims, target_min_dim):
    """Scale ``(width, height)`` so the shorter side equals the target.

    The target is clamped to at least 64 first. Square sources take the
    wide branch. Integer arithmetic keeps the result exact, e.g.
    (1280, 720) with 216 gives (384, 216).
    """
    width, height = int(source_dims[0]), int(source_dims[1])
    if width <= 0 or height <= 0:
        raise ValueError("Source dimensions must be positive, got %r" % (source_dims,))
    target = max(int(target_min_dim), MIN_TARGET_DIM)

    if width >= height:
        return (width * target // height, target)
    return (target, height * target // width)


def tensor_shape(input_dims, channel_order: ChannelOrder) -> tuple:
    width, height = input_dims
    if channel_order == ChannelOrder.CHANNEL_FIRST:
        return (1, 3, height, width)
    return (1, height, width, 3)


class FrameProcessor:
    """Resizes frames to model input dims and normalizes them to a tensor."""

    def __init__(self, config: dict = None, ledger: ResourceLedger = None):
        config = config or {}
        self._target_min_dim = max(int(config.get("target_min_dim", 216)), MIN_TARGET_DIM)
        self._mean = np.asarray(config.get("mean", [0.485, 0.456, 0.406]), dtype=np.float32)
        self._std = np.asarray(config.get("std", [0.229, 0.224, 0.225]), dtype=np.float32)
        self._ledger = ledger or ResourceLedger()
        self._kernel = None
        self._use_gpu = config.get("use_gpu", True) and self._check_cuda()

        if self._use_gpu:
            try:
                module = SourceModule(_NORMALIZE_KERNEL)
                self._kernel = module.get_function("normalize_image")
                logger.info("GPU preprocessing enabled (CUDA normalization kernel)")
            except cuda.Error as e:
                logger.warning("CUDA kernel compilation failed, falling back to CPU: %s", e)
                self._use_gpu = False
        if not self._use_gpu:
            logger.info("CPU preprocessing mode")

    @staticmethod
    def _check_cuda() -> bool:
        """Check that PyCUDA can see at least one device."""
        if not CUDA_AVAILABLE:
            return False
        try:
            return cuda.Device.count() > 0
        except cuda.Error:
            return False

    @property
    def target_min_dim(self) -> int:
        return self._target_min_dim

    @property
    def is_gpu_enabled(self) -> bool:
        return self._use_gpu

    def compute_input_dims(self, source_dims) -> tuple:
        return compute_input_dims(source_dims, self._target_min_dim)

    def resize(self, frame: Frame, input_dims) -> np.ndarray:
        """Resize to ``input_dims`` and convert BGR -> RGB (uint8, HWC)."""
        image = frame.image
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        elif image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        if (image.shape[1], image.shape[0]) != tuple(input_dims):
            image = cv2.resize(image, tuple(input_dims), interpolation=cv2.INTER_LINEAR)
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    def normalize(self, frame: Frame, input_dims,
                  channel_order: ChannelOrder = ChannelOrder.CHANNEL_FIRST) -> InputTensor:
        """Produce a normalized model input tensor for one frame."""
        rgb = self.resize(frame, input_dims)
        if self._use_gpu:
            return self._normalize_gpu(rgb, input_dims, channel_order)
        return self._normalize_cpu(rgb, input_dims, channel_order)

    def _normalize_cpu(self, rgb, input_dims, channel_order) -> InputTensor:
        image = rgb.astype(np.float32) * (1.0 / 255.0)
        image = (image - self._mean) / self._std
        if channel_order == ChannelOrder.CHANNEL_FIRST:
            image = image.transpose(2, 0, 1)
        data = np.ascontiguousarray(image[np.newaxis], dtype=np.float32)
        return InputTensor(data, data.shape, channel_order, on_device=False,
                           ledger=self._ledger)

    def _normalize_gpu(self, rgb, input_dims, channel_order) -> InputTensor:
        width, height = input_dims
        shape = tensor_shape(input_dims, channel_order)
        rgb = np.ascontiguousarray(rgb)

        output = cuda.mem_alloc(int(np.prod(shape)) * 4)
        source = None
        try:
            source = cuda.mem_alloc(rgb.nbytes)
            self._ledger.acquire("gpu_image")
            cuda.memcpy_htod(source, rgb)

            grid = ((width + THREAD_GROUP - 1) // THREAD_GROUP,
                    (height + THREAD_GROUP - 1) // THREAD_GROUP)
            self._kernel(
                source, output,
                np.int32(width), np.int32(height),
                np.int32(channel_order == ChannelOrder.CHANNEL_FIRST),
                np.float32(self._mean[0]), np.float32(self._mean[1]), np.float32(self._mean[2]),
                np.float32(self._std[0]), np.float32(self._std[1]), np.float32(self._std[2]),
                block=(THREAD_GROUP, THREAD_GROUP, 1), grid=grid,
            )
            cuda.Context.synchronize()
        except Exception:
            output.free()
            raise
        finally:
            if source is not None:
                source.free()
                self._ledger.release("gpu_image")

        return InputTensor(output, shape, channel_order, on_device=True,
                           ledger=self._ledger)
