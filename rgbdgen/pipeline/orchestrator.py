"""
RGBD Generator Orchestrator.

Executes the per-frame pipeline in strict order:

1. Validate and stage the input image
2. Preprocess into the inference tensor
3. Infer raw depth
4. Insert into the rolling window
5. Temporal filter
6. Auto-focus remap (optional)
7. Compose the side-by-side RGBD image

One thread drives a generator instance; calls are not re-entrant.
"""

from __future__ import annotations

import time
from typing import List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from loguru import logger

from rgbdgen.config import PipelineConfig
from rgbdgen.core.backend import Backend
from rgbdgen.core.contracts import FilterParameters, FrameStats
from rgbdgen.core.device_image import DeviceImage, validate_pixels
from rgbdgen.core.errors import PipelineClosedError
from rgbdgen.depth.autofocus import AutoFocus
from rgbdgen.depth.compose import RGBDCompositor
from rgbdgen.depth.inference import DepthEngine, check_output_shape, load_engine
from rgbdgen.depth.preprocess import Preprocessor, adjust_inference_size
from rgbdgen.depth.rolling_window import RollingWindow
from rgbdgen.depth.temporal_filter import TemporalFilter

ImageInput = Union[DeviceImage, NDArray[np.uint8]]


class DepthGenerator:
    """
    Real-time RGBD generator.

    Usage:
        with DepthGenerator(PipelineConfig(model_path="model.onnx")) as gen:
            rgbd = gen.compute_depth(rgba_frame)

    Guarantees:
    - Malformed images are rejected before any kernel runs
    - Buffers are reallocated only when a resolution changes
    - History is discarded whenever the inference size changes
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        engine: Optional[DepthEngine] = None,
        backend: Optional[Backend] = None,
    ):
        """
        Initialize the generator.

        Args:
            config: Generator configuration
            engine: Inference engine; loaded from config.model_path when None
            backend: Array backend; selected from config.device when None
        """
        self.config = config or PipelineConfig()
        self.backend = backend or Backend(self.config.device)

        if engine is None:
            engine = load_engine(self.config.model_path, use_cuda=self.config.device != "cpu")
        self._engine = engine

        try:
            self._install(self._allocate(self.config.inference_size))
            self._autofocus = AutoFocus(self.backend, self.config.autofocus)
            self._compositor = RGBDCompositor(self.backend)
        except Exception:
            engine.close()
            raise
        self._staging: Optional[DeviceImage] = None

        self._closed = False
        self._frame_index = 0
        self._last_stats: Optional[FrameStats] = None

        # Performance tracking
        self._frame_latencies: List[float] = []

        logger.info(
            f"DepthGenerator initialized ({self.backend.name}, "
            f"{self.inference_size}x{self.inference_size}, preset {self.config.preset})"
        )

    def _allocate(self, size: int) -> Tuple:
        """Create every inference-resolution buffer without touching the live set."""
        b = self.backend
        preprocessor = Preprocessor(
            b,
            size,
            border=self.config.border,
            resample=self.config.resample,
        )
        size = preprocessor.size
        return (
            preprocessor,
            np.empty((1, 3, size, size), dtype=np.float32),
            b.zeros((size, size)),
            b.zeros((size, size)),
            RollingWindow(b, size, size),
            TemporalFilter(b, size, size, self.config.filter),
        )

    def _install(self, buffers: Tuple) -> None:
        (self._preprocessor, self._host_tensor, self._raw_depth,
         self._filtered, self._window, self._filter) = buffers

    # ===== properties =====

    @property
    def inference_size(self) -> int:
        return self._preprocessor.size

    @property
    def filter_params(self) -> FilterParameters:
        """Live filter parameters; changes apply from the next frame."""
        return self._filter.params

    @property
    def window(self) -> RollingWindow:
        return self._window

    @property
    def depth(self):
        """Filtered depth of the last frame (inference resolution)."""
        return self._filtered

    @property
    def raw_depth(self):
        return self._raw_depth

    @property
    def last_output(self) -> Optional[DeviceImage]:
        return self._compositor.output

    @property
    def last_stats(self) -> Optional[FrameStats]:
        return self._last_stats

    @property
    def frames_processed(self) -> int:
        return self._frame_index

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def average_latency_ms(self) -> float:
        if not self._frame_latencies:
            return 0.0
        return sum(self._frame_latencies) / len(self._frame_latencies)

    @property
    def fps(self) -> float:
        avg = self.average_latency_ms
        return 1000.0 / avg if avg > 0 else 0.0

    # ===== operations =====

    def _check_open(self) -> None:
        if self._closed:
            raise PipelineClosedError("DepthGenerator has been closed")

    def _stage(self, image: ImageInput) -> DeviceImage:
        """Validate the input and return it as a device image."""
        if isinstance(image, DeviceImage):
            validate_pixels(image.data)
            return image

        validate_pixels(image)
        height, width = image.shape[:2]
        if self._staging is None or self._staging.size != (width, height):
            self._staging = DeviceImage(self.backend, width, height)
        self._staging.upload(image)
        return self._staging

    def compute_depth(self, image: ImageInput, channel_swap: Optional[bool] = None) -> DeviceImage:
        """
        Produce the RGBD image for one frame.

        Args:
            image: RGBA8 frame, device-resident or host (H, W, 4) uint8
            channel_swap: Swap R and B; defaults to config.channel_swap

        Returns:
            (H, 2W, 4) RGBA8 image, reused by the next call

        Raises:
            PipelineClosedError: after close()
            InvalidImageError: malformed image
            ModelOutputError: model output does not match the inference size
            ResourceExhaustedError: accelerator allocation failed
        """
        self._check_open()
        pipeline_start = time.perf_counter()
        swap = self.config.channel_swap if channel_swap is None else channel_swap
        stats = FrameStats(frame_index=self._frame_index)
        size = self.inference_size

        # ============================================================
        # STEP 1: Validate and stage the input image
        # ============================================================
        color = self._stage(image)

        # ============================================================
        # STEP 2: Preprocess into the inference tensor
        # ============================================================
        t0 = time.perf_counter()
        tensor = self._preprocessor.run(color, channel_swap=swap)
        host_tensor = self.backend.to_host(tensor, out=self._host_tensor)
        stats.preprocess_ms = (time.perf_counter() - t0) * 1000

        # ============================================================
        # STEP 3: Infer raw depth
        # ============================================================
        t0 = time.perf_counter()
        output = self._engine.infer(host_tensor)
        depth = check_output_shape(np.asarray(output), size, size)
        self.backend.upload(depth, out=self._raw_depth)
        stats.inference_ms = (time.perf_counter() - t0) * 1000

        # ============================================================
        # STEPS 4-6: Rolling window, temporal filter, auto-focus
        # ============================================================
        t0 = time.perf_counter()
        was_warm = self._window.is_warm
        self._window.add_frame(self._raw_depth)
        if self._window.is_warm and not was_warm:
            logger.info(f"Rolling window warm after {self._window.frames_written} frames")
        self._filter.apply(self._window, self._filtered)
        if self.config.autofocus.enabled:
            self._autofocus.apply(self._filtered)
        self.backend.synchronize()
        stats.filter_ms = (time.perf_counter() - t0) * 1000

        # ============================================================
        # STEP 7: Compose the side-by-side RGBD image
        # ============================================================
        t0 = time.perf_counter()
        result = self._compositor.compose(self._filtered, color, channel_swap=swap)
        self.backend.synchronize()
        stats.compose_ms = (time.perf_counter() - t0) * 1000

        # Track performance
        total_latency = (time.perf_counter() - pipeline_start) * 1000
        stats.total_ms = total_latency
        stats.warm = self._window.is_warm
        self._frame_latencies.append(total_latency)
        if len(self._frame_latencies) > 100:
            self._frame_latencies.pop(0)

        if total_latency > self.config.latency_budget_ms:
            logger.warning(
                f"Frame {self._frame_index} latency {total_latency:.1f}ms exceeds budget "
                f"{self.config.latency_budget_ms:.0f}ms"
            )
        else:
            logger.debug(f"Frame {self._frame_index} processed in {total_latency:.1f}ms")

        self._last_stats = stats
        self._frame_index += 1
        return result

    def update_inference_size(self, size: int) -> int:
        """
        Change the inference resolution.

        Reallocates every resolution-dependent buffer and discards the
        rolling-window history. If allocation fails the generator keeps
        running at the previous size.

        Returns:
            The adjusted (multiple of 14) size in use
        """
        self._check_open()
        adjusted = adjust_inference_size(size)
        previous = self.inference_size
        self._install(self._allocate(adjusted))
        logger.info(f"Inference size {previous} -> {adjusted} (requested {size}), history discarded")
        return adjusted

    def reset(self) -> None:
        """Discard the rolling-window history."""
        self._check_open()
        self._window.reset()
        logger.debug("Rolling window history discarded")

    def close(self) -> None:
        """Release the inference engine and all buffers."""
        if self._closed:
            return
        self._engine.close()
        self._engine = None
        self._window = None
        self._filter = None
        self._raw_depth = None
        self._filtered = None
        self._host_tensor = None
        self._staging = None
        self._compositor = None
        self._autofocus = None
        self._preprocessor = None
        self._frame_latencies.clear()
        self._closed = True
        logger.info("DepthGenerator closed")

    def __enter__(self) -> "DepthGenerator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
