"""
Side-by-side RGBD composition.

Output is a (H, 2W, 4) uint8 image: the colour frame on the left, the
min/max-normalized depth as grey on the right, upsampled nearest-neighbour
from inference resolution to the colour resolution.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from loguru import logger

from ..core.backend import Backend
from ..core.device_image import DeviceImage

# Depth ranges at or below this are treated as flat
RANGE_EPSILON = 1e-6
# Grey level emitted for flat depth frames
FLAT_GREY = 128


def depth_index(dst: int, src: int) -> np.ndarray:
    """Depth sample index for each of ``dst`` output pixels."""
    x = np.arange(dst, dtype=np.float64)
    return np.minimum((x / dst * src).astype(np.int32), src - 1)


class RGBDCompositor:
    """
    Packs colour + depth into one RGBA image.

    The output image and upsampling tables are reused across calls and
    rebuilt only when colour or depth dimensions change.
    """

    def __init__(self, backend: Backend):
        self.backend = backend
        self.xp = backend.xp
        self.output: Optional[DeviceImage] = None
        self._sizes: Optional[Tuple[int, int, int, int]] = None
        self.last_range: Tuple[float, float] = (0.0, 0.0)

    def _ensure(self, width: int, height: int, depth_w: int, depth_h: int) -> None:
        sizes = (width, height, depth_w, depth_h)
        if self._sizes == sizes:
            return
        b = self.backend
        if self._sizes is None or self._sizes[:2] != (width, height):
            self.output = DeviceImage(b, 2 * width, height)
            self.output.data[:, width:, 3] = 255
        self._ix = b.upload(depth_index(width, depth_w))
        self._iy = b.upload(depth_index(height, depth_h))
        self._rows = b.empty((height, depth_w))
        self._upsampled = b.empty((height, width))
        self._sizes = sizes
        logger.debug(f"Compositor buffers for {width}x{height} colour, {depth_w}x{depth_h} depth")

    def depth_range(self, depth) -> Tuple[float, float]:
        """Host-side (min, max) of a depth frame."""
        xp = self.xp
        return self.backend.scalar(xp.min(depth)), self.backend.scalar(xp.max(depth))

    def compose(self, depth, color: DeviceImage, channel_swap: bool = False) -> DeviceImage:
        """
        Build the RGBD image.

        Args:
            depth: (h, w) float32 filtered depth
            color: Source colour image, full resolution
            channel_swap: Exchange R and B in the colour half

        Returns:
            The reused (H, 2W, 4) output image
        """
        xp = self.xp
        width, height = color.width, color.height
        depth_h, depth_w = depth.shape
        self._ensure(width, height, depth_w, depth_h)
        out = self.output.data

        # Left half: colour
        left = out[:, :width]
        if channel_swap:
            xp.copyto(left[:, :, 0], color.data[:, :, 2])
            xp.copyto(left[:, :, 1], color.data[:, :, 1])
            xp.copyto(left[:, :, 2], color.data[:, :, 0])
            xp.copyto(left[:, :, 3], color.data[:, :, 3])
        else:
            xp.copyto(left, color.data)

        # Right half: normalized depth as grey
        right = out[:, width:]
        lo, hi = self.depth_range(depth)
        self.last_range = (lo, hi)
        span = hi - lo
        if span <= RANGE_EPSILON:
            right[:, :, :3] = FLAT_GREY
            return self.output

        up = self._upsampled
        xp.take(depth, self._iy, axis=0, out=self._rows)
        xp.take(self._rows, self._ix, axis=1, out=up)
        xp.subtract(up, lo, out=up)
        xp.multiply(up, 255.0 / span, out=up)
        # Round half up so that the maximum lands on 255 exactly
        xp.add(up, 0.5, out=up)
        xp.clip(up, 0.0, 255.0, out=up)
        for channel in range(3):
            xp.copyto(right[:, :, channel], up, casting="unsafe")
        return self.output
