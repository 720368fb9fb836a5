"""
Image -> inference tensor preprocessing.

Resamples an RGBA8 device image to the square inference resolution and
writes normalized planar RGB into a (1, 3, S, S) float32 tensor. Gather
index tables and intermediate buffers are rebuilt only when the source
or target size changes.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from loguru import logger

from ..core.backend import Backend
from ..core.contracts import Resample
from ..core.device_image import DeviceImage
from ..core.errors import ConfigurationError

PATCH_SIZE = 14

LANCZOS_A = 2
LANCZOS_TAPS = np.arange(-LANCZOS_A, LANCZOS_A + 1)
SHARPEN_STRENGTH = 0.2
BRIGHTNESS_GAIN = 1.2


def adjust_inference_size(size: int) -> int:
    """Floor to a multiple of the model patch size, minimum one patch."""
    return max(PATCH_SIZE, (int(size) // PATCH_SIZE) * PATCH_SIZE)


def nearest_indices(src: int, dst: int, border: float = 0.0) -> NDArray[np.int32]:
    """Source index for each of ``dst`` output samples, cropping ``border`` (fraction) symmetrically."""
    u = (np.arange(dst, dtype=np.float64) + 0.5) / dst
    adjusted = border * 0.5 + u * (1.0 - border)
    return np.minimum((adjusted * src).astype(np.int32), src - 1)


def lanczos_kernel(x: NDArray[np.float64], a: int = LANCZOS_A) -> NDArray[np.float64]:
    out = np.sinc(x) * np.sinc(x / a)
    out[np.abs(x) >= a] = 0.0
    return out


def lanczos_table(src: int, dst: int, border: float = 0.0) -> Tuple[NDArray[np.int32], NDArray[np.float32]]:
    """
    Tap indices and normalized weights for separable Lanczos resampling.

    Returns:
        (indices, weights), both shaped (dst, taps); indices are clamped
        to the source so that edge pixels repeat.
    """
    u = (np.arange(dst, dtype=np.float64) + 0.5) / dst
    pos = (border * 0.5 + u * (1.0 - border)) * src
    centre = np.floor(pos)
    frac = pos - centre
    # Distance from each tap's pixel centre to the sample position
    dist = LANCZOS_TAPS[None, :] + 0.5 - frac[:, None]
    weights = lanczos_kernel(dist)
    weights /= weights.sum(axis=1, keepdims=True)
    indices = np.clip(centre[:, None] + LANCZOS_TAPS[None, :], 0, src - 1).astype(np.int32)
    return indices, weights.astype(np.float32)


class Preprocessor:
    """
    Resample + normalize into the inference tensor.

    Usage:
        pre = Preprocessor(backend, 518)
        pre.run(image, channel_swap=False)
        pre.tensor  # (1, 3, 518, 518) float32 in [0, 1]
    """

    def __init__(
        self,
        backend: Backend,
        size: int,
        border: float = 0.0,
        resample: Resample = Resample.NEAREST,
    ):
        """
        Args:
            backend: Array backend
            size: Requested inference size (floored to a multiple of 14)
            border: Fraction of the source cropped symmetrically, [0, 1)
            resample: NEAREST (realtime) or LANCZOS (quality)
        """
        if not 0.0 <= border < 1.0:
            raise ConfigurationError(f"border={border} outside [0, 1)")
        self.backend = backend
        self.xp = backend.xp
        self.border = border
        self.resample = Resample(resample)
        self.size = adjust_inference_size(size)
        self.tensor = backend.zeros((1, 3, self.size, self.size))
        self._source_size: Optional[Tuple[int, int]] = None
        logger.debug(f"Preprocessor target {self.size}x{self.size} ({self.resample.value})")

    def _ensure_tables(self, width: int, height: int) -> None:
        if self._source_size == (width, height):
            return
        b = self.backend
        s = self.size
        if self.resample is Resample.NEAREST:
            self._ix = b.upload(nearest_indices(width, s, self.border))
            self._iy = b.upload(nearest_indices(height, s, self.border))
            self._rows = b.empty((s, width, 3), np.uint8)
            self._gathered = b.empty((s, s, 3), np.uint8)
        else:
            ix, wx = lanczos_table(width, s, self.border)
            iy, wy = lanczos_table(height, s, self.border)
            self._ix = b.upload(np.ascontiguousarray(ix.T))
            self._iy = b.upload(np.ascontiguousarray(iy.T))
            self._wx = b.upload(np.ascontiguousarray(wx.T))
            self._wy = b.upload(np.ascontiguousarray(wy.T))
            # 3x3 box around the nearest source pixel for the unsharp mask
            cx = nearest_indices(width, s, self.border)
            cy = nearest_indices(height, s, self.border)
            self._box_x = b.upload(np.stack([np.clip(cx + o, 0, width - 1) for o in (-1, 0, 1)]))
            self._box_y = b.upload(np.stack([np.clip(cy + o, 0, height - 1) for o in (-1, 0, 1)]))
            self._rows = b.empty((s, width, 3), np.uint8)
            self._rows_f = b.empty((s, width, 3))
            self._vert = b.empty((s, width, 3))
            self._cols = b.empty((s, s, 3))
            self._gathered_u8 = b.empty((s, s, 3), np.uint8)
            self._color = b.empty((s, s, 3))
            self._blur = b.empty((s, s, 3))
            self._tmp = b.empty((s, s, 3))
        self._source_size = (width, height)
        logger.debug(f"Preprocess tables rebuilt for {width}x{height} -> {s}x{s}")

    def run(self, image: DeviceImage, channel_swap: bool = False):
        """Fill ``self.tensor`` from ``image``; returns the tensor."""
        self._ensure_tables(image.width, image.height)
        rgb = image.data[:, :, :3]
        if self.resample is Resample.NEAREST:
            self._run_nearest(rgb, channel_swap)
        else:
            self._run_lanczos(rgb, channel_swap)
        return self.tensor

    def _write_planes(self, pixels, scale: float, channel_swap: bool) -> None:
        order = (2, 1, 0) if channel_swap else (0, 1, 2)
        for plane, channel in enumerate(order):
            self.xp.multiply(pixels[:, :, channel], scale, out=self.tensor[0, plane])

    def _run_nearest(self, rgb, channel_swap: bool = False) -> None:
        xp = self.xp
        xp.take(rgb, self._iy, axis=0, out=self._rows)
        xp.take(self._rows, self._ix, axis=1, out=self._gathered)
        self._write_planes(self._gathered, 1.0 / 255.0, channel_swap)

    def _run_lanczos(self, rgb, channel_swap: bool = False) -> None:
        xp = self.xp

        # Vertical pass over full-width rows
        self._vert.fill(0)
        for k in range(len(LANCZOS_TAPS)):
            xp.take(rgb, self._iy[k], axis=0, out=self._rows)
            xp.multiply(self._rows, self._wy[k][:, None, None], out=self._rows_f)
            xp.add(self._vert, self._rows_f, out=self._vert)

        # Horizontal pass
        color = self._color
        color.fill(0)
        for k in range(len(LANCZOS_TAPS)):
            xp.take(self._vert, self._ix[k], axis=1, out=self._cols)
            xp.multiply(self._cols, self._wx[k][None, :, None], out=self._cols)
            xp.add(color, self._cols, out=color)

        # Unsharp mask against a 3x3 box blur of the source
        blur = self._blur
        blur.fill(0)
        for oy in range(3):
            xp.take(rgb, self._box_y[oy], axis=0, out=self._rows)
            for ox in range(3):
                xp.take(self._rows, self._box_x[ox], axis=1, out=self._gathered_u8)
                xp.add(blur, self._gathered_u8, out=blur)
        xp.multiply(blur, 1.0 / 9.0, out=blur)

        xp.subtract(color, blur, out=self._tmp)
        xp.multiply(self._tmp, SHARPEN_STRENGTH, out=self._tmp)
        xp.add(color, self._tmp, out=color)
        xp.multiply(color, BRIGHTNESS_GAIN / 255.0, out=color)
        xp.clip(color, 0.0, 1.0, out=color)
        self._write_planes(color, 1.0, channel_swap)
