"""
Auto-focus depth remap.

Finds the dominant depth of the scene from a centre-weighted histogram and
shifts the normalized depth so that this plane sits in the middle of the
range, which keeps the subject at the display's zero-parallax plane.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from loguru import logger

from ..core.backend import Backend
from ..core.contracts import AutoFocusConfig, FocusResult
from .compose import RANGE_EPSILON

HISTOGRAM_BINS = 256
SMOOTHING_RADIUS = 2
MIN_PEAK_HEIGHT = 100.0   # in centre-weight units scaled by 1000
MIN_PEAK_DISTANCE = 10
MAX_PEAKS = 20
COMPRESSION_SCALE = 0.25


def centre_weights(width: int, height: int) -> NDArray[np.float32]:
    """1.0 at the image centre falling to 0.1 towards the corners."""
    nx = np.arange(width, dtype=np.float32) / width - 0.5
    ny = np.arange(height, dtype=np.float32) / height - 0.5
    dist = np.sqrt(nx[None, :] ** 2 + ny[:, None] ** 2)
    return (1.0 - np.minimum(dist * 1.5, 0.9)).astype(np.float32)


def smooth_histogram(histogram: NDArray[np.float64], radius: int = SMOOTHING_RADIUS) -> NDArray[np.float64]:
    """Moving average over 2 * radius + 1 bins, truncated at the ends."""
    kernel = np.ones(2 * radius + 1)
    sums = np.convolve(histogram, kernel, mode="same")
    counts = np.convolve(np.ones_like(histogram), kernel, mode="same")
    return sums / counts


def find_peaks(smoothed: NDArray[np.float64]) -> List[Tuple[int, float]]:
    """
    Local maxima above MIN_PEAK_HEIGHT, at least MIN_PEAK_DISTANCE apart.

    A taller maximum inside an existing peak's neighbourhood replaces it.
    """
    peaks: List[List] = []
    for i in range(2, len(smoothed) - 2):
        h = smoothed[i]
        if h <= MIN_PEAK_HEIGHT:
            continue
        if not (h > smoothed[i - 2] and h > smoothed[i - 1] and h > smoothed[i + 1] and h > smoothed[i + 2]):
            continue
        for peak in peaks:
            if abs(i - peak[0]) < MIN_PEAK_DISTANCE:
                if h > peak[1]:
                    peak[0], peak[1] = i, h
                break
        else:
            if len(peaks) < MAX_PEAKS:
                peaks.append([i, h])
    return [(int(p), float(h)) for p, h in peaks]


def focus_from_histogram(histogram: NDArray[np.float64]) -> FocusResult:
    """Height-weighted centre of the two tallest peaks."""
    smoothed = smooth_histogram(histogram)
    last = len(histogram) - 1
    peaks = find_peaks(smoothed)
    if not peaks:
        return FocusResult(float(np.argmax(smoothed)) / last, 0.5, histogram.astype(np.float32))

    peaks.sort(key=lambda p: p[1], reverse=True)
    top = peaks[:2]
    total = sum(h for _, h in top)
    focus = sum(pos * h for pos, h in top) / (total * last)
    confidence = top[0][1] / (total + 1.0)
    return FocusResult(focus, confidence, histogram.astype(np.float32))


class AutoFocus:
    """
    Histogram analysis + remap, applied in place to a filtered depth frame.

    Usage:
        af = AutoFocus(backend, AutoFocusConfig(enabled=True, strength=0.5))
        result = af.apply(depth)
    """

    def __init__(self, backend: Backend, config: Optional[AutoFocusConfig] = None):
        self.backend = backend
        self.xp = backend.xp
        self.config = config if config is not None else AutoFocusConfig()
        self._shape: Optional[Tuple[int, int]] = None
        self.last_result: Optional[FocusResult] = None

    def _ensure(self, height: int, width: int) -> None:
        if self._shape == (height, width):
            return
        b = self.backend
        # Contributions are centre weight x 1000, truncated
        self._weights = b.upload(np.floor(centre_weights(width, height) * 1000.0))
        self._norm = b.empty((height, width))
        self._wbuf = b.empty((height, width))
        self._bins = b.empty((height, width), np.int32)
        self._valid = b.empty((height, width), bool)
        self._tmp = b.empty((height, width))
        self._shape = (height, width)

    def analyze(self, depth) -> Optional[FocusResult]:
        """Focus depth in normalized [0, 1] units; None for flat frames."""
        xp = self.xp
        self._ensure(*depth.shape)
        lo = self.backend.scalar(xp.min(depth))
        hi = self.backend.scalar(xp.max(depth))
        span = hi - lo
        if span <= RANGE_EPSILON:
            return None

        norm = self._norm
        xp.subtract(depth, lo, out=norm)
        xp.multiply(norm, 1.0 / span, out=norm)

        xp.multiply(norm, HISTOGRAM_BINS - 1, out=self._tmp)
        xp.copyto(self._bins, self._tmp, casting="unsafe")
        xp.clip(self._bins, 0, HISTOGRAM_BINS - 1, out=self._bins)

        xp.greater(depth, 0, out=self._valid)
        xp.multiply(self._weights, self._valid, out=self._wbuf)
        hist = xp.bincount(self._bins.ravel(), weights=self._wbuf.ravel(), minlength=HISTOGRAM_BINS)
        result = focus_from_histogram(self.backend.to_host(hist).astype(np.float64))
        self._range = (lo, span)
        return result

    def apply(self, depth) -> Optional[FocusResult]:
        """Remap ``depth`` in place around the detected focus plane."""
        if not self.config.enabled:
            return None
        result = self.analyze(depth)
        self.last_result = result
        if result is None:
            return None

        xp = self.xp
        lo, span = self._range
        strength = self.config.strength
        focus = result.focus_depth
        norm, tmp = self._norm, self._tmp

        # Distance to the focus plane, signed towards it
        xp.subtract(focus, norm, out=tmp)
        xp.multiply(tmp, tmp, out=self._wbuf)
        xp.multiply(self._wbuf, strength * COMPRESSION_SCALE, out=self._wbuf)
        xp.sign(tmp, out=tmp)
        xp.multiply(self._wbuf, tmp, out=self._wbuf)

        xp.add(norm, (0.5 - focus) * strength, out=norm)
        xp.add(norm, self._wbuf, out=norm)
        xp.clip(norm, 0.0, 1.0, out=norm)
        xp.multiply(norm, span, out=norm)
        xp.add(norm, lo, out=norm)

        xp.greater(depth, 0, out=self._valid)
        xp.copyto(depth, norm, where=self._valid)
        logger.debug(f"Auto-focus at {focus:.3f} (confidence {result.confidence:.2f})")
        return result
