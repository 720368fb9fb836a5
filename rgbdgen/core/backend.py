"""
Array backend selection.

Every kernel in the generator is a whole-frame vectorized program over an
array module ``xp``: CuPy when a CUDA device is usable, numpy otherwise.
Buffers are allocated through ``Backend.empty``/``Backend.zeros`` so that an
out-of-memory condition surfaces as ``ResourceExhaustedError``.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

import numpy as np
from loguru import logger

from .errors import ConfigurationError, ResourceExhaustedError

# Try to import CuPy for GPU acceleration
try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    CUPY_AVAILABLE = False
    cp = None

DEVICES = ("auto", "cuda", "cpu")


def _cuda_device_count() -> int:
    if not CUPY_AVAILABLE:
        return 0
    try:
        return cp.cuda.runtime.getDeviceCount()
    except cp.cuda.runtime.CUDARuntimeError as e:
        logger.debug(f"CUDA runtime unavailable: {e}")
        return 0


class Backend:
    """
    Array module plus host/device transfer helpers.

    Attributes:
        name: "cuda" or "cpu"
        xp: cupy or numpy
    """

    def __init__(self, device: str = "auto"):
        """
        Select the array module.

        Args:
            device: "auto" (CUDA when available), "cuda" (required) or "cpu"
        """
        if device not in DEVICES:
            raise ConfigurationError(f"Unknown device '{device}', expected one of {DEVICES}")

        if device == "cpu":
            self.name = "cpu"
            self.xp = np
        elif _cuda_device_count() > 0:
            self.name = "cuda"
            self.xp = cp
        elif device == "cuda":
            raise ConfigurationError("device='cuda' requested but no CUDA device is usable")
        else:
            logger.info("No CUDA device available, falling back to numpy on CPU")
            self.name = "cpu"
            self.xp = np

        logger.info(f"Array backend: {self.name} ({self.xp.__name__})")

    @property
    def is_gpu(self) -> bool:
        return self.name == "cuda"

    def empty(self, shape: Tuple[int, ...], dtype: Any = np.float32):
        try:
            return self.xp.empty(shape, dtype=dtype)
        except MemoryError as e:
            raise ResourceExhaustedError(f"Failed to allocate {shape} {np.dtype(dtype).name}: {e}") from e

    def zeros(self, shape: Tuple[int, ...], dtype: Any = np.float32):
        try:
            return self.xp.zeros(shape, dtype=dtype)
        except MemoryError as e:
            raise ResourceExhaustedError(f"Failed to allocate {shape} {np.dtype(dtype).name}: {e}") from e

    def upload(self, host: np.ndarray, out=None):
        """Copy a host array to the device, into ``out`` when given."""
        if out is None:
            try:
                return self.xp.array(host)
            except MemoryError as e:
                raise ResourceExhaustedError(f"Failed to upload {host.shape}: {e}") from e
        if self.is_gpu:
            out.set(np.ascontiguousarray(host, dtype=out.dtype))
        else:
            np.copyto(out, host, casting="unsafe")
        return out

    def to_host(self, arr, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Copy a device array to the host, into ``out`` when given."""
        if self.is_gpu:
            if out is None:
                return cp.asnumpy(arr)
            arr.get(out=out)
            return out
        if out is None:
            return arr
        np.copyto(out, arr)
        return out

    def scalar(self, value) -> float:
        """Device 0-d array to a Python float."""
        return float(value)

    def synchronize(self) -> None:
        if self.is_gpu:
            cp.cuda.get_current_stream().synchronize()

    def __repr__(self) -> str:
        return f"Backend({self.name!r})"
