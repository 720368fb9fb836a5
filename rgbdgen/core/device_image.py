"""
Device-resident RGBA8 images.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .backend import Backend
from .errors import InvalidImageError

CHANNELS = 4


def validate_pixels(pixels) -> None:
    """
    Reject anything that is not a non-empty (H, W, 4) uint8 array.

    Raises:
        InvalidImageError: describing the first problem found
    """
    shape = getattr(pixels, "shape", None)
    dtype = getattr(pixels, "dtype", None)
    if shape is None or dtype is None:
        raise InvalidImageError(f"Expected an array, got {type(pixels).__name__}")
    if len(shape) != 3:
        raise InvalidImageError(f"Expected (H, W, 4) image, got shape {tuple(shape)}")
    if shape[0] <= 0 or shape[1] <= 0:
        raise InvalidImageError(f"Image has zero dimension: {tuple(shape)}")
    if shape[2] != CHANNELS:
        raise InvalidImageError(f"Expected 4 channels (RGBA), got {shape[2]}")
    if dtype != np.uint8:
        raise InvalidImageError(f"Expected uint8 pixels, got {dtype}")


class DeviceImage:
    """
    An RGBA8 image stored as an (H, W, 4) uint8 array on the backend.

    Pixel (x, y) lives at ``data[y, x]``; channel order is R, G, B, A.
    """

    def __init__(self, backend: Backend, width: int, height: int, data=None):
        if width <= 0 or height <= 0:
            raise InvalidImageError(f"Image has zero dimension: {width}x{height}")
        self.backend = backend
        if data is None:
            data = backend.zeros((height, width, CHANNELS), np.uint8)
        self.data = data

    @classmethod
    def from_array(cls, backend: Backend, pixels: NDArray[np.uint8]) -> "DeviceImage":
        """Upload a host (H, W, 4) uint8 array."""
        validate_pixels(pixels)
        height, width = pixels.shape[:2]
        return cls(backend, width, height, backend.upload(pixels))

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def upload(self, pixels: NDArray[np.uint8]) -> None:
        """Overwrite the contents with a host image of the same size."""
        validate_pixels(pixels)
        if pixels.shape != self.data.shape:
            raise InvalidImageError(
                f"Image size {pixels.shape[1]}x{pixels.shape[0]} does not match "
                f"{self.width}x{self.height}"
            )
        self.backend.upload(pixels, out=self.data)

    def get_pixel(self, x: int, y: int) -> Tuple[int, int, int, int]:
        return tuple(int(v) for v in self.backend.to_host(self.data[y, x]))

    def set_pixel(self, x: int, y: int, rgba: Tuple[int, int, int, int]) -> None:
        self.data[y, x] = self.backend.upload(np.asarray(rgba, dtype=np.uint8))

    def to_host(self, out: Optional[NDArray[np.uint8]] = None) -> NDArray[np.uint8]:
        return self.backend.to_host(self.data, out=out)

    def __repr__(self) -> str:
        return f"DeviceImage({self.width}x{self.height}, {self.backend.name})"
