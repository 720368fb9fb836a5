"""Shared fixtures: CPU backend and a stub depth engine."""

from __future__ import annotations

from typing import List, Optional

import numpy as np
import pytest

from rgbdgen.config import PipelineConfig
from rgbdgen.core.backend import Backend
from rgbdgen.depth.inference import DepthEngine


class StubEngine(DepthEngine):
    """
    Depth engine without a model.

    By default depth is the mean of the three input planes plus 1, so it
    follows the image content and is always positive. A list of frames
    can be queued to be returned instead, one per call.
    """

    def __init__(self, frames: Optional[List[np.ndarray]] = None, output_shape=None):
        super().__init__()
        self.frames = list(frames or [])
        self.output_shape = output_shape
        self.calls = 0
        self.closed = False
        self.last_tensor = None

    def _run(self, tensor):
        self.calls += 1
        self.last_tensor = tensor.copy()
        if self.output_shape is not None:
            return np.ones(self.output_shape, dtype=np.float32)
        if self.frames:
            return self.frames.pop(0)[None].astype(np.float32)
        return (tensor[0].mean(axis=0) + 1.0)[None].astype(np.float32)

    def close(self):
        super().close()
        self.closed = True


@pytest.fixture
def backend():
    return Backend("cpu")


@pytest.fixture
def stub_engine():
    return StubEngine()


@pytest.fixture
def config():
    return PipelineConfig(inference_size=28, device="cpu")


def gradient_rgba(width: int, height: int) -> np.ndarray:
    """Horizontal red ramp, vertical green ramp, constant blue, opaque."""
    img = np.zeros((height, width, 4), dtype=np.uint8)
    img[..., 0] = (np.arange(width) * 255 // max(width - 1, 1))[None, :]
    img[..., 1] = (np.arange(height) * 255 // max(height - 1, 1))[:, None]
    img[..., 2] = 64
    img[..., 3] = 255
    return img


@pytest.fixture
def gradient_image():
    return gradient_rgba
