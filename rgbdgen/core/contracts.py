"""
Core data contracts for the RGBD generator.

Parameter blocks are validated on construction and on every mutation so
that a running pipeline never sees an out-of-range filter scalar.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError


# ============================================================
# ENUMERATIONS
# ============================================================

class SourceMode(Enum):
    """Kind of asset feeding the generator."""
    IMAGE = "image"
    VIDEO = "video"
    CAMERA = "camera"
    VIDEO_RECORD = "video_record"


class Resample(Enum):
    """Preprocessing resampling filter."""
    NEAREST = "nearest"
    LANCZOS = "lanczos"


# ============================================================
# PARAMETER BLOCKS
# ============================================================

# name -> (low, high), inclusive
FILTER_PARAMETER_RANGES: Dict[str, Tuple[float, float]] = {
    "edge_threshold": (1.0, 10.0),
    "motion_threshold": (1.0, 8.0),
    "temporal_decay": (1.0, 5.0),
    "similarity_delta": (0.5, 5.0),
    "similarity_sigma": (1.0, 10.0),
    "variance_threshold": (0.5, 5.0),
    "spatial_radius": (0.5, 3.0),
}


@dataclass
class FilterParameters:
    """Tunable scalars of the temporal filter.

    Attributes:
        edge_threshold: Depth jump treated as a full-confidence edge
        motion_threshold: Depth change vs. history treated as full motion
        temporal_decay: Frames over which history weight falls by 1/e
        similarity_delta: Difference below which a sample counts as similar
        similarity_sigma: Falloff of the similarity weight beyond the delta
        variance_threshold: Std-dev above which the result falls back to raw
        spatial_radius: Neighbour offset (px) for the spatial boost
    """
    edge_threshold: float = 5.0
    motion_threshold: float = 5.0
    temporal_decay: float = 2.5
    similarity_delta: float = 2.0
    similarity_sigma: float = 3.0
    variance_threshold: float = 2.5
    spatial_radius: float = 2.0

    def __post_init__(self):
        for f in fields(self):
            self._check(f.name, getattr(self, f.name))

    def __setattr__(self, name, value):
        if name in FILTER_PARAMETER_RANGES:
            self._check(name, value)
            value = float(value)
        super().__setattr__(name, value)

    @staticmethod
    def _check(name: str, value) -> None:
        low, high = FILTER_PARAMETER_RANGES[name]
        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name} must be a number, got {value!r}") from e
        if not low <= value <= high:
            raise ConfigurationError(f"{name}={value} outside [{low}, {high}]")

    def update(self, **values) -> None:
        """Set several parameters at once; unknown names raise."""
        for name, value in values.items():
            if name not in FILTER_PARAMETER_RANGES:
                raise ConfigurationError(f"Unknown filter parameter '{name}'")
            setattr(self, name, value)

    @property
    def neighbor_radius(self) -> int:
        """Integer pixel offset used for spatial sampling (at least 1)."""
        return max(1, int(self.spatial_radius))


@dataclass
class AutoFocusConfig:
    """Auto-focus depth remap settings."""
    enabled: bool = False
    strength: float = 0.5

    def __post_init__(self):
        if not 0.0 <= self.strength <= 1.0:
            raise ConfigurationError(f"autofocus strength={self.strength} outside [0, 1]")


@dataclass
class InferenceSizes:
    """Requested inference resolution per source mode."""
    image: int = 1024
    video: int = 518
    camera: int = 518
    video_record: int = 518

    def for_mode(self, mode: SourceMode) -> int:
        return getattr(self, mode.value)


# ============================================================
# RESULTS
# ============================================================

@dataclass
class FrameStats:
    """Per-call stage timings in milliseconds."""
    frame_index: int = 0
    preprocess_ms: float = 0.0
    inference_ms: float = 0.0
    filter_ms: float = 0.0
    compose_ms: float = 0.0
    total_ms: float = 0.0
    warm: bool = False


@dataclass
class FocusResult:
    """Auto-focus analysis of one depth frame."""
    focus_depth: float = 0.5   # normalized [0, 1]
    confidence: float = 0.0
    histogram: Optional[NDArray[np.float32]] = field(default=None, repr=False)
