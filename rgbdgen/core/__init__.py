"""
Core components shared by every stage of the generator.

- Array backend (CuPy on CUDA, numpy on CPU)
- Device-resident RGBA images
- Parameter and result contracts
- Exception hierarchy
"""

from .backend import Backend, CUPY_AVAILABLE
from .contracts import (
    AutoFocusConfig,
    FilterParameters,
    FocusResult,
    FrameStats,
    InferenceSizes,
    Resample,
    SourceMode,
)
from .device_image import DeviceImage, validate_pixels
from .errors import (
    ConfigurationError,
    InvalidImageError,
    ModelOutputError,
    PipelineClosedError,
    ResourceExhaustedError,
    RGBDError,
)
