"""
Real-time RGBD generator.

Turns colour frames into side-by-side colour + depth images using a
monocular depth model and an edge/motion-aware temporal filter.
"""

from rgbdgen.config import PipelineConfig, load_config
from rgbdgen.core import (
    Backend,
    ConfigurationError,
    DeviceImage,
    FilterParameters,
    InvalidImageError,
    ModelOutputError,
    PipelineClosedError,
    ResourceExhaustedError,
    RGBDError,
)
from rgbdgen.pipeline import AssetHandler, DepthGenerator

__version__ = "0.1.0"
