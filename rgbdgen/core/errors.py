"""
Exception hierarchy for the RGBD generator.

Construction-time problems (bad model, bad parameters) are fatal and
never retried. Degenerate numeric input such as a flat depth map is
handled in the kernels and is never an error.
"""


class RGBDError(Exception):
    """Base class for all generator errors."""


class ConfigurationError(RGBDError):
    """Invalid model path, device, parameter range or inference size."""


class ModelOutputError(ConfigurationError):
    """Inference output does not have the configured (H, W) shape."""


class InvalidImageError(RGBDError, ValueError):
    """Input image rejected at the pipeline boundary."""


class ResourceExhaustedError(RGBDError, MemoryError):
    """Accelerator buffer allocation failed."""


class PipelineClosedError(RGBDError, RuntimeError):
    """Generator used after close()."""
