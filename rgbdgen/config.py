"""
Configuration for the RGBD generator.

Settings come from (lowest to highest priority) the dataclass defaults,
``config/settings.yaml`` and command-line flags. A preset fills in the
resampling filter, crop border and latency budget.

To add a new preset:
1. Add an entry to PRESETS with all three keys
2. Optionally make it ACTIVE_PRESET
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from rgbdgen.core.contracts import (
    AutoFocusConfig,
    FilterParameters,
    InferenceSizes,
    Resample,
)
from rgbdgen.core.errors import ConfigurationError


# === QUALITY PRESETS ===
PRESETS = {
    "REALTIME": {
        "resample": "nearest",      # Gather-only preprocessing
        "border": 0.0,              # Fraction of the source cropped
        "latency_budget_ms": 33.0,  # Warn above this per frame
    },
    "QUALITY": {
        "resample": "lanczos",
        "border": 0.0,
        "latency_budget_ms": 66.0,
    },
    "STILL": {
        "resample": "lanczos",
        "border": 0.0,
        "latency_budget_ms": 1000.0,
    },
}

# Default preset
ACTIVE_PRESET = "REALTIME"

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"


@dataclass
class PipelineConfig:
    """Main configuration for the generator.

    Attributes:
        model_path: Depth model (.onnx, or .pt/.ts TorchScript)
        inference_size: Requested square inference resolution
        device: "auto", "cuda" or "cpu"
        channel_swap: Treat input as BGRA (swap R and B)
        preset: Quality preset name
        output_dir: Where saved images, screenshots and recordings go
        filter: Temporal filter scalars
        autofocus: Auto-focus remap settings
        inference_sizes: Per-source-mode inference resolution
    """
    model_path: str = "models/depth_anything_v2_vits.onnx"
    inference_size: int = 518
    device: str = "auto"
    channel_swap: bool = False
    preset: str = ACTIVE_PRESET
    output_dir: str = "outputs"

    filter: FilterParameters = field(default_factory=FilterParameters)
    autofocus: AutoFocusConfig = field(default_factory=AutoFocusConfig)
    inference_sizes: InferenceSizes = field(default_factory=InferenceSizes)

    # Computed from preset (set in __post_init__)
    resample: Resample = field(default=Resample.NEAREST, init=False)
    border: float = field(default=0.0, init=False)
    latency_budget_ms: float = field(default=33.0, init=False)

    def __post_init__(self):
        """Apply preset settings."""
        if self.preset not in PRESETS:
            raise ConfigurationError(f"Unknown preset '{self.preset}', expected one of {list(PRESETS)}")
        if self.inference_size < 1:
            raise ConfigurationError(f"inference_size must be positive, got {self.inference_size}")
        preset = PRESETS[self.preset]
        self.resample = Resample(preset["resample"])
        self.border = preset["border"]
        self.latency_budget_ms = preset["latency_budget_ms"]


_SECTIONS = {
    "filter": FilterParameters,
    "autofocus": AutoFocusConfig,
    "inference_sizes": InferenceSizes,
}


def _build_section(name: str, cls, values: Any):
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigurationError(f"'{name}' section must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}': {sorted(unknown)}")
    return cls(**values)


def config_from_dict(data: Dict[str, Any]) -> PipelineConfig:
    """
    Build a PipelineConfig from a parsed settings mapping.

    Raises:
        ConfigurationError: unknown keys or out-of-range values
    """
    known = {f.name for f in fields(PipelineConfig) if f.init}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

    kwargs = {k: v for k, v in data.items() if k not in _SECTIONS}
    for name, cls in _SECTIONS.items():
        kwargs[name] = _build_section(name, cls, data.get(name))
    try:
        return PipelineConfig(**kwargs)
    except TypeError as e:
        raise ConfigurationError(str(e)) from e


def load_config(path: Optional[str] = None) -> PipelineConfig:
    """Load configuration from YAML.

    Args:
        path: Settings file, or None for config/settings.yaml

    Returns:
        PipelineConfig; defaults when the file does not exist
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path:
            logger.warning(f"Config file {config_path} not found, using defaults")
        return PipelineConfig()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    logger.info(f"Loaded configuration from {config_path}")
    return config_from_dict(data)
