"""
Depth stages of the generator.

Responsibilities:
- Preprocessing into the inference tensor
- Depth inference (ONNX / TorchScript)
- Rolling window of raw depth history
- Edge/motion-aware temporal filtering
- Optional auto-focus remap
- Side-by-side RGBD composition
"""

from .autofocus import AutoFocus
from .compose import RGBDCompositor
from .inference import (
    DepthEngine,
    OnnxDepthEngine,
    TorchScriptDepthEngine,
    check_output_shape,
    load_engine,
)
from .preprocess import Preprocessor, adjust_inference_size
from .rolling_window import RollingWindow
from .temporal_filter import FAST_PATH_CONFIDENCE, TemporalFilter
