"""
Depth inference engines.

An engine takes the host (1, 3, S, S) float32 tensor and returns relative
depth at the same resolution. Two backends are provided:

- OnnxDepthEngine: onnxruntime session (CUDA provider when available)
- TorchScriptDepthEngine: torch.jit module

Anything with ``infer(tensor) -> ndarray`` and ``close()`` can be injected
into the generator instead.
"""

from __future__ import annotations

import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import numpy as np
from numpy.typing import NDArray
from loguru import logger

from ..core.errors import ConfigurationError, ModelOutputError

ONNX_SUFFIXES = (".onnx",)
TORCHSCRIPT_SUFFIXES = (".pt", ".ts", ".pth")


def check_output_shape(output: NDArray[np.float32], height: int, width: int) -> NDArray[np.float32]:
    """
    Validate an engine result and return it as an (H, W) float32 view.

    Accepts (1, H, W) and (1, 1, H, W).

    Raises:
        ModelOutputError: if the shape does not match the configured size
    """
    shape = tuple(output.shape)
    if shape == (1, height, width):
        return output[0].astype(np.float32, copy=False)
    if shape == (1, 1, height, width):
        return output[0, 0].astype(np.float32, copy=False)
    raise ModelOutputError(
        f"Model output shape {shape} does not match expected (1, {height}, {width})"
    )


class DepthEngine(ABC):
    """Inference backend contract."""

    def __init__(self):
        # Performance tracking
        self._inference_times: List[float] = []

    @abstractmethod
    def _run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        ...

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the model on a (1, 3, S, S) tensor."""
        start = time.perf_counter()
        output = self._run(tensor)
        self._inference_times.append((time.perf_counter() - start) * 1000)
        if len(self._inference_times) > 100:
            self._inference_times.pop(0)
        return output

    @property
    def average_inference_time_ms(self) -> float:
        if not self._inference_times:
            return 0.0
        return sum(self._inference_times) / len(self._inference_times)

    def close(self) -> None:
        self._inference_times.clear()


class OnnxDepthEngine(DepthEngine):
    """
    onnxruntime session over a depth model exported to ONNX.

    The first graph input receives the tensor; the first output is the depth.
    """

    def __init__(self, model_path: str, use_cuda: bool = True, num_threads: Optional[int] = None):
        """
        Args:
            model_path: Path to the .onnx file
            use_cuda: Prefer CUDAExecutionProvider (falls back to CPU)
            num_threads: Intra-op threads (default: all cores)
        """
        super().__init__()
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise ConfigurationError("onnxruntime is required for .onnx models") from e

        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED
        options.intra_op_num_threads = num_threads or os.cpu_count() or 1
        options.log_severity_level = 3

        available = ort.get_available_providers()
        providers: list = []
        if use_cuda and "CUDAExecutionProvider" in available:
            providers.append((
                "CUDAExecutionProvider",
                {
                    "cudnn_conv_use_max_workspace": "1",
                    "cudnn_conv1d_pad_to_nc1d": "1",
                },
            ))
        providers.append("CPUExecutionProvider")

        try:
            self._session = ort.InferenceSession(str(model_path), sess_options=options, providers=providers)
        except Exception as e:
            raise ConfigurationError(f"Failed to load ONNX model {model_path}: {e}") from e

        self._input_name = self._session.get_inputs()[0].name
        self._output_name = self._session.get_outputs()[0].name
        logger.info(
            f"ONNX depth model loaded: {Path(model_path).name} "
            f"(input '{self._input_name}', providers {self._session.get_providers()})"
        )

    def _run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        return self._session.run([self._output_name], {self._input_name: tensor})[0]

    def close(self) -> None:
        super().close()
        self._session = None


class TorchScriptDepthEngine(DepthEngine):
    """torch.jit depth model."""

    def __init__(self, model_path: str, device: str = "cuda"):
        super().__init__()
        try:
            import torch
        except ImportError as e:
            raise ConfigurationError("torch is required for TorchScript models") from e

        self._torch = torch
        if device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA not available for torch, running depth model on CPU")
            device = "cpu"
        self.device = device

        try:
            self._model = torch.jit.load(str(model_path), map_location=device)
        except (RuntimeError, ValueError) as e:
            raise ConfigurationError(f"Failed to load TorchScript model {model_path}: {e}") from e
        self._model.eval()
        logger.info(f"TorchScript depth model loaded: {Path(model_path).name} on {device}")

    def _run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        torch = self._torch
        with torch.inference_mode():
            x = torch.from_numpy(tensor).to(self.device)
            out = self._model(x)
            if isinstance(out, (tuple, list)):
                out = out[0]
            return out.float().cpu().numpy()

    def close(self) -> None:
        super().close()
        self._model = None


def load_engine(model_path: str, use_cuda: bool = True) -> DepthEngine:
    """
    Open an engine chosen by file extension.

    Raises:
        ConfigurationError: missing file or unsupported extension
    """
    path = Path(model_path)
    if not path.is_file():
        raise ConfigurationError(f"Model file not found: {model_path}")

    suffix = path.suffix.lower()
    if suffix in ONNX_SUFFIXES:
        return OnnxDepthEngine(str(path), use_cuda=use_cuda)
    if suffix in TORCHSCRIPT_SUFFIXES:
        return TorchScriptDepthEngine(str(path), device="cuda" if use_cuda else "cpu")
    raise ConfigurationError(
        f"Unsupported model format '{suffix}', expected one of {ONNX_SUFFIXES + TORCHSCRIPT_SUFFIXES}"
    )
