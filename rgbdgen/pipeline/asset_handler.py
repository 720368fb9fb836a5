"""
Asset handling around the generator.

Responsibilities:
- Per-mode inference resolution (stills at high resolution, live at low)
- Result cache for repeated still images
- Saving stills and screenshots as PNG, recording RGBD video as mp4
"""

from __future__ import annotations

import time
from collections import OrderedDict
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from rgbdgen.capture.frame_buffer import Frame
from rgbdgen.capture.video_capture import bgr_to_rgba
from rgbdgen.core.contracts import InferenceSizes, SourceMode
from rgbdgen.core.errors import InvalidImageError
from rgbdgen.depth.preprocess import adjust_inference_size
from rgbdgen.pipeline.orchestrator import DepthGenerator


def timestamp() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


class AssetHandler:
    """
    Drives a DepthGenerator for a particular kind of asset.

    Switching modes changes the inference size only when the adjusted
    size actually differs, so live sources keep their history.
    """

    def __init__(
        self,
        generator: DepthGenerator,
        sizes: Optional[InferenceSizes] = None,
        output_dir: str = "outputs",
        save_outputs: bool = False,
        cache_size: int = 8,
    ):
        """
        Args:
            generator: Generator to drive
            sizes: Inference size per mode
            output_dir: Directory for PNGs and recordings
            save_outputs: Save every still result as PNG
            cache_size: Still results kept, least recently used evicted first
        """
        self.generator = generator
        self.sizes = sizes or InferenceSizes()
        self.output_dir = Path(output_dir)
        self.save_outputs = save_outputs
        self.cache_size = cache_size

        self._mode: Optional[SourceMode] = None
        self._cache: "OrderedDict[str, NDArray[np.uint8]]" = OrderedDict()
        self._last_output: Optional[NDArray[np.uint8]] = None
        self._writer: Optional[cv2.VideoWriter] = None
        self._recording_path: Optional[Path] = None
        self._recorded_frames = 0

    @property
    def mode(self) -> Optional[SourceMode]:
        return self._mode

    @property
    def last_output(self) -> Optional[NDArray[np.uint8]]:
        return self._last_output

    @property
    def is_recording(self) -> bool:
        return self._writer is not None

    def set_mode(self, mode: SourceMode) -> int:
        """
        Switch asset mode.

        Returns:
            Inference size in use after the switch
        """
        mode = SourceMode(mode)
        target = adjust_inference_size(self.sizes.for_mode(mode))
        if target != self.generator.inference_size:
            self.generator.update_inference_size(target)
        if mode is not self._mode:
            logger.info(f"Asset mode: {mode.value} (inference {target}x{target})")
        self._mode = mode
        return self.generator.inference_size

    # ===== stills =====

    def process_image(self, path: str) -> NDArray[np.uint8]:
        """
        RGBD output for a still image file, cached by path.

        Returns a copy; the cached result is never handed out.

        Raises:
            InvalidImageError: file missing or not decodable
        """
        key = str(Path(path).resolve())
        if key in self._cache:
            logger.debug(f"Using cached result for {Path(path).name}")
            self._cache.move_to_end(key)
            self._last_output = self._cache[key]
            return self._last_output.copy()

        image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        if image is None:
            raise InvalidImageError(f"Could not read image: {path}")

        self.set_mode(SourceMode.IMAGE)
        # Stills never share history with whatever ran before
        self.generator.reset()
        output = self.generator.compute_depth(bgr_to_rgba(image)).to_host().copy()

        self._cache[key] = output
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        self._last_output = output
        if self.save_outputs:
            self.save_png(output, f"output_{Path(path).stem}_{timestamp()}.png")
        return output.copy()

    def clear_cache(self) -> None:
        self._cache.clear()

    # ===== streams =====

    def process_frame(self, frame: Frame) -> NDArray[np.uint8]:
        """RGBD output for one video/camera frame; written to the recording if active."""
        result = self.generator.compute_depth(frame.pixels)
        output = result.to_host()
        self._last_output = output
        if self._writer is not None:
            self._writer.write(cv2.cvtColor(output, cv2.COLOR_RGBA2BGR))
            self._recorded_frames += 1
        return output

    def start_recording(self, width: int, height: int, fps: float = 30.0,
                        path: Optional[str] = None) -> Path:
        """
        Open an mp4 writer for RGBD frames of a (width x height) source.

        The recorded frame size is (2 * width) x height.
        """
        if self._writer is not None:
            self.stop_recording()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        out_path = Path(path) if path else self.output_dir / f"rgbd_{timestamp()}.mp4"
        fourcc = cv2.VideoWriter_fourcc(*"mp4v")
        writer = cv2.VideoWriter(str(out_path), fourcc, fps or 30.0, (2 * width, height))
        if not writer.isOpened():
            raise OSError(f"Could not open video writer: {out_path}")
        self._writer = writer
        self._recording_path = out_path
        self._recorded_frames = 0
        logger.info(f"Recording to {out_path}")
        return out_path

    def stop_recording(self) -> Optional[Path]:
        if self._writer is None:
            return None
        self._writer.release()
        self._writer = None
        logger.info(f"Recording saved: {self._recording_path} ({self._recorded_frames} frames)")
        return self._recording_path

    # ===== saving =====

    def save_png(self, output: NDArray[np.uint8], name: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / name
        if not cv2.imwrite(str(path), cv2.cvtColor(output, cv2.COLOR_RGBA2BGRA)):
            raise OSError(f"Could not write {path}")
        logger.info(f"Saved {path}")
        return path

    def save_screenshot(self) -> Optional[Path]:
        """Save the most recent output; None if nothing was produced yet."""
        if self._last_output is None:
            logger.warning("No output to save yet")
            return None
        return self.save_png(self._last_output, f"screenshot_{timestamp()}.png")

    def close(self) -> None:
        self.stop_recording()
        self._cache.clear()
