"""
Frame sources: still image, video file and live camera.

Each source decodes on its own thread and publishes RGBA8 frames to a
FrameSlot. The pipeline pops at its own pace; frames produced while it is
busy are dropped rather than queued.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from .frame_buffer import Frame, FrameSlot


def bgr_to_rgba(frame: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """OpenCV BGR / BGRA / grey frame to RGBA8."""
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2RGBA)
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2RGBA)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)


class FrameSource(ABC):
    """Base class for frame producers."""

    def __init__(self):
        self.slot = FrameSlot()
        self.width = 0
        self.height = 0
        self.fps = 30.0
        self._running = False
        self._frame_id = 0
        self._thread: Optional[threading.Thread] = None

    @abstractmethod
    def _open(self) -> bool:
        """Open the underlying device/file and fill width/height/fps."""

    @abstractmethod
    def _read_loop(self) -> None:
        """Publish frames until ``_running`` is cleared."""

    def _release(self) -> None:
        pass

    def start(self) -> bool:
        """
        Open the source and start the reader thread.

        Returns:
            True if the source opened
        """
        if self._running:
            return True
        if not self._open():
            return False
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True, name=type(self).__name__)
        self._thread.start()
        logger.info(f"{type(self).__name__} started: {self.width}x{self.height} @ {self.fps:.1f}fps")
        return True

    def _run(self) -> None:
        try:
            self._read_loop()
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self._release()
        logger.info(f"{type(self).__name__} stopped")

    def _publish(self, bgr: NDArray[np.uint8]) -> None:
        self.slot.publish(Frame(
            frame_id=self._frame_id,
            timestamp_ms=time.perf_counter() * 1000,
            pixels=bgr_to_rgba(bgr),
        ))
        self._frame_id += 1

    def pop_frame(self) -> Optional[Frame]:
        """Take the newest frame, or None if nothing new arrived."""
        return self.slot.pop()

    @property
    def resolution(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()


class ImageSource(FrameSource):
    """A still image published once."""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)
        self._image: Optional[NDArray[np.uint8]] = None

    def _open(self) -> bool:
        if not self.path.exists():
            logger.error(f"Image not found: {self.path}")
            return False
        image = cv2.imread(str(self.path), cv2.IMREAD_UNCHANGED)
        if image is None:
            logger.error(f"Could not decode image: {self.path}")
            return False
        self._image = image
        self.height, self.width = image.shape[:2]
        self.fps = 0.0
        return True

    def _read_loop(self) -> None:
        self._publish(self._image)


class VideoFileSource(FrameSource):
    """Video file played at its native frame rate."""

    def __init__(self, path: str, loop: bool = False, playback_speed: float = 1.0):
        """
        Args:
            path: Video file
            loop: Restart from the first frame at end of file
            playback_speed: Rate multiplier
        """
        super().__init__()
        self.path = Path(path)
        self.loop = loop
        self.playback_speed = playback_speed
        self.has_looped = False
        self.frame_count = 0
        self._cap: Optional[cv2.VideoCapture] = None

    def _open(self) -> bool:
        if not self.path.exists():
            logger.error(f"Video not found: {self.path}")
            return False
        self._cap = cv2.VideoCapture(str(self.path))
        if not self._cap.isOpened():
            logger.error(f"Could not open video: {self.path}")
            return False
        self.fps = self._cap.get(cv2.CAP_PROP_FPS) or 30.0
        self.width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.frame_count = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT))
        return True

    def _read_loop(self) -> None:
        frame_time = 1.0 / (self.fps * self.playback_speed)
        next_frame_time = time.time()

        while self._running:
            now = time.time()
            if now < next_frame_time:
                time.sleep(max(0.0, next_frame_time - now - 0.001))
                continue

            ret, frame = self._cap.read()
            if not ret:
                if not self.loop:
                    logger.info("End of video reached")
                    break
                self._cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                self.has_looped = True
                ret, frame = self._cap.read()
                if not ret:
                    break

            self._publish(frame)
            next_frame_time += frame_time

    def _release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class CameraSource(FrameSource):
    """Live camera via OpenCV."""

    def __init__(self, device_index: int = 0, width: int = 1280, height: int = 720, fps: int = 30):
        super().__init__()
        self.device_index = device_index
        self._requested = (width, height, fps)
        self._cap: Optional[cv2.VideoCapture] = None

    def _open(self) -> bool:
        self._cap = cv2.VideoCapture(self.device_index)
        if not self._cap.isOpened():
            logger.error(f"Could not open camera {self.device_index}")
            return False
        width, height, fps = self._requested
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._cap.set(cv2.CAP_PROP_FPS, fps)
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self.width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.fps = self._cap.get(cv2.CAP_PROP_FPS) or float(fps)
        return True

    def _read_loop(self) -> None:
        while self._running:
            ret, frame = self._cap.read()
            if not ret:
                logger.warning("Camera read failed")
                time.sleep(0.01)
                continue
            self._publish(frame)

    def _release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


def open_source(kind: str, target: Optional[str] = None, loop: bool = False,
                camera_index: int = 0) -> FrameSource:
    """Build a source from a CLI-style kind ("image", "video", "camera")."""
    if kind == "image":
        return ImageSource(target)
    if kind == "video":
        return VideoFileSource(target, loop=loop)
    if kind == "camera":
        return CameraSource(camera_index)
    raise ValueError(f"Unknown source kind '{kind}'")
