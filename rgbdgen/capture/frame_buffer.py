"""
Single-slot frame hand-off between a reader thread and the pipeline.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray


@dataclass
class Frame:
    """A decoded RGBA8 frame."""
    frame_id: int
    timestamp_ms: float
    pixels: NDArray[np.uint8]

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class FrameSlot:
    """
    Latest-frame slot swapped under a lock.

    The producer overwrites the slot with every new frame; the consumer
    takes the current frame, which empties the slot until the producer
    publishes again. A popped frame belongs to the consumer for one
    compute call.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[Frame] = None
        self._published = 0
        self._dropped = 0

    def publish(self, frame: Frame) -> None:
        with self._lock:
            if self._frame is not None:
                self._dropped += 1
            self._frame = frame
            self._published += 1

    def pop(self) -> Optional[Frame]:
        with self._lock:
            frame, self._frame = self._frame, None
            return frame

    def peek(self) -> Optional[Frame]:
        with self._lock:
            return self._frame

    def clear(self) -> None:
        with self._lock:
            self._frame = None

    @property
    def published(self) -> int:
        return self._published

    @property
    def dropped(self) -> int:
        """Frames overwritten before the consumer took them."""
        return self._dropped
