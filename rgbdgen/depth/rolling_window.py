"""
Fixed-capacity ring buffer of the most recent raw depth frames.

All slots live in one (capacity, H + 2P, W + 2P) float32 array whose
outer P pixels are never written. Spatially shifted views of any frame
are therefore plain slices, and out-of-range neighbours read as 0.
"""

from __future__ import annotations

from loguru import logger

from ..core.backend import Backend

CAPACITY = 20
PAD = 3


class RollingWindow:
    """
    Ring buffer of depth frames indexed by age.

    Age 0 is the most recently added frame. The physical slot for an age
    is ``(cursor - 1 - age) mod capacity``. Unwritten slots hold zeros.
    """

    def __init__(self, backend: Backend, width: int, height: int,
                 capacity: int = CAPACITY, pad: int = PAD):
        self.backend = backend
        self.width = width
        self.height = height
        self.capacity = capacity
        self.pad = pad
        self._slots = backend.zeros((capacity, height + 2 * pad, width + 2 * pad))
        self._cursor = 0
        self._frames_written = 0
        logger.debug(f"RollingWindow allocated: {capacity} x {width}x{height}")

    @property
    def cursor(self) -> int:
        """Physical index of the next slot to be written."""
        return self._cursor

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def is_warm(self) -> bool:
        """True once every slot holds a real frame."""
        return self._frames_written >= self.capacity

    def __len__(self) -> int:
        return min(self._frames_written, self.capacity)

    def slot_for_age(self, age: int) -> int:
        return (self._cursor - 1 - age + self.capacity) % self.capacity

    def add_frame(self, frame) -> None:
        """Copy a (H, W) frame into the current slot and advance the cursor."""
        if tuple(frame.shape) != (self.height, self.width):
            raise ValueError(
                f"Frame shape {tuple(frame.shape)} does not match window {self.height}x{self.width}"
            )
        p = self.pad
        self.backend.xp.copyto(self._slots[self._cursor, p:p + self.height, p:p + self.width], frame)
        self._cursor = (self._cursor + 1) % self.capacity
        self._frames_written += 1

    def frame(self, age: int):
        """(H, W) view of the frame ``age`` steps back."""
        return self.neighbor(age, 0, 0)

    def neighbor(self, age: int, dx: int, dy: int):
        """
        (H, W) view whose pixel (x, y) is frame ``age`` at (x + dx, y + dy).

        Pixels shifted outside the frame read 0.
        """
        if not 0 <= age < self.capacity:
            raise IndexError(f"age {age} outside [0, {self.capacity})")
        if abs(dx) > self.pad or abs(dy) > self.pad:
            raise ValueError(f"offset ({dx}, {dy}) exceeds border {self.pad}")
        p = self.pad
        slot = self._slots[self.slot_for_age(age)]
        return slot[p + dy:p + dy + self.height, p + dx:p + dx + self.width]

    def sample(self, age: int, x: int, y: int) -> float:
        """Depth at (x, y) of frame ``age``; 0 when out of range."""
        if age < 0 or age >= self.capacity:
            return 0.0
        if x < 0 or y < 0 or x >= self.width or y >= self.height:
            return 0.0
        slot = self.slot_for_age(age)
        return self.backend.scalar(self._slots[slot, y + self.pad, x + self.pad])

    def reset(self) -> None:
        """Discard all history."""
        self._slots.fill(0)
        self._cursor = 0
        self._frames_written = 0
