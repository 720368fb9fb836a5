"""
Frame acquisition.

Responsibilities:
- Still image, video file and camera readers on background threads
- Single-slot, lock-protected hand-off of the newest frame
"""

from .frame_buffer import Frame, FrameSlot
from .video_capture import (
    CameraSource,
    FrameSource,
    ImageSource,
    VideoFileSource,
    bgr_to_rgba,
    open_source,
)
