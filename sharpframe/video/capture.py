"""OpenCV-backed decodable resource.

``cv2.VideoCapture`` is blocking and not thread-safe, so every decode runs in
a worker thread via ``asyncio.to_thread`` under a per-instance lock.  Opening
the same file twice gives two independent seek positions: one for playback,
one dedicated to analysis.
"""

import asyncio
import logging
import math
import threading
from pathlib import Path
from typing import Any

import cv2
import numpy as np

from sharpframe.video.seek import SeekError

logger = logging.getLogger(__name__)


class VideoOpenError(Exception):
    """Raised when OpenCV cannot open the requested video."""


class VideoCaptureResource:
    """A seekable video source backed by ``cv2.VideoCapture``.

    Usage::

        resource = VideoCaptureResource("clip.mp4")
        await resource.seek(1.25)
        frame = resource.read_frame()   # BGR ndarray at 1.25 s
        resource.close()

    Parameters
    ----------
    path:
        Video file to open.
    default_frame_rate:
        Used when the container does not report a frame rate.
    _capture:
        Pre-built capture object.  Used in tests to avoid decoding real files.
    """

    def __init__(
        self,
        path: str | Path,
        default_frame_rate: float = 30.0,
        _capture: Any = None,
    ) -> None:
        self._path = str(path)
        self._capture = _capture if _capture is not None else cv2.VideoCapture(self._path)
        if not self._capture.isOpened():
            raise VideoOpenError(f"Cannot open video: {self._path}")

        fps = float(self._capture.get(cv2.CAP_PROP_FPS) or 0.0)
        self._frame_rate = fps if fps > 0 else default_frame_rate
        frame_count = float(self._capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
        self._duration = frame_count / self._frame_rate if frame_count > 0 else 0.0
        self._width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        self._height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)

        self._frame: np.ndarray | None = None
        self._position = 0.0
        self._lock = threading.Lock()

    @property
    def position(self) -> float:
        return self._position

    @property
    def ready(self) -> bool:
        return self._frame is not None

    @property
    def dimensions(self) -> tuple[int, int]:
        return self._width, self._height

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def frame_rate(self) -> float:
        return self._frame_rate

    @property
    def total_frames(self) -> int:
        # guard against 299.9999 frames from float division
        return math.floor(self._duration * self._frame_rate + 1e-6)

    async def seek(self, time: float) -> None:
        """Decode the frame at ``time`` seconds; raises ``SeekError`` on failure."""
        await asyncio.to_thread(self._seek_blocking, time)

    def read_frame(self) -> np.ndarray:
        """Return a copy of the BGR frame at the current position."""
        with self._lock:
            if self._frame is None:
                raise SeekError(f"No frame decoded yet for {self._path}")
            return self._frame.copy()

    def close(self) -> None:
        with self._lock:
            self._capture.release()
            self._frame = None
        logger.debug("VideoCaptureResource closed: %s", self._path)

    def _seek_blocking(self, time: float) -> None:
        with self._lock:
            self._capture.set(cv2.CAP_PROP_POS_MSEC, time * 1000.0)
            ok, frame = self._capture.read()
            if not ok or frame is None:
                raise SeekError(f"No frame decoded at {time:.3f}s in {self._path}")
            self._frame = frame
            self._position = time
