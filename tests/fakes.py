"""In-memory stand-ins for the video collaborators used across the tests."""

import asyncio

import numpy as np


def checkerboard(h: int = 90, w: int = 160, cell: int = 1) -> np.ndarray:
    """High-contrast BGR checkerboard, very sharp."""
    rows = np.arange(h) // cell
    cols = np.arange(w) // cell
    mask = (rows[:, None] + cols[None, :]) % 2 == 0
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[mask] = 255
    return frame


def solid(h: int = 90, w: int = 160, value: int = 128) -> np.ndarray:
    """Uniform BGR frame with no detail."""
    return np.full((h, w, 3), value, dtype=np.uint8)


def rgba(frame: np.ndarray) -> np.ndarray:
    """Append an opaque alpha channel to an RGB/BGR frame."""
    alpha = np.full(frame.shape[:2] + (1,), 255, dtype=np.uint8)
    return np.concatenate([frame, alpha], axis=2)


class FakeResource:
    """SeekableResource whose frame at each time comes from ``frame_for``.

    ``seek_delay`` makes seeks take event-loop time; ``fail_at`` holds times
    (rounded to ms) whose seek raises.
    """

    def __init__(
        self,
        frame_for=None,
        width: int = 320,
        height: int = 180,
        duration: float = 10.0,
        frame_rate: float = 10.0,
        seek_delay: float = 0.0,
    ) -> None:
        self.frame_for = frame_for or (lambda t: checkerboard(height, width))
        self.width = width
        self.height = height
        self._duration = duration
        self._frame_rate = frame_rate
        self.seek_delay = seek_delay
        self.fail_at: set[float] = set()
        self.seeks: list[float] = []
        self._position = 0.0
        self._frame = None

    @property
    def position(self) -> float:
        return self._position

    @property
    def ready(self) -> bool:
        return self._frame is not None

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def frame_rate(self) -> float:
        return self._frame_rate

    async def seek(self, time: float) -> None:
        self.seeks.append(time)
        if self.seek_delay:
            await asyncio.sleep(self.seek_delay)
        if round(time, 3) in self.fail_at:
            raise RuntimeError(f"decode error at {time:.3f}")
        self._frame = self.frame_for(time)
        self._position = time

    def read_frame(self) -> np.ndarray:
        return self._frame.copy()
