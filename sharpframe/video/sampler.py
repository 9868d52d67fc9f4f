"""Frame sampling — frame number → downscaled RGBA pixels.

The sampler owns the analysis resource, which is never the one used for
playback, and only touches it while holding an ``"analysis"`` seek token so
the pixels it reads belong to the frame it asked for.
"""

import asyncio
import logging
import math
from dataclasses import dataclass

import cv2
import numpy as np

from sharpframe.video.seek import SeekableResource, SeekCoordinator

logger = logging.getLogger(__name__)

_ANALYSIS_WIDTH = 160
_FRAME_TIME_OFFSET_FACTOR = 0.01
_READY_GRACE_S = 0.05


class FrameSampleError(Exception):
    """Raised when pixels cannot be read from the analysis resource."""


@dataclass
class SampledFrame:
    frame_number: int
    pixels: np.ndarray  # (height, width, 4) RGBA uint8
    width: int
    height: int
    time: float


def frame_to_time(
    frame: int,
    frame_rate: float,
    offset_factor: float = _FRAME_TIME_OFFSET_FACTOR,
) -> float:
    """Presentation time of a 1-based frame number.

    A small fraction of one frame duration is added so the seek never lands
    exactly on the boundary between two frames.
    """
    if frame_rate <= 0 or frame <= 0:
        return 0.0
    frame_duration = 1.0 / frame_rate
    return max(0.0, (frame - 1) / frame_rate + frame_duration * offset_factor)


def time_to_frame(time: float, frame_rate: float, total_frames: int) -> int:
    """1-based frame number shown at ``time``, clamped to the video."""
    if frame_rate <= 0 or total_frames <= 0:
        return 0
    return min(total_frames, max(1, math.floor(time * frame_rate) + 1))


def analysis_size(width: int, height: int, target_width: int) -> tuple[int, int]:
    """Downscaled ``(width, height)`` with the source aspect ratio preserved."""
    aspect = width / height if height > 0 else 0.0
    if aspect > 0:
        target_height = math.floor(target_width / aspect)
    else:
        target_height = math.floor(target_width * 9 / 16)
    return target_width, max(1, target_height)


class FrameSampler:
    """Seeks the analysis resource to a frame and returns its pixels."""

    def __init__(
        self,
        resource: SeekableResource,
        coordinator: SeekCoordinator,
        analysis_width: int = _ANALYSIS_WIDTH,
        offset_factor: float = _FRAME_TIME_OFFSET_FACTOR,
        ready_grace_s: float = _READY_GRACE_S,
    ) -> None:
        self._resource = resource
        self._coordinator = coordinator
        self._analysis_width = analysis_width
        self._offset_factor = offset_factor
        self._ready_grace_s = ready_grace_s

    async def sample(self, frame_number: int) -> SampledFrame:
        """Return the RGBA pixels of ``frame_number``.

        Raises:
            SeekError: The seek failed or timed out.
            FrameSampleError: The resource is not ready or has no dimensions.
        """
        time = frame_to_time(frame_number, self._resource.frame_rate, self._offset_factor)

        async with self._coordinator.holding(self._resource, time, holder="analysis") as position:
            if not self._resource.ready:
                await asyncio.sleep(self._ready_grace_s)
                if not self._resource.ready:
                    raise FrameSampleError(f"Analysis source not ready for frame {frame_number}")

            src_width, src_height = self._resource.dimensions
            if src_width == 0 or src_height == 0:
                raise FrameSampleError("Video dimensions zero")

            frame = self._resource.read_frame()

        width, height = analysis_size(src_width, src_height, self._analysis_width)
        resized = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
        pixels = cv2.cvtColor(resized, cv2.COLOR_BGR2RGBA)
        logger.debug("Sampled frame %d at %.3fs (%dx%d)", frame_number, position, width, height)
        return SampledFrame(
            frame_number=frame_number,
            pixels=pixels,
            width=width,
            height=height,
            time=position,
        )
