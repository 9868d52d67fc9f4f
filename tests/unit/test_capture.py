"""Unit tests for VideoCaptureResource.

A MagicMock stands in for ``cv2.VideoCapture`` so no video file is decoded.
"""

from unittest.mock import MagicMock

import cv2
import pytest

from sharpframe.video.capture import VideoCaptureResource, VideoOpenError
from sharpframe.video.seek import SeekCoordinator, SeekError
from tests.fakes import checkerboard


def _capture(fps=25.0, count=250.0, width=64, height=36, opened=True):
    cap = MagicMock()
    cap.isOpened.return_value = opened
    props = {
        cv2.CAP_PROP_FPS: fps,
        cv2.CAP_PROP_FRAME_COUNT: count,
        cv2.CAP_PROP_FRAME_WIDTH: float(width),
        cv2.CAP_PROP_FRAME_HEIGHT: float(height),
    }
    cap.get.side_effect = lambda prop: props.get(prop, 0.0)
    cap.read.return_value = (True, checkerboard(height, width))
    return cap


def test_metadata_from_capture():
    resource = VideoCaptureResource("clip.mp4", _capture=_capture())
    assert resource.frame_rate == 25.0
    assert resource.duration == pytest.approx(10.0)
    assert resource.total_frames == 250
    assert resource.dimensions == (64, 36)
    assert resource.position == 0.0
    assert not resource.ready


def test_total_frames_survives_float_rounding():
    resource = VideoCaptureResource("clip.mp4", _capture=_capture(fps=29.97, count=300.0))
    assert resource.total_frames == 300


def test_missing_frame_rate_uses_default():
    resource = VideoCaptureResource(
        "clip.mp4", default_frame_rate=30.0, _capture=_capture(fps=0.0, count=90.0)
    )
    assert resource.frame_rate == 30.0
    assert resource.duration == pytest.approx(3.0)


def test_unopened_capture_raises():
    with pytest.raises(VideoOpenError):
        VideoCaptureResource("missing.mp4", _capture=_capture(opened=False))


async def test_seek_decodes_frame():
    cap = _capture()
    resource = VideoCaptureResource("clip.mp4", _capture=cap)

    await resource.seek(1.5)

    cap.set.assert_called_once_with(cv2.CAP_PROP_POS_MSEC, 1500.0)
    assert resource.position == 1.5
    assert resource.ready
    assert resource.read_frame().shape == (36, 64, 3)


async def test_read_frame_returns_copy():
    resource = VideoCaptureResource("clip.mp4", _capture=_capture())
    await resource.seek(0.5)
    frame = resource.read_frame()
    frame[:] = 7
    assert resource.read_frame().max() == 255


async def test_failed_decode_raises_seek_error():
    cap = _capture()
    resource = VideoCaptureResource("clip.mp4", _capture=cap)
    await resource.seek(1.0)
    cap.read.return_value = (False, None)

    with pytest.raises(SeekError):
        await resource.seek(2.0)
    assert resource.position == 1.0


async def test_coordinator_passes_decode_error_through():
    cap = _capture()
    cap.read.return_value = (False, None)
    resource = VideoCaptureResource("clip.mp4", _capture=cap)
    with pytest.raises(SeekError, match="No frame decoded"):
        await SeekCoordinator().seek(resource, 2.0, holder="user")


def test_read_before_seek_raises():
    resource = VideoCaptureResource("clip.mp4", _capture=_capture())
    with pytest.raises(SeekError):
        resource.read_frame()


def test_close_releases_capture():
    cap = _capture()
    resource = VideoCaptureResource("clip.mp4", _capture=cap)
    resource.close()
    cap.release.assert_called_once()
    assert not resource.ready
