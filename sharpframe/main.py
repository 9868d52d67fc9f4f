import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from sharpframe.config import get_settings
from sharpframe.results import FocusEntry, FrameScore
from sharpframe.scheduler import AnalysisScheduler
from sharpframe.video.capture import VideoCaptureResource, VideoOpenError
from sharpframe.video.sampler import FrameSampler, frame_to_time, time_to_frame
from sharpframe.video.seek import SeekCoordinator, SeekError, SeekTimeout
from sharpframe.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class LoadedVideo:
    path: str
    playback: VideoCaptureResource
    analysis: VideoCaptureResource


# Module-level singletons — initialised in lifespan, None before startup.
_coordinator: SeekCoordinator | None = None
_pool: WorkerPool | None = None
_scheduler: AnalysisScheduler | None = None
_video: LoadedVideo | None = None


class LoadVideoRequest(BaseModel):
    path: str


class FocusRequest(BaseModel):
    center: int = Field(ge=1)
    radius: int | None = Field(default=None, ge=0)


class SeekRequest(BaseModel):
    frame: int = Field(ge=1)


class InteractionRequest(BaseModel):
    active: bool


class PlaybackRequest(BaseModel):
    playing: bool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global _coordinator, _pool, _scheduler

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    _coordinator = SeekCoordinator(
        timeout=settings.seek_timeout_s, epsilon=settings.time_epsilon / 2
    )
    _pool = WorkerPool(capacity=settings.num_workers)
    _scheduler = AnalysisScheduler(_pool, settings=settings)
    logger.info("Analysis service ready (workers=%d)", settings.num_workers)

    yield

    if _scheduler is not None:
        await _scheduler.close()
    if _pool is not None:
        await _pool.close()
    await _close_video()
    _coordinator = None
    _pool = None
    _scheduler = None


app = FastAPI(
    title="Sharpframe",
    description=(
        "Finds the sharpest frames of a video. Frames are sampled adaptively, "
        "scored with a perceptual sharpness metric, and analysis is focused "
        "around the frame currently being viewed."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


def _require_scheduler() -> AnalysisScheduler:
    if _scheduler is None or _coordinator is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _scheduler


def _require_video() -> LoadedVideo:
    if _video is None:
        raise HTTPException(status_code=409, detail="No video loaded")
    return _video


async def _close_video() -> None:
    global _video

    video, _video = _video, None
    if video is not None:
        await asyncio.to_thread(video.playback.close)
        await asyncio.to_thread(video.analysis.close)


def _open_captures(path: str, frame_rate: float) -> tuple[VideoCaptureResource, VideoCaptureResource]:
    """Open the playback and analysis captures, releasing the first if the second fails."""
    playback = VideoCaptureResource(path, frame_rate)
    try:
        analysis = VideoCaptureResource(path, frame_rate)
    except Exception:
        playback.close()
        raise
    return playback, analysis


@app.post("/videos")
async def load_video(body: LoadVideoRequest) -> dict:
    """Open a video and restart analysis from scratch."""
    global _video

    scheduler = _require_scheduler()
    settings = get_settings()

    try:
        playback, analysis = await asyncio.to_thread(
            _open_captures, body.path, settings.default_frame_rate
        )
    except VideoOpenError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    total_frames = playback.total_frames
    if total_frames <= 0:
        await asyncio.to_thread(playback.close)
        await asyncio.to_thread(analysis.close)
        raise HTTPException(status_code=422, detail="Video has no frames")

    # stop the old session before its captures are released
    scheduler.cancel()
    await _close_video()
    _video = LoadedVideo(path=body.path, playback=playback, analysis=analysis)

    sampler = FrameSampler(
        analysis,
        _coordinator,
        analysis_width=settings.analysis_width,
        offset_factor=settings.frame_time_offset_factor,
        ready_grace_s=settings.ready_grace_s,
    )
    scheduler.reset(total_frames, playback.frame_rate, sampler)
    scheduler.start()
    logger.info(
        "Video loaded: %s (%d frames, %.3f fps)",
        body.path,
        total_frames,
        playback.frame_rate,
    )
    return {
        "path": body.path,
        "total_frames": total_frames,
        "frame_rate": playback.frame_rate,
        "duration": playback.duration,
    }


@app.get("/best")
async def get_best() -> FrameScore:
    best = _require_scheduler().best
    if best is None:
        raise HTTPException(status_code=404, detail="No frame scored yet")
    return best


@app.get("/frames/{frame}")
async def get_frame(frame: int) -> FrameScore:
    score = _require_scheduler().get_score(frame)
    if score is None:
        raise HTTPException(status_code=404, detail=f"Frame {frame} not analysed")
    return score


@app.get("/focus")
async def get_focus(center: int | None = None, radius: int | None = None) -> list[FocusEntry]:
    return _require_scheduler().focus(center, radius)


@app.post("/focus")
async def request_focus(body: FocusRequest) -> dict:
    scheduler = _require_scheduler()
    _require_video()
    queued = scheduler.request_priority_analysis(body.center, body.radius)
    return {"center": body.center, "queued": queued}


@app.post("/seek")
async def seek(body: SeekRequest) -> dict:
    """Move the playback position, then focus analysis around where it landed."""
    scheduler = _require_scheduler()
    video = _require_video()
    state = scheduler.state
    settings = get_settings()

    target = frame_to_time(
        min(body.frame, state.total_frames),
        state.frame_rate,
        settings.frame_time_offset_factor,
    )
    scheduler.set_paused(True)
    try:
        try:
            await _coordinator.seek(video.playback, target, holder="user")
        except SeekTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc))
        except SeekError as exc:
            raise HTTPException(status_code=502, detail=str(exc))

        position = video.playback.position
        landed = time_to_frame(position, state.frame_rate, state.total_frames)
        queued = scheduler.request_priority_analysis(landed)
    finally:
        scheduler.set_paused(False)

    return {"frame": landed, "time": position, "queued": queued}


@app.post("/interaction")
async def interaction(body: InteractionRequest) -> dict:
    _require_scheduler().set_paused(body.active)
    return {"active": body.active}


@app.post("/playback")
async def playback(body: PlaybackRequest) -> dict:
    _require_scheduler().set_playing(body.playing)
    return {"playing": body.playing}


@app.get("/health")
async def health() -> dict:
    scheduler = _scheduler
    state = scheduler.state if scheduler else None
    return {
        "status": "ok",
        "version": app.version,
        "scores_version": scheduler.version if scheduler else 0,
        "video": _video.path if _video else None,
        "total_frames": state.total_frames if state else 0,
        "active_tasks": state.active if state else 0,
        "frames_scored": len(state.store.scored_frames()) if state else 0,
    }
