"""Analysis scheduler — decides which frame to score next.

One ``AnalysisScheduler`` lives for the whole process; every loaded video
gets a fresh ``AnalysisState``.  Work comes from two queues:

1. The priority queue: explicit frames around the user's focus, FIFO, never
   paused.
2. The recursive queue: unexplored frame ranges, split at their midpoint and
   taken shallowest first, so coverage spreads over the whole video before it
   is refined.

``tick()`` is a synchronous step that fills every free worker slot and spawns
one asyncio task per chosen frame (seek → sample → score → record).
``run()`` drives ``tick()`` until closed, sleeping on an event whenever
nothing can progress.  Shared state is only mutated on the event loop thread,
between awaits.
"""

import asyncio
import functools
import logging
from collections import deque
from dataclasses import dataclass, field

from sharpframe.config import Settings, get_settings
from sharpframe.results import FocusEntry, FrameScore, ScoreStore
from sharpframe.video.sampler import FrameSampler, frame_to_time
from sharpframe.workers.pool import TaskCancelled, WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    """An unexplored, inclusive range of frames."""

    start_frame: int
    end_frame: int
    depth: int = 0

    @property
    def span(self) -> int:
        return self.end_frame - self.start_frame


@dataclass
class AnalysisState:
    """Everything that belongs to one loaded video; replaced on reset."""

    total_frames: int = 0
    frame_rate: float = 30.0
    cancelled: bool = False
    paused: bool = False
    interacting: bool = False
    playing: bool = False
    priority_queue: deque[int] = field(default_factory=deque)
    recursive_queue: list[Segment] = field(default_factory=list)
    store: ScoreStore = field(default_factory=ScoreStore)
    active: int = 0
    in_flight: set[int] = field(default_factory=set)
    # priority requests absorbed by an analysis already in flight
    deferred: set[int] = field(default_factory=set)
    focus_center: int = 0
    focus_radius: int = 10
    tasks: set[asyncio.Task] = field(default_factory=set)

    @property
    def idle(self) -> bool:
        return not self.priority_queue and not self.recursive_queue and self.active == 0


class AnalysisScheduler:
    """Prioritised, bounded analysis of the frames of one video at a time.

    Usage::

        scheduler = AnalysisScheduler(pool, settings=settings)
        scheduler.reset(total_frames=900, frame_rate=30.0, sampler=sampler)
        scheduler.start()
        scheduler.request_priority_analysis(center=412)
        ...
        await scheduler.close()
    """

    def __init__(
        self,
        pool: WorkerPool,
        sampler: FrameSampler | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._pool = pool
        self._sampler = sampler
        self._settings = settings or get_settings()
        self._version = 0
        self._state = AnalysisState(
            focus_radius=self._settings.focus_radius,
            store=ScoreStore(on_change=self._bump),
        )
        self._wake = asyncio.Event()
        self._settle_handle: asyncio.TimerHandle | None = None
        self._runner: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> AnalysisState:
        return self._state

    @property
    def version(self) -> int:
        """Increases every time the scores change; consumers re-render on change."""
        return self._version

    @property
    def capacity(self) -> int:
        return self._pool.capacity

    @property
    def best(self) -> FrameScore | None:
        return self._state.store.best

    def get_score(self, frame: int) -> FrameScore | None:
        return self._state.store.get(frame)

    def focus(self, center: int | None = None, radius: int | None = None) -> list[FocusEntry]:
        state = self._state
        center = state.focus_center if center is None else center
        radius = state.focus_radius if radius is None else radius
        if center < 1 or state.total_frames == 0:
            return []
        return state.store.focus(center, radius, state.total_frames)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def reset(
        self,
        total_frames: int,
        frame_rate: float | None = None,
        sampler: FrameSampler | None = None,
    ) -> None:
        """Drop everything known about the previous video and start over."""
        self._teardown(self._state)
        if sampler is not None:
            self._sampler = sampler

        self._state = AnalysisState(
            total_frames=total_frames,
            frame_rate=frame_rate or self._settings.default_frame_rate,
            focus_radius=self._settings.focus_radius,
            store=ScoreStore(on_change=self._bump),
            recursive_queue=[Segment(1, total_frames, 0)] if total_frames > 0 else [],
        )
        self._pool.resume()
        self._bump()
        self._wake.set()
        logger.info(
            "Analysis reset: %d frames at %.3f fps",
            total_frames,
            self._state.frame_rate,
        )

    def cancel(self) -> None:
        """Stop all analysis for the current video; results arriving later are dropped."""
        self._teardown(self._state)
        self._wake.set()

    def request_priority_analysis(self, center: int, radius: int | None = None) -> list[int]:
        """Queue the frames around ``center`` ahead of everything else.

        Frames are ordered centre first, then alternating ``center - i`` /
        ``center + i`` outwards.  Frames already scored are skipped.  Returns
        the frames that were queued.
        """
        state = self._state
        if state.cancelled or state.total_frames == 0:
            return []
        if not 1 <= center <= state.total_frames:
            return []

        radius = self._settings.focus_radius if radius is None else radius
        state.focus_center = center
        state.focus_radius = radius

        frames: list[int] = []
        for offset in range(radius + 1):
            candidates = (center,) if offset == 0 else (center - offset, center + offset)
            for frame in candidates:
                if (
                    1 <= frame <= state.total_frames
                    and state.store.needs_analysis(frame)
                    and frame not in frames
                ):
                    frames.append(frame)

        queued = set(frames)
        state.priority_queue = deque(
            frames + [f for f in state.priority_queue if f not in queued]
        )
        state.paused = True
        if frames:
            logger.debug("Priority analysis around frame %d: %s", center, frames)
            self._wake.set()
        return frames

    def set_paused(self, paused: bool) -> None:
        """Mark the user as interacting (scrubbing, stepping) or done.

        Recursive work pauses while the user interacts and no priority frames
        are waiting.  It resumes ``interaction_settle_s`` after the last
        interaction ends.
        """
        state = self._state
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

        if paused:
            state.interacting = True
            self._update_pause(state)
            return

        settle = self._settings.interaction_settle_s
        if settle > 0:
            loop = asyncio.get_running_loop()
            self._settle_handle = loop.call_later(settle, self._settle, state)
        else:
            self._settle(state)

    def set_playing(self, playing: bool) -> None:
        state = self._state
        state.playing = playing
        if playing:
            state.paused = False
        self._wake.set()

    def start(self) -> None:
        """Run the scheduling loop in the background."""
        if self._runner is None or self._runner.done():
            self._closed = False
            self._runner = asyncio.create_task(self.run(), name="analysis-scheduler")

    async def close(self) -> None:
        """Cancel the current analysis and stop the scheduling loop."""
        self._closed = True
        state = self._state
        self._teardown(state)
        self._wake.set()

        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None

        if state.tasks:
            await asyncio.gather(*state.tasks, return_exceptions=True)
        logger.info("AnalysisScheduler closed")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick until closed, waiting for a trigger whenever nothing can progress."""
        logger.info("Analysis loop started")
        while not self._closed:
            self._wake.clear()
            try:
                self.tick()
            except Exception:
                logger.exception("Analysis tick failed")
            await self._wake.wait()

            state = self._state
            if state.playing and not state.priority_queue and not state.cancelled:
                await asyncio.sleep(self._settings.playback_pacing_s)

    def tick(self) -> list[int]:
        """Launch analyses until every slot is busy or nothing is eligible.

        Returns the frames launched.  During playback, recursive work runs one
        frame at a time.
        """
        state = self._state
        if state.cancelled or self._closed or self._sampler is None:
            return []
        self._update_pause(state)

        launched: list[int] = []
        while state.active < self._slot_limit(state):
            selection = self.select_next()
            if selection is None:
                break
            frame, is_priority = selection
            self._launch(state, frame, is_priority)
            launched.append(frame)
        return launched

    def select_next(self) -> tuple[int, bool] | None:
        """Pop the next frame worth analysing, or ``None``.

        Returns ``(frame, is_priority)``.  Recursive segments are split even
        when their midpoint is already scored or in flight, so sibling ranges
        are still explored.
        """
        state = self._state
        while True:
            if state.priority_queue:
                frame = state.priority_queue.popleft()
                if self._eligible(state, frame):
                    return frame, True
                if frame in state.in_flight:
                    state.deferred.add(frame)
                continue

            if state.paused or not state.recursive_queue:
                return None

            segment = self._pop_segment(state)
            mid = (segment.start_frame + segment.end_frame) // 2
            if mid - 1 >= segment.start_frame:
                state.recursive_queue.append(
                    Segment(segment.start_frame, mid - 1, segment.depth + 1)
                )
            if mid + 1 <= segment.end_frame:
                state.recursive_queue.append(
                    Segment(mid + 1, segment.end_frame, segment.depth + 1)
                )
            if self._eligible(state, mid):
                return mid, False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _slot_limit(self, state: AnalysisState) -> int:
        if state.playing and not state.priority_queue:
            return 1
        return self._pool.capacity

    @staticmethod
    def _pop_segment(state: AnalysisState) -> Segment:
        queue = state.recursive_queue
        index = min(range(len(queue)), key=lambda i: (queue[i].depth, queue[i].span))
        return queue.pop(index)

    @staticmethod
    def _eligible(state: AnalysisState, frame: int) -> bool:
        return (
            1 <= frame <= state.total_frames
            and not state.store.is_scored(frame)
            and frame not in state.in_flight
        )

    @staticmethod
    def _update_pause(state: AnalysisState) -> None:
        if state.interacting and not state.priority_queue:
            state.paused = True
        elif not state.interacting:
            state.paused = False

    def _settle(self, state: AnalysisState) -> None:
        self._settle_handle = None
        if state is not self._state:
            return
        state.interacting = False
        if not state.priority_queue:
            state.paused = False
        self._wake.set()

    def _launch(self, state: AnalysisState, frame: int, is_priority: bool) -> None:
        state.active += 1
        state.in_flight.add(frame)
        task = asyncio.create_task(
            self._analyze(state, frame, is_priority),
            name=f"analyze-frame-{frame}",
        )
        state.tasks.add(task)
        task.add_done_callback(functools.partial(self._on_task_done, state, frame))
        logger.debug(
            "Launched %s analysis of frame %d (%d active)",
            "priority" if is_priority else "recursive",
            frame,
            state.active,
        )

    async def _analyze(self, state: AnalysisState, frame: int, is_priority: bool) -> None:
        sampler = self._sampler
        time = frame_to_time(frame, state.frame_rate, self._settings.frame_time_offset_factor)
        try:
            sampled = await sampler.sample(frame)
            if state.cancelled:
                return
            score = await self._pool.submit(
                sampled.pixels, sampled.width, sampled.height, frame
            )
            if state.cancelled:
                return
            state.store.record_success(frame, score, sampled.time)
            logger.debug("Frame %d scored %.4f", frame, score)
        except TaskCancelled:
            logger.debug("Analysis of frame %d cancelled", frame)
        except asyncio.CancelledError:
            logger.debug("Analysis task for frame %d cancelled", frame)
            raise
        except Exception as exc:
            if state.cancelled:
                return
            logger.error(
                "Analysis of frame %d failed (%s): %s",
                frame,
                "priority" if is_priority else "recursive",
                exc,
            )
            state.store.record_failure(frame, time)

    def _on_task_done(self, state: AnalysisState, frame: int, task: asyncio.Task) -> None:
        state.tasks.discard(task)
        state.active -= 1
        state.in_flight.discard(frame)

        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Unhandled error analysing frame %d",
                frame,
                exc_info=task.exception(),
            )

        if state is not self._state or state.cancelled:
            return
        if frame in state.deferred:
            state.deferred.discard(frame)
            if state.store.needs_analysis(frame):
                logger.debug("Re-queueing priority frame %d after failed analysis", frame)
                state.priority_queue.appendleft(frame)
        if state.idle:
            logger.info(
                "Analysis complete: %d frames scored",
                len(state.store.scored_frames()),
            )
        self._wake.set()

    def _teardown(self, state: AnalysisState) -> None:
        state.cancelled = True
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        self._pool.cancel()
        for task in list(state.tasks):
            task.cancel()

    def _bump(self) -> None:
        self._version += 1
