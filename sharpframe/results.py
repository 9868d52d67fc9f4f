import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Below this local score spread every frame in a focus window is "average"
_RANGE_EPSILON = 0.001


@dataclass(frozen=True)
class FrameScore:
    """Outcome of analysing one frame."""

    frame: int  # 1-based frame number
    score: float | None  # None when the attempt failed
    time: float  # presentation time in seconds
    error: bool = False


@dataclass
class FocusEntry:
    """One frame of a local focus window, as shown around the current position."""

    frame: int
    score: float | None
    time: float | None
    is_center: bool
    error: bool
    pending: bool  # never scored, or the last attempt failed
    normalized: float = 0.5  # 0–1 relative to the window's min/max
    is_local_best: bool = False


class ScoreStore:
    """Per-frame memo of sharpness results for one loaded video.

    Tracks the global min/max over successful scores and the overall best
    frame.  A successful entry is final; a failed entry can be superseded by a
    later successful attempt.  ``on_change`` is called after every mutation.
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._scores: dict[int, FrameScore] = {}
        self._best: FrameScore | None = None
        self._global_min = math.inf
        self._global_max = -math.inf
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._scores)

    @property
    def best(self) -> FrameScore | None:
        return self._best

    @property
    def global_min(self) -> float:
        return self._global_min

    @property
    def global_max(self) -> float:
        return self._global_max

    def get(self, frame: int) -> FrameScore | None:
        return self._scores.get(frame)

    def is_scored(self, frame: int) -> bool:
        """True if ``frame`` has a successful score."""
        entry = self._scores.get(frame)
        return entry is not None and not entry.error

    def needs_analysis(self, frame: int) -> bool:
        return not self.is_scored(frame)

    def scored_frames(self) -> list[int]:
        return sorted(f for f, entry in self._scores.items() if not entry.error)

    def record_success(self, frame: int, score: float, time: float) -> FrameScore:
        existing = self._scores.get(frame)
        if existing is not None and not existing.error:
            logger.debug("Frame %d already scored (%.4f), keeping it", frame, existing.score)
            return existing

        entry = FrameScore(frame=frame, score=score, time=time)
        self._scores[frame] = entry
        self._global_min = min(self._global_min, score)
        self._global_max = max(self._global_max, score)

        if self._best is None or self._best.error or score > self._best.score:
            self._best = entry
            logger.debug("New overall best: frame %d (%.4f)", frame, score)

        self._changed()
        return entry

    def record_failure(self, frame: int, time: float) -> FrameScore:
        existing = self._scores.get(frame)
        if existing is not None and not existing.error:
            return existing

        entry = FrameScore(frame=frame, score=None, time=time, error=True)
        self._scores[frame] = entry
        self._changed()
        return entry

    def normalized(self, score: float) -> float:
        """Position of ``score`` between the global min and max (0.5 if undefined)."""
        if math.isinf(self._global_min) or self._global_max <= self._global_min:
            return 0.5
        value = (score - self._global_min) / (self._global_max - self._global_min)
        return min(1.0, max(0.0, value))

    def focus(self, center: int, radius: int, total_frames: int) -> list[FocusEntry]:
        """Scores around ``center``, normalised within the window.

        Covers ``[max(1, center - radius), min(total_frames, center + radius)]``.
        The entry with the highest non-error score is flagged ``is_local_best``.
        """
        entries: list[FocusEntry] = []
        for frame in range(max(1, center - radius), min(total_frames, center + radius) + 1):
            cached = self._scores.get(frame)
            entries.append(
                FocusEntry(
                    frame=frame,
                    score=cached.score if cached else None,
                    time=cached.time if cached else None,
                    is_center=frame == center,
                    error=cached.error if cached else False,
                    pending=cached is None or cached.error,
                )
            )

        valid = [e for e in entries if e.score is not None and not e.error]
        if not valid:
            return entries

        low = min(e.score for e in valid)
        spread = max(e.score for e in valid) - low
        for entry in valid:
            entry.normalized = (entry.score - low) / spread if spread > _RANGE_EPSILON else 0.5

        max(valid, key=lambda e: e.score).is_local_best = True
        return entries

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
