"""Bounded pool of isolated scoring processes.

Each of the ``capacity`` slots owns its own single-process
``ProcessPoolExecutor`` so that a crash in one compute unit only affects the
task running on it.  Free slots live in an ``asyncio.Queue``: ``submit()``
suspends on ``get()`` until a slot is released, which gives FIFO fairness
without polling.

A slot is released exactly once per task, when the unit's future finishes,
regardless of whether the submitter is still waiting for the answer.

Usage::

    pool = WorkerPool(capacity=3)
    score = await pool.submit(pixels, width, height, frame_number=42)
    pool.cancel()      # reject everything pending (session change)
    pool.resume()      # accept work again
    await pool.close()
"""

import asyncio
import itertools
import logging
from collections.abc import Callable
from concurrent.futures import BrokenExecutor, Executor, Future, ProcessPoolExecutor
from dataclasses import dataclass

from sharpframe.workers.compute import score_task

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], Executor]


class TaskCancelled(Exception):
    """Raised for submissions rejected because analysis was cancelled."""


class WorkerFault(Exception):
    """Raised when the compute unit running a task dies."""


class ScoringError(Exception):
    """Raised when a compute unit reports a failure for its task."""


@dataclass
class Task:
    id: int
    frame_number: int
    slot: int
    completion: asyncio.Future


def _single_process_unit() -> Executor:
    return ProcessPoolExecutor(max_workers=1)


class WorkerPool:
    """Fixed-capacity dispatcher routing frames to isolated scoring units.

    Parameters
    ----------
    capacity:
        Number of slots, i.e. the maximum number of frames scored at once.
    executor_factory:
        Builds the compute unit for one slot.  Tests substitute a
        ``ThreadPoolExecutor`` to avoid spawning processes.
    """

    def __init__(
        self,
        capacity: int = 3,
        executor_factory: ExecutorFactory | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._factory = executor_factory or _single_process_unit
        self._units: list[Executor | None] = [None] * capacity
        self._free: asyncio.Queue[int] = asyncio.Queue()
        for slot in range(capacity):
            self._free.put_nowait(slot)
        self._tasks: dict[int, Task] = {}
        self._ids = itertools.count(1)
        self._cancelled = asyncio.Event()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def busy_slots(self) -> int:
        return self._capacity - self._free.qsize()

    @property
    def pending_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def submit(self, pixels, width: int, height: int, frame_number: int) -> float:
        """Score one RGBA buffer on the next free compute unit.

        Raises:
            TaskCancelled: The pool was cancelled before a result arrived.
            WorkerFault: The compute unit died while holding the task.
            ScoringError: The compute unit reported a failure.
        """
        if self._closed:
            raise TaskCancelled("Worker pool is closed")

        slot = await self._acquire()
        loop = asyncio.get_running_loop()
        task = Task(
            id=next(self._ids),
            frame_number=frame_number,
            slot=slot,
            completion=loop.create_future(),
        )

        try:
            future = self._unit(slot).submit(score_task, task.id, pixels, width, height)
        except BrokenExecutor as exc:
            self._replace_unit(slot)
            self._release(slot)
            raise WorkerFault(f"Worker {slot} unavailable: {exc}") from exc
        except Exception:
            self._release(slot)
            raise

        self._tasks[task.id] = task
        logger.debug(
            "Dispatched task %d (frame %d) to worker %d", task.id, frame_number, slot
        )

        def _forward(done: Future) -> None:
            try:
                loop.call_soon_threadsafe(self._on_unit_done, task, done)
            except RuntimeError:
                logger.debug("Event loop closed before task %d finished", task.id)

        future.add_done_callback(_forward)
        return await task.completion

    def cancel(self) -> None:
        """Reject every waiting and in-flight submission with ``TaskCancelled``."""
        self._cancelled.set()
        for task in list(self._tasks.values()):
            self._reject(task, TaskCancelled(f"Task {task.id} cancelled"))

    def resume(self) -> None:
        """Accept new submissions after a ``cancel()``."""
        if not self._closed:
            self._cancelled.clear()

    async def close(self) -> None:
        """Cancel outstanding work and shut down every compute unit."""
        self.cancel()
        self._closed = True
        for slot, unit in enumerate(self._units):
            if unit is not None:
                unit.shutdown(wait=False, cancel_futures=True)
                self._units[slot] = None
        logger.info("WorkerPool closed (%d workers)", self._capacity)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _acquire(self) -> int:
        if self._cancelled.is_set():
            raise TaskCancelled("Worker pool cancelled")

        getter = asyncio.ensure_future(self._free.get())
        stopper = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait((getter, stopper), return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            stopper.cancel()
            self._abandon(getter)
            raise
        stopper.cancel()

        if (stopper.done() and not stopper.cancelled()) or self._cancelled.is_set():
            self._abandon(getter)
            raise TaskCancelled("Worker pool cancelled while waiting for a worker")
        return getter.result()

    def _abandon(self, getter: asyncio.Future) -> None:
        if getter.done() and not getter.cancelled():
            self._release(getter.result())
        else:
            getter.cancel()

    def _release(self, slot: int) -> None:
        if not self._closed:
            self._free.put_nowait(slot)

    def _unit(self, slot: int) -> Executor:
        unit = self._units[slot]
        if unit is None:
            unit = self._factory()
            self._units[slot] = unit
        return unit

    def _replace_unit(self, slot: int) -> None:
        unit = self._units[slot]
        self._units[slot] = None
        if unit is not None:
            unit.shutdown(wait=False, cancel_futures=True)

    def _on_unit_done(self, task: Task, future: Future) -> None:
        self._tasks.pop(task.id, None)
        try:
            if future.cancelled():
                self._reject(task, TaskCancelled(f"Task {task.id} cancelled"))
                return
            exc = future.exception()
            if isinstance(exc, BrokenExecutor):
                self._fault(task, exc)
            elif exc is not None:
                self._reject(task, ScoringError(str(exc) or type(exc).__name__))
            else:
                reply = future.result()
                if "error" in reply:
                    self._reject(task, ScoringError(reply["error"]))
                elif not task.completion.done():
                    task.completion.set_result(float(reply["score"]))
        finally:
            self._release(task.slot)

    def _fault(self, task: Task, exc: BaseException) -> None:
        logger.warning(
            "Worker %d crashed while scoring frame %d: %s",
            task.slot,
            task.frame_number,
            exc,
        )
        self._replace_unit(task.slot)
        victims = [task] + [t for t in self._tasks.values() if t.slot == task.slot]
        for victim in victims:
            self._tasks.pop(victim.id, None)
            self._reject(victim, WorkerFault(f"Worker {task.slot} failed: {exc}"))

    @staticmethod
    def _reject(task: Task, exc: Exception) -> None:
        if not task.completion.done():
            task.completion.set_exception(exc)
