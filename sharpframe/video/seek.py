"""Seek coordinator — serialises access to the decode/seek position.

Only one seek, whether issued by analysis or by the user, is ever in flight.
Requests queue behind the current owner in FIFO order; nobody is pre-empted.
Ownership is an explicit ``SeekToken`` tagged with the requester so callers
and logs can tell who holds the position.

Usage::

    coordinator = SeekCoordinator(timeout=3.5)

    # seek and release immediately
    await coordinator.seek(playback, 12.5, holder="user")

    # keep the position while reading pixels at it
    async with coordinator.holding(analysis, 4.2, holder="analysis"):
        frame = analysis.read_frame()
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Literal, Protocol

import numpy as np

logger = logging.getLogger(__name__)

Holder = Literal["analysis", "user"]

_SEEK_TIMEOUT_S = 3.5
_POSITION_EPSILON = 0.0005  # half of the 1 ms time tolerance


class SeekError(Exception):
    """Raised when a resource reports a failed seek."""


class SeekTimeout(SeekError):
    """Raised when a seek does not complete within the timeout."""


class SeekableResource(Protocol):
    """A decodable video source with an independent seek position."""

    @property
    def position(self) -> float: ...

    @property
    def ready(self) -> bool: ...

    @property
    def dimensions(self) -> tuple[int, int]: ...

    @property
    def duration(self) -> float: ...

    @property
    def frame_rate(self) -> float: ...

    async def seek(self, time: float) -> None: ...

    def read_frame(self) -> np.ndarray: ...


@dataclass(frozen=True)
class SeekToken:
    id: int
    holder: Holder


class SeekCoordinator:
    """Hands out exclusive ownership of the seek position, one holder at a time."""

    def __init__(
        self,
        timeout: float = _SEEK_TIMEOUT_S,
        epsilon: float = _POSITION_EPSILON,
    ) -> None:
        self._timeout = timeout
        self._epsilon = epsilon
        self._owner: SeekToken | None = None
        self._waiters: deque[tuple[SeekToken, asyncio.Future]] = deque()
        self._ids = itertools.count(1)

    @property
    def owner(self) -> SeekToken | None:
        return self._owner

    @property
    def waiting(self) -> int:
        return sum(1 for _, fut in self._waiters if not fut.done())

    async def acquire(self, holder: Holder) -> SeekToken:
        """Wait until every earlier request has released, then take ownership."""
        token = SeekToken(id=next(self._ids), holder=holder)
        if self._owner is None and not self._waiters:
            self._owner = token
            return token

        if self._owner is not None and self._owner.holder != holder:
            logger.debug(
                "%s seek waiting for in-flight %s seek", holder, self._owner.holder
            )

        waiter = asyncio.get_running_loop().create_future()
        entry = (token, waiter)
        self._waiters.append(entry)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed over just before the cancellation
                self.release(token)
            elif entry in self._waiters:
                self._waiters.remove(entry)
            raise
        return token

    def release(self, token: SeekToken) -> None:
        """Give up ownership and wake the next live waiter, if any."""
        if self._owner != token:
            raise RuntimeError(f"Seek token {token.id} does not own the position")
        self._owner = None
        while self._waiters:
            next_token, waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._owner = next_token
            waiter.set_result(None)
            break

    @asynccontextmanager
    async def holding(
        self,
        resource: SeekableResource,
        target: float,
        holder: Holder,
    ) -> AsyncIterator[float]:
        """Seek ``resource`` to ``target`` and keep ownership for the block.

        Yields the resource position after the seek.  Raises ``SeekError`` or
        ``SeekTimeout`` (ownership released) if the seek fails.
        """
        token = await self.acquire(holder)
        try:
            await self._seek(resource, target, holder)
            yield resource.position
        finally:
            self.release(token)

    async def seek(
        self,
        resource: SeekableResource,
        target: float,
        holder: Holder,
    ) -> float:
        async with self.holding(resource, target, holder) as position:
            return position

    def clamp(self, resource: SeekableResource, target: float) -> float:
        """Keep ``target`` inside ``[0, duration - 0.1 frame]``."""
        target = max(0.0, target)
        duration = resource.duration
        if duration > 0:
            frame_rate = resource.frame_rate
            tail = 0.1 / frame_rate if frame_rate > 0 else 0.0
            target = min(target, max(0.0, duration - tail))
        return target

    async def _seek(self, resource: SeekableResource, target: float, holder: Holder) -> None:
        target = self.clamp(resource, target)
        if abs(resource.position - target) < self._epsilon and resource.ready:
            logger.debug("%s seek to %.3fs skipped (already there)", holder, target)
            return

        try:
            await asyncio.wait_for(resource.seek(target), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "%s seek to %.3fs timed out after %.1fs", holder, target, self._timeout
            )
            raise SeekTimeout(f"Seek to {target:.3f} timed out") from exc
        except SeekError:
            raise
        except Exception as exc:
            logger.warning("%s seek to %.3fs failed: %s", holder, target, exc)
            raise SeekError(f"Seek to {target:.3f} failed: {exc}") from exc
