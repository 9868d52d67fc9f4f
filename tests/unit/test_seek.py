"""Unit tests for sharpframe/video/seek.py."""

import asyncio

import pytest

from sharpframe.video.seek import SeekCoordinator, SeekError, SeekTimeout
from tests.fakes import FakeResource


class CountingResource(FakeResource):
    """Records how many seeks overlap in time."""

    def __init__(self, **kwargs) -> None:
        super().__init__(seek_delay=0.01, **kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def seek(self, time: float) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await super().seek(time)
        finally:
            self.in_flight -= 1


async def test_seek_moves_resource():
    coordinator = SeekCoordinator()
    resource = FakeResource()
    position = await coordinator.seek(resource, 1.25, holder="analysis")
    assert position == 1.25
    assert resource.seeks == [1.25]
    assert coordinator.owner is None


async def test_seek_skipped_when_already_positioned():
    coordinator = SeekCoordinator()
    resource = FakeResource()
    await coordinator.seek(resource, 2.0, holder="user")
    await coordinator.seek(resource, 2.0001, holder="analysis")
    assert resource.seeks == [2.0]


async def test_seek_not_skipped_before_first_frame():
    coordinator = SeekCoordinator()
    resource = FakeResource()
    assert resource.position == 0.0 and not resource.ready
    await coordinator.seek(resource, 0.0, holder="analysis")
    assert resource.seeks == [0.0]


async def test_seek_target_clamped_to_duration():
    coordinator = SeekCoordinator()
    resource = FakeResource(duration=10.0, frame_rate=10.0)
    await coordinator.seek(resource, 50.0, holder="user")
    assert resource.seeks == [pytest.approx(9.99)]

    await coordinator.seek(resource, -3.0, holder="user")
    assert resource.seeks[-1] == 0.0


async def test_timeout_raises_and_releases():
    coordinator = SeekCoordinator(timeout=0.05)
    resource = FakeResource(seek_delay=1.0)
    with pytest.raises(SeekTimeout):
        await coordinator.seek(resource, 3.0, holder="analysis")
    assert coordinator.owner is None


async def test_resource_error_raises_seek_error_and_releases():
    coordinator = SeekCoordinator()
    resource = FakeResource()
    resource.fail_at.add(4.0)
    with pytest.raises(SeekError) as info:
        await coordinator.seek(resource, 4.0, holder="analysis")
    assert not isinstance(info.value, SeekTimeout)
    assert coordinator.owner is None

    # the coordinator keeps working after a failed seek
    assert await coordinator.seek(resource, 5.0, holder="analysis") == 5.0


async def test_only_one_seek_in_flight():
    coordinator = SeekCoordinator()
    resource = CountingResource()
    await asyncio.gather(
        *(
            coordinator.seek(resource, t, holder="analysis" if i % 2 else "user")
            for i, t in enumerate([1.0, 2.0, 3.0, 4.0, 5.0])
        )
    )
    assert resource.max_in_flight == 1
    assert resource.seeks == [1.0, 2.0, 3.0, 4.0, 5.0]


async def test_user_seek_waits_for_analysis_holder():
    coordinator = SeekCoordinator()
    analysis = FakeResource()
    playback = FakeResource()

    async with coordinator.holding(analysis, 1.0, holder="analysis"):
        assert coordinator.owner.holder == "analysis"
        user = asyncio.create_task(coordinator.seek(playback, 2.0, holder="user"))
        await asyncio.sleep(0.01)
        assert not user.done()
        assert playback.seeks == []
        assert coordinator.waiting == 1

    assert await user == 2.0
    assert playback.seeks == [2.0]
    assert coordinator.owner is None


async def test_cancelled_waiter_is_skipped():
    coordinator = SeekCoordinator()
    resource = FakeResource()

    token = await coordinator.acquire("analysis")
    waiter = asyncio.create_task(coordinator.acquire("user"))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    coordinator.release(token)
    assert coordinator.owner is None
    assert await coordinator.seek(resource, 1.0, holder="user") == 1.0


async def test_release_by_non_owner_raises():
    coordinator = SeekCoordinator()
    token = await coordinator.acquire("user")
    coordinator.release(token)
    with pytest.raises(RuntimeError):
        coordinator.release(token)
