"""
Shared pytest fixtures for the sharpframe test suite.

- fast_settings: Settings with no settle/pacing delays and a short seek timeout
- resource: a FakeResource (see tests/fakes.py) showing a sharp checkerboard
- thread_pool: WorkerPool whose compute units are threads instead of processes
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from sharpframe.config import Settings
from sharpframe.workers.pool import WorkerPool
from tests.fakes import FakeResource


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Clear lru_cache so each test gets fresh Settings from its environment."""
    from sharpframe.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def fast_settings() -> Settings:
    return Settings(
        interaction_settle_s=0.0,
        playback_pacing_s=0.0,
        ready_grace_s=0.0,
        seek_timeout_s=0.5,
    )


@pytest.fixture()
def resource() -> FakeResource:
    return FakeResource()


def thread_unit() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=1)


@pytest.fixture()
async def thread_pool():
    pool = WorkerPool(capacity=3, executor_factory=thread_unit)
    yield pool
    await pool.close()
