from __future__ import annotations

import os
import tempfile

# 避免读取开发机上的 configs/config.toml
_test_tmp = tempfile.mkdtemp(prefix="notebridge-test-")
os.environ.setdefault("NOTEBRIDGE_CONFIG_TOML", os.path.join(_test_tmp, "missing.toml"))

import nonebot

nonebot.init(driver="~none")
nonebot.load_plugin("notebridge")

import pytest
import pytest_asyncio

from notebridge.storage.kv import MemoryStore
from notebridge.storage.repositories.job_repo import JobRepository
from notebridge.storage.sqlalchemy_engine import (
    create_engine,
    create_session_factory,
    init_models,
)
from notebridge.workers.job_queue import JobQueue


class FakeClock:
    """可控时钟:sleep 只推进时间,不真正等待。"""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def repo(engine) -> JobRepository:
    return JobRepository(create_session_factory(engine))


@pytest.fixture
def job_queue(repo) -> JobQueue:
    return JobQueue(repo)
