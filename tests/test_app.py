import asyncio
from unittest.mock import AsyncMock

import pytest

from notebridge.app import NoteBridgeApp
from notebridge.bot.receivers import InboundMessage
from notebridge.config import Config
from notebridge.storage.kv import MemoryStore
from notebridge.workers.processors import FAILED_NOTICE


@pytest.fixture
def config(tmp_path):
    return Config.parse_obj(
        {
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
            "store_url": "memory://",
            "job_attempts": 1,
            "worker_concurrency": 1,
            "worker_poll_interval": 0.01,
        }
    )


async def _wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.02)
    return False


@pytest.mark.asyncio
async def test_unconfigured_rewriter_ends_with_failure_notice(config):
    app = NoteBridgeApp(config, bot_getter=lambda: None)
    sender = AsyncMock()
    await app.start(sender=sender, store=MemoryStore())
    try:
        assert len(app.pools) == 4
        handle = await app.receiver.handle(InboundMessage("c1", "u1", text="待整理的内容"))

        async def failed():
            job = await app.repository.get(handle.job_id)
            return job.status == "failed"

        assert await _wait_until(failed)

        async def notified():
            return any(c.args[1] == FAILED_NOTICE for c in sender.send_message.await_args_list)

        assert await _wait_until(notified)
        assert await app.busy.get_status("u1") is None
        assert (await app.job_queue.counts())["text"]["failed"] == 1
    finally:
        await app.stop()

    assert app.pools == []


@pytest.mark.asyncio
async def test_purge_and_sweep_before_start(config):
    app = NoteBridgeApp(config, bot_getter=lambda: None)
    assert await app.purge() == 0
    assert await app.sweep() == 0
