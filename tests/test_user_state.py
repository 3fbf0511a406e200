import asyncio
import json

import pytest

from notebridge.services.user_state import BusyStateTracker, Phase, busy_key


class TestBusyStateTracker:
    @pytest.mark.asyncio
    async def test_mark_and_status(self, store):
        tracker = BusyStateTracker(store)
        await tracker.mark_busy("u1", "t1", Phase.OCR)

        record = await tracker.get_status("u1")
        assert record is not None
        assert record.task_id == "t1"
        assert record.phase == "OCR"
        assert record.state == "busy"
        assert 0 < await store.pttl(busy_key("u1")) <= 600_000

    @pytest.mark.asyncio
    async def test_heartbeat_preserves_started_at(self, store):
        tracker = BusyStateTracker(store)
        first = await tracker.mark_busy("u1", "t1", Phase.OCR)
        await asyncio.sleep(0.01)

        assert await tracker.heartbeat("u1", "t1", Phase.LLM) is True
        record = await tracker.get_status("u1")
        assert record.phase == "LLM"
        assert record.started_at == first.started_at
        assert record.last_heartbeat > first.started_at

    @pytest.mark.asyncio
    async def test_heartbeat_from_other_task_is_ignored(self, store):
        tracker = BusyStateTracker(store)
        await tracker.mark_busy("u1", "t1", Phase.OCR)
        assert await tracker.heartbeat("u1", "t2", Phase.LLM) is False
        assert (await tracker.get_status("u1")).phase == "OCR"

    @pytest.mark.asyncio
    async def test_clear_only_own_record(self, store):
        tracker = BusyStateTracker(store)
        await tracker.mark_busy("u1", "t1", Phase.OCR)
        assert await tracker.clear("u1", "t2") is False
        assert await tracker.is_busy("u1")
        assert await tracker.clear("u1", "t1") is True
        assert not await tracker.is_busy("u1")

    @pytest.mark.asyncio
    async def test_track_clears_after_exception(self, store):
        tracker = BusyStateTracker(store)
        with pytest.raises(RuntimeError):
            async with tracker.track("u1", "t1", Phase.OCR) as phase:
                await phase.enter(Phase.LLM)
                assert (await tracker.get_status("u1")).phase == "LLM"
                raise RuntimeError("boom")
        assert await tracker.get_status("u1") is None

    @pytest.mark.asyncio
    async def test_track_clears_after_success(self, store):
        tracker = BusyStateTracker(store)
        async with tracker.track("u1", "t1", Phase.WEB_FETCH):
            assert await tracker.is_busy("u1")
        assert not await tracker.is_busy("u1")

    @pytest.mark.asyncio
    async def test_second_job_waits_for_first(self, store):
        tracker = BusyStateTracker(store, poll_interval=0.01)
        await tracker.mark_busy("u1", "t1", Phase.OCR)

        waiter = asyncio.create_task(tracker.mark_busy("u1", "t2", Phase.LLM))
        await asyncio.sleep(0.05)
        assert not waiter.done()
        assert (await tracker.get_status("u1")).task_id == "t1"

        await tracker.clear("u1", "t1")
        await asyncio.wait_for(waiter, timeout=1)
        assert (await tracker.get_status("u1")).task_id == "t2"

    @pytest.mark.asyncio
    async def test_same_task_can_remark(self, store):
        tracker = BusyStateTracker(store)
        await tracker.mark_busy("u1", "t1", Phase.OCR)
        await asyncio.wait_for(tracker.mark_busy("u1", "t1", Phase.OCR), timeout=1)

    @pytest.mark.asyncio
    async def test_malformed_record_treated_as_idle(self, store):
        tracker = BusyStateTracker(store)
        await store.set(busy_key("u1"), json.dumps({"foo": 1}))
        assert await tracker.get_status("u1") is None

    @pytest.mark.asyncio
    async def test_malformed_record_does_not_block_mark_busy(self, store):
        tracker = BusyStateTracker(store, poll_interval=0.01)
        await store.set(busy_key("u1"), json.dumps({"foo": 1}))

        record = await asyncio.wait_for(tracker.mark_busy("u1", "t1", Phase.OCR), timeout=1)
        assert record.task_id == "t1"
        assert (await tracker.get_status("u1")).task_id == "t1"
        assert 0 < await store.pttl(busy_key("u1")) <= 600_000
