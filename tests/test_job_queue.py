import asyncio
import json

import pytest

from notebridge.errors import UnknownKindError
from notebridge.storage.repositories.job_repo import JobRepository
from notebridge.workers.job_queue import JobKind, JobOptions


class TestJobQueue:
    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, job_queue):
        with pytest.raises(UnknownKindError) as excinfo:
            await job_queue.enqueue("video", {"task_id": "t1"})
        assert excinfo.value.kind == "video"

    @pytest.mark.asyncio
    async def test_enqueue_and_counts(self, job_queue):
        handle = await job_queue.enqueue("text", {"task_id": "t1", "text": "你好"})
        assert handle.kind is JobKind.TEXT
        assert handle.status == "waiting"

        counts = await job_queue.counts()
        assert set(counts) == {"text", "ocr-single", "ocr-group", "web-link"}
        assert counts["text"] == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}
        assert counts["ocr-single"]["waiting"] == 0

    @pytest.mark.asyncio
    async def test_payload_round_trips_unicode(self, job_queue, repo):
        handle = await job_queue.enqueue(JobKind.TEXT, {"task_id": "t1", "text": "中文内容"})
        job = await repo.get(handle.job_id)
        assert json.loads(job.payload_json)["text"] == "中文内容"
        assert job.queue == "text"

    @pytest.mark.asyncio
    async def test_duplicate_job_id_is_idempotent(self, job_queue, repo):
        opts = JobOptions(job_id="ocr-group:g1")
        first = await job_queue.enqueue("ocr-group", {"task_id": "t1", "file_ids": ["a"]}, opts)
        second = await job_queue.enqueue("ocr-group", {"task_id": "t2", "file_ids": ["b"]}, opts)

        assert first.job_id == second.job_id == "ocr-group:g1"
        jobs = await repo.list_jobs("ocr-group")
        assert len(jobs) == 1
        assert json.loads(jobs[0].payload_json)["file_ids"] == ["a"]


class TestJobRepository:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"})
        claims = await asyncio.gather(*(repo.claim_next("text", lock_seconds=30) for _ in range(5)))
        claimed = [c for c in claims if c is not None]
        assert len(claimed) == 1
        assert claimed[0].status == "active"
        assert claimed[0].lock_token

    @pytest.mark.asyncio
    async def test_claim_respects_queue(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"})
        assert await repo.claim_next("web-link", lock_seconds=30) is None

    @pytest.mark.asyncio
    async def test_claim_oldest_first(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"}, JobOptions(job_id="first"))
        await job_queue.enqueue("text", {"task_id": "t2"}, JobOptions(job_id="second"))
        job = await repo.claim_next("text", lock_seconds=30)
        assert job.job_id == "first"

    @pytest.mark.asyncio
    async def test_complete_requires_token(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"})
        job = await repo.claim_next("text", lock_seconds=30)
        assert await repo.mark_completed(job.job_id, "wrong-token") is False
        assert await repo.mark_completed(job.job_id, job.lock_token, "done") is True
        stored = await repo.get(job.job_id)
        assert stored.status == "completed"
        assert stored.result == "done"
        assert stored.finished_at is not None

    @pytest.mark.asyncio
    async def test_retry_then_permanent_failure(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"}, JobOptions(max_attempts=3, backoff_delay_ms=0))

        statuses = []
        for _ in range(3):
            job = await repo.claim_next("text", lock_seconds=30)
            assert job is not None
            statuses.append(await repo.mark_failed_attempt(job, job.lock_token, "boom"))

        assert statuses == ["waiting", "waiting", "failed"]
        assert await repo.claim_next("text", lock_seconds=30) is None
        jobs = await repo.list_jobs("text", status="failed")
        assert len(jobs) == 1
        assert jobs[0].attempts_made == 3
        assert jobs[0].last_error == "boom"

    @pytest.mark.asyncio
    async def test_backoff_delays_next_claim(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"}, JobOptions(backoff_delay_ms=2000))
        job = await repo.claim_next("text", lock_seconds=30)
        before = job.updated_at
        assert await repo.mark_failed_attempt(job, job.lock_token, "boom") == "waiting"

        assert await repo.claim_next("text", lock_seconds=30) is None
        stored = await repo.get(job.job_id)
        assert stored.run_at >= before + 2.0 - 0.01

    def test_backoff_doubles(self):
        assert JobRepository.compute_backoff_seconds(2000, 1) == 2.0
        assert JobRepository.compute_backoff_seconds(2000, 2) == 4.0
        assert JobRepository.compute_backoff_seconds(2000, 3) == 8.0

    @pytest.mark.asyncio
    async def test_stalled_job_is_requeued(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"})
        job = await repo.claim_next("text", lock_seconds=-1)
        token = job.lock_token

        assert await repo.requeue_stalled() == 1
        assert (await repo.get(job.job_id)).status == "waiting"
        assert await repo.extend_lock(job.job_id, token, lock_seconds=30) is False
        assert await repo.mark_completed(job.job_id, token) is False

        again = await repo.claim_next("text", lock_seconds=30)
        assert again.job_id == job.job_id
        assert again.lock_token != token

    @pytest.mark.asyncio
    async def test_live_lock_not_requeued(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"})
        job = await repo.claim_next("text", lock_seconds=30)
        assert await repo.requeue_stalled() == 0
        assert await repo.extend_lock(job.job_id, job.lock_token, lock_seconds=30) is True

    @pytest.mark.asyncio
    async def test_purge_by_age(self, job_queue, repo):
        for i in range(2):
            await job_queue.enqueue("text", {"task_id": f"t{i}"}, JobOptions(job_id=f"j{i}", max_attempts=1))
        done = await repo.claim_next("text", lock_seconds=30)
        await repo.mark_completed(done.job_id, done.lock_token)
        bad = await repo.claim_next("text", lock_seconds=30)
        await repo.mark_failed_attempt(bad, bad.lock_token, "boom")

        kept = await repo.purge_finished(completed_max_age=3600, completed_max_count=1000, failed_max_age=86400)
        assert kept == 0

        removed = await repo.purge_finished(completed_max_age=-1, completed_max_count=1000, failed_max_age=-1)
        assert removed == 2
        assert await repo.list_jobs("text") == []

    @pytest.mark.asyncio
    async def test_purge_keeps_newest_completed(self, job_queue, repo):
        for i in range(3):
            await job_queue.enqueue("text", {"task_id": f"t{i}"}, JobOptions(job_id=f"j{i}"))
            job = await repo.claim_next("text", lock_seconds=30)
            await repo.mark_completed(job.job_id, job.lock_token)
            await asyncio.sleep(0.01)

        removed = await repo.purge_finished(completed_max_age=3600, completed_max_count=1, failed_max_age=86400)
        assert removed == 2
        remaining = await repo.list_jobs("text")
        assert [j.job_id for j in remaining] == ["j2"]

    @pytest.mark.asyncio
    async def test_purge_leaves_waiting_jobs(self, job_queue, repo):
        await job_queue.enqueue("text", {"task_id": "t1"})
        removed = await repo.purge_finished(completed_max_age=-1, completed_max_count=0, failed_max_age=-1)
        assert removed == 0
        assert len(await repo.list_jobs("text", status="waiting")) == 1
