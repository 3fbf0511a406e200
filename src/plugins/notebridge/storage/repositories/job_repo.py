"""QueueJob 的数据访问层（DAO）。"""

from __future__ import annotations

import time
import uuid
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_STATES,
    JOB_WAITING,
    QueueJob,
)


class JobRepository:
    """任务仓储：所有状态迁移都是带条件的单条 UPDATE(比较并设置)。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, job: QueueJob) -> QueueJob:
        """新增任务;job_id 已存在时返回已有记录(幂等入队)。"""

        async with self._session_factory() as session:
            existing = await session.get(QueueJob, job.job_id)
            if existing is not None:
                return existing
            now = time.time()
            job.created_at = now
            job.updated_at = now
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # 并发入队同一个 job_id,以先写入的为准
                await session.rollback()
                existing = await session.get(QueueJob, job.job_id)
                if existing is None:
                    raise
                return existing
            await session.refresh(job)
            return job

    async def get(self, job_id: str) -> Optional[QueueJob]:
        async with self._session_factory() as session:
            return await session.get(QueueJob, job_id)

    async def claim_next(self, queue: str, *, lock_seconds: float) -> Optional[QueueJob]:
        """认领队列中最早可执行的等待任务。

        候选任务先查出来,再用 `status='waiting'` 作为条件更新;
        rowcount 为 0 说明被别的 worker 抢先认领,换下一个候选。
        """

        now = time.time()
        async with self._session_factory() as session:
            stmt = (
                select(QueueJob.job_id)
                .where(
                    QueueJob.queue == queue,
                    QueueJob.status == JOB_WAITING,
                    QueueJob.run_at <= now,
                )
                .order_by(QueueJob.run_at.asc(), QueueJob.created_at.asc())
                .limit(5)
            )
            candidates = list((await session.execute(stmt)).scalars().all())

            for job_id in candidates:
                token = uuid.uuid4().hex
                result = await session.execute(
                    update(QueueJob)
                    .where(QueueJob.job_id == job_id, QueueJob.status == JOB_WAITING)
                    .values(
                        status=JOB_ACTIVE,
                        lock_token=token,
                        locked_until=now + lock_seconds,
                        updated_at=now,
                    )
                )
                await session.commit()
                if result.rowcount == 1:
                    return await session.get(QueueJob, job_id, populate_existing=True)
        return None

    async def extend_lock(self, job_id: str, token: str, *, lock_seconds: float) -> bool:
        """续期认领锁;返回 False 表示锁已丢失(被巡检回收或被其他 worker 认领)。"""

        now = time.time()
        async with self._session_factory() as session:
            result = await session.execute(
                update(QueueJob)
                .where(
                    QueueJob.job_id == job_id,
                    QueueJob.status == JOB_ACTIVE,
                    QueueJob.lock_token == token,
                )
                .values(locked_until=now + lock_seconds, updated_at=now)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_completed(self, job_id: str, token: str, result: Optional[str] = None) -> bool:
        """确认完成(只有持有令牌的 worker 能确认)。"""

        now = time.time()
        async with self._session_factory() as session:
            res = await session.execute(
                update(QueueJob)
                .where(
                    QueueJob.job_id == job_id,
                    QueueJob.status == JOB_ACTIVE,
                    QueueJob.lock_token == token,
                )
                .values(
                    status=JOB_COMPLETED,
                    result=result,
                    lock_token=None,
                    locked_until=0.0,
                    finished_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return res.rowcount == 1

    async def mark_failed_attempt(self, job: QueueJob, token: str, error: str) -> Optional[str]:
        """记录一次失败尝试,返回新状态(waiting/failed);令牌失效时返回 None。"""

        now = time.time()
        attempts = int(job.attempts_made) + 1
        if attempts >= int(job.max_attempts):
            values = {
                "status": JOB_FAILED,
                "finished_at": now,
            }
        else:
            values = {
                "status": JOB_WAITING,
                "finished_at": None,
                "run_at": now + self.compute_backoff_seconds(job.backoff_delay_ms, attempts),
            }

        async with self._session_factory() as session:
            res = await session.execute(
                update(QueueJob)
                .where(
                    QueueJob.job_id == job.job_id,
                    QueueJob.status == JOB_ACTIVE,
                    QueueJob.lock_token == token,
                )
                .values(
                    attempts_made=attempts,
                    last_error=(error or "")[:2000],
                    lock_token=None,
                    locked_until=0.0,
                    updated_at=now,
                    **values,
                )
            )
            await session.commit()
            if res.rowcount != 1:
                return None
            return str(values["status"])

    async def requeue_stalled(self) -> int:
        """把认领锁已过期的 active 任务放回 waiting,返回回收数量。"""

        now = time.time()
        async with self._session_factory() as session:
            res = await session.execute(
                update(QueueJob)
                .where(QueueJob.status == JOB_ACTIVE, QueueJob.locked_until < now)
                .values(
                    status=JOB_WAITING,
                    lock_token=None,
                    locked_until=0.0,
                    run_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return int(res.rowcount or 0)

    async def purge_finished(
        self,
        *,
        completed_max_age: float,
        completed_max_count: int,
        failed_max_age: float,
    ) -> int:
        """按保留策略删除终态任务,返回删除数量。"""

        now = time.time()
        removed = 0
        async with self._session_factory() as session:
            res = await session.execute(
                delete(QueueJob).where(
                    QueueJob.status == JOB_COMPLETED,
                    QueueJob.finished_at < now - completed_max_age,
                )
            )
            removed += int(res.rowcount or 0)

            res = await session.execute(
                delete(QueueJob).where(
                    QueueJob.status == JOB_FAILED,
                    QueueJob.finished_at < now - failed_max_age,
                )
            )
            removed += int(res.rowcount or 0)

            # 超出数量上限的已完成任务(保留最新的 N 条)
            keep = (
                select(QueueJob.job_id)
                .where(QueueJob.status == JOB_COMPLETED)
                .order_by(QueueJob.finished_at.desc())
                .limit(max(0, int(completed_max_count)))
            )
            res = await session.execute(
                delete(QueueJob).where(
                    QueueJob.status == JOB_COMPLETED,
                    QueueJob.job_id.not_in(keep),
                )
            )
            removed += int(res.rowcount or 0)
            await session.commit()
        return removed

    async def count_by_status(self, queue: str) -> Dict[str, int]:
        """统计队列中各状态的任务数。"""

        async with self._session_factory() as session:
            stmt = (
                select(QueueJob.status, func.count())
                .where(QueueJob.queue == queue)
                .group_by(QueueJob.status)
            )
            rows = (await session.execute(stmt)).all()
        counts = {state: 0 for state in JOB_STATES}
        for status, n in rows:
            counts[str(status)] = int(n)
        return counts

    async def list_jobs(self, queue: str, status: Optional[str] = None) -> List[QueueJob]:
        async with self._session_factory() as session:
            stmt = select(QueueJob).where(QueueJob.queue == queue)
            if status:
                stmt = stmt.where(QueueJob.status == status)
            stmt = stmt.order_by(QueueJob.created_at.asc())
            return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    def compute_backoff_seconds(base_delay_ms: int, attempts_made: int) -> float:
        """指数退避: base * 2^(attempts_made-1),第一次失败等待 base。"""

        step = max(0, int(attempts_made) - 1)
        return (int(base_delay_ms) * (2**step)) / 1000.0
