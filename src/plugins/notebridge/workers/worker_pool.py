"""任务工作池：每种任务类型一个池,池内 N 个 worker 协程轮询认领任务。"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

from nonebot import logger

from ..storage.models import QueueJob
from ..storage.repositories.job_repo import JobRepository
from .job_queue import JobKind

JobHandler = Callable[[QueueJob, Dict[str, Any]], Awaitable[Optional[str]]]
FailureHook = Callable[[QueueJob, Dict[str, Any], BaseException], Awaitable[None]]


class WorkerPool:
    """单一任务类型的工作池。

    说明:
        - 认领是数据库上的比较并设置,多个 worker(包括其他进程)不会拿到同一个任务
        - 处理期间后台续期认领锁;锁丢失后本 worker 的完成/失败确认会被忽略
        - handler 抛异常视为一次失败尝试,由仓储层决定重试还是终止
    """

    def __init__(
        self,
        kind: JobKind,
        handler: JobHandler,
        repository: JobRepository,
        *,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        lock_seconds: float = 30.0,
        on_failed: Optional[FailureHook] = None,
    ) -> None:
        self.kind = JobKind(kind)
        self._handler = handler
        self._repo = repository
        self._concurrency = max(1, int(concurrency))
        self._poll_interval = float(poll_interval)
        self._lock_seconds = float(lock_seconds)
        self._on_failed = on_failed
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        for i in range(self._concurrency):
            self._tasks.append(asyncio.create_task(self.run(i), name=f"notebridge-{self.kind.value}-{i}"))
        logger.info(f"WorkerPool[{self.kind.value}] 已启动,并发 {self._concurrency}")

    async def stop(self) -> None:
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"WorkerPool[{self.kind.value}] 已停止")

    async def run(self, index: int = 0) -> None:
        """worker 主循环。"""

        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"WorkerPool[{self.kind.value}#{index}] 循环异常：{exc}")
                await asyncio.sleep(self._poll_interval)

    async def run_once(self) -> bool:
        """认领并处理一个任务;队列里没有可执行任务时返回 False。"""

        job = await self._repo.claim_next(self.kind.value, lock_seconds=self._lock_seconds)
        if job is None:
            return False
        await self._process_job(job)
        return True

    async def _renew_lock(self, job: QueueJob, token: str) -> None:
        interval = max(self._lock_seconds / 3.0, 0.05)
        while True:
            await asyncio.sleep(interval)
            ok = await self._repo.extend_lock(job.job_id, token, lock_seconds=self._lock_seconds)
            if not ok:
                logger.warning(f"任务认领锁已丢失 job_id={job.job_id}")
                return

    async def _process_job(self, job: QueueJob) -> None:
        token = str(job.lock_token or "")
        renewer = asyncio.create_task(self._renew_lock(job, token))
        payload: Dict[str, Any] = {}
        try:
            payload = json.loads(job.payload_json) if job.payload_json else {}
            result = await self._handler(job, payload)
        except asyncio.CancelledError:
            # 停机时不计失败,认领锁过期后由巡检放回等待队列
            raise
        except Exception as exc:
            status = await self._repo.mark_failed_attempt(job, token, f"{type(exc).__name__}: {exc}")
            if status == "failed":
                logger.exception(
                    f"任务最终失败 kind={self.kind.value} job_id={job.job_id} "
                    f"attempts={job.attempts_made + 1}/{job.max_attempts}：{exc}"
                )
                await self._notify_failed(job, payload, exc)
            else:
                logger.warning(
                    f"任务失败，将重试 kind={self.kind.value} job_id={job.job_id} "
                    f"attempt={job.attempts_made + 1}/{job.max_attempts}：{exc}"
                )
        else:
            if await self._repo.mark_completed(job.job_id, token, result):
                logger.debug(f"任务完成 kind={self.kind.value} job_id={job.job_id}")
            else:
                logger.warning(f"任务完成但认领锁已失效 job_id={job.job_id}")
        finally:
            renewer.cancel()
            await asyncio.gather(renewer, return_exceptions=True)

    async def _notify_failed(self, job: QueueJob, payload: Dict[str, Any], exc: BaseException) -> None:
        if self._on_failed is None:
            return
        try:
            await self._on_failed(job, payload, exc)
        except Exception as hook_exc:
            logger.warning(f"失败通知发送失败 job_id={job.job_id}：{hook_exc}")


async def sweep_stalled(repository: JobRepository) -> int:
    """把认领锁过期的任务放回等待队列(worker 崩溃后的恢复)。"""

    n = await repository.requeue_stalled()
    if n:
        logger.warning(f"回收了 {n} 个认领超时的任务")
    return n
