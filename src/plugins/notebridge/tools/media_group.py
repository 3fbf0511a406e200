"""相册(media group)聚合：把同一相册里陆续到达的图片合并成一个 OCR 任务。

Telegram 把一个相册拆成多条消息逐条推送,每条都带相同的 media_group_id。

流程：
    1. 每张图片: RPUSH 文件 ID 到 mgroup:{id},刷新缓冲 TTL,记录最后到达时间
    2. 尝试抢占防抖锁 mgroup:{id}:timer(SET NX EX),只有抢到锁的实例安排 flush
    3. flush 任务等待相册"静默"满一个防抖窗口(硬截止: max_hold_seconds)
    4. 读取缓冲,非空则入队一个 ocr-group 任务(job_id = ocr-group:{id}),然后删除缓冲
    5. 入队失败: 保留缓冲并释放防抖锁,通过 notify 提示用户重新发送

竞态说明：
    - 多实例同时收到同一相册的图片时,靠防抖锁保证只有一个 flush
    - 入队使用确定的 job_id,即使重复 flush 也只会产生一个任务
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from nonebot import logger

from ..workers.job_queue import JobHandle, JobKind, JobOptions, JobQueue
from ..storage.kv import KeyValueStore

ALBUM_FAILED_NOTICE = "抱歉，这组图片提交失败了，请重新发送。"

# 失败提示回调: (chat_id, text)
NotifyFunc = Callable[[str, str], Awaitable[Any]]


def group_buffer_key(group_id: str) -> str:
    return f"mgroup:{group_id}"


class MediaGroupAggregator:
    """相册聚合器。"""

    def __init__(
        self,
        store: KeyValueStore,
        job_queue: JobQueue,
        *,
        debounce_ms: int = 2500,
        max_hold_seconds: float = 15.0,
        buffer_ttl_seconds: int = 120,
        job_options: Optional[JobOptions] = None,
        notify: Optional[NotifyFunc] = None,
    ) -> None:
        self._store = store
        self._queue = job_queue
        self._debounce = debounce_ms / 1000.0
        self._max_hold = float(max_hold_seconds)
        self._ttl = int(buffer_ttl_seconds)
        self._job_options = job_options or JobOptions()
        self._notify = notify
        self._tasks: Dict[str, asyncio.Task] = {}

    async def add_photo(
        self,
        chat_id: str,
        user_id: str,
        group_id: str,
        file_id: str,
        task_id: str,
    ) -> bool:
        """加入一张相册图片;返回本次调用是否负责安排 flush。"""

        key = group_buffer_key(group_id)
        await self._store.rpush(key, file_id)
        await self._store.expire(key, self._ttl)
        await self._store.set(f"{key}:last", str(time.time()), ex=self._ttl)

        acquired = await self._store.set(f"{key}:timer", task_id, ex=self._ttl, nx=True)
        if not acquired:
            return False

        logger.debug(f"[MediaGroup] 相册 {group_id} 开始聚合 task={task_id}")
        task = asyncio.create_task(self._flush_when_quiet(chat_id, user_id, group_id, task_id))
        self._tasks[group_id] = task
        task.add_done_callback(lambda _t, gid=group_id: self._tasks.pop(gid, None))
        return True

    async def _wait_quiet(self, group_id: str) -> None:
        key = group_buffer_key(group_id)
        started = time.time()
        delay = self._debounce
        while True:
            await asyncio.sleep(delay)
            now = time.time()
            if now - started >= self._max_hold:
                logger.debug(f"[MediaGroup] 相册 {group_id} 达到最长等待 {self._max_hold}s,强制合并")
                return
            raw = await self._store.get(f"{key}:last")
            last = float(raw) if raw else 0.0
            quiet = now - last
            if quiet >= self._debounce:
                return
            delay = min(self._debounce - quiet, self._max_hold - (now - started))

    async def _flush_when_quiet(self, chat_id: str, user_id: str, group_id: str, task_id: str) -> None:
        try:
            await self._wait_quiet(group_id)
            await self.flush(chat_id, user_id, group_id, task_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"[MediaGroup] 相册 {group_id} 合并失败:{exc}")
            await self._notify_failed(chat_id, group_id)

    async def _notify_failed(self, chat_id: str, group_id: str) -> None:
        if self._notify is None:
            return
        try:
            await self._notify(chat_id, ALBUM_FAILED_NOTICE)
        except Exception as exc:
            logger.warning(f"[MediaGroup] 相册 {group_id} 失败提示发送失败:{exc}")

    async def flush(self, chat_id: str, user_id: str, group_id: str, task_id: str) -> Optional[JobHandle]:
        """读取缓冲并入队;缓冲为空时不做任何事。"""

        key = group_buffer_key(group_id)
        handle: Optional[JobHandle] = None
        try:
            file_ids = await self._store.lrange(key, 0, -1)
            if file_ids:
                handle = await self._queue.enqueue(
                    JobKind.OCR_GROUP,
                    {
                        "task_id": task_id,
                        "chat_id": chat_id,
                        "user_id": user_id,
                        "group_id": group_id,
                        "file_ids": list(file_ids),
                    },
                    JobOptions(
                        job_id=f"ocr-group:{group_id}",
                        max_attempts=self._job_options.max_attempts,
                        backoff_delay_ms=self._job_options.backoff_delay_ms,
                    ),
                )
                logger.info(f"[MediaGroup] 相册 {group_id} 共 {len(file_ids)} 张图片,已入队 task={task_id}")
                await self._store.delete(key)
        finally:
            # 入队失败时保留缓冲,释放防抖锁让后续图片重新安排 flush
            await self._store.delete(f"{key}:last", f"{key}:timer")
        return handle

    async def shutdown(self) -> None:
        """取消所有等待中的 flush 任务(缓冲保留在存储中,TTL 到期自动清理)。"""

        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
