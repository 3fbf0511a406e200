"""用户忙碌状态：记录每个用户当前正在处理的任务与阶段。

存储：
- key: u:{user_id}:task
- value: JSON {state, task_id, phase, started_at, last_heartbeat}
- TTL: 默认 600 秒,worker 崩溃时记录自动过期

约束：
- 同一用户同一时刻最多一条忙碌记录(SET NX EX 原子获取)
- 另一个任务想标记同一用户忙碌时会等待,直到记录被清除或过期
- 清除只删除属于自己任务的记录
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from nonebot import logger

from ..storage.kv import KeyValueStore


class Phase(str, Enum):
    OCR = "OCR"
    LLM = "LLM"
    WEB_FETCH = "WEB_FETCH"
    SENDING = "SENDING"


PHASE_LABELS = {
    Phase.OCR: "识别图片文字",
    Phase.LLM: "整理文本",
    Phase.WEB_FETCH: "读取网页",
    Phase.SENDING: "发送结果",
}


@dataclass
class BusyRecord:
    task_id: str
    phase: str
    started_at: float
    last_heartbeat: float
    state: str = "busy"

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> Optional["BusyRecord"]:
        try:
            data = json.loads(raw)
            return cls(
                task_id=str(data["task_id"]),
                phase=str(data["phase"]),
                started_at=float(data["started_at"]),
                last_heartbeat=float(data.get("last_heartbeat", data["started_at"])),
                state=str(data.get("state", "busy")),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning(f"忙碌记录格式错误,忽略:{raw[:100]}")
            return None


def busy_key(user_id: str) -> str:
    return f"u:{user_id}:task"


class BusyStateTracker:
    """忙碌状态追踪器。"""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = 600,
        poll_interval: float = 0.5,
    ) -> None:
        self._store = store
        self._ttl = int(ttl_seconds)
        self._poll_interval = float(poll_interval)

    async def mark_busy(self, user_id: str, task_id: str, phase: Phase) -> BusyRecord:
        """标记用户忙碌;已被其他任务占用时等待。

        同一任务重复标记(例如重试)直接覆盖旧记录。
        """

        key = busy_key(user_id)
        waited = False
        while True:
            now = time.time()
            record = BusyRecord(task_id=task_id, phase=Phase(phase).value, started_at=now, last_heartbeat=now)
            if await self._store.set(key, record.to_json(), ex=self._ttl, nx=True):
                if waited:
                    logger.debug(f"用户 {user_id} 空闲,任务 {task_id} 开始处理")
                return record

            raw = await self._store.get(key)
            current = BusyRecord.from_json(raw) if raw else None
            if raw is not None and current is None:
                # 无法解析的记录按空闲处理,删除后重新抢占
                await self._store.delete(key)
                continue
            if current is not None and current.task_id == task_id:
                await self._store.set(key, record.to_json(), ex=self._ttl)
                return record
            if not waited:
                logger.debug(
                    f"用户 {user_id} 正忙(task={current.task_id if current else '?'}),任务 {task_id} 排队等待"
                )
                waited = True
            await asyncio.sleep(self._poll_interval)

    async def heartbeat(self, user_id: str, task_id: str, phase: Phase) -> bool:
        """更新阶段与心跳时间并刷新 TTL(保留 started_at)。

        记录已不属于本任务时返回 False,不做修改。
        """

        current = await self.get_status(user_id)
        if current is None or current.task_id != task_id:
            return False
        current.phase = Phase(phase).value
        current.last_heartbeat = time.time()
        return bool(await self._store.set(busy_key(user_id), current.to_json(), ex=self._ttl, xx=True))

    async def clear(self, user_id: str, task_id: str) -> bool:
        current = await self.get_status(user_id)
        if current is not None and current.task_id != task_id:
            return False
        return bool(await self._store.delete(busy_key(user_id)))

    async def get_status(self, user_id: str) -> Optional[BusyRecord]:
        raw = await self._store.get(busy_key(user_id))
        if not raw:
            return None
        return BusyRecord.from_json(raw)

    async def is_busy(self, user_id: str) -> bool:
        return await self.get_status(user_id) is not None

    @asynccontextmanager
    async def track(self, user_id: str, task_id: str, phase: Phase) -> AsyncIterator["PhaseHandle"]:
        """任务体的忙碌守卫:进入时标记忙碌,退出时(包括异常)清除。

        使用方式:
        ```python
        async with busy.track(user_id, task_id, Phase.OCR) as handle:
            text = await ocr(...)
            await handle.enter(Phase.LLM)
        ```
        """

        await self.mark_busy(user_id, task_id, phase)
        try:
            yield PhaseHandle(self, user_id, task_id)
        finally:
            try:
                await self.clear(user_id, task_id)
            except Exception as exc:
                # 清除失败时记录会在 TTL 后自动过期
                logger.warning(f"清除忙碌记录失败 user={user_id} task={task_id}:{exc}")


class PhaseHandle:
    """track() 返回的阶段切换句柄。"""

    def __init__(self, tracker: BusyStateTracker, user_id: str, task_id: str) -> None:
        self._tracker = tracker
        self.user_id = user_id
        self.task_id = task_id

    async def enter(self, phase: Phase) -> None:
        await self._tracker.heartbeat(self.user_id, self.task_id, phase)
