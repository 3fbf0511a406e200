"""保存记录：每个 (用户, 任务) 已保存到哪些笔记服务,防止重复保存。"""

from __future__ import annotations

from typing import Set

from ..storage.kv import KeyValueStore

DESTINATIONS = {"flomo": "f", "notion": "n"}
_TAG_TO_DEST = {v: k for k, v in DESTINATIONS.items()}


def saved_key(user_id: str, task_id: str) -> str:
    return f"saved:{user_id}:{task_id}"


class SaveIdempotencyLedger:
    """集合 saved:{user}:{task},成员为目的地短标记(f=flomo, n=notion),与结果缓存同时过期。"""

    def __init__(self, store: KeyValueStore, *, ttl_seconds: int = 86400) -> None:
        self._store = store
        self._ttl = int(ttl_seconds)

    @staticmethod
    def tag(destination: str) -> str:
        try:
            return DESTINATIONS[destination]
        except KeyError:
            raise ValueError(f"未知保存目的地: {destination}") from None

    async def is_saved(self, user_id: str, task_id: str, destination: str) -> bool:
        return bool(await self._store.sismember(saved_key(user_id, task_id), self.tag(destination)))

    async def mark_saved(self, user_id: str, task_id: str, destination: str) -> None:
        key = saved_key(user_id, task_id)
        await self._store.sadd(key, self.tag(destination))
        await self._store.expire(key, self._ttl)

    async def saved_destinations(self, user_id: str, task_id: str) -> Set[str]:
        members = await self._store.smembers(saved_key(user_id, task_id))
        return {_TAG_TO_DEST[m] for m in members if m in _TAG_TO_DEST}
