"""共享 KV 存储：忙碌记录、相册缓冲/防抖锁、结果缓存、保存记录都放在这里。

约定:
- 每次修改只涉及一个 key,且是原子操作(set / rpush / sadd / set-if-absent-with-expiry)
- 不依赖多 key 事务;算法本身通过"先抢锁"和"操作前重读"容忍交错
- 接口与 redis.asyncio.Redis(decode_responses=True) 的同名方法保持一致,
  生产环境直接传入 Redis 客户端,单实例/测试使用 MemoryStore
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union

import redis.asyncio as aioredis
from nonebot import logger


class KeyValueStore(Protocol):
    """核心模块依赖的最小 KV 接口(Redis 命令子集)。"""

    async def get(self, name: str) -> Optional[str]: ...

    async def set(
        self,
        name: str,
        value: Union[str, int, float],
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
    ) -> Optional[bool]: ...

    async def delete(self, *names: str) -> int: ...

    async def expire(self, name: str, time: int) -> bool: ...

    async def pttl(self, name: str) -> int: ...

    async def rpush(self, name: str, *values: str) -> int: ...

    async def lrange(self, name: str, start: int, end: int) -> List[str]: ...

    async def sadd(self, name: str, *values: str) -> int: ...

    async def smembers(self, name: str) -> Set[str]: ...

    async def sismember(self, name: str, value: str) -> Any: ...


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None


class MemoryStore:
    """进程内 KV 实现(语义对齐 Redis,过期按惰性删除)。

    说明:
        - asyncio 单线程调度,每个方法内部没有 await,天然原子
        - 只适合单实例部署或测试;多实例必须使用 Redis
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, _Entry] = {}
        self._clock = clock

    def _live(self, name: str) -> Optional[_Entry]:
        entry = self._data.get(name)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[name]
            return None
        return entry

    def _deadline(self, ex: Optional[int], px: Optional[int]) -> Optional[float]:
        if px is not None:
            return self._clock() + px / 1000.0
        if ex is not None:
            return self._clock() + float(ex)
        return None

    async def get(self, name: str) -> Optional[str]:
        entry = self._live(name)
        if entry is None:
            return None
        if not isinstance(entry.value, str):
            raise TypeError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return entry.value

    async def set(
        self,
        name: str,
        value: Union[str, int, float],
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
    ) -> Optional[bool]:
        exists = self._live(name) is not None
        if nx and exists:
            return None
        if xx and not exists:
            return None
        self._data[name] = _Entry(str(value), self._deadline(ex, px))
        return True

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self._live(name) is not None:
                del self._data[name]
                removed += 1
        return removed

    async def expire(self, name: str, time: int) -> bool:
        entry = self._live(name)
        if entry is None:
            return False
        entry.expires_at = self._clock() + float(time)
        return True

    async def pttl(self, name: str) -> int:
        entry = self._live(name)
        if entry is None:
            return -2
        if entry.expires_at is None:
            return -1
        return max(0, int((entry.expires_at - self._clock()) * 1000))

    async def rpush(self, name: str, *values: str) -> int:
        entry = self._live(name)
        if entry is None:
            entry = _Entry([])
            self._data[name] = entry
        entry.value.extend(str(v) for v in values)
        return len(entry.value)

    async def lrange(self, name: str, start: int, end: int) -> List[str]:
        entry = self._live(name)
        if entry is None:
            return []
        items = entry.value
        stop = len(items) if end == -1 else end + 1
        return list(items[start:stop])

    async def sadd(self, name: str, *values: str) -> int:
        entry = self._live(name)
        if entry is None:
            entry = _Entry(set())
            self._data[name] = entry
        before = len(entry.value)
        entry.value.update(str(v) for v in values)
        return len(entry.value) - before

    async def smembers(self, name: str) -> Set[str]:
        entry = self._live(name)
        return set(entry.value) if entry is not None else set()

    async def sismember(self, name: str, value: str) -> bool:
        entry = self._live(name)
        return entry is not None and str(value) in entry.value

    async def aclose(self) -> None:
        self._data.clear()


def create_store(url: str) -> KeyValueStore:
    """按地址创建共享存储: "memory://" 为进程内实现,其余交给 Redis。"""

    if url.startswith("memory://"):
        logger.warning("共享存储使用进程内实现(memory://),仅适合单实例部署。")
        return MemoryStore()
    return aioredis.from_url(url, decode_responses=True)


async def close_store(store: KeyValueStore) -> None:
    """关闭存储连接。"""

    closer = getattr(store, "aclose", None) or getattr(store, "close", None)
    if closer is not None:
        await closer()
