"""外部服务调用限流器：滑动窗口。

设计原理：
- 任意长度为 window_ms 的时间窗口内,最多放行 max_requests 次调用
- 到达上限时等待,直到窗口内最早的一次调用滑出窗口
- 只会延迟调用,不会拒绝调用

两种实现：
1. SlidingWindowRateLimiter: 进程内(deque 存放放行时间戳),单实例部署
2. SharedSlidingWindowRateLimiter: 基于共享存储的"槽位"(SET NX PX),
   多个实例共享同一份配额
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from nonebot import logger

from ..storage.kv import KeyValueStore


class SlidingWindowRateLimiter:
    """进程内滑动窗口限流器。

    说明：
        - clock / sleep 可注入,测试时用假时钟驱动
        - asyncio.Lock 保证并发调用按到达顺序依次放行
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests 必须 >= 1")
        if window_ms <= 0:
            raise ValueError("window_ms 必须 > 0")
        self.max_requests = int(max_requests)
        self.window = window_ms / 1000.0
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()

    async def wait(self) -> None:
        """等待直到允许一次调用,并记录本次放行时间。"""

        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._stamps) < self.max_requests:
                    self._stamps.append(now)
                    return
                delay = self._stamps[0] + self.window - now
                logger.debug(f"[RateLimiter:{self.name}] 已达上限 {self.max_requests},等待 {delay:.3f}s")
                await self._sleep(max(delay, 0.0))


class SharedSlidingWindowRateLimiter:
    """共享存储上的滑动窗口限流器。

    每次放行占用一个槽位 key(rl:{name}:{i}),槽位以 window_ms 为过期时间;
    所有槽位都被占用时,等待最早到期的那个槽位。
    """

    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        max_requests: int,
        window_ms: int,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests 必须 >= 1")
        if window_ms <= 0:
            raise ValueError("window_ms 必须 > 0")
        self._store = store
        self.name = name
        self.max_requests = int(max_requests)
        self.window_ms = int(window_ms)
        self._sleep = sleep

    def _slot_key(self, index: int) -> str:
        return f"rl:{self.name}:{index}"

    async def wait(self) -> None:
        while True:
            shortest: Optional[int] = None
            for i in range(self.max_requests):
                key = self._slot_key(i)
                if await self._store.set(key, str(time.time()), px=self.window_ms, nx=True):
                    return
                ttl = await self._store.pttl(key)
                if ttl >= 0 and (shortest is None or ttl < shortest):
                    shortest = ttl
            # 槽位恰好在两次操作之间过期时 ttl 为 -2,立即重试
            delay_ms = shortest if shortest is not None else 0
            logger.debug(f"[SharedRateLimiter:{self.name}] 槽位已满,等待 {delay_ms}ms")
            await self._sleep(max(delay_ms, 1) / 1000.0)


def build_rate_limiter(
    backend: str,
    *,
    name: str,
    max_requests: int,
    window_ms: int,
    store: Optional[KeyValueStore] = None,
):
    """按配置创建限流器: backend="shared" 且提供了 store 时使用共享实现。"""

    if backend == "shared":
        if store is None:
            raise ValueError("共享限流需要提供 store")
        return SharedSlidingWindowRateLimiter(store, name, max_requests, window_ms)
    return SlidingWindowRateLimiter(max_requests, window_ms, name=name)
