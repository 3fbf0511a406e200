"""结果投递：分片发送、失败重试、结果缓存和保存按钮。

发送规则:
- 长结果按 chunk_max 切分,依次发送,分片之间间隔 pause 秒
- 保存按钮只挂在最后一个分片上
- 每个分片失败后指数退避重试(2s, 4s, ...),最多 max_attempts 次
- 重试用尽: 尽力发一条道歉(最多 2 次),然后把原异常抛给任务层
- 无论发送成功与否,完整结果都缓存到 task:{id}:result,供之后的保存按钮使用
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Iterable, Optional

from nonebot import logger

from ..bot.transport import Keyboard, MessageSender
from ..storage.kv import KeyValueStore
from ..utils.chunk import split_text_into_chunks

DELIVERY_FAILED_NOTICE = "抱歉，结果发送失败了，请稍后重试。"
EMPTY_RESULT_NOTICE = "抱歉，未生成可发送的内容，请换个内容再试。"

_DEST_LABELS = {"flomo": "Flomo", "notion": "Notion"}


def result_key(task_id: str) -> str:
    return f"task:{task_id}:result"


def encode_callback(action: str, task_id: str, destination: str) -> str:
    """回调数据(紧凑 JSON,Telegram 限制 64 字节)。"""

    return json.dumps({"a": action, "t": task_id, "to": destination}, separators=(",", ":"))


def build_save_buttons(task_id: str, saved: Iterable[str] = ()) -> Keyboard:
    """生成保存按钮;已保存的目的地变成不可再次触发的 noop 按钮。"""

    done = set(saved)
    row = []
    for dest, label in _DEST_LABELS.items():
        if dest in done:
            row.append({"text": f"✅ 已保存到 {label}", "callback_data": encode_callback("noop", task_id, dest)})
        else:
            row.append({"text": f"保存到 {label}", "callback_data": encode_callback("save", task_id, dest)})
    return [row]


class ResultDelivery:
    def __init__(
        self,
        sender: MessageSender,
        store: KeyValueStore,
        *,
        chunk_max: int = 3500,
        pause_seconds: float = 0.5,
        max_attempts: int = 3,
        retry_base_seconds: float = 2.0,
        result_ttl_seconds: int = 86400,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sender = sender
        self._store = store
        self._chunk_max = int(chunk_max)
        self._pause = float(pause_seconds)
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base = float(retry_base_seconds)
        self._result_ttl = int(result_ttl_seconds)
        self._sleep = sleep

    async def send_with_retry(
        self,
        chat_id: str,
        text: str,
        buttons: Optional[Keyboard] = None,
        *,
        attempts: Optional[int] = None,
    ) -> Any:
        total = attempts or self._max_attempts
        for attempt in range(1, total + 1):
            try:
                return await self._sender.send_message(chat_id, text, buttons)
            except Exception as exc:
                if attempt >= total:
                    raise
                delay = self._retry_base * (2 ** (attempt - 1))
                logger.warning(f"发送消息失败(第 {attempt}/{total} 次),{delay:.1f}s 后重试 chat={chat_id}：{exc}")
                await self._sleep(delay)

    async def send_notice(self, chat_id: str, text: str) -> Any:
        return await self.send_with_retry(chat_id, text)

    async def send_result(self, chat_id: str, text: str, task_id: str) -> None:
        # Telegram 拒绝空白消息,纯空白分片直接跳过
        chunks = [c for c in split_text_into_chunks(text, self._chunk_max) if c.strip()]
        if not chunks:
            logger.warning(f"结果为空,改发提示 task={task_id}")
            await self.send_notice(chat_id, EMPTY_RESULT_NOTICE)
            return
        try:
            for i, chunk in enumerate(chunks):
                is_last = i == len(chunks) - 1
                buttons = build_save_buttons(task_id) if is_last else None
                try:
                    await self.send_with_retry(chat_id, chunk, buttons)
                except Exception:
                    logger.error(f"结果发送失败 task={task_id} chunk={i + 1}/{len(chunks)}")
                    await self._apologize(chat_id)
                    raise
                if not is_last:
                    await self._sleep(self._pause)
        finally:
            await self.cache_result(task_id, text)

    async def _apologize(self, chat_id: str) -> None:
        try:
            await self.send_with_retry(chat_id, DELIVERY_FAILED_NOTICE, attempts=2)
        except Exception as exc:
            logger.warning(f"道歉消息也发送失败 chat={chat_id}：{exc}")

    async def cache_result(self, task_id: str, text: str) -> None:
        await self._store.set(result_key(task_id), text, ex=self._result_ttl)

    async def get_result(self, task_id: str) -> Optional[str]:
        return await self._store.get(result_key(task_id))
