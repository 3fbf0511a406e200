"""保存按钮回调处理。

回调数据: {"a": "save"|"noop", "t": 任务ID, "to": "flomo"|"notion"}

save 流程:
    1. 读取缓存结果,不存在则提示已过期
    2. 保存记录中已有该目的地则提示已保存,不再调用外部服务
    3. 抢占保存锁(SET NX EX),防止连点造成重复保存;拿到锁后再检查一次保存记录
    4. 调用外部服务 → 写保存记录 → 重新读取保存记录 → 更新按钮 → 应答
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from nonebot import logger

from ..errors import InvalidCallbackError
from ..services.result_handler import ResultDelivery, build_save_buttons
from ..services.save_ledger import DESTINATIONS, SaveIdempotencyLedger
from ..storage.kv import KeyValueStore
from .transport import MessageSender

DEST_NAMES = {"flomo": "Flomo", "notion": "Notion"}


class NoteSaver(Protocol):
    async def save(self, text: str, user_id: str) -> None: ...


@dataclass(frozen=True)
class CallbackAction:
    action: str
    task_id: str = ""
    destination: str = ""


def parse_callback_data(data: Optional[str]) -> CallbackAction:
    """解析回调数据,格式错误或动作未知时抛 InvalidCallbackError。"""

    try:
        obj = json.loads(data or "")
    except ValueError:
        raise InvalidCallbackError(f"回调数据不是 JSON: {data!r}") from None
    if not isinstance(obj, dict):
        raise InvalidCallbackError(f"回调数据格式错误: {data!r}")

    action = obj.get("a")
    if action == "noop":
        return CallbackAction("noop", str(obj.get("t") or ""), str(obj.get("to") or ""))
    if action != "save":
        raise InvalidCallbackError(f"未知回调动作: {action!r}")

    task_id = obj.get("t")
    destination = obj.get("to")
    if not isinstance(task_id, str) or not task_id:
        raise InvalidCallbackError("缺少任务ID")
    if destination not in DESTINATIONS:
        raise InvalidCallbackError(f"未知保存目的地: {destination!r}")
    return CallbackAction("save", task_id, destination)


class CallbackHandler:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        ledger: SaveIdempotencyLedger,
        delivery: ResultDelivery,
        sender: MessageSender,
        savers: Mapping[str, NoteSaver],
        save_lock_seconds: int = 60,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._delivery = delivery
        self._sender = sender
        self._savers: Dict[str, NoteSaver] = dict(savers)
        self._save_lock_seconds = int(save_lock_seconds)

    async def handle(
        self,
        *,
        callback_id: str,
        user_id: str,
        chat_id: str,
        message_id: Optional[int],
        data: Optional[str],
    ) -> str:
        """处理一次按钮点击,返回应答文本(同时已发送给 Telegram)。"""

        try:
            action = parse_callback_data(data)
        except InvalidCallbackError as exc:
            logger.warning(f"拒绝无效回调 user={user_id}：{exc}")
            return await self._answer(callback_id, "无效的操作")

        if action.action == "noop":
            return await self._answer(callback_id, "")

        return await self._save(callback_id, user_id, chat_id, message_id, action)

    async def _save(
        self,
        callback_id: str,
        user_id: str,
        chat_id: str,
        message_id: Optional[int],
        action: CallbackAction,
    ) -> str:
        task_id, dest = action.task_id, action.destination
        name = DEST_NAMES[dest]

        text = await self._delivery.get_result(task_id)
        if text is None:
            return await self._answer(callback_id, "结果已过期，无法保存")

        if await self._ledger.is_saved(user_id, task_id, dest):
            return await self._answer(callback_id, f"已经保存到 {name} 了")

        saver = self._savers.get(dest)
        if saver is None:
            return await self._answer(callback_id, f"{name} 保存未启用")

        lock_key = f"savelock:{user_id}:{task_id}:{DESTINATIONS[dest]}"
        if not await self._store.set(lock_key, "1", ex=self._save_lock_seconds, nx=True):
            return await self._answer(callback_id, "正在保存中，请稍候")

        try:
            # 拿到锁后重读保存记录,前一次点击可能刚好保存完并释放了锁
            if await self._ledger.is_saved(user_id, task_id, dest):
                return await self._answer(callback_id, f"已经保存到 {name} 了")
            try:
                await saver.save(text, user_id)
            except Exception as exc:
                logger.error(f"保存到 {name} 失败 user={user_id} task={task_id}：{exc}")
                return await self._answer(callback_id, f"抱歉，保存到 {name} 失败了")

            await self._ledger.mark_saved(user_id, task_id, dest)
        finally:
            await self._store.delete(lock_key)

        saved = await self._ledger.saved_destinations(user_id, task_id)
        if message_id is not None:
            try:
                await self._sender.edit_buttons(chat_id, message_id, build_save_buttons(task_id, saved))
            except Exception as exc:
                logger.warning(f"更新按钮失败 chat={chat_id} message={message_id}：{exc}")
        logger.info(f"已保存到 {name} user={user_id} task={task_id}")
        return await self._answer(callback_id, f"✅ 已保存到 {name}")

    async def _answer(self, callback_id: str, text: str) -> str:
        try:
            await self._sender.answer_callback(callback_id, text)
        except Exception as exc:
            logger.warning(f"应答回调失败 callback={callback_id}：{exc}")
        return text


def callback_context(event: Any) -> Dict[str, Any]:
    """从 Telegram 回调事件中取出处理所需字段。"""

    message = getattr(event, "message", None)
    chat = getattr(message, "chat", None)
    sender = getattr(event, "from_", None)
    return {
        "callback_id": str(getattr(event, "id", "")),
        "user_id": str(getattr(sender, "id", "") or event.get_user_id()),
        "chat_id": str(getattr(chat, "id", "")),
        "message_id": getattr(message, "message_id", None),
        "data": getattr(event, "data", None),
    }
