"""消息接收：分类入站消息并入队,回复确认。"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from nonebot import logger

from ..services.user_state import PHASE_LABELS, BusyStateTracker
from ..tools.media_group import MediaGroupAggregator
from ..workers.job_queue import JobHandle, JobKind, JobOptions, JobQueue
from .transport import MessageSender

_SINGLE_URL_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)


class MessageType(str, Enum):
    TEXT = "text"
    WEB_LINK = "web-link"
    SINGLE_PHOTO = "single-photo"
    MEDIA_GROUP = "media-group"
    UNKNOWN = "unknown"


@dataclass
class InboundMessage:
    chat_id: str
    user_id: str
    text: str = ""
    photo_file_id: Optional[str] = None
    media_group_id: Optional[str] = None


def new_task_id() -> str:
    # 回调数据有 64 字节上限,任务ID保持短小
    return uuid.uuid4().hex[:16]


def classify(message: InboundMessage) -> MessageType:
    text = (message.text or "").strip()
    if text:
        return MessageType.WEB_LINK if _SINGLE_URL_RE.match(text) else MessageType.TEXT
    if message.photo_file_id:
        return MessageType.MEDIA_GROUP if message.media_group_id else MessageType.SINGLE_PHOTO
    return MessageType.UNKNOWN


class MessageReceiver:
    def __init__(
        self,
        *,
        job_queue: JobQueue,
        aggregator: MediaGroupAggregator,
        busy: BusyStateTracker,
        sender: MessageSender,
        job_options: Optional[JobOptions] = None,
    ) -> None:
        self._queue = job_queue
        self._aggregator = aggregator
        self._busy = busy
        self._sender = sender
        self._job_options = job_options or JobOptions()

    def _options(self, task_id: str) -> JobOptions:
        return JobOptions(
            job_id=task_id,
            max_attempts=self._job_options.max_attempts,
            backoff_delay_ms=self._job_options.backoff_delay_ms,
        )

    async def handle(self, message: InboundMessage) -> Optional[JobHandle]:
        kind = classify(message)
        if kind is MessageType.UNKNOWN:
            logger.debug(f"忽略无法处理的消息 chat={message.chat_id}")
            return None

        task_id = new_task_id()
        chat_id, user_id = message.chat_id, message.user_id

        # 相册的第一张之后不重复提示
        record = await self._busy.get_status(user_id)
        if record is not None and kind is not MessageType.MEDIA_GROUP:
            label = PHASE_LABELS.get(record.phase, record.phase)
            await self._sender.send_message(chat_id, f"正在处理你的上一个任务（{label}）中，我已把这条加入队列。")

        if kind is MessageType.TEXT:
            handle = await self._queue.enqueue(
                JobKind.TEXT,
                {"task_id": task_id, "chat_id": chat_id, "user_id": user_id, "text": message.text, "mode": "PROCESS"},
                self._options(task_id),
            )
            await self._sender.send_message(chat_id, "已收到文本，开始处理...")
            return handle

        if kind is MessageType.WEB_LINK:
            url = message.text.strip()
            handle = await self._queue.enqueue(
                JobKind.WEB_LINK,
                {"task_id": task_id, "chat_id": chat_id, "user_id": user_id, "url": url},
                self._options(task_id),
            )
            await self._sender.send_message(chat_id, "已收到链接，开始读取网页...")
            return handle

        if kind is MessageType.SINGLE_PHOTO:
            handle = await self._queue.enqueue(
                JobKind.OCR_SINGLE,
                {"task_id": task_id, "chat_id": chat_id, "user_id": user_id, "file_id": message.photo_file_id},
                self._options(task_id),
            )
            await self._sender.send_message(chat_id, "我收到了图片，开始识别～")
            return handle

        first = await self._aggregator.add_photo(
            chat_id, user_id, str(message.media_group_id), str(message.photo_file_id), task_id
        )
        if first:
            await self._sender.send_message(chat_id, "我收到了一组图片，收齐后开始识别～")
        return None


def _photo_file_id(event: Any) -> Optional[str]:
    photos = getattr(event, "photo", None)
    if photos:
        last = photos[-1]
        return getattr(last, "file_id", None) or (last.get("file_id") if isinstance(last, dict) else None)
    try:
        message = event.get_message()
    except (ValueError, NotImplementedError):
        return None
    for seg in message:
        if seg.type == "photo":
            data = seg.data or {}
            return data.get("file") or data.get("file_id") or data.get("photo")
    return None


def inbound_from_event(event: Any) -> InboundMessage:
    """从 Telegram 消息事件取出接收需要的字段。"""

    chat = getattr(event, "chat", None)
    try:
        text = event.get_plaintext()
    except (ValueError, NotImplementedError):
        text = ""
    return InboundMessage(
        chat_id=str(getattr(chat, "id", "") or event.get_session_id()),
        user_id=str(event.get_user_id()),
        text=text or "",
        photo_file_id=_photo_file_id(event),
        media_group_id=getattr(event, "media_group_id", None),
    )
