"""消息发送适配层：核心逻辑只依赖 MessageSender,Telegram 实现基于 Bot.call_api。"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from nonebot.adapters import Bot

# 按钮: [[{"text": "...", "callback_data": "..."}], ...]
Keyboard = List[List[Dict[str, str]]]


class MessageSender(Protocol):
    async def send_message(self, chat_id: str, text: str, buttons: Optional[Keyboard] = None) -> Any: ...

    async def answer_callback(self, callback_id: str, text: str) -> Any: ...

    async def edit_buttons(self, chat_id: str, message_id: int, buttons: Keyboard) -> Any: ...


class TelegramSender:
    """通过 Telegram Bot API 发送消息。"""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_message(self, chat_id: str, text: str, buttons: Optional[Keyboard] = None) -> Any:
        params: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if buttons:
            params["reply_markup"] = {"inline_keyboard": buttons}
        return await self.bot.call_api("sendMessage", **params)

    async def answer_callback(self, callback_id: str, text: str) -> Any:
        return await self.bot.call_api("answerCallbackQuery", callback_query_id=callback_id, text=text)

    async def edit_buttons(self, chat_id: str, message_id: int, buttons: Keyboard) -> Any:
        return await self.bot.call_api(
            "editMessageReplyMarkup",
            chat_id=chat_id,
            message_id=message_id,
            reply_markup={"inline_keyboard": buttons},
        )


class BotSenderProxy:
    """worker 在后台运行,发送时再取当前在线的 Bot。"""

    def __init__(self, bot_getter) -> None:
        self._bot_getter = bot_getter

    def _sender(self) -> TelegramSender:
        return TelegramSender(self._bot_getter())

    async def send_message(self, chat_id: str, text: str, buttons: Optional[Keyboard] = None) -> Any:
        return await self._sender().send_message(chat_id, text, buttons)

    async def answer_callback(self, callback_id: str, text: str) -> Any:
        return await self._sender().answer_callback(callback_id, text)

    async def edit_buttons(self, chat_id: str, message_id: int, buttons: Keyboard) -> Any:
        return await self._sender().edit_buttons(chat_id, message_id, buttons)
