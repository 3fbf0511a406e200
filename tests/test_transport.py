from unittest.mock import AsyncMock, MagicMock

import pytest

from notebridge.bot.transport import BotSenderProxy, TelegramSender

BUTTONS = [[{"text": "保存到 Flomo", "callback_data": "{}"}]]


@pytest.mark.asyncio
async def test_send_message_with_keyboard():
    bot = MagicMock()
    bot.call_api = AsyncMock()
    await TelegramSender(bot).send_message("c1", "hi", BUTTONS)
    bot.call_api.assert_awaited_once_with(
        "sendMessage", chat_id="c1", text="hi", reply_markup={"inline_keyboard": BUTTONS}
    )


@pytest.mark.asyncio
async def test_send_message_without_keyboard():
    bot = MagicMock()
    bot.call_api = AsyncMock()
    await TelegramSender(bot).send_message("c1", "hi")
    bot.call_api.assert_awaited_once_with("sendMessage", chat_id="c1", text="hi")


@pytest.mark.asyncio
async def test_proxy_resolves_bot_per_call():
    bot = MagicMock()
    bot.call_api = AsyncMock()
    getter = MagicMock(return_value=bot)
    proxy = BotSenderProxy(getter)

    await proxy.answer_callback("cb1", "ok")
    await proxy.edit_buttons("c1", 7, BUTTONS)

    assert getter.call_count == 2
    bot.call_api.assert_any_await("answerCallbackQuery", callback_query_id="cb1", text="ok")
    bot.call_api.assert_any_await(
        "editMessageReplyMarkup", chat_id="c1", message_id=7, reply_markup={"inline_keyboard": BUTTONS}
    )
