import json
from unittest.mock import AsyncMock

import pytest

from notebridge.services.result_handler import (
    DELIVERY_FAILED_NOTICE,
    EMPTY_RESULT_NOTICE,
    ResultDelivery,
    build_save_buttons,
    result_key,
)


@pytest.fixture
def sender():
    mock = AsyncMock()
    mock.send_message = AsyncMock(return_value={"message_id": 1})
    return mock


def _delivery(sender, store, clock, **kwargs):
    return ResultDelivery(sender, store, sleep=clock.sleep, **kwargs)


class TestSendResult:
    @pytest.mark.asyncio
    async def test_short_result_single_message_with_buttons(self, sender, store, clock):
        delivery = _delivery(sender, store, clock)
        await delivery.send_result("c1", "整理好的笔记", "t1")

        sender.send_message.assert_awaited_once()
        chat_id, text, buttons = sender.send_message.await_args.args
        assert (chat_id, text) == ("c1", "整理好的笔记")
        assert buttons == build_save_buttons("t1")
        assert await store.get(result_key("t1")) == "整理好的笔记"
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_long_result_buttons_only_on_last_chunk(self, sender, store, clock):
        delivery = _delivery(sender, store, clock, chunk_max=10)
        text = "aaaa bbbb cccc dddd eeee"
        await delivery.send_result("c1", text, "t1")

        calls = sender.send_message.await_args_list
        assert len(calls) > 1
        assert "".join(c.args[1] for c in calls) == text
        assert all(c.args[2] is None for c in calls[:-1])
        assert calls[-1].args[2] == build_save_buttons("t1")
        assert clock.sleeps == [0.5] * (len(calls) - 1)

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, sender, store, clock):
        sender.send_message.side_effect = [RuntimeError("429"), RuntimeError("429"), {"message_id": 1}]
        delivery = _delivery(sender, store, clock)
        await delivery.send_result("c1", "hi", "t1")

        assert sender.send_message.await_count == 3
        assert clock.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_apologize_and_raise(self, sender, store, clock):
        sender.send_message.side_effect = RuntimeError("network down")
        delivery = _delivery(sender, store, clock)

        with pytest.raises(RuntimeError):
            await delivery.send_result("c1", "hi", "t1")

        texts = [c.args[1] for c in sender.send_message.await_args_list]
        assert texts == ["hi"] * 3 + [DELIVERY_FAILED_NOTICE] * 2
        # 发送失败也要缓存结果
        assert await delivery.get_result("t1") == "hi"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "  \n\n  "])
    async def test_blank_result_sends_notice_instead(self, sender, store, clock, text):
        delivery = _delivery(sender, store, clock)
        await delivery.send_result("c1", text, "t1")

        sender.send_message.assert_awaited_once_with("c1", EMPTY_RESULT_NOTICE, None)
        assert await delivery.get_result("t1") is None

    @pytest.mark.asyncio
    async def test_whitespace_only_chunk_is_skipped(self, sender, store, clock):
        delivery = _delivery(sender, store, clock, chunk_max=5)
        await delivery.send_result("c1", "abcd\n     ", "t1")

        texts = [c.args[1] for c in sender.send_message.await_args_list]
        assert texts == ["abcd\n"]
        assert sender.send_message.await_args.args[2] == build_save_buttons("t1")

    @pytest.mark.asyncio
    async def test_send_notice_has_no_buttons(self, sender, store, clock):
        delivery = _delivery(sender, store, clock)
        await delivery.send_notice("c1", "提示")
        sender.send_message.assert_awaited_once_with("c1", "提示", None)

    @pytest.mark.asyncio
    async def test_result_cache_ttl(self, sender, store, clock):
        delivery = _delivery(sender, store, clock, result_ttl_seconds=100)
        await delivery.cache_result("t1", "x")
        assert await store.pttl(result_key("t1")) == 100_000


class TestSaveButtons:
    def test_default_buttons(self):
        rows = build_save_buttons("0123456789abcdef")
        assert len(rows) == 1
        assert [b["text"] for b in rows[0]] == ["保存到 Flomo", "保存到 Notion"]
        for button in rows[0]:
            assert len(button["callback_data"].encode("utf-8")) <= 64
        assert json.loads(rows[0][0]["callback_data"]) == {"a": "save", "t": "0123456789abcdef", "to": "flomo"}

    def test_saved_destination_becomes_noop(self):
        rows = build_save_buttons("t1", saved={"notion"})
        flomo, notion = rows[0]
        assert flomo["text"] == "保存到 Flomo"
        assert notion["text"] == "✅ 已保存到 Notion"
        assert json.loads(notion["callback_data"])["a"] == "noop"
