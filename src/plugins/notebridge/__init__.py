"""NoteBridge 插件入口。

职责：
- 启动时初始化任务表/共享存储,启动各任务类型的工作池和定时任务
- 接收 Telegram 消息：分类 -> 入队(相册先聚合) -> 回复确认
- 处理保存按钮回调、/start 与 /status 命令
"""

from __future__ import annotations

import nonebot
from nonebot import get_driver, on, on_command, on_message
from nonebot.adapters.telegram import Bot
from nonebot.adapters.telegram.event import CallbackQueryEvent, MessageEvent
from nonebot.plugin import PluginMetadata
from nonebot.rule import is_type
from nonebot import logger

from .app import NoteBridgeApp
from .bot.callbacks import callback_context
from .bot.commands.status import START_TEXT, build_status_text
from .bot.receivers import inbound_from_event
from .config import Config, plugin_config
from .scheduler.jobs import init_scheduler

__plugin_meta__ = PluginMetadata(
    name="NoteBridge",
    description="把文字/图片/网页整理成笔记,并一键保存到 Flomo / Notion",
    usage="直接发送文字、图片、相册或网页链接;/status 查看进度",
    config=Config,
)

driver = get_driver()
app = NoteBridgeApp(plugin_config, nonebot.get_bot)


@driver.on_startup
async def startup() -> None:
    """NoneBot 启动时执行：初始化存储并启动后台任务。"""

    try:
        await app.start()
    except Exception as exc:
        logger.error(f"NoteBridge 初始化失败：{exc}")
        raise
    init_scheduler(app)


@driver.on_shutdown
async def shutdown() -> None:
    await app.stop()


start_cmd = on_command("start", priority=5, block=True)


@start_cmd.handle()
async def handle_start() -> None:
    await start_cmd.finish(START_TEXT)


status_cmd = on_command("status", priority=5, block=True)


@status_cmd.handle()
async def handle_status(event: MessageEvent) -> None:
    record = await app.busy.get_status(str(event.get_user_id()))
    counts = await app.job_queue.counts()
    await status_cmd.finish(build_status_text(record, counts))


callback_matcher = on(rule=is_type(CallbackQueryEvent), priority=5, block=True)


@callback_matcher.handle()
async def handle_callback(bot: Bot, event: CallbackQueryEvent) -> None:
    await app.callbacks.handle(**callback_context(event))


message_matcher = on_message(priority=10, block=False)


@message_matcher.handle()
async def handle_message(bot: Bot, event: MessageEvent) -> None:
    """处理单条入站消息。"""

    inbound = inbound_from_event(event)
    if inbound.text.startswith("/"):
        return
    try:
        await app.receiver.handle(inbound)
    except Exception as exc:
        logger.exception(f"消息入队失败 chat={inbound.chat_id}：{exc}")
        await message_matcher.finish("抱歉，处理消息时出现错误，请稍后重试。")
