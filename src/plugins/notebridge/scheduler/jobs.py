"""定时任务注册（apscheduler）。"""

from __future__ import annotations

from nonebot import require
require("nonebot_plugin_apscheduler")
from nonebot_plugin_apscheduler import scheduler

from ..config import plugin_config

_inited = False


def init_scheduler(app) -> None:
    """注册终态任务清理与认领超时巡检。"""

    global _inited
    if _inited:
        return
    _inited = True

    # 按保留策略清理已完成/失败任务
    scheduler.add_job(
        app.purge,
        "interval",
        minutes=plugin_config.notebridge_purge_interval_minutes,
        id="notebridge_purge_finished_jobs",
        replace_existing=True,
        coalesce=True,
    )

    # worker 崩溃后认领锁过期的任务放回等待队列
    scheduler.add_job(
        app.sweep,
        "interval",
        seconds=max(5, int(plugin_config.notebridge_job_lock_seconds)),
        id="notebridge_requeue_stalled_jobs",
        replace_existing=True,
        coalesce=True,
    )
