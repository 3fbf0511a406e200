"""数据库模型定义 - SQLAlchemy ORM模型

这个模块的作用:
1. 定义任务队列表(queue_jobs)的结构
2. 使用SQLAlchemy ORM将Python类映射到数据库表

数据库设计说明:
- 使用SQLite作为存储引擎(aiosqlite 异步驱动)
- 所有时间戳使用Unix时间戳(浮点数,秒级)
- 协调类的短期数据(忙碌记录、相册缓冲、结果缓存)不在这里,见 storage/kv.py

关键概念:
- Mapped[类型]: SQLAlchemy 2.0的类型注解,既做类型提示也定义字段
- mapped_column(): 定义字段属性(类型、默认值、约束等)
"""

from __future__ import annotations

import time
from typing import Optional

from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """ORM 基类"""

    pass


# 任务状态取值
JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

JOB_STATES = (JOB_WAITING, JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED)


class QueueJob(Base):
    """任务表 - 后台处理的文本/OCR/网页任务队列

    任务生命周期:
    1. 入队 → status="waiting"
    2. Worker认领(比较并设置) → status="active",写入 lock_token / locked_until
    3. 处理成功 → status="completed"
    4. 处理失败 → attempts_made+1;未达上限回到"waiting"并设置 run_at(指数退避)
    5. 次数用尽 → status="failed"
    6. worker 崩溃 → locked_until 过期后由巡检放回"waiting"(至少一次投递)

    清理策略:
    - completed: 保留 1 小时且最多 1000 条
    - failed: 保留 24 小时

    索引策略:
    - 复合索引: (queue, status, run_at) - Worker认领任务
    """

    __tablename__ = "queue_jobs"

    job_id: Mapped[str] = mapped_column(String, primary_key=True)
    # 任务ID - 调用方指定(用于去重,如 "ocr-group:<相册ID>")或自动生成

    queue: Mapped[str] = mapped_column(String)
    # 所属队列 - 每种任务类型一个独立队列

    kind: Mapped[str] = mapped_column(String)
    # 任务类型: "text" / "ocr-single" / "ocr-group" / "web-link"

    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    # 任务数据(JSON): taskId/chatId/userId 以及类型相关字段

    status: Mapped[str] = mapped_column(String, default=JOB_WAITING)

    attempts_made: Mapped[int] = mapped_column(Integer, default=0)
    # 已失败的尝试次数

    max_attempts: Mapped[int] = mapped_column(Integer, default=3)

    backoff_delay_ms: Mapped[int] = mapped_column(Integer, default=2000)
    # 指数退避基数(毫秒)

    run_at: Mapped[float] = mapped_column(Float, default=0.0)
    # 最早可被认领的时间(重试退避后推迟)

    lock_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # 认领令牌 - 只有持有令牌的 worker 可以确认完成/失败

    locked_until: Mapped[float] = mapped_column(Float, default=0.0)
    # 认领锁过期时间,超时视为 worker 失联

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[float] = mapped_column(Float, default=lambda: time.time())
    updated_at: Mapped[float] = mapped_column(Float, default=lambda: time.time())
    finished_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_queue_jobs_claim", "queue", "status", "run_at"),
        Index("idx_queue_jobs_finished", "status", "finished_at"),
    )
