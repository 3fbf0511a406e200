"""SQLAlchemy异步引擎与会话管理模块

这个模块的作用:
1. 创建和配置SQLAlchemy异步数据库引擎
2. 设置SQLite的并发参数(WAL模式、busy_timeout)
3. 提供会话工厂,由仓储层以依赖注入的方式持有

SQLite优化说明:
- WAL模式: 允许读写并发,多个 worker 同时轮询时不互相阻塞
- busy_timeout: 认领任务时遇到写锁会等待,而不是立即失败

使用方式:
```python
engine = create_engine(plugin_config.notebridge_database_url)
session_factory = create_session_factory(engine)
await init_models(engine)
repo = JobRepository(session_factory)
```
"""

from __future__ import annotations

from pathlib import Path

from nonebot import logger
from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base


def _ensure_sqlite_parent_dir(database_url: str) -> None:
    """确保SQLite数据库文件所在的目录存在

    - 非SQLite或内存数据库直接跳过
    - 创建失败只记录警告,交给后续连接报错
    """

    try:
        url = make_url(database_url)
    except ArgumentError:
        return

    if not url.drivername.startswith("sqlite"):
        return

    db_path = url.database
    if not db_path or db_path == ":memory:":
        return

    try:
        Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning(f"创建 SQLite 目录失败,将继续尝试启动:{exc}")


def create_engine(database_url: str, *, busy_timeout_ms: int = 3000) -> AsyncEngine:
    """创建异步引擎,SQLite 连接在建立时设置 PRAGMA。"""

    _ensure_sqlite_parent_dir(database_url)
    engine = create_async_engine(database_url, echo=False)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """创建会话工厂

    - expire_on_commit=False: 提交后对象仍可读取(仓储层会把 ORM 对象返回给 worker)
    - autoflush=False: 手动控制 flush
    """

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """建表(已存在则跳过)。"""

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

