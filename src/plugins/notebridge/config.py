"""配置管理模块 - 加载和管理 NoteBridge 的所有配置项

这个模块的作用:
1. 定义所有配置项的数据结构(Config类)
2. 从多个来源加载配置(NoneBot全局配置/.env、配置文件)
3. 提供配置项的默认值、类型检查和转换

配置加载机制:
- 配置来源(按优先级从低到高):
  1. 代码中的默认值(Config类中的default参数)
  2. configs/config.toml文件中的[notebridge]段(仅填补未配置的键)
  3. NoneBot的全局配置(.env 文件 / 环境变量)

- 配置键名规则:
  - 在代码中使用: notebridge_xxx (如 notebridge_deepseek_api_key)
  - 在config.toml中使用: xxx (如 deepseek_api_key)
  - 通过alias机制实现自动映射

使用方式:
```python
from .config import plugin_config

api_key = plugin_config.notebridge_deepseek_api_key
```
"""

import os
from pathlib import Path
from typing import Optional

from nonebot import get_driver
from nonebot import logger
from pydantic.v1 import BaseModel, Extra, Field


class Config(BaseModel):
    """插件配置模型

    配置项分类:
    1. 存储配置: 任务表数据库、共享 KV 存储
    2. 队列配置: 重试次数、退避基数、并发、保留策略
    3. 协调配置: 忙碌记录 TTL、相册防抖窗口
    4. 发送配置: 分片长度、重试、结果缓存时长
    5. 外部服务: 百度 OCR、DeepSeek、秘塔阅读、Flomo、Notion
    """

    # ==================== 存储配置 ====================

    notebridge_database_url: str = Field(
        default="sqlite+aiosqlite:///data/notebridge.db",
        alias="database_url",
    )
    # 任务队列数据库URL
    # - 格式: "sqlite+aiosqlite:///<路径>"
    # - 存储内容: queue_jobs 表(全部任务及其状态)

    notebridge_sqlite_busy_timeout_ms: int = Field(default=3000, alias="sqlite_busy_timeout_ms")
    # SQLite忙碌超时(毫秒),多个 worker 同时认领任务时等待锁的时间

    notebridge_store_url: str = Field(default="redis://localhost:6379/0", alias="store_url")
    # 共享 KV 存储地址
    # - "redis://..." / "rediss://...": 使用 Redis(多实例部署必须)
    # - "memory://": 进程内存实现(单实例/开发调试)
    # - 存放: 忙碌记录、相册缓冲与防抖锁、结果缓存、保存记录

    # ==================== 队列配置 ====================

    notebridge_job_attempts: int = Field(default=3, alias="job_attempts")
    # 单个任务最多尝试次数(含首次)

    notebridge_job_backoff_ms: int = Field(default=2000, alias="job_backoff_ms")
    # 指数退避基数(毫秒): 第 n 次失败后等待 backoff * 2^(n-1)

    notebridge_job_lock_seconds: float = Field(default=30.0, alias="job_lock_seconds")
    # 任务认领锁时长(秒),worker 处理期间会自动续期;worker 崩溃后超时即可被重新投递

    notebridge_worker_concurrency: int = Field(default=2, alias="worker_concurrency")
    # 每种任务类型的 worker 数量

    notebridge_worker_poll_interval: float = Field(default=1.0, alias="worker_poll_interval")
    # 队列为空时的轮询间隔(秒)

    notebridge_completed_retention_seconds: int = Field(default=3600, alias="completed_retention_seconds")
    notebridge_completed_retention_count: int = Field(default=1000, alias="completed_retention_count")
    notebridge_failed_retention_seconds: int = Field(default=86400, alias="failed_retention_seconds")
    # 终态任务保留策略: 已完成保留 1 小时/最多 1000 条, 失败保留 24 小时

    notebridge_purge_interval_minutes: int = Field(default=10, alias="purge_interval_minutes")
    # 清理终态任务的定时任务间隔(分钟)

    # ==================== 协调配置 ====================

    notebridge_busy_ttl_seconds: int = Field(default=600, alias="busy_ttl_seconds")
    # 忙碌记录过期时间(秒) - worker 崩溃时的自恢复保险

    notebridge_media_group_debounce_ms: int = Field(default=2500, alias="media_group_debounce_ms")
    # 相册防抖窗口(毫秒): 最后一张图片之后静默这么久才合并成一个任务

    notebridge_media_group_max_hold_seconds: float = Field(default=15.0, alias="media_group_max_hold_seconds")
    # 相册最长等待(秒),防止持续到达的图片让 flush 永不触发

    notebridge_media_group_buffer_ttl_seconds: int = Field(default=120, alias="media_group_buffer_ttl_seconds")

    # ==================== 发送配置 ====================

    notebridge_chunk_max_chars: int = Field(default=3500, alias="chunk_max_chars")
    # 单条消息最大字符数(低于 Telegram 4096 上限,留余量)

    notebridge_chunk_pause_seconds: float = Field(default=0.5, alias="chunk_pause_seconds")
    notebridge_send_max_attempts: int = Field(default=3, alias="send_max_attempts")
    notebridge_result_ttl_seconds: int = Field(default=86400, alias="result_ttl_seconds")
    # 结果缓存时长(秒),保存记录与之同步过期

    # ==================== 限流配置 ====================

    notebridge_rate_limit_backend: str = Field(default="local", alias="rate_limit_backend")
    # "local": 进程内滑动窗口; "shared": 基于共享存储的滑动窗口(多实例共享配额)

    notebridge_ocr_rate_limit: int = Field(default=2, alias="ocr_rate_limit")
    notebridge_ocr_rate_window_ms: int = Field(default=1000, alias="ocr_rate_window_ms")
    notebridge_llm_rate_limit: int = Field(default=1, alias="llm_rate_limit")
    notebridge_llm_rate_window_ms: int = Field(default=1000, alias="llm_rate_window_ms")

    # ==================== 外部服务 ====================

    notebridge_telegram_file_base: str = Field(
        default="https://api.telegram.org/file",
        alias="telegram_file_base",
    )
    notebridge_bot_token: str = Field(default="", alias="bot_token")
    # 下载图片时拼接文件地址用;未配置时尝试从 telegram_bots 全局配置中读取

    notebridge_baidu_appid: str = Field(default="", alias="baidu_appid")
    notebridge_baidu_secret: str = Field(default="", alias="baidu_secret")
    notebridge_ocr_timeout: float = Field(default=30.0, alias="ocr_timeout")

    notebridge_deepseek_base_url: str = Field(default="https://api.deepseek.com/v1", alias="deepseek_base_url")
    notebridge_deepseek_api_key: str = Field(default="", alias="deepseek_api_key")
    notebridge_deepseek_model: str = Field(default="deepseek-chat", alias="deepseek_model")
    notebridge_deepseek_timeout: float = Field(default=120.0, alias="deepseek_timeout")

    notebridge_metaso_api_url: str = Field(default="https://metaso.cn/api/v1/reader", alias="metaso_api_url")
    notebridge_metaso_api_key: str = Field(default="", alias="metaso_api_key")

    notebridge_flomo_webhook: str = Field(default="", alias="flomo_webhook")
    notebridge_notion_api_key: str = Field(default="", alias="notion_api_key")
    notebridge_notion_page_id: str = Field(default="", alias="notion_page_id")
    notebridge_http_timeout: float = Field(default=30.0, alias="http_timeout")

    class Config:
        extra = Extra.ignore
        allow_population_by_field_name = True


def _discover_config_toml() -> Optional[Path]:
    """查找 config.toml

    查找顺序:
    1. 环境变量 NOTEBRIDGE_CONFIG_TOML
    2. 当前工作目录下的 configs/config.toml
    3. 从当前文件向上查找父目录中的 configs/config.toml
    """

    env_path = (os.getenv("NOTEBRIDGE_CONFIG_TOML") or "").strip()
    if env_path:
        path = Path(env_path)
        if path.exists() and path.is_file():
            return path

    cwd_path = Path.cwd() / "configs" / "config.toml"
    if cwd_path.exists() and cwd_path.is_file():
        return cwd_path

    here = Path(__file__).resolve()
    for parent in here.parents:
        candidate = parent / "configs" / "config.toml"
        if candidate.exists() and candidate.is_file():
            return candidate

    return None


def _is_unset(value: object) -> bool:
    """空字符串、空列表、None 视为"未配置",允许被配置文件填补。"""

    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


def load_config() -> Config:
    """加载插件配置并返回 Config 对象

    Side Effects:
        - 调用 get_driver() 读取 NoneBot 全局配置(未初始化时跳过)
        - 读取配置文件(如果存在)
        - 输出配置加载日志(不输出密钥内容)
    """

    raw: dict = {}
    try:
        driver_cfg = get_driver().config
    except ValueError:
        # NoneBot 尚未初始化(脚本/测试环境)
        driver_cfg = None

    if driver_cfg is not None:
        raw.update(driver_cfg.dict())
        section = getattr(driver_cfg, "notebridge", None)
        if isinstance(section, dict):
            raw.update(section)

    path = _discover_config_toml()
    if path:
        try:
            try:
                import tomllib
            except ImportError:  # pragma: no cover
                import tomli as tomllib  # type: ignore[no-redef]

            data = tomllib.loads(path.read_text(encoding="utf-8"))
            file_section = data.get("notebridge")
            if isinstance(file_section, dict):
                for k, v in file_section.items():
                    if k not in raw or _is_unset(raw.get(k)):
                        raw[k] = v
        except (OSError, ValueError) as e:
            logger.warning(f"读取配置文件失败:{path},{e}")

    cfg = Config.parse_obj(raw)

    # bot_token 未单独配置时,复用 Telegram 适配器的 telegram_bots 配置(取第一个)
    if not cfg.notebridge_bot_token.strip():
        bots = raw.get("telegram_bots") or []
        if isinstance(bots, list) and bots and isinstance(bots[0], dict):
            cfg.notebridge_bot_token = str(bots[0].get("token") or "")

    logger.info(
        "NoteBridge 配置加载完成:store={} database={} rate_limit_backend={} "
        "baidu_ocr={} deepseek_api_key={} flomo_webhook={} notion={} config_file={}",
        cfg.notebridge_store_url.split("@")[-1],
        cfg.notebridge_database_url,
        cfg.notebridge_rate_limit_backend,
        "已配置" if cfg.notebridge_baidu_appid and cfg.notebridge_baidu_secret else "未配置",
        "已配置" if cfg.notebridge_deepseek_api_key.strip() else "未配置",
        "已配置" if cfg.notebridge_flomo_webhook.strip() else "未配置",
        "已配置" if cfg.notebridge_notion_api_key and cfg.notebridge_notion_page_id else "未配置",
        str(path) if path else "未发现/未使用",
    )

    return cfg


# 模块导入时加载配置,其他模块通过 from .config import plugin_config 使用
plugin_config = load_config()
