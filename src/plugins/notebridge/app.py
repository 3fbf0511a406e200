"""组件装配：按插件配置创建存储、队列、工作池和各处理器。

启动顺序:
    1. 数据库引擎 + 建表
    2. 共享 KV 存储
    3. 队列 / 忙碌追踪 / 投递 / 聚合器 / 回调处理
    4. 每种任务类型一个 WorkerPool
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from nonebot import logger

from .bot.callbacks import CallbackHandler, NoteSaver
from .bot.receivers import MessageReceiver
from .bot.transport import BotSenderProxy, MessageSender
from .config import Config
from .services.baidu_ocr import BaiduOCRClient
from .services.deepseek import DeepSeekClient
from .services.flomo import FlomoClient
from .services.metaso import MetasoReader
from .services.notion import NotionClient
from .services.result_handler import ResultDelivery
from .services.save_ledger import SaveIdempotencyLedger
from .services.telegram_files import TelegramFileDownloader
from .services.user_state import BusyStateTracker
from .storage.kv import KeyValueStore, close_store, create_store
from .storage.repositories.job_repo import JobRepository
from .storage.sqlalchemy_engine import create_engine, create_session_factory, init_models
from .tools.media_group import MediaGroupAggregator
from .tools.rate_limiter import build_rate_limiter
from .workers.job_queue import JobKind, JobOptions, JobQueue
from .workers.processors import JobProcessors
from .workers.worker_pool import WorkerPool, sweep_stalled


class NoteBridgeApp:
    def __init__(self, config: Config, bot_getter: Callable[[], Any]) -> None:
        self.config = config
        self.bot_getter = bot_getter
        self.engine = None
        self.store: Optional[KeyValueStore] = None
        self.repository: Optional[JobRepository] = None
        self.job_queue: Optional[JobQueue] = None
        self.busy: Optional[BusyStateTracker] = None
        self.delivery: Optional[ResultDelivery] = None
        self.aggregator: Optional[MediaGroupAggregator] = None
        self.receiver: Optional[MessageReceiver] = None
        self.callbacks: Optional[CallbackHandler] = None
        self.pools: List[WorkerPool] = []

    def job_options(self) -> JobOptions:
        return JobOptions(
            max_attempts=self.config.notebridge_job_attempts,
            backoff_delay_ms=self.config.notebridge_job_backoff_ms,
        )

    async def start(self, *, sender: Optional[MessageSender] = None, store: Optional[KeyValueStore] = None) -> None:
        cfg = self.config
        self.engine = create_engine(cfg.notebridge_database_url, busy_timeout_ms=cfg.notebridge_sqlite_busy_timeout_ms)
        await init_models(self.engine)
        self.repository = JobRepository(create_session_factory(self.engine))

        self.store = store if store is not None else create_store(cfg.notebridge_store_url)
        sender = sender or BotSenderProxy(self.bot_getter)

        self.job_queue = JobQueue(self.repository, default_options=self.job_options())
        self.busy = BusyStateTracker(self.store, ttl_seconds=cfg.notebridge_busy_ttl_seconds)
        self.delivery = ResultDelivery(
            sender,
            self.store,
            chunk_max=cfg.notebridge_chunk_max_chars,
            pause_seconds=cfg.notebridge_chunk_pause_seconds,
            max_attempts=cfg.notebridge_send_max_attempts,
            result_ttl_seconds=cfg.notebridge_result_ttl_seconds,
        )
        self.aggregator = MediaGroupAggregator(
            self.store,
            self.job_queue,
            debounce_ms=cfg.notebridge_media_group_debounce_ms,
            max_hold_seconds=cfg.notebridge_media_group_max_hold_seconds,
            buffer_ttl_seconds=cfg.notebridge_media_group_buffer_ttl_seconds,
            job_options=self.job_options(),
            notify=self.delivery.send_notice,
        )
        self.receiver = MessageReceiver(
            job_queue=self.job_queue,
            aggregator=self.aggregator,
            busy=self.busy,
            sender=sender,
            job_options=self.job_options(),
        )
        self.callbacks = CallbackHandler(
            store=self.store,
            ledger=SaveIdempotencyLedger(self.store, ttl_seconds=cfg.notebridge_result_ttl_seconds),
            delivery=self.delivery,
            sender=sender,
            savers=self._build_savers(),
        )

        processors = self._build_processors()
        for kind, handler in processors.handlers().items():
            pool = WorkerPool(
                kind,
                handler,
                self.repository,
                concurrency=cfg.notebridge_worker_concurrency,
                poll_interval=cfg.notebridge_worker_poll_interval,
                lock_seconds=cfg.notebridge_job_lock_seconds,
                on_failed=processors.notify_failed,
            )
            pool.start()
            self.pools.append(pool)
        logger.success(f"NoteBridge 已启动,任务类型: {', '.join(k.value for k in JobKind)}")

    def _build_savers(self) -> Dict[str, NoteSaver]:
        cfg = self.config
        return {
            "flomo": FlomoClient(cfg.notebridge_flomo_webhook, timeout=cfg.notebridge_http_timeout),
            "notion": NotionClient(
                cfg.notebridge_notion_api_key,
                cfg.notebridge_notion_page_id,
                timeout=cfg.notebridge_http_timeout,
            ),
        }

    def _build_processors(self) -> JobProcessors:
        cfg = self.config
        backend = cfg.notebridge_rate_limit_backend
        return JobProcessors(
            busy=self.busy,
            delivery=self.delivery,
            ocr=BaiduOCRClient(cfg.notebridge_baidu_appid, cfg.notebridge_baidu_secret, timeout=cfg.notebridge_ocr_timeout),
            rewriter=DeepSeekClient(
                base_url=cfg.notebridge_deepseek_base_url,
                api_key=cfg.notebridge_deepseek_api_key,
                model=cfg.notebridge_deepseek_model,
                timeout=cfg.notebridge_deepseek_timeout,
            ),
            reader=MetasoReader(cfg.notebridge_metaso_api_url, cfg.notebridge_metaso_api_key, timeout=cfg.notebridge_http_timeout),
            downloader=TelegramFileDownloader(
                self.bot_getter,
                token=cfg.notebridge_bot_token,
                file_base=cfg.notebridge_telegram_file_base,
                timeout=cfg.notebridge_http_timeout,
            ),
            ocr_limiter=build_rate_limiter(
                backend,
                name="ocr",
                max_requests=cfg.notebridge_ocr_rate_limit,
                window_ms=cfg.notebridge_ocr_rate_window_ms,
                store=self.store,
            ),
            llm_limiter=build_rate_limiter(
                backend,
                name="llm",
                max_requests=cfg.notebridge_llm_rate_limit,
                window_ms=cfg.notebridge_llm_rate_window_ms,
                store=self.store,
            ),
        )

    async def purge(self) -> int:
        """按保留策略清理终态任务。"""

        if self.repository is None:
            return 0
        cfg = self.config
        removed = await self.repository.purge_finished(
            completed_max_age=cfg.notebridge_completed_retention_seconds,
            completed_max_count=cfg.notebridge_completed_retention_count,
            failed_max_age=cfg.notebridge_failed_retention_seconds,
        )
        if removed:
            logger.info(f"清理了 {removed} 个已结束的任务")
        return removed

    async def sweep(self) -> int:
        if self.repository is None:
            return 0
        return await sweep_stalled(self.repository)

    async def stop(self) -> None:
        for pool in self.pools:
            await pool.stop()
        self.pools.clear()
        if self.aggregator is not None:
            await self.aggregator.shutdown()
        if self.store is not None:
            await close_store(self.store)
            self.store = None
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
        logger.info("NoteBridge 已停止")
