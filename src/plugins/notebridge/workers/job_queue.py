"""任务队列：每种任务类型一个独立队列,持久化在 queue_jobs 表中。"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from nonebot import logger

from ..errors import UnknownKindError
from ..storage.models import QueueJob
from ..storage.repositories.job_repo import JobRepository


class JobKind(str, Enum):
    TEXT = "text"
    OCR_SINGLE = "ocr-single"
    OCR_GROUP = "ocr-group"
    WEB_LINK = "web-link"


@dataclass(frozen=True)
class JobOptions:
    """入队选项(默认值与推荐重试策略一致: 3 次, 2s 起指数退避)。"""

    job_id: Optional[str] = None
    max_attempts: int = 3
    backoff_delay_ms: int = 2000
    delay_ms: int = 0


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    kind: JobKind
    status: str


def parse_kind(kind: Union[str, JobKind]) -> JobKind:
    """把字符串解析为 JobKind,未知类型抛 UnknownKindError。"""

    if isinstance(kind, JobKind):
        return kind
    try:
        return JobKind(str(kind))
    except ValueError:
        raise UnknownKindError(kind) from None


class JobQueue:
    """任务入队与状态查询。

    说明:
        - 入队只写数据库,不关心由哪个 worker 处理
        - job_id 相同的任务只会入队一次(相册聚合靠这个去重)
    """

    def __init__(self, repository: JobRepository, *, default_options: Optional[JobOptions] = None) -> None:
        self._repo = repository
        self._defaults = default_options or JobOptions()

    @property
    def repository(self) -> JobRepository:
        return self._repo

    async def enqueue(
        self,
        kind: Union[str, JobKind],
        payload: Mapping[str, Any],
        options: Optional[JobOptions] = None,
    ) -> JobHandle:
        job_kind = parse_kind(kind)
        opts = options or self._defaults
        job_id = opts.job_id or uuid.uuid4().hex

        job = QueueJob(
            job_id=job_id,
            queue=job_kind.value,
            kind=job_kind.value,
            payload_json=json.dumps(dict(payload), ensure_ascii=False),
            status="waiting",
            attempts_made=0,
            max_attempts=max(1, int(opts.max_attempts)),
            backoff_delay_ms=max(0, int(opts.backoff_delay_ms)),
            run_at=time.time() + max(0, int(opts.delay_ms)) / 1000.0,
        )
        saved = await self._repo.add(job)
        if saved is not job:
            logger.debug(f"[JobQueue] 任务已存在,忽略重复入队: kind={job_kind.value}, job_id={job_id}")
        else:
            logger.debug(
                f"[JobQueue] 任务入队: kind={job_kind.value}, job_id={job_id}, "
                f"task_id={payload.get('task_id')}"
            )
        return JobHandle(job_id=saved.job_id, kind=job_kind, status=saved.status)

    async def counts(self) -> Dict[str, Dict[str, int]]:
        """各任务类型的 waiting/active/completed/failed 数量。"""

        return {k.value: await self._repo.count_by_status(k.value) for k in JobKind}
