"""各任务类型的处理流程。

每个 handler 的固定结构:
    async with busy.track(user, task, 首阶段) as phase:
        外部调用(限流) → phase.enter(下一阶段) → ... → 投递结果

外部服务通过协议注入,测试时可用 AsyncMock 替换。
"""

from __future__ import annotations

from typing import Any, Dict, List, Protocol

from nonebot import logger

from ..services.metaso import is_valid_url
from ..services.result_handler import ResultDelivery
from ..services.user_state import BusyStateTracker, Phase
from ..storage.models import QueueJob
from .job_queue import JobKind
from .worker_pool import JobHandler

EMPTY_OCR_NOTICE = "抱歉，图片中未识别到文字内容。"
INVALID_URL_NOTICE = "抱歉，这个链接无法识别，请发送完整的 http(s) 网址。"
FAILED_NOTICE = "抱歉，处理失败了，请稍后重试。"

WEB_RAW_MAX_CHARS = 8000
WEB_RESULT_MAX_CHARS = 4000


class OCRService(Protocol):
    async def recognize_image(self, image_bytes: bytes) -> str: ...


class RewriteService(Protocol):
    async def rewrite_text(self, text: str, mode: str = "PROCESS") -> str: ...


class WebReader(Protocol):
    async def fetch_webpage(self, url: str) -> str: ...


class FileDownloader(Protocol):
    async def download_file(self, file_id: str) -> bytes: ...


class Limiter(Protocol):
    async def wait(self) -> None: ...


def preprocess_text(text: str) -> str:
    """不间断空格替换为普通空格并去除首尾空白。"""

    return (text or "").replace("\u00a0", " ").strip()


def truncate(text: str, limit: int, suffix: str) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


class JobProcessors:
    def __init__(
        self,
        *,
        busy: BusyStateTracker,
        delivery: ResultDelivery,
        ocr: OCRService,
        rewriter: RewriteService,
        reader: WebReader,
        downloader: FileDownloader,
        ocr_limiter: Limiter,
        llm_limiter: Limiter,
    ) -> None:
        self.busy = busy
        self.delivery = delivery
        self.ocr = ocr
        self.rewriter = rewriter
        self.reader = reader
        self.downloader = downloader
        self.ocr_limiter = ocr_limiter
        self.llm_limiter = llm_limiter

    def handlers(self) -> Dict[JobKind, JobHandler]:
        return {
            JobKind.TEXT: self.handle_text,
            JobKind.OCR_SINGLE: self.handle_ocr_single,
            JobKind.OCR_GROUP: self.handle_ocr_group,
            JobKind.WEB_LINK: self.handle_web_link,
        }

    async def rewrite(self, text: str, mode: str = "PROCESS") -> str:
        await self.llm_limiter.wait()
        return await self.rewriter.rewrite_text(text, mode)

    async def recognize(self, file_id: str) -> str:
        data = await self.downloader.download_file(file_id)
        await self.ocr_limiter.wait()
        return await self.ocr.recognize_image(data)

    async def handle_text(self, job: QueueJob, payload: Dict[str, Any]) -> str:
        task_id, chat_id, user_id = _ids(payload)
        async with self.busy.track(user_id, task_id, Phase.LLM) as phase:
            clean = preprocess_text(str(payload.get("text") or ""))
            result = await self.rewrite(clean, str(payload.get("mode") or "PROCESS"))
            await phase.enter(Phase.SENDING)
            await self.delivery.send_result(chat_id, result, task_id)
        return result

    async def handle_ocr_single(self, job: QueueJob, payload: Dict[str, Any]) -> str:
        return await self._ocr_pipeline(payload, [str(payload["file_id"])])

    async def handle_ocr_group(self, job: QueueJob, payload: Dict[str, Any]) -> str:
        file_ids: List[str] = [str(f) for f in payload.get("file_ids") or []]
        return await self._ocr_pipeline(payload, file_ids)

    async def _ocr_pipeline(self, payload: Dict[str, Any], file_ids: List[str]) -> str:
        task_id, chat_id, user_id = _ids(payload)
        async with self.busy.track(user_id, task_id, Phase.OCR) as phase:
            texts = []
            for file_id in file_ids:
                texts.append(await self.recognize(file_id))
            merged = "\n\n".join(t for t in texts if t.strip())
            logger.info(f"OCR 完成 task={task_id} 图片 {len(file_ids)} 张,文字 {len(merged)} 字")

            if not merged.strip():
                await phase.enter(Phase.SENDING)
                await self.delivery.send_notice(chat_id, EMPTY_OCR_NOTICE)
                return ""

            await phase.enter(Phase.LLM)
            result = await self.rewrite(preprocess_text(merged), "PROCESS")
            await phase.enter(Phase.SENDING)
            await self.delivery.send_result(chat_id, result, task_id)
        return result

    async def handle_web_link(self, job: QueueJob, payload: Dict[str, Any]) -> str:
        task_id, chat_id, user_id = _ids(payload)
        url = str(payload.get("url") or "").strip()
        if not is_valid_url(url):
            # 输入本身有问题,重试没有意义
            await self.delivery.send_notice(chat_id, INVALID_URL_NOTICE)
            return ""

        async with self.busy.track(user_id, task_id, Phase.WEB_FETCH) as phase:
            raw = await self.reader.fetch_webpage(url)
            raw = truncate(preprocess_text(raw), WEB_RAW_MAX_CHARS, "\n\n... (内容已截断)")

            await phase.enter(Phase.LLM)
            result = await self.rewrite(raw, "PROCESS")
            result = truncate(result, WEB_RESULT_MAX_CHARS, "\n\n... (内容已截断，完整内容请查看原始网页)")

            await phase.enter(Phase.SENDING)
            await self.delivery.send_result(chat_id, result, task_id)
        return result

    async def notify_failed(self, job: QueueJob, payload: Dict[str, Any], exc: BaseException) -> None:
        """任务最终失败时告知用户。"""

        chat_id = payload.get("chat_id")
        if chat_id is None:
            return
        await self.delivery.send_notice(str(chat_id), FAILED_NOTICE)


def _ids(payload: Dict[str, Any]):
    return str(payload["task_id"]), str(payload["chat_id"]), str(payload["user_id"])
