"""Telegram 文件下载：getFile 取 file_path,再从文件服务器下载。"""

from __future__ import annotations

from typing import Any, Callable

import httpx

from ..errors import ExternalServiceError


class TelegramFileDownloader:
    def __init__(
        self,
        bot_getter: Callable[[], Any],
        *,
        token: str,
        file_base: str = "https://api.telegram.org/file",
        timeout: float = 30.0,
    ) -> None:
        self._bot_getter = bot_getter
        self._token = token
        self._file_base = file_base.rstrip("/")
        self._timeout = timeout

    async def file_url(self, file_id: str) -> str:
        bot = self._bot_getter()
        info = await bot.call_api("getFile", file_id=file_id)
        file_path = info.get("file_path") if isinstance(info, dict) else getattr(info, "file_path", None)
        if not file_path:
            raise ExternalServiceError("telegram", f"无法获取 file_path file_id={file_id}")
        return f"{self._file_base}/bot{self._token}/{file_path}"

    async def download_file(self, file_id: str) -> bytes:
        url = await self.file_url(file_id)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as exc:
            # 异常信息里带有 token,不原样透出
            raise ExternalServiceError("telegram", f"下载文件失败 file_id={file_id} ({type(exc).__name__})") from None
