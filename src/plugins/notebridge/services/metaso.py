"""秘塔阅读接口：抓取网页正文。"""

from __future__ import annotations

import json
from urllib.parse import urlparse

import httpx
from nonebot import logger

from ..errors import ExternalServiceError


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse((url or "").strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class MetasoReader:
    def __init__(self, api_url: str, api_key: str, *, timeout: float = 30.0) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    async def fetch_webpage(self, url: str) -> str:
        if not self.api_key:
            raise ExternalServiceError("metaso", "未配置 metaso_api_key")
        logger.debug(f"开始抓取网页:{url}")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "text/plain",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.api_url, json={"url": url}, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("metaso", f"抓取网页失败:{exc}") from exc

        ctype = resp.headers.get("Content-Type", "")
        if "json" not in ctype:
            return resp.text
        data = resp.json()
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            for field in ("content", "text"):
                if isinstance(data.get(field), str):
                    return data[field]
        return json.dumps(data, ensure_ascii=False, indent=2)
