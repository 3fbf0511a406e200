"""Flomo 保存：向用户的 webhook 地址 POST 内容。"""

from __future__ import annotations

import httpx

from ..errors import ExternalServiceError


class FlomoClient:
    def __init__(self, webhook: str, *, timeout: float = 30.0) -> None:
        self.webhook = webhook
        self.timeout = timeout

    async def save(self, text: str, user_id: str) -> None:
        if not self.webhook:
            raise ExternalServiceError("flomo", "未配置 flomo_webhook")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.webhook, json={"content": text})
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("flomo", str(exc)) from exc
