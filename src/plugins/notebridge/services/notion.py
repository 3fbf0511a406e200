"""Notion 保存：把 Markdown 转成 Notion blocks,在指定父页面下新建子页面。

Notion 限制:
- rich_text 单段内容约 2000 字符上限,这里按 1900 切分
- 新建页面时 children 最多 100 个 block,超出时截断并附说明
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List

import httpx
from nonebot import logger

from ..errors import ExternalServiceError

NOTION_API = "https://api.notion.com/v1/pages"
NOTION_VERSION = "2022-06-28"
MAX_RICH = 1900
MAX_CHILDREN = 100


def _rich(text: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": text}}]


def _split(text: str, size: int = MAX_RICH) -> List[str]:
    return [text[i : i + size] for i in range(0, len(text), size)] or [""]


def _paragraphs(text: str) -> List[Dict[str, Any]]:
    return [
        {"object": "block", "type": "paragraph", "paragraph": {"rich_text": _rich(part)}}
        for part in _split(text)
    ]


def _code_blocks(code: str, language: str) -> List[Dict[str, Any]]:
    return [
        {"object": "block", "type": "code", "code": {"language": language, "rich_text": _rich(part)}}
        for part in _split(code)
    ]


def unwrap_code_fence(text: str) -> str:
    """模型偶尔把整篇结果包在 ``` 代码块里,保存前去掉外层围栏。"""

    stripped = text.strip()
    if not (stripped.startswith("```") and stripped.endswith("```") and len(stripped) >= 6):
        return text
    inner = stripped[3:-3]
    first_newline = inner.find("\n")
    if first_newline != -1 and " " not in inner[:first_newline].strip():
        # 去掉语言标识行
        inner = inner[first_newline + 1 :]
    return inner.strip()


def extract_title(markdown: str) -> str:
    for line in markdown.split("\n"):
        if line.startswith("#"):
            title = line.lstrip("#").strip()
            if title:
                return title[:180]
    return f"整理内容 {time.strftime('%Y-%m-%d %H:%M:%S')}"


def markdown_to_blocks(markdown: str) -> List[Dict[str, Any]]:
    """轻量 Markdown 转换:标题(#/##/###)、无序列表、代码块,其余按段落。"""

    blocks: List[Dict[str, Any]] = []
    in_code = False
    code_lines: List[str] = []
    code_lang = "plain text"

    for line in markdown.split("\n"):
        if line.strip().startswith("```"):
            if not in_code:
                in_code = True
                code_lines = []
                code_lang = line.strip()[3:].strip().lower() or "plain text"
            else:
                in_code = False
                blocks.extend(_code_blocks("\n".join(code_lines), code_lang))
            continue
        if in_code:
            code_lines.append(line)
            continue

        heading = None
        for level, prefix in ((3, "### "), (2, "## "), (1, "# ")):
            if line.startswith(prefix):
                heading = (level, line[len(prefix) :].strip())
                break
        if heading is not None:
            kind = f"heading_{heading[0]}"
            blocks.append({"object": "block", "type": kind, kind: {"rich_text": _rich(heading[1][:MAX_RICH])}})
            continue

        if line.startswith("- ") or line.startswith("* "):
            for part in _split(line[2:].strip()):
                blocks.append(
                    {"object": "block", "type": "bulleted_list_item", "bulleted_list_item": {"rich_text": _rich(part)}}
                )
            continue

        if not line.strip():
            blocks.append({"object": "block", "type": "paragraph", "paragraph": {"rich_text": []}})
            continue

        blocks.extend(_paragraphs(line))

    if in_code and code_lines:
        blocks.extend(_code_blocks("\n".join(code_lines), code_lang))
    return blocks


class NotionClient:
    def __init__(self, api_key: str, page_id: str, *, timeout: float = 30.0, max_attempts: int = 3) -> None:
        self.api_key = api_key
        self.page_id = page_id
        self.timeout = timeout
        self.max_attempts = max_attempts

    def build_page(self, text: str) -> Dict[str, Any]:
        content = unwrap_code_fence(text)
        header = f"保存时间:{time.strftime('%Y-%m-%d %H:%M:%S')}"
        children = _paragraphs(header) + markdown_to_blocks(content)
        if len(children) > MAX_CHILDREN:
            total = len(children)
            logger.warning(f"Notion 块数量 {total} 超过上限 {MAX_CHILDREN},截断")
            children = children[: MAX_CHILDREN - 1] + _paragraphs(
                f"注意:内容过长已截断,原始内容共 {total} 个块,当前显示前 {MAX_CHILDREN - 1} 个。"
            )
        return {
            "parent": {"page_id": self.page_id},
            "properties": {"title": {"title": [{"text": {"content": extract_title(content)}}]}},
            "children": children,
        }

    async def save(self, text: str, user_id: str) -> None:
        if not self.api_key or not self.page_id:
            raise ExternalServiceError("notion", "未配置 notion_api_key 或 notion_page_id")

        body = self.build_page(text)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Notion-Version": NOTION_VERSION,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    resp = await client.post(NOTION_API, json=body, headers=headers)
                    resp.raise_for_status()
                    logger.info(f"Notion 页面创建成功 user={user_id} blocks={len(body['children'])}")
                    return
                except httpx.HTTPStatusError as exc:
                    # 4xx 为请求本身的问题,不重试
                    if exc.response.status_code < 500 or attempt >= self.max_attempts:
                        raise ExternalServiceError(
                            "notion", f"{exc.response.status_code} {exc.response.text[:200]}"
                        ) from exc
                except httpx.HTTPError as exc:
                    if attempt >= self.max_attempts:
                        raise ExternalServiceError("notion", f"网络请求失败:{exc}") from exc
                wait = 2.0**attempt
                logger.warning(f"Notion 请求失败(第 {attempt}/{self.max_attempts} 次),{wait:.0f}s 后重试")
                await asyncio.sleep(wait)
