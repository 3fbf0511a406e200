"""DeepSeek 文本整理客户端(OpenAI 协议)。

两种模式:
- PROCESS: 清理 OCR/粘贴文本的噪声并整理成结构化 Markdown
- OPTIMIZE: 在原文基础上润色,尽量少改动结构
"""

from __future__ import annotations

from typing import Optional

import openai
from nonebot import logger

from ..errors import ExternalServiceError

PROCESS_PROMPT = """你是一个智能文档助手,把用户发来的文本或图片识别结果整理为结构化的 Markdown,便于在笔记软件中阅读与检索。只输出最终 Markdown,不要用代码块包裹整篇内容,不要添加任何解释性文字。

执行顺序:
1) 清理噪声:删除页眉页脚、页码、水印、广告、扫码提示;修复断行断词和被硬回车切断的句子;统一中英文标点,中英文之间留空格;修正常见识别混淆(O/0、l/1)。去除重复行。
2) 纠正拼写、错别字、语法和标点,不改变事实与原意。
3) 断句:拆分长句,每段 1-3 句。
4) 结构:没有标题时生成准确简洁的一级标题;按逻辑添加二、三级标题;并列信息用列表,可结构化的数据用不超过 5 列的表格,代码放进代码块。
5) 链接保留并转为 Markdown 链接;时间只在原文出现时规范为 YYYY-MM-DD;手机号、邮箱、证件号等做半脱敏。

可读性与忠于原文冲突时,以忠于原文为准。保持原文语言。"""

OPTIMIZE_PROMPT = """你是一个文字编辑。请在不改变原意和结构的前提下润色用户发来的文本:修正错别字、语法和标点,让句子更通顺。只输出润色后的文本,不要添加解释。"""

MODE_PROMPTS = {"PROCESS": PROCESS_PROMPT, "OPTIMIZE": OPTIMIZE_PROMPT}


class DeepSeekClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str = "deepseek-chat",
        timeout: float = 120.0,
        temperature: float = 0.7,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._configured = bool(api_key.strip())
        self.client = openai.AsyncOpenAI(
            base_url=base_url.rstrip("/"),
            api_key=api_key or "sk-placeholder",
            timeout=timeout,
            max_retries=0,
        )

    async def rewrite_text(self, text: str, mode: str = "PROCESS") -> str:
        if not self._configured:
            raise ExternalServiceError("deepseek", "未配置 deepseek_api_key")
        system_prompt = MODE_PROMPTS.get(mode.upper(), PROCESS_PROMPT)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": text},
                ],
                temperature=self.temperature,
            )
        except openai.OpenAIError as exc:
            raise ExternalServiceError("deepseek", str(exc)) from exc

        content: Optional[str] = None
        if response.choices:
            content = response.choices[0].message.content
        if not content:
            raise ExternalServiceError("deepseek", "返回内容为空")
        logger.debug(f"DeepSeek 整理完成 mode={mode} in={len(text)} out={len(content)}")
        return content
