"""长文本分片：按单条消息长度上限切分,所有分片拼接后与原文完全一致。"""

from __future__ import annotations

from typing import List

# 优先在窗口末尾 40% 范围内的换行处断开
_NEWLINE_SEARCH_RATIO = 0.4


def _find_break(text: str, start: int, max_len: int) -> int:
    """返回 [start, start+max_len] 范围内的切分位置(分片不含该位置之后的字符)。"""

    end = start + max_len
    floor = start + int(max_len * (1 - _NEWLINE_SEARCH_RATIO))

    nl = text.rfind("\n", floor, end)
    if nl != -1:
        return nl + 1

    for i in range(end - 1, start, -1):
        if text[i].isspace():
            return i + 1

    return end


def split_text_into_chunks(text: str, max_len: int = 3500) -> List[str]:
    """切分文本。

    规则:
        1. 长度不超过 max_len 时原样返回一个分片
        2. 优先在窗口末尾 40% 内的最后一个换行之后切分
        3. 否则在最后一个空白字符之后切分
        4. 都没有时硬切
        5. 不做 strip,分片拼接等于原文

    Example:
        >>> split_text_into_chunks("aaaa bbbb", max_len=6)
        ['aaaa ', 'bbbb']
    """

    if max_len < 1:
        raise ValueError("max_len 必须 >= 1")
    if not text:
        return []
    if len(text) <= max_len:
        return [text]

    chunks: List[str] = []
    start = 0
    while len(text) - start > max_len:
        cut = _find_break(text, start, max_len)
        chunks.append(text[start:cut])
        start = cut
    if start < len(text):
        chunks.append(text[start:])
    return chunks
