import pytest

from notebridge.errors import ExternalServiceError
from notebridge.services.notion import (
    MAX_CHILDREN,
    MAX_RICH,
    NotionClient,
    extract_title,
    markdown_to_blocks,
    unwrap_code_fence,
)


def _types(blocks):
    return [b["type"] for b in blocks]


def test_markdown_to_blocks():
    md = "# 标题\n## 小节\n- 第一点\n* 第二点\n\n正文\n```python\nprint(1)\n```"
    blocks = markdown_to_blocks(md)
    assert _types(blocks) == [
        "heading_1",
        "heading_2",
        "bulleted_list_item",
        "bulleted_list_item",
        "paragraph",
        "paragraph",
        "code",
    ]
    assert blocks[0]["heading_1"]["rich_text"][0]["text"]["content"] == "标题"
    assert blocks[4]["paragraph"]["rich_text"] == []
    assert blocks[6]["code"]["language"] == "python"
    assert blocks[6]["code"]["rich_text"][0]["text"]["content"] == "print(1)"


def test_long_paragraph_is_split():
    blocks = markdown_to_blocks("x" * (MAX_RICH * 2 + 10))
    assert _types(blocks) == ["paragraph"] * 3
    assert len(blocks[0]["paragraph"]["rich_text"][0]["text"]["content"]) == MAX_RICH


def test_unclosed_code_block_is_kept():
    blocks = markdown_to_blocks("```\na = 1")
    assert _types(blocks) == ["code"]
    assert blocks[0]["code"]["language"] == "plain text"


def test_unwrap_code_fence():
    assert unwrap_code_fence("```markdown\n# 标题\n内容\n```") == "# 标题\n内容"
    assert unwrap_code_fence("普通文本") == "普通文本"


def test_extract_title():
    assert extract_title("正文\n## 读书笔记\n内容") == "读书笔记"
    assert extract_title("没有标题").startswith("整理内容 ")


def test_build_page_truncates_children():
    client = NotionClient("key", "page")
    body = client.build_page("\n".join(f"第 {i} 段" for i in range(150)))

    assert body["parent"] == {"page_id": "page"}
    children = body["children"]
    assert len(children) == MAX_CHILDREN
    assert "内容过长已截断" in children[-1]["paragraph"]["rich_text"][0]["text"]["content"]


def test_build_page_header_and_title():
    client = NotionClient("key", "page")
    body = client.build_page("# 周报\n完成了任务")
    assert body["properties"]["title"]["title"][0]["text"]["content"] == "周报"
    assert body["children"][0]["paragraph"]["rich_text"][0]["text"]["content"].startswith("保存时间:")


@pytest.mark.asyncio
async def test_save_requires_configuration():
    with pytest.raises(ExternalServiceError):
        await NotionClient("", "").save("内容", "u1")
