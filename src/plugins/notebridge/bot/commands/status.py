"""/start 与 /status 命令的回复内容。"""

from __future__ import annotations

from typing import Dict, Optional

from ...services.user_state import PHASE_LABELS, BusyRecord

START_TEXT = (
    "你好！把内容发给我，我会帮你整理成笔记：\n"
    "• 发送文字：整理排版\n"
    "• 发送图片或相册：识别文字后整理\n"
    "• 发送网页链接：读取正文后整理\n"
    "整理完成后可以一键保存到 Flomo 或 Notion。\n"
    "发送 /status 查看处理进度。"
)


def build_status_text(record: Optional[BusyRecord], counts: Dict[str, Dict[str, int]]) -> str:
    if record is not None:
        label = PHASE_LABELS.get(record.phase, record.phase)
        lines = [f"你的状态：忙（{label}）", f"任务ID：{record.task_id}"]
    else:
        lines = ["你的状态：空闲"]
    lines.append("")
    for kind, c in counts.items():
        lines.append(
            f"{kind} 队列 → waiting {c.get('waiting', 0)}, active {c.get('active', 0)}, "
            f"failed {c.get('failed', 0)}, completed {c.get('completed', 0)}"
        )
    return "\n".join(lines)
