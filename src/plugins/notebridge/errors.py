"""NoteBridge 异常定义。

分类:
- 永久性输入错误(UnknownKindError / InvalidCallbackError): 立即拒绝,不重试
- 外部服务错误(ExternalServiceError): 视为瞬时失败,交给任务重试机制
"""

from __future__ import annotations


class NoteBridgeError(Exception):
    """所有 NoteBridge 异常的基类。"""


class UnknownKindError(NoteBridgeError):
    """入队时使用了未知的任务类型。"""

    def __init__(self, kind: object) -> None:
        super().__init__(f"未知任务类型: {kind}")
        self.kind = kind


class InvalidCallbackError(NoteBridgeError):
    """回调按钮数据格式错误或动作无法识别。"""


class ExternalServiceError(NoteBridgeError):
    """外部服务(OCR/LLM/网页读取/笔记服务)调用失败。"""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
