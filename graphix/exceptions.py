"""应用异常定义

所有业务异常继承 AppException，由 main.py 的全局异常处理器统一转换为 JSON 响应。
"""
from __future__ import annotations

from typing import Any


class AppException(Exception):
    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class NotFoundError(AppException):
    """引用的分镜、图片或评审记录不存在"""

    code = "NOT_FOUND"
    status_code = 404


class NoCandidatesError(AppException):
    """分镜存在但还没有生成任何候选图片（需要先生成，而不是重新查询）"""

    code = "NO_IMAGES"
    status_code = 400


class InvalidDecisionError(AppException):
    code = "INVALID_DECISION"
    status_code = 400


class CollaboratorError(AppException):
    """视觉评审或图像生成后端失败"""

    code = "COLLABORATOR_FAILURE"
    status_code = 502
