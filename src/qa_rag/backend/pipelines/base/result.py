# src/qa_rag/backend/pipelines/base/result.py

"""
[职责] StageResult[T]：显式的阶段结果（ok/value/error/fallback），替代真假值判断。
[边界] 不做日志；不决定降级策略；仅承载结果与错误快照。
[上游关系] lexical/semantic/rerank/answer 阶段返回。
[下游关系] services/search_service 据此写入 metadata.stages 并决定是否整体失败。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

from qa_rag.backend.utils.errors import DomainError, describe_exception


T = TypeVar("T")


@dataclass(frozen=True)
class StageError:
    """Serializable failure snapshot of one stage."""

    code: str
    message: str
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException, *, default_code: str = "internal_error") -> "StageError":
        if isinstance(exc, DomainError):
            return cls(code=exc.error_code, message=exc.message, retryable=bool(exc.retryable))
        return cls(code=default_code, message=describe_exception(exc), retryable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """
    [职责] 单阶段结果：成功时 value 为阶段产物；失败/降级时 error 记录原因。
    [边界] fallback=True 表示 value 来自降级路径（仍可用）；ok=False 表示无可用 value。
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[StageError] = None
    fallback: bool = False

    @classmethod
    def success(cls, value: T) -> "StageResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def degraded(cls, value: T, error: Optional[StageError] = None) -> "StageResult[T]":
        return cls(ok=True, value=value, error=error, fallback=True)

    @classmethod
    def failure(cls, error: StageError) -> "StageResult[T]":
        return cls(ok=False, value=None, error=error)
