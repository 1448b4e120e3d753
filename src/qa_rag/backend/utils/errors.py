# src/qa_rag/backend/utils/errors.py

"""
[职责] 统一检索链路错误合同（error_code/message/detail/cause）与最小 HTTP 映射策略（http_status/retryable）。
[边界] 不依赖任何 Web 框架；不记录日志；仅提供错误壳、分类与可重试判定。
[上游关系] preprocess/retrieval/generation/services 抛出 DomainError 子类；调用方补充 trace_id 等上下文。
[下游关系] services/search_service 决定吸收或上抛；scripts/HTTP 调用方使用 to_http_error 输出稳定 payload。
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, Optional, Tuple

import httpx


ErrorDetail = Dict[str, Any]  # docstring: 错误细节类型（必须 JSON-safe）

ERROR_CODE_PATTERN_AREA = re.compile(r"^[A-Z][A-Z0-9]*(?:__[A-Z0-9]+)+$")  # docstring: AREA__REASON 规范
ERROR_CODE_PATTERN_DOT = re.compile(r"^[a-z][a-z0-9]*(?:\.[a-z0-9_]+)+$")  # docstring: area.reason 规范

VALIDATION_ERROR_CODE = "search.validation"
SEARCH_ERROR_CODE = "search.retrieval_failed"
EMBEDDING_ERROR_CODE = "search.embedding_failed"
RERANK_ERROR_CODE = "search.rerank_failed"
GENERATION_ERROR_CODE = "search.generation_failed"

STANDARD_ERROR_CODES = {
    "bad_request",
    "external_dependency",
    "internal_error",
}

ERROR_HTTP_STATUS_BY_CODE = {  # docstring: 错误码 -> HTTP status
    "bad_request": 400,
    "external_dependency": 503,
    "internal_error": 500,
    VALIDATION_ERROR_CODE: 400,
    SEARCH_ERROR_CODE: 503,
    EMBEDDING_ERROR_CODE: 503,
    RERANK_ERROR_CODE: 503,
    GENERATION_ERROR_CODE: 503,
}

ERROR_RETRYABLE_BY_CODE = {  # docstring: 错误码 -> retryable 默认值
    "bad_request": False,
    "external_dependency": True,
    "internal_error": False,
    VALIDATION_ERROR_CODE: False,
    SEARCH_ERROR_CODE: False,
    EMBEDDING_ERROR_CODE: True,
    RERANK_ERROR_CODE: False,
    GENERATION_ERROR_CODE: False,
}

INTERNAL_ERROR_CODE = "internal_error"
INTERNAL_ERROR_MESSAGE = "internal error"

_TRANSIENT_HTTP_STATUS = {408, 425, 429}  # docstring: 除 5xx 外视为瞬时的 HTTP 状态码


def is_valid_error_code(error_code: str) -> bool:
    """
    [职责] 校验错误码是否满足命名规范或通用错误码列表。
    [边界] 仅做格式校验，不保证全局唯一。
    [上游关系] DomainError 初始化调用。
    [下游关系] 防止不规范错误码进入 payload。
    """

    if not error_code:
        return False
    if error_code in STANDARD_ERROR_CODES:
        return True
    return bool(ERROR_CODE_PATTERN_AREA.match(error_code) or ERROR_CODE_PATTERN_DOT.match(error_code))


def ensure_json_safe_detail(detail: ErrorDetail) -> ErrorDetail:
    """
    [职责] 校验 detail 是否可 JSON 序列化。
    [边界] detail 必须是 dict；不做降级或裁剪。
    [上游关系] DomainError 初始化时调用。
    [下游关系] to_http_error 可直接输出 detail。
    """

    if not isinstance(detail, dict):
        raise ValueError("detail must be a dict")
    try:
        json.dumps(detail)
    except TypeError as exc:
        raise ValueError("detail must be JSON-serializable") from exc
    return detail


class DomainError(Exception):
    """
    [职责] 领域错误最小合同：统一 error_code/message/detail/cause，并提供 http_status/retryable 提示。
    [边界] 仅表达语义，不承担日志、告警、HTTP 输出。
    [上游关系] pipelines/services 抛出本错误；必要时携带 cause。
    [下游关系] to_http_error 根据本错误映射 HTTP status 与 payload。
    """

    def __init__(
        self,
        *,
        error_code: str,
        message: str,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        allow_nonstandard_code: bool = False,
    ) -> None:
        if not is_valid_error_code(error_code) and not allow_nonstandard_code:
            raise ValueError(f"invalid error_code: {error_code}")
        normalized_detail = detail or {}
        ensure_json_safe_detail(normalized_detail)

        resolved_http_status = (
            http_status if http_status is not None else ERROR_HTTP_STATUS_BY_CODE.get(error_code, 500)
        )
        resolved_retryable = (
            retryable if retryable is not None else ERROR_RETRYABLE_BY_CODE.get(error_code, False)
        )

        super().__init__(message)
        self.error_code = error_code  # docstring: 稳定错误码
        self.message = message  # docstring: 用户可读错误信息
        self.detail = normalized_detail  # docstring: JSON-safe 细节
        self.cause = cause
        self.http_status = resolved_http_status
        self.retryable = resolved_retryable

        if cause is not None:
            self.__cause__ = cause  # docstring: 保留异常链路

    def to_dict(self) -> Dict[str, Any]:
        """Return the stable ErrorResponse.error structure."""  # docstring: 不包含 cause
        return {
            "code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(DomainError):
    """
    [职责] 查询输入不合法（空/空白/非字符串），立即拒绝，不重试。
    [边界] 仅用于入口校验；pipeline 内部降级不使用该错误。
    [上游关系] SearchService.search 入参校验失败时抛出。
    [下游关系] 映射为 400。
    """

    def __init__(
        self,
        *,
        message: str = "query is required",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            error_code=VALIDATION_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            retryable=False,
        )


class SearchError(DomainError):
    """
    [职责] 检索阶段失败：触发该阶段 fallback；仅当全部检索来源失败时对外可见。
    [边界] 不区分 FTS/keyword/vector 的具体原因；原因写入 detail。
    [上游关系] lexical/semantic 阶段及 services 抛出。
    [下游关系] services 记录到 metadata.stages 或上抛。
    """

    def __init__(
        self,
        *,
        message: str = "search failed",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            error_code=SEARCH_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            retryable=retryable,
        )


class EmbeddingError(DomainError):
    """
    [职责] 查询向量不可用：semantic 路径降级为 lexical-only。
    [边界] retryable 区分瞬时（超时/连接/5xx）与永久（缺少密钥/请求非法）失败。
    [上游关系] retrieval/embed.py 抛出。
    [下游关系] semantic 阶段吸收并标记 skipped。
    """

    def __init__(
        self,
        *,
        message: str = "embedding failed",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            error_code=EMBEDDING_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            retryable=retryable,
        )


class RerankError(DomainError):
    """Ranking collaborator failed or returned unusable output."""  # docstring: rerank 降级为 pass-through

    def __init__(
        self,
        *,
        message: str = "rerank failed",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            error_code=RERANK_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            retryable=retryable,
        )


class GenerationError(DomainError):
    """Generation collaborator failed; the answer falls back to a template."""  # docstring: 生成降级

    def __init__(
        self,
        *,
        message: str = "generation failed",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            error_code=GENERATION_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            retryable=retryable,
        )


def describe_exception(exc: BaseException) -> str:
    """Compact `ClassName: message` text for metadata snapshots."""  # docstring: 与 errors 快照格式一致
    return f"{exc.__class__.__name__}: {exc}"


def is_transient_error(exc: BaseException) -> bool:
    """
    [职责] 判断异常是否为瞬时失败（可重试）。
    [边界] 仅识别超时/连接错误/HTTP 5xx 与 408/425/429/DomainError.retryable；其余视为永久失败。
    [上游关系] retrieval/embed.py 的 tenacity retry 条件调用。
    [下游关系] 决定是否进入指数退避重试。
    """
    if isinstance(exc, DomainError):
        return bool(exc.retryable)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, httpx.TransportError):
        return True  # docstring: 连接/读超时等传输层错误
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in _TRANSIENT_HTTP_STATUS
    status = getattr(exc, "status_code", None)  # docstring: 兼容 provider SDK 自带的 status_code
    if isinstance(status, int):
        return status >= 500 or status in _TRANSIENT_HTTP_STATUS
    return False


def to_http_error(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    """
    [职责] 将异常转换为 HTTP status + ErrorResponse payload（不耦合 Web 框架）。
    [边界] 不做日志记录；未知异常统一降级为 internal_error。
    [上游关系] scripts/run_search.py 或外部 HTTP 层捕获异常后调用。
    [下游关系] 输出稳定错误结构。
    """

    if isinstance(error, DomainError):
        status_code = error.http_status
        payload = {"error": error.to_dict()}
    else:
        status_code = ERROR_HTTP_STATUS_BY_CODE[INTERNAL_ERROR_CODE]
        payload = {
            "error": {
                "code": INTERNAL_ERROR_CODE,
                "message": INTERNAL_ERROR_MESSAGE,
                "detail": {},
            }
        }

    if trace_id:
        payload["error"]["trace_id"] = trace_id  # docstring: 调用方注入 trace_id

    return status_code, payload
