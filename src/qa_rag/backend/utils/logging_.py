# src/qa_rag/backend/utils/logging_.py

"""
[职责] 结构化 JSON 日志与检索链路事件出口（EventSink）：统一 logger 命名、trace 字段提取、查询安全预览。
[边界] 不绑定日志后端；不做指标聚合；事件语义由 pipelines/services 决定。
[上游关系] preprocess/retrieval/generation/services 通过 get_logger/log_event 或 EventSink 上报。
[下游关系] stdout JSON 日志；测试可注入 RecordingEventSink 断言阶段事件。
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol


DEFAULT_LOGGER_NAME = "qa_rag"  # docstring: 项目根 logger
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_MAX_TEXT_LEN = 120  # docstring: 查询预览长度

TRACE_FIELD_KEYS = ("trace_id", "request_id")  # docstring: 从上下文提取的 trace 字段

EVENT_STAGE_START = "stage.start"
EVENT_STAGE_END = "stage.end"
EVENT_STAGE_FALLBACK = "stage.fallback"

_LOG_RECORD_RESERVED = set(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}  # docstring: LogRecord 内置字段


class StructuredLogFormatter(logging.Formatter):
    """
    [职责] 将 LogRecord 输出为单行 JSON（基础字段 + extra）。
    [边界] 不识别敏感字段；调用方负责只传预览/摘要。
    """

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self._ensure_ascii = ensure_ascii

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _LOG_RECORD_RESERVED or value is None:
                continue
            payload[key] = value  # docstring: extra 字段平铺
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=self._ensure_ascii, default=str)


def configure_logging(
    *,
    logger_name: str = DEFAULT_LOGGER_NAME,
    level: int = DEFAULT_LOG_LEVEL,
    ensure_ascii: bool = True,
) -> logging.Logger:
    """
    [职责] 配置项目 base logger（JSON handler，只挂载一次）。
    [边界] 不触碰 root logger。
    [上游关系] scripts 入口或 get_logger 首次调用。
    [下游关系] 子 logger 继承 handler。
    """

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    has_handler = any(getattr(h, "name", "") == "structured_json" for h in logger.handlers)
    if not has_handler:
        handler = logging.StreamHandler()
        handler.name = "structured_json"  # docstring: 防重复挂载标记
        handler.setFormatter(StructuredLogFormatter(ensure_ascii=ensure_ascii))
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None, *, level: Optional[int] = None) -> logging.Logger:
    """Return a logger mounted under the `qa_rag` root."""  # docstring: 自动确保 base logger 已配置
    configure_logging()
    full_name = name or DEFAULT_LOGGER_NAME
    if name and not name.startswith(DEFAULT_LOGGER_NAME):
        full_name = f"{DEFAULT_LOGGER_NAME}.{name}"
    logger = logging.getLogger(full_name)
    if level is not None:
        logger.setLevel(level)
    return logger


def build_log_fields(
    *,
    context: Optional[Any] = None,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    [职责] 组装结构化字段：context 中的 trace 字段 + 显式 ids + 扩展字段。
    [边界] 不生成缺失 trace_id；None 值丢弃。
    """

    fields: Dict[str, Any] = {}
    if context is not None:
        for key in TRACE_FIELD_KEYS:
            value = _read_context_value(context, key)
            if value is not None:
                fields[key] = str(value)
    if trace_id is not None:
        fields["trace_id"] = str(trace_id)
    if request_id is not None:
        fields["request_id"] = str(request_id)
    if extra:
        for key, value in extra.items():
            if value is not None:
                fields[key] = value
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    context: Optional[Any] = None,
    fields: Optional[Mapping[str, Any]] = None,
    exc_info: Optional[Any] = None,
) -> None:
    """Write one structured record with trace fields taken from `context`."""
    extra = build_log_fields(context=context, extra=fields)
    for key in [k for k in extra if k in _LOG_RECORD_RESERVED]:
        extra[f"field_{key}"] = extra.pop(key)  # docstring: 避免覆盖 LogRecord 内置属性
    logger.log(level, message, extra=extra, exc_info=exc_info)


def truncate_text(text: Optional[str], *, max_len: int = DEFAULT_MAX_TEXT_LEN) -> Optional[str]:
    """
    [职责] 截断长文本，日志只记录查询预览。
    [边界] 仅长度控制。
    """

    if text is None:
        return None
    s = str(text)
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]}...(truncated)"


def hash_text(text: Optional[str]) -> Optional[str]:
    """sha256 digest used to correlate queries without logging them in full."""
    if text is None:
        return None
    s = str(text)
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _read_context_value(context: Any, key: str) -> Optional[Any]:
    if isinstance(context, Mapping):
        return context.get(key)
    return getattr(context, key, None)


class EventSink(Protocol):
    """
    [职责] 检索链路观测出口：阶段开始/结束/降级时被调用。
    [边界] 实现不得抛出异常影响主链路；不要求线程安全（请求内单协程写入）。
    [上游关系] PipelineContext.emit 调用。
    [下游关系] 日志、测试记录器或外部指标系统。
    """

    def emit(self, event: str, *, stage: str, fields: Mapping[str, Any]) -> None:
        ...


class LoggingEventSink:
    """
    [职责] 默认 EventSink：将阶段事件写为结构化日志。
    [边界] fallback 事件用 WARNING，其余 INFO/DEBUG。
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or get_logger("pipeline.events")

    def emit(self, event: str, *, stage: str, fields: Mapping[str, Any]) -> None:
        level = logging.WARNING if event == EVENT_STAGE_FALLBACK else logging.INFO
        if event == EVENT_STAGE_START:
            level = logging.DEBUG  # docstring: start 事件噪声较大
        payload = dict(fields)
        payload["event"] = event
        payload["stage"] = stage
        log_event(self._logger, level, f"{stage} {event}", fields=payload)


__all__ = [
    "DEFAULT_LOGGER_NAME",
    "EVENT_STAGE_END",
    "EVENT_STAGE_FALLBACK",
    "EVENT_STAGE_START",
    "EventSink",
    "LoggingEventSink",
    "StructuredLogFormatter",
    "build_log_fields",
    "configure_logging",
    "get_logger",
    "hash_text",
    "log_event",
    "truncate_text",
]
