# src/qa_rag/backend/pipelines/base/context.py

"""
[职责] PipelineContext：单次检索请求的运行上下文（会话工厂、trace ids、计时、事件出口、provider 快照）。
[边界] 不持有 AsyncSession 本身；会话由各阶段通过 session_factory 在 async with 内打开并关闭。
[上游关系] services/search_service 或测试 fixture 构造。
[下游关系] lexical/semantic 阶段打开独立会话；各阶段通过 emit 上报事件、通过 timing 记录耗时。
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qa_rag.backend.utils.logging_ import EventSink, LoggingEventSink, get_logger, log_event

from .timing import TimingCollector


logger = get_logger("pipeline.context")


def new_trace_id() -> str:
    """Generate UUID v4 as string."""  # docstring: trace/request id 默认生成策略
    return str(uuid.uuid4())


@dataclass
class PipelineContext:
    """
    [职责] 为单次 pipeline 执行聚合依赖与可观测字段。
    [边界] 不跨请求复用；不做 commit/rollback；meta 只放 JSON-safe 值。
    [上游关系] SearchService.search 为每次请求创建。
    [下游关系] 各阶段读取 session_factory/timing/events；trace_id 写入日志与响应 metadata。
    """

    session_factory: async_sessionmaker[AsyncSession]
    events: EventSink = field(default_factory=LoggingEventSink)

    trace_id: str = field(default_factory=new_trace_id)  # docstring: 单次链路追踪ID
    request_id: str = field(default_factory=new_trace_id)  # docstring: 单次请求ID（可由上游注入）

    timing: TimingCollector = field(default_factory=TimingCollector)

    provider_snapshot: Dict[str, Any] = field(default_factory=dict)  # docstring: embed/rerank/llm 参数快照
    meta: Dict[str, Any] = field(default_factory=dict)

    def timing_ms(self, *, include_total: bool = True) -> Dict[str, float]:
        return self.timing.to_dict(include_total=include_total)

    def with_provider(self, kind: str, snapshot: Dict[str, Any]) -> None:
        """
        [职责] 写入/覆盖某类 provider 快照（embed/rerank/llm）。
        [边界] 不做 schema 校验。
        """
        k = str(kind).strip()
        if not k:
            return
        self.provider_snapshot[k] = snapshot

    def emit(self, event: str, *, stage: str, **fields: Any) -> None:
        """
        [职责] 向 EventSink 上报阶段事件，自动附加 trace 字段。
        [边界] sink 自身异常只记录日志，不影响检索主链路。
        """
        payload: Dict[str, Any] = {"trace_id": self.trace_id, "request_id": self.request_id}
        payload.update({k: v for k, v in fields.items() if v is not None})
        try:
            self.events.emit(event, stage=stage, fields=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "event sink failed",
                context=self,
                fields={"event": event, "stage": stage, "error": f"{exc.__class__.__name__}: {exc}"},
            )
