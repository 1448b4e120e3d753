# src/qa_rag/backend/schemas/search.py

"""
[职责] Search 契约层：检索模式、单条命中（DocumentHit）、阶段状态（StageStatus）与整体响应（PipelineResponse）。
[边界] 不包含检索/融合/重排实现；不依赖 ORM；仅表达对外输出结构。
[上游关系] services/search_service 将 ScoredDocument 与 StageResult 映射为本层结构。
[下游关系] HTTP 层 / scripts/run_search 直接 model_dump 输出 JSON。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Enums / literals ---

SearchMode = Literal["hybrid", "lexical", "semantic", "reranked"]  # docstring: 检索模式（默认 hybrid）
StageState = Literal["ok", "fallback", "skipped", "failed"]  # docstring: 阶段结局


class DocumentHit(BaseModel):
    """
    [职责] 单条最终命中：文档内容 + 各阶段分数与排名。
    [边界] score 为排序依据（rerank 优先，其次 fused）；其余分数可空。
    """

    model_config = ConfigDict(extra="forbid")

    doc_id: str = Field(...)
    title: str = Field(default="")
    body: str = Field(default="")
    meta: Dict[str, Any] = Field(default_factory=dict)

    rank: int = Field(..., ge=1)  # docstring: 最终列表位置（1-based）
    score: float = Field(default=0.0)

    lexical_score: Optional[float] = Field(default=None)  # docstring: -bm25 或兜底合成分
    semantic_score: Optional[float] = Field(default=None)  # docstring: 余弦相似度
    fused_score: Optional[float] = Field(default=None)  # docstring: [0,1]
    rerank_score: Optional[float] = Field(default=None)
    rerank_reason: Optional[str] = Field(default=None)


class StageStatus(BaseModel):
    """One stage outcome as recorded in response metadata."""

    model_config = ConfigDict(extra="forbid")

    status: StageState = Field(...)
    strategy: Optional[str] = Field(default=None)  # docstring: fts5/keyword/cosine/weighted/llm/passthrough/template
    count: Optional[int] = Field(default=None)
    error: Optional[Dict[str, Any]] = Field(default=None)  # docstring: StageError.to_dict()


class SearchMetadata(BaseModel):
    """
    [职责] 响应诊断信息：实际使用的查询、命中总数、阶段状态、预处理快照、耗时与追踪 ID。
    [边界] 仅包含 JSON-safe 值。
    """

    model_config = ConfigDict(extra="forbid")

    query_used: str = Field(default="")
    total_found: int = Field(default=0, ge=0)  # docstring: 融合后（截断前）的候选数
    mode: SearchMode = Field(default="hybrid")
    stages: Dict[str, StageStatus] = Field(default_factory=dict)
    preprocessing: Dict[str, Any] = Field(default_factory=dict)
    timing_ms: Dict[str, float] = Field(default_factory=dict)
    trace_id: Optional[str] = Field(default=None)
    request_id: Optional[str] = Field(default=None)


class PipelineResponse(BaseModel):
    """
    [职责] 检索入口的统一响应。
    [边界] success=True 时 results 可为空（无结果时 answer 给出主题提示）。
    [上游关系] SearchService.search 构造。
    [下游关系] 调用方序列化输出。
    """

    model_config = ConfigDict(extra="forbid")

    success: bool = Field(default=True)
    query: str = Field(...)
    results: List[DocumentHit] = Field(default_factory=list)
    answer: str = Field(default="")
    metadata: SearchMetadata = Field(default_factory=SearchMetadata)
