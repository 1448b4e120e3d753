# src/qa_rag/backend/pipelines/retrieval/rerank.py

"""
[职责] rerank：调用外部排序协作方对融合后的候选重排，回填 rerank_score/rerank_reason。
[边界] 永不抛异常：协作方不可达/超时/输出畸形/排名为空/任一 doc_id 无法回映时，原样透传融合顺序（fallback=True）。
[上游关系] services/search_service 在 reranked 模式或启用 rerank 时调用；传入原始（未扩展）查询。
[下游关系] StageResult[SearchResult]；answer 阶段与响应使用其 value。
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from qa_rag.backend.pipelines.base.context import PipelineContext
from qa_rag.backend.pipelines.base.result import StageError, StageResult
from qa_rag.backend.pipelines.generation.generator import GenerationClient
from qa_rag.backend.pipelines.generation.prompt import build_rerank_prompt
from qa_rag.backend.pipelines.retrieval.types import ScoredDocument, SearchResult
from qa_rag.backend.utils.errors import RERANK_ERROR_CODE, RerankError, describe_exception
from qa_rag.backend.utils.logging_ import EVENT_STAGE_FALLBACK, get_logger, log_event


logger = get_logger("retrieval.rerank")

DEFAULT_TIMEOUT_S = 30.0
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)  # docstring: 去除 markdown 代码围栏


class RankingItem(BaseModel):
    """One ranked candidate returned by the ranking collaborator."""

    model_config = ConfigDict(extra="ignore")

    doc_id: str = Field(..., min_length=1)
    rank: int = Field(..., ge=1)
    relevance_score: float = Field(..., allow_inf_nan=False)
    reason: str = Field(default="")

    @field_validator("doc_id", mode="before")
    @classmethod
    def _coerce_doc_id(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)  # docstring: 数字 id 统一为字符串
        return value

    @field_validator("reason", mode="before")
    @classmethod
    def _coerce_reason(cls, value: object) -> object:
        return "" if value is None else value


class RankingResponse(BaseModel):
    """`{"rankings": [...]}` envelope."""

    model_config = ConfigDict(extra="ignore")

    rankings: List[RankingItem] = Field(default_factory=list)


class RankingClient(Protocol):
    """
    [职责] 排序协作方边界：query + 候选 + top_k -> RankingResponse。
    [边界] 实现可抛任意异常；rerank 负责超时与降级。
    """

    async def rank(self, query: str, candidates: Sequence[ScoredDocument], top_k: int) -> RankingResponse:
        ...


def parse_rankings(text: str) -> RankingResponse:
    """
    [职责] 从 LLM 文本中解析 rankings JSON 并做 pydantic 校验。
    [边界] 容忍代码围栏与 JSON 前后的说明文字；解析/校验失败抛 RerankError。
    """
    raw = _FENCE_RE.sub("", str(text or "").strip())
    start, end = raw.find("{"), raw.rfind("}")
    if start < 0 or end <= start:
        raise RerankError(message="ranking response is not JSON", detail={"preview": raw[:200]})
    try:
        payload = json.loads(raw[start : end + 1])
        return RankingResponse.model_validate(payload)
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        raise RerankError(
            message="ranking response is malformed",
            detail={"error": describe_exception(exc)[:500]},
            cause=exc,
        ) from exc


class LLMRankingClient:
    """
    [职责] RankingClient 的 LLM 实现：拼 rerank prompt -> generate -> 解析 JSON。
    [边界] 不做超时与降级；生成失败（GenerationError）原样上抛。
    [上游关系] services.search_service.build_default_collaborators。
    [下游关系] rerank。
    """

    def __init__(self, generator: GenerationClient) -> None:
        self._generator = generator

    async def rank(self, query: str, candidates: Sequence[ScoredDocument], top_k: int) -> RankingResponse:
        prompt = build_rerank_prompt(query, candidates, top_k=top_k)
        text = await self._generator.generate(prompt)
        return parse_rankings(text)


def _passthrough(documents: Sequence[ScoredDocument], top_k: int) -> SearchResult:
    kept = tuple(replace(doc, final_rank=idx) for idx, doc in enumerate(documents[: max(0, int(top_k))], start=1))
    return SearchResult(stage="hybrid", documents=kept, strategy="passthrough")


def apply_rankings(
    documents: Sequence[ScoredDocument],
    response: RankingResponse,
    *,
    top_k: int,
) -> SearchResult:
    """
    [职责] 将 rankings 回映到输入文档：按 relevance_score 降序、同分按返回 rank 升序，截断 top_k。
    [边界] rankings 为空或任一 doc_id 不在输入集合中抛 RerankError；重复 doc_id 只保留首个。
    """
    if not response.rankings:
        raise RerankError(message="ranking response is empty")

    by_id: Dict[str, ScoredDocument] = {}
    for doc in documents:
        by_id.setdefault(doc.doc_id, doc)

    unresolved = [item.doc_id for item in response.rankings if item.doc_id not in by_id]
    if unresolved:
        raise RerankError(message="ranking returned unknown document ids", detail={"unresolved": unresolved[:20]})

    ordered = sorted(
        enumerate(response.rankings),
        key=lambda pair: (-pair[1].relevance_score, pair[1].rank, pair[0]),
    )
    ranked: List[ScoredDocument] = []
    seen: set[str] = set()
    for _, item in ordered:
        if item.doc_id in seen:
            continue
        seen.add(item.doc_id)
        ranked.append(
            replace(
                by_id[item.doc_id],
                rerank_score=float(item.relevance_score),
                rerank_reason=item.reason or None,
            )
        )

    final = tuple(replace(doc, final_rank=idx) for idx, doc in enumerate(ranked[: int(top_k)], start=1))
    return SearchResult(stage="reranked", documents=final, strategy="llm")


async def rerank(
    query: str,
    documents: Sequence[ScoredDocument],
    *,
    top_k: int,
    ranker: Optional[RankingClient],
    timeout_s: float = DEFAULT_TIMEOUT_S,
    ctx: Optional[PipelineContext] = None,
) -> StageResult[SearchResult]:
    """
    [职责] 执行重排并在任何失败时降级为融合顺序透传。
    [边界] 仅 asyncio.CancelledError 会穿透（取消语义）；其余异常全部吸收为 StageError。
    [上游关系] SearchService.search。
    [下游关系] 成功：SearchResult(stage="reranked", strategy="llm")；降级：SearchResult(strategy="passthrough")。
    """
    cap = int(top_k)
    if cap <= 0 or not documents:
        return StageResult.success(_passthrough(documents, cap))
    if ranker is None:
        error = StageError(code=RERANK_ERROR_CODE, message="ranking collaborator is not configured")
        return StageResult.degraded(_passthrough(documents, cap), error)

    try:
        response = await asyncio.wait_for(ranker.rank(query, list(documents), cap), timeout=timeout_s)
        result = apply_rankings(documents, response, top_k=cap)
    except Exception as exc:  # noqa: BLE001
        error = StageError.from_exception(exc, default_code=RERANK_ERROR_CODE)
        log_event(
            logger,
            logging.WARNING,
            "rerank failed, passing fused order through",
            context=ctx,
            fields={"error": describe_exception(exc), "candidates": len(documents)},
        )
        if ctx is not None:
            ctx.emit(EVENT_STAGE_FALLBACK, stage="rerank", reason=error.message, strategy="passthrough")
        return StageResult.degraded(_passthrough(documents, cap), error)

    log_event(
        logger,
        logging.INFO,
        "rerank complete",
        context=ctx,
        fields={"candidates": len(documents), "results": result.count},
    )
    return StageResult.success(result)
