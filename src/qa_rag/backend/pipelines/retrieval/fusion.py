# src/qa_rag/backend/pipelines/retrieval/fusion.py

"""
[职责] fusion：按 doc_id 合并 lexical/semantic 结果，逐来源 min-max 归一化后加权求和，去重并稳定排序。
[边界] 不比较跨来源原始分数；缺失来源贡献 0；权重归一化使总和为 1，融合分数 ∈ [0,1]；不落库。
[上游关系] services/search_service 传入两路 SearchResult（失败的一路以空结果传入）。
[下游关系] rerank/answer 消费 SearchResult(stage="hybrid")。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from qa_rag.backend.pipelines.retrieval.types import ScoredDocument, SearchResult


DEFAULT_LEXICAL_WEIGHT = 0.4
DEFAULT_SEMANTIC_WEIGHT = 0.6
_MISSING_RANK = 10**9  # docstring: 缺失 rank 的排序占位


@dataclass(frozen=True)
class FusionWeights:
    """
    [职责] 两路融合权重。
    [边界] 负数/非有限值按 0 处理；两者皆为 0 时回退默认 0.4/0.6；normalized() 保证和为 1。
    """

    lexical: float = DEFAULT_LEXICAL_WEIGHT
    semantic: float = DEFAULT_SEMANTIC_WEIGHT

    def normalized(self) -> "FusionWeights":
        lw = _non_negative(self.lexical)
        sw = _non_negative(self.semantic)
        total = lw + sw
        if total <= 0.0:
            return FusionWeights(DEFAULT_LEXICAL_WEIGHT, DEFAULT_SEMANTIC_WEIGHT)
        return FusionWeights(lw / total, sw / total)


def _non_negative(value: float) -> float:
    v = float(value)
    if not math.isfinite(v) or v < 0.0:
        return 0.0
    return v


def min_max_normalize(scores: Sequence[float]) -> List[float]:
    """
    Min-max normalize to [0, 1]; a constant list normalizes to 0.5 everywhere.

    Non-finite scores are treated as the list minimum.
    """
    finite = [float(s) for s in scores if s is not None and math.isfinite(float(s))]
    if not finite:
        return [0.5 for _ in scores]
    lo, hi = min(finite), max(finite)
    if hi == lo:
        return [0.5 for _ in scores]
    out: List[float] = []
    for s in scores:
        v = float(s) if s is not None and math.isfinite(float(s)) else lo
        out.append((v - lo) / (hi - lo))
    return out


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _index_source(
    documents: Sequence[ScoredDocument],
    *,
    score_of: Callable[[ScoredDocument], float],
) -> Dict[str, Tuple[ScoredDocument, float, int]]:
    """
    [职责] 单来源：doc_id -> (文档, 归一化分, 1-based rank)。
    [边界] 同一来源内重复 doc_id 只保留首个（rank 最靠前）。
    """
    unique: List[ScoredDocument] = []
    seen: set[str] = set()
    for doc in documents:
        if doc.doc_id in seen:
            continue
        seen.add(doc.doc_id)
        unique.append(doc)
    normalized = min_max_normalize([score_of(d) for d in unique])
    return {d.doc_id: (d, n, idx) for idx, (d, n) in enumerate(zip(unique, normalized), start=1)}


def _merge_document(lexical: Optional[ScoredDocument], semantic: Optional[ScoredDocument]) -> ScoredDocument:
    """Prefer lexical content fields; fill gaps (empty title/body, meta keys) from semantic."""
    base = lexical or semantic
    if base is None:
        raise ValueError("at least one source document is required")
    other = semantic if lexical is not None else None
    if other is None:
        return base
    meta = dict(base.meta or {})
    for k, v in (other.meta or {}).items():
        meta.setdefault(k, v)
    return replace(
        base,
        title=base.title or other.title,
        body=base.body or other.body,
        meta=meta,
    )


def fuse_results(
    lexical: Optional[SearchResult],
    semantic: Optional[SearchResult],
    *,
    weights: Optional[FusionWeights] = None,
    limit: int = 20,
) -> SearchResult:
    """
    [职责] 融合两路结果：fused = w_lex * norm_lex + w_sem * norm_sem，截断到 limit。
    [边界] 排序：fused 降序 -> lexical rank -> semantic rank -> doc_id；任一路可为 None/空。
    [上游关系] SearchService.search。
    [下游关系] SearchResult(stage="hybrid", strategy="weighted")。
    """
    if int(limit) <= 0:
        return SearchResult.empty("hybrid", strategy="weighted")

    w = (weights or FusionWeights()).normalized()
    lex_docs = lexical.documents if lexical is not None else ()
    sem_docs = semantic.documents if semantic is not None else ()

    lex_index = _index_source(lex_docs, score_of=lambda d: d.lexical_score if d.lexical_score is not None else 0.0)
    sem_index = _index_source(sem_docs, score_of=lambda d: d.semantic_score if d.semantic_score is not None else 0.0)

    order: List[str] = list(lex_index.keys()) + [k for k in sem_index.keys() if k not in lex_index]
    fused: List[ScoredDocument] = []
    for doc_id in order:
        lex = lex_index.get(doc_id)
        sem = sem_index.get(doc_id)
        lex_norm = lex[1] if lex else 0.0
        sem_norm = sem[1] if sem else 0.0
        fused_score = _clamp01(w.lexical * lex_norm + w.semantic * sem_norm)

        merged = _merge_document(lex[0] if lex else None, sem[0] if sem else None)
        fused.append(
            replace(
                merged,
                lexical_score=lex[0].lexical_score if lex else None,
                semantic_score=sem[0].semantic_score if sem else None,
                lexical_rank=lex[2] if lex else None,
                semantic_rank=sem[2] if sem else None,
                fused_score=fused_score,
            )
        )

    fused.sort(
        key=lambda d: (
            -float(d.fused_score or 0.0),
            d.lexical_rank if d.lexical_rank is not None else _MISSING_RANK,
            d.semantic_rank if d.semantic_rank is not None else _MISSING_RANK,
            d.doc_id,
        )
    )
    ranked = tuple(replace(d, final_rank=idx) for idx, d in enumerate(fused[: int(limit)], start=1))
    return SearchResult(stage="hybrid", documents=ranked, strategy="weighted")
