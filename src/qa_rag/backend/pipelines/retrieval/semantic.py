# src/qa_rag/backend/pipelines/retrieval/semantic.py

"""
[职责] semantic search：一次查询向量化 + 与全部已存文档向量做余弦相似度（numpy），过滤阈值并排序截断。
[边界] 全量扫描，不建 ANN 索引；不做融合/重排；向量缺失/零模/非有限/非数值时相似度记为 0。
[上游关系] services/search_service 以独立 AsyncSession 调用；embedding 由 EmbeddingClient 提供。
[下游关系] fusion 消费 SearchResult(stage="semantic")；向量化失败抛 EmbeddingError（编排层跳过该阶段）。
"""

from __future__ import annotations

import logging
from dataclasses import replace
from numbers import Real
from typing import Any, List, Optional, Sequence

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from qa_rag.backend.db.repo.document_repo import DocumentRepo
from qa_rag.backend.pipelines.base.context import PipelineContext
from qa_rag.backend.pipelines.retrieval.embed import EmbeddingClient, embed_query
from qa_rag.backend.pipelines.retrieval.types import ScoredDocument, SearchResult
from qa_rag.backend.utils.errors import SearchError, describe_exception
from qa_rag.backend.utils.logging_ import get_logger, log_event


logger = get_logger("retrieval.semantic")

DEFAULT_LIMIT = 20
DEFAULT_SIMILARITY_FLOOR = 0.3


def coerce_vector(raw: Any, dim: Optional[int] = None) -> Optional[np.ndarray]:
    """
    [职责] 将存储向量转为 float64 一维数组；dim 给定时短向量补零、长向量截断。
    [边界] 非列表、空、含非数值或非有限值时返回 None。
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    if any(isinstance(x, bool) or not isinstance(x, Real) for x in raw):
        return None
    arr = np.asarray(raw, dtype=np.float64)
    if arr.ndim != 1 or not np.all(np.isfinite(arr)):
        return None
    if dim is not None:
        if arr.shape[0] < dim:
            arr = np.pad(arr, (0, dim - arr.shape[0]))
        elif arr.shape[0] > dim:
            arr = arr[:dim]
    return arr


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1]; zero-magnitude or invalid vectors give 0.0.

    `b` is padded/truncated to the length of `a`.
    """
    va = coerce_vector(list(a))
    if va is None:
        return 0.0
    vb = coerce_vector(list(b), dim=va.shape[0])
    if vb is None:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (na * nb), -1.0, 1.0))


def score_documents(
    query_vector: Sequence[float],
    rows: Sequence[Any],
    *,
    limit: int = DEFAULT_LIMIT,
    similarity_floor: float = DEFAULT_SIMILARITY_FLOOR,
) -> List[ScoredDocument]:
    """
    [职责] 对文档行打分：保留相似度严格大于阈值者，按相似度降序（同分按 id）并截断。
    [边界] rows 需有 id/title/body/meta_data/embedding 属性（DocumentModel）。
    """
    q = coerce_vector(list(query_vector))
    if q is None or not rows or int(limit) <= 0:
        return []
    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0:
        return []  # docstring: 零向量查询与任何文档相似度为 0，全部低于阈值

    scored: List[ScoredDocument] = []
    for row in rows:
        vec = coerce_vector(getattr(row, "embedding", None), dim=q.shape[0])
        similarity = 0.0
        if vec is not None:
            v_norm = float(np.linalg.norm(vec))
            if v_norm > 0.0:
                similarity = float(np.clip(np.dot(q, vec) / (q_norm * v_norm), -1.0, 1.0))
        if similarity <= float(similarity_floor):
            continue
        scored.append(
            ScoredDocument(
                doc_id=str(row.id),
                title=str(row.title or ""),
                body=str(row.body or ""),
                meta=dict(row.meta_data or {}),
                semantic_score=similarity,
            )
        )

    scored.sort(key=lambda d: (-float(d.semantic_score or 0.0), d.doc_id))
    return [replace(doc, semantic_rank=rank) for rank, doc in enumerate(scored[: int(limit)], start=1)]


async def semantic_search(
    session: AsyncSession,
    query: str,
    embedder: EmbeddingClient,
    *,
    limit: int = DEFAULT_LIMIT,
    similarity_floor: float = DEFAULT_SIMILARITY_FLOOR,
    timeout_s: float = 30.0,
    max_attempts: int = 3,
    retry_base_s: float = 1.0,
    ctx: Optional[PipelineContext] = None,
) -> SearchResult:
    """
    [职责] 向量化查询（超时 + 瞬时重试）后对存储向量全量打分。
    [边界] EmbeddingError 原样上抛（编排层标记 skipped）；读取向量失败转 SearchError。
    [上游关系] SearchService._run_semantic。
    [下游关系] SearchResult(strategy="cosine")。
    """
    text_q = str(query or "").strip()
    if not text_q or int(limit) <= 0:
        return SearchResult.empty("semantic")

    query_vec = await embed_query(
        embedder,
        text_q,
        timeout_s=timeout_s,
        max_attempts=max_attempts,
        retry_base_s=retry_base_s,
    )

    try:
        rows = await DocumentRepo(session).list_with_embeddings()
    except Exception as exc:  # noqa: BLE001
        raise SearchError(
            message="semantic search failed",
            detail={"error": describe_exception(exc)},
            cause=exc,
        ) from exc

    documents = score_documents(
        query_vec.vector,
        rows,
        limit=limit,
        similarity_floor=similarity_floor,
    )
    log_event(
        logger,
        logging.INFO,
        "semantic search complete",
        context=ctx,
        fields={
            "candidates": len(rows),
            "results": len(documents),
            "model": query_vec.model_id,
            "dim": query_vec.dim,
        },
    )
    return SearchResult(stage="semantic", documents=tuple(documents), strategy="cosine")
