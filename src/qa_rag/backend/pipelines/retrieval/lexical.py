# src/qa_rag/backend/pipelines/retrieval/lexical.py

"""
[职责] lexical search：FTS5/BM25 主路径 + LIKE 关键词兜底，映射为 ScoredDocument 列表。
[边界] 只做词法检索；不做融合/重排；不提交事务（除 FTS 结构创建）。
[上游关系] services/search_service 以独立 AsyncSession 调用 lexical_search。
[下游关系] fusion 消费 SearchResult(stage="lexical")；兜底也失败时抛 SearchError。
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from qa_rag.backend.db.fts import FtsHit, ensure_document_fts, keyword_fallback, search_documents
from qa_rag.backend.db.models.doc import DocumentModel
from qa_rag.backend.pipelines.base.context import PipelineContext
from qa_rag.backend.pipelines.retrieval.types import ScoredDocument, SearchResult
from qa_rag.backend.utils.errors import SearchError, describe_exception
from qa_rag.backend.utils.logging_ import EVENT_STAGE_FALLBACK, get_logger, log_event


logger = get_logger("retrieval.lexical")

DEFAULT_LIMIT = 20
FALLBACK_BASE_SCORE = 100.0  # docstring: 兜底首位合成分
FALLBACK_SCORE_STEP = 5.0  # docstring: 每下降一位扣减
MIN_KEYWORD_LENGTH = 3  # docstring: 兜底关键词最短长度（>2）


def fallback_keywords(query: str) -> List[str]:
    """Whitespace tokens longer than two characters, lower-cased."""
    return [tok for tok in str(query or "").lower().split() if len(tok) >= MIN_KEYWORD_LENGTH]


def fallback_score(position: int) -> float:
    """
    [职责] 兜底结果的合成分数：100 - 5 * position（0-based），严格递减。
    [边界] position 超过 19 时分数可能 <= 0；仍保持严格递减。
    """
    return FALLBACK_BASE_SCORE - FALLBACK_SCORE_STEP * float(position)


def _hit_to_document(hit: FtsHit, rank: int) -> ScoredDocument:
    return ScoredDocument(
        doc_id=hit.doc_id,
        title=hit.title,
        body=hit.body,
        meta=dict(hit.meta or {}),
        lexical_score=float(hit.score),
        lexical_rank=rank,
    )


def _row_to_document(row: DocumentModel, position: int) -> ScoredDocument:
    return ScoredDocument(
        doc_id=str(row.id),
        title=str(row.title or ""),
        body=str(row.body or ""),
        meta=dict(row.meta_data or {}),
        lexical_score=fallback_score(position),
        lexical_rank=position + 1,
    )


async def lexical_search(
    session: AsyncSession,
    query: str,
    *,
    limit: int = DEFAULT_LIMIT,
    ctx: Optional[PipelineContext] = None,
) -> SearchResult:
    """
    [职责] 执行词法检索：ensure FTS -> FTS5 MATCH（OR 词元、加权 BM25）-> 失败时 LIKE 兜底。
    [边界] ensure 失败只记日志仍尝试检索；兜底仅在 FTS 查询抛错时触发；两者都截断到 limit。
    [上游关系] SearchService._run_lexical。
    [下游关系] 返回 SearchResult(strategy="fts5"|"keyword")；兜底失败抛 SearchError。
    """
    text_q = str(query or "").strip()
    cap = int(limit)
    if not text_q or cap <= 0:
        return SearchResult.empty("lexical")

    try:
        await ensure_document_fts(session)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "fts ensure failed",
            context=ctx,
            fields={"error": describe_exception(exc)},
        )
        await session.rollback()

    try:
        hits = await search_documents(session, query=text_q, limit=cap)
        documents = tuple(_hit_to_document(hit, idx) for idx, hit in enumerate(hits[:cap], start=1))
        return SearchResult(stage="lexical", documents=documents, strategy="fts5")
    except Exception as exc:  # noqa: BLE001
        primary_error = describe_exception(exc)
        log_event(
            logger,
            logging.WARNING,
            "fts search failed, falling back to keyword search",
            context=ctx,
            fields={"error": primary_error},
        )
        if ctx is not None:
            ctx.emit(EVENT_STAGE_FALLBACK, stage="lexical", reason=primary_error, strategy="keyword")
        await session.rollback()

    keywords = fallback_keywords(text_q)
    if not keywords:
        return SearchResult.empty("lexical", strategy="keyword")

    try:
        rows = await keyword_fallback(session, keywords=keywords, limit=cap)
    except Exception as exc:  # noqa: BLE001
        raise SearchError(
            message="lexical search failed",
            detail={"primary_error": primary_error, "fallback_error": describe_exception(exc)},
            cause=exc,
        ) from exc

    documents = tuple(_row_to_document(row, idx) for idx, row in enumerate(rows[:cap]))
    log_event(
        logger,
        logging.INFO,
        "keyword fallback search complete",
        context=ctx,
        fields={"keywords": len(keywords), "results": len(documents)},
    )
    return SearchResult(stage="lexical", documents=documents, strategy="keyword")
