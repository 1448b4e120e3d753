# playground/sql_gate/test_fts_gate.py

"""
[职责] fts gate：验证 document_fts 虚表/触发器可创建且幂等，BM25 检索与 LIKE 兜底语义正确。
[边界] 只测试 SQL 侧 FTS；不涉及 embedding；不做 fusion/rerank。
[上游关系] 依赖 db/fts.py + DocumentRepo 写入 document 表。
[下游关系] retrieval/lexical.py 依赖 search_documents()/keyword_fallback() 返回候选集合。
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from qa_rag.backend.db.fts import (
    FTS_TABLE,
    build_match_query,
    ensure_document_fts,
    fts_ready,
    keyword_fallback,
    rebuild_document_fts,
    search_documents,
)
from qa_rag.backend.db.repo import DocumentRepo
from qa_rag.backend.pipelines.retrieval.lexical import lexical_search


pytestmark = pytest.mark.sql_gate


@pytest.mark.asyncio
async def test_fts_ensure_creates_table_and_triggers(session: AsyncSession) -> None:
    """Ensure FTS table and triggers exist; a second call is a no-op."""  # docstring: DDL/trigger 创建验证
    assert await ensure_document_fts(session) is True

    row = (
        await session.execute(text("SELECT name FROM sqlite_master WHERE type='table' AND name=:n"), {"n": FTS_TABLE})
    ).fetchone()
    assert row is not None

    trigger_rows = (
        await session.execute(
            text("SELECT name FROM sqlite_master WHERE type='trigger' AND name IN ('document_ai','document_ad','document_au')")
        )
    ).fetchall()
    assert {r[0] for r in trigger_rows} == {"document_ai", "document_ad", "document_au"}

    assert await ensure_document_fts(session) is False  # docstring: 幂等


@pytest.mark.asyncio
async def test_fts_backfills_existing_rows_and_ranks_title_first(seeded_factory) -> None:
    """Documents inserted before the index exists are searchable; title matches outrank body matches."""
    async with seeded_factory() as s:
        await ensure_document_fts(s)
        hits = await search_documents(s, query="payment timeout", limit=10)

    ids = [h.doc_id for h in hits]
    assert ids[:2] == ["TP-001", "RN-2024"]
    scores = [h.score for h in hits]
    assert scores == sorted(scores, reverse=True)
    assert hits[0].meta == {"type": "test_plan"}


@pytest.mark.asyncio
async def test_fts_triggers_follow_insert_update_delete(session: AsyncSession) -> None:
    await ensure_document_fts(session)
    repo = DocumentRepo(session)
    await repo.bulk_create([{"id": "DOC-1", "title": "Smoke checklist", "body": "Quick sanity pass."}])
    await session.commit()
    assert [h.doc_id for h in await search_documents(session, query="smoke")] == ["DOC-1"]

    await session.execute(text("UPDATE document SET title = 'Release gate' WHERE id = 'DOC-1'"))
    await session.commit()
    assert await search_documents(session, query="smoke") == []
    assert [h.doc_id for h in await search_documents(session, query="gate")] == ["DOC-1"]

    await session.execute(text("DELETE FROM document WHERE id = 'DOC-1'"))
    await session.commit()
    assert await search_documents(session, query="gate") == []


async def _fts_row_count(session: AsyncSession) -> int:
    return int((await session.execute(text(f"SELECT count(*) FROM {FTS_TABLE}"))).scalar_one())


@pytest.mark.asyncio
async def test_fts_concurrent_first_searches_index_each_document_once(seeded_factory) -> None:
    """Parallel first searches on a fresh database must not backfill the index more than once."""

    async def _search():
        async with seeded_factory() as s:
            return await lexical_search(s, "payment timeout")

    results = await asyncio.gather(*(_search() for _ in range(4)))
    for result in results:
        ids = [d.doc_id for d in result.documents]
        assert len(ids) == len(set(ids))

    async with seeded_factory() as s:
        assert await _fts_row_count(s) == 5
        again = await lexical_search(s, "payment timeout")

    assert [d.doc_id for d in again.documents] == ["TP-001", "RN-2024"]
    assert again.strategy == "fts5"


@pytest.mark.asyncio
async def test_fts_ensure_repairs_missing_trigger_without_duplicates(seeded_factory) -> None:
    async with seeded_factory() as s:
        assert await ensure_document_fts(s) is True
        assert await fts_ready(s) is True

        await s.execute(text("DROP TRIGGER document_ai"))
        await s.commit()
        assert await fts_ready(s) is False

        assert await ensure_document_fts(s) is False  # docstring: 表已存在，仅补触发器
        assert await fts_ready(s) is True
        assert await _fts_row_count(s) == 5


@pytest.mark.asyncio
async def test_fts_rebuild_counts_documents(seeded_factory) -> None:
    async with seeded_factory() as s:
        await ensure_document_fts(s)
        assert await rebuild_document_fts(s) == 5


def test_build_match_query_quotes_tokens_and_dedupes() -> None:
    assert build_match_query('TC-001 AND tc "x" NOT') == '"tc" OR "001" OR "and" OR "x" OR "not"'
    assert build_match_query("  ?? !! ") == ""


@pytest.mark.asyncio
async def test_fts_search_with_operator_text_does_not_raise(seeded_factory) -> None:
    async with seeded_factory() as s:
        await ensure_document_fts(s)
        assert await search_documents(s, query="") == []
        hits = await search_documents(s, query='NEAR( "login" -regression: *')
    assert "TC-101" in [h.doc_id for h in hits]


@pytest.mark.asyncio
async def test_keyword_fallback_requires_all_keywords_in_one_field(seeded_factory) -> None:
    async with seeded_factory() as s:
        rows = await keyword_fallback(s, keywords=["payment", "timeout"])
        assert [r.id for r in rows] == ["RN-2024", "TP-001"]  # docstring: 按 id 排序

        rows = await keyword_fallback(s, keywords=["login", "checkout"])
        assert rows == []  # docstring: 关键词分散在不同文档

        assert await keyword_fallback(s, keywords=[]) == []


@pytest.mark.asyncio
async def test_keyword_fallback_escapes_like_wildcards(seeded_factory) -> None:
    async with seeded_factory() as s:
        assert await keyword_fallback(s, keywords=["test_plan"]) == []  # docstring: "_" 不作为通配符
        assert await keyword_fallback(s, keywords=["100%"]) == []
        rows = await keyword_fallback(s, keywords=["&"])
    assert [r.id for r in rows] == ["FAQ-7"]
