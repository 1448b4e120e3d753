# playground/retrieval_gate/test_retrieval_gate.py

"""
[职责] retrieval gate：验证 lexical（FTS5 + 关键词兜底）、semantic（余弦 + embedding 重试）、fusion 与 rerank 的契约。
[边界] 使用临时 SQLite 与协作方替身；不访问网络；不测试 answer 阶段。
[上游关系] 依赖 pipelines/retrieval/* 与 conftest 种子数据。
[下游关系] 保障 services/search_service 编排时各阶段输出稳定。
"""

from __future__ import annotations

import math

import pytest
from llama_index.core.base.embeddings.base import BaseEmbedding

from qa_rag.backend.pipelines.base.context import PipelineContext
from qa_rag.backend.pipelines.retrieval import lexical as lexical_mod
from qa_rag.backend.pipelines.retrieval.embed import (
    DEFAULT_HASH_DIM,
    LlamaIndexEmbeddingClient,
    embed_query,
    resolve_embedder,
)
from qa_rag.backend.pipelines.retrieval.fusion import FusionWeights, fuse_results, min_max_normalize
from qa_rag.backend.pipelines.retrieval.lexical import fallback_keywords, fallback_score, lexical_search
from qa_rag.backend.pipelines.retrieval.rerank import LLMRankingClient, parse_rankings, rerank
from qa_rag.backend.pipelines.retrieval.semantic import cosine_similarity, semantic_search
from qa_rag.backend.pipelines.retrieval.types import ScoredDocument, SearchResult
from qa_rag.backend.utils.errors import EMBEDDING_ERROR_CODE, RERANK_ERROR_CODE, EmbeddingError, RerankError, SearchError
from qa_rag.backend.utils.logging_ import EVENT_STAGE_FALLBACK


pytestmark = pytest.mark.retrieval_gate


def _fused(*ids: str) -> tuple:
    return tuple(
        ScoredDocument(doc_id=d, title=f"Title {d}", body=f"Body {d}", fused_score=1.0 - i * 0.1, final_rank=i + 1)
        for i, d in enumerate(ids)
    )


# --- lexical ---


@pytest.mark.asyncio
async def test_lexical_search_uses_fts(seeded_factory) -> None:
    async with seeded_factory() as s:
        result = await lexical_search(s, "payment timeout", limit=5)
    assert result.stage == "lexical"
    assert result.strategy == "fts5"
    assert [d.doc_id for d in result.documents][:2] == ["TP-001", "RN-2024"]
    assert [d.lexical_rank for d in result.documents] == list(range(1, result.count + 1))


@pytest.mark.asyncio
async def test_lexical_search_falls_back_to_keywords(seeded_factory, fakes, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken(*_args, **_kwargs):
        raise RuntimeError("fts5: no such module")

    monkeypatch.setattr(lexical_mod, "search_documents", _broken)
    sink = fakes.EventSink()
    ctx = PipelineContext(session_factory=seeded_factory, events=sink)

    async with seeded_factory() as s:
        result = await lexical_search(s, "payment timeout", ctx=ctx)

    assert result.strategy == "keyword"
    assert [(d.doc_id, d.lexical_score) for d in result.documents] == [("RN-2024", 100.0), ("TP-001", 95.0)]
    assert sink.stages(EVENT_STAGE_FALLBACK) == ["lexical"]


@pytest.mark.asyncio
async def test_lexical_search_raises_when_fallback_also_fails(seeded_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken(*_args, **_kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(lexical_mod, "search_documents", _broken)
    monkeypatch.setattr(lexical_mod, "keyword_fallback", _broken)

    async with seeded_factory() as s:
        with pytest.raises(SearchError) as exc_info:
            await lexical_search(s, "payment timeout")
    assert "primary_error" in exc_info.value.detail
    assert "fallback_error" in exc_info.value.detail


@pytest.mark.asyncio
async def test_lexical_search_empty_query_returns_nothing(session) -> None:
    result = await lexical_search(session, "   ")
    assert result.count == 0


def test_fallback_keywords_and_scores() -> None:
    assert fallback_keywords("Is QA on payment API") == ["payment", "api"]
    scores = [fallback_score(i) for i in range(25)]
    assert scores[0] == 100.0
    assert all(a > b for a, b in zip(scores, scores[1:]))


# --- semantic ---


@pytest.mark.asyncio
async def test_semantic_search_ranks_by_cosine(seeded_factory, fakes) -> None:
    embedder = fakes.Embedder([1.0, 0.0, 0.0, 0.0])
    async with seeded_factory() as s:
        result = await semantic_search(s, "payment timeout", embedder, limit=10, similarity_floor=0.3)

    assert result.strategy == "cosine"
    assert [d.doc_id for d in result.documents] == ["TP-001", "RN-2024"]
    assert result.documents[0].semantic_score == pytest.approx(1.0)
    assert result.documents[1].semantic_score == pytest.approx(0.8 / math.sqrt(0.68))
    assert embedder.calls == ["payment timeout"]


@pytest.mark.asyncio
async def test_semantic_search_zero_query_vector_yields_nothing(seeded_factory, fakes) -> None:
    async with seeded_factory() as s:
        result = await semantic_search(s, "anything", fakes.Embedder([0.0, 0.0, 0.0, 0.0]))
    assert result.count == 0


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 5.0]) == pytest.approx(1.0)  # docstring: 截断到查询维度
    assert cosine_similarity([1.0, 0.0, 0.0], [1.0]) == pytest.approx(1.0)  # docstring: 补零
    assert cosine_similarity([1.0, 0.0], [float("nan"), 1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


@pytest.mark.asyncio
async def test_semantic_search_propagates_permanent_embedding_error(seeded_factory, fakes) -> None:
    embedder = fakes.Embedder(error=EmbeddingError(message="missing api key", retryable=False))
    async with seeded_factory() as s:
        with pytest.raises(EmbeddingError):
            await semantic_search(s, "payment", embedder, retry_base_s=0.0)
    assert len(embedder.calls) == 1


@pytest.mark.asyncio
async def test_embed_query_retries_transient_failures(fakes) -> None:
    embedder = fakes.Embedder(error=ConnectionError("connection reset"), fail_times=2)
    vec = await embed_query(embedder, "payment", max_attempts=3, retry_base_s=0.0)
    assert vec.vector == [1.0, 0.0, 0.0, 0.0]
    assert len(embedder.calls) == 3


@pytest.mark.asyncio
async def test_embed_query_timeout_is_retryable(fakes) -> None:
    embedder = fakes.Embedder(delay_s=0.2)
    with pytest.raises(EmbeddingError) as exc_info:
        await embed_query(embedder, "payment", timeout_s=0.02, max_attempts=2, retry_base_s=0.0)
    assert exc_info.value.retryable is True
    assert exc_info.value.error_code == EMBEDDING_ERROR_CODE
    assert len(embedder.calls) == 2


@pytest.mark.asyncio
async def test_embed_query_does_not_retry_permanent_failures(fakes) -> None:
    embedder = fakes.Embedder(error=ValueError("bad request"))
    with pytest.raises(EmbeddingError) as exc_info:
        await embed_query(embedder, "payment", max_attempts=3, retry_base_s=0.0)
    assert exc_info.value.retryable is False
    assert len(embedder.calls) == 1

    with pytest.raises(EmbeddingError):
        await embed_query(embedder, "   ")


@pytest.mark.asyncio
async def test_hash_embedder_is_deterministic_with_requested_dim() -> None:
    embedder = resolve_embedder(provider=" Hash ", model="hash-test", dim=40)
    assert isinstance(embedder, BaseEmbedding)

    first = await embedder.aget_query_embedding("payment timeout")
    again = await embedder.aget_query_embedding("payment timeout")
    other = await embedder.aget_query_embedding("login regression")

    assert len(first) == 40  # docstring: 超过单个 sha256 摘要长度时继续派生
    assert first == again
    assert first != other
    assert all(-1.0 <= v <= 1.0 for v in first)

    default_dim = resolve_embedder(provider="mock", model="")
    assert len(await default_dim.aget_query_embedding("x")) == DEFAULT_HASH_DIM


@pytest.mark.asyncio
async def test_embedding_client_wraps_hash_provider() -> None:
    client = LlamaIndexEmbeddingClient(provider="local", model="hash-test", dim=8)
    vec = await client.embed("payment timeout")
    assert vec.dim == 8 and vec.model_id == "hash-test"

    batch = await client.embed_batch(["payment timeout", "checkout"])
    assert [v.dim for v in batch] == [8, 8]
    assert batch[0].vector == vec.vector  # docstring: query/text 同一 hash
    assert await client.embed_batch([]) == []
    assert client.snapshot() == {"provider": "local", "model": "hash-test", "dim": 8}


def test_resolve_embedder_rejects_unknown_provider() -> None:
    with pytest.raises(ValueError):
        resolve_embedder(provider="word2vec", model="x")


@pytest.mark.asyncio
async def test_embedding_client_provider_errors_are_permanent(monkeypatch: pytest.MonkeyPatch) -> None:
    unknown = LlamaIndexEmbeddingClient(provider="word2vec", model="x")
    with pytest.raises(EmbeddingError) as exc_info:
        await unknown.embed("payment")
    assert exc_info.value.retryable is False
    assert exc_info.value.detail["provider"] == "word2vec"

    monkeypatch.delenv("MISTRAL_API_KEY", raising=False)
    keyless = LlamaIndexEmbeddingClient(provider="mistral", model="mistral-embed")
    with pytest.raises(EmbeddingError) as exc_info:
        await keyless.embed("payment")  # docstring: 缺少 SDK 或密钥均为永久失败
    assert exc_info.value.retryable is False


# --- fusion ---


def test_fusion_normalizes_per_source_and_dedupes() -> None:
    lexical = SearchResult(
        stage="lexical",
        documents=(
            ScoredDocument(doc_id="D1", title="Lex one", lexical_score=10.0),
            ScoredDocument(doc_id="D2", title="Lex two", lexical_score=5.0),
        ),
        strategy="fts5",
    )
    semantic = SearchResult(
        stage="semantic",
        documents=(
            ScoredDocument(doc_id="D2", body="semantic body", semantic_score=0.9),
            ScoredDocument(doc_id="D3", title="Sem three", semantic_score=0.2),
        ),
        strategy="cosine",
    )
    fused = fuse_results(lexical, semantic, weights=FusionWeights(0.4, 0.6))

    assert fused.stage == "hybrid"
    assert [d.doc_id for d in fused.documents] == ["D2", "D1", "D3"]
    assert [d.fused_score for d in fused.documents] == [pytest.approx(0.6), pytest.approx(0.4), pytest.approx(0.0)]
    assert all(0.0 <= (d.fused_score or 0.0) <= 1.0 for d in fused.documents)
    assert [d.final_rank for d in fused.documents] == [1, 2, 3]

    d2 = fused.documents[0]
    assert (d2.lexical_score, d2.semantic_score) == (5.0, 0.9)
    assert (d2.title, d2.body) == ("Lex two", "semantic body")  # docstring: lexical 优先，空字段由 semantic 补齐


def test_fusion_document_strong_in_both_sources_ranks_first() -> None:
    lexical = SearchResult(
        stage="lexical",
        documents=(ScoredDocument(doc_id="A", lexical_score=10.0), ScoredDocument(doc_id="B", lexical_score=5.0)),
    )
    semantic = SearchResult(
        stage="semantic",
        documents=(ScoredDocument(doc_id="A", semantic_score=0.9), ScoredDocument(doc_id="B", semantic_score=0.2)),
    )
    fused = fuse_results(lexical, semantic, weights=FusionWeights(0.4, 0.6))
    assert [(d.doc_id, d.fused_score) for d in fused.documents] == [("A", pytest.approx(1.0)), ("B", pytest.approx(0.0))]


def test_fusion_single_item_source_and_empty_inputs() -> None:
    only = SearchResult(stage="semantic", documents=(ScoredDocument(doc_id="X", semantic_score=0.42),))
    fused = fuse_results(None, only, weights=FusionWeights(0.0, 1.0))
    assert fused.documents[0].fused_score == pytest.approx(0.5)
    assert fuse_results(None, None).count == 0
    assert fuse_results(only, only, limit=0).count == 0


def test_fusion_weights_and_min_max() -> None:
    assert FusionWeights(2.0, 2.0).normalized() == FusionWeights(0.5, 0.5)
    assert FusionWeights(0.0, 0.0).normalized() == FusionWeights(0.4, 0.6)
    assert FusionWeights(-1.0, float("nan")).normalized() == FusionWeights(0.4, 0.6)
    assert min_max_normalize([3.0, 3.0]) == [0.5, 0.5]
    assert min_max_normalize([1.0, float("inf"), 3.0]) == [0.0, 0.0, 1.0]


# --- rerank ---


@pytest.mark.asyncio
async def test_rerank_orders_by_relevance_and_truncates(fakes) -> None:
    ranker = fakes.Ranker(
        [
            {"doc_id": "D1", "rank": 2, "relevance_score": 0.5, "reason": None},
            {"doc_id": "D3", "rank": 1, "relevance_score": 0.95, "reason": "exact match"},
            {"doc_id": "D3", "rank": 3, "relevance_score": 0.1, "reason": "duplicate"},
        ]
    )
    outcome = await rerank("payment timeout", _fused("D1", "D2", "D3"), top_k=2, ranker=ranker)

    assert outcome.ok and not outcome.fallback
    result = outcome.value
    assert result.stage == "reranked" and result.strategy == "llm"
    assert [d.doc_id for d in result.documents] == ["D3", "D1"]
    assert [d.final_rank for d in result.documents] == [1, 2]
    assert result.documents[0].rerank_reason == "exact match"
    assert result.documents[1].rerank_reason is None
    assert result.documents[0].fused_score == pytest.approx(0.8)  # docstring: fused_score 保留
    assert ranker.calls[0] == {"query": "payment timeout", "candidates": ["D1", "D2", "D3"], "top_k": 2}


@pytest.mark.asyncio
async def test_rerank_failure_passes_fused_order_through(seeded_factory, fakes) -> None:
    sink = fakes.EventSink()
    ctx = PipelineContext(session_factory=seeded_factory, events=sink)
    docs = _fused("D1", "D2", "D3")
    outcome = await rerank("q", docs, top_k=2, ranker=fakes.Ranker(error=RuntimeError("503 upstream")), ctx=ctx)

    assert outcome.ok and outcome.fallback
    assert outcome.error is not None and outcome.error.code == RERANK_ERROR_CODE
    assert outcome.value.strategy == "passthrough"
    assert [d.doc_id for d in outcome.value.documents] == ["D1", "D2"]
    assert [d.final_rank for d in outcome.value.documents] == [1, 2]
    assert sink.stages(EVENT_STAGE_FALLBACK) == ["rerank"]


@pytest.mark.asyncio
async def test_rerank_unknown_ids_or_empty_rankings_fall_back(fakes) -> None:
    docs = _fused("D1", "D2")
    unknown = await rerank("q", docs, top_k=2, ranker=fakes.Ranker([{"doc_id": "ZZZ", "rank": 1, "relevance_score": 1.0}]))
    assert unknown.fallback and [d.doc_id for d in unknown.value.documents] == ["D1", "D2"]

    empty = await rerank("q", docs, top_k=2, ranker=fakes.Ranker([]))
    assert empty.fallback and empty.value.strategy == "passthrough"

    missing = await rerank("q", docs, top_k=2, ranker=None)
    assert missing.fallback and missing.error is not None

    slow = await rerank("q", docs, top_k=2, ranker=fakes.Ranker(delay_s=0.2), timeout_s=0.02)
    assert slow.fallback and [d.doc_id for d in slow.value.documents] == ["D1", "D2"]

    nothing = await rerank("q", (), top_k=2, ranker=fakes.Ranker(error=RuntimeError("unused")))
    assert nothing.ok and not nothing.fallback and nothing.value.count == 0


def test_parse_rankings_tolerates_fences_and_prose() -> None:
    text = '```json\n{"rankings": [{"doc_id": 7, "rank": 1, "relevance_score": 0.8, "reason": null}]}\n```'
    parsed = parse_rankings(text)
    assert parsed.rankings[0].doc_id == "7"
    assert parsed.rankings[0].reason == ""

    prose = 'Sure, here you go: {"rankings": [{"doc_id": "A", "rank": 1, "relevance_score": 1}]} Thanks!'
    assert parse_rankings(prose).rankings[0].doc_id == "A"


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        '{"rankings": [{"doc_id": "A", "rank": 0, "relevance_score": 1}]}',
        '{"rankings": [{"doc_id": "A", "rank": 1, "relevance_score": "high"}]}',
        '{"rankings": [{"doc_id": "", "rank": 1, "relevance_score": 1}]',
    ],
)
def test_parse_rankings_rejects_malformed_output(text: str) -> None:
    with pytest.raises(RerankError):
        parse_rankings(text)


@pytest.mark.asyncio
async def test_llm_ranking_client_builds_prompt_and_parses(fakes) -> None:
    generator = fakes.Generator('{"rankings": [{"doc_id": "D2", "rank": 1, "relevance_score": 0.7, "reason": "ok"}]}')
    client = LLMRankingClient(generator)
    response = await client.rank("payment   timeout", list(_fused("D1", "D2")), 1)

    assert [r.doc_id for r in response.rankings] == ["D2"]
    prompt = generator.prompts[0]
    assert 'Given the user query: "payment timeout"' in prompt
    assert "1. ID: D1, Title: Title D1" in prompt
    assert "Only include the top 1 documents. Output JSON only." in prompt
