# src/qa_rag/backend/services/search_service.py

"""
[职责] search_service：检索链路的服务入口（输入校验 + 预处理 + 并发 lexical/semantic + 融合 + 重排 + 回答）。
[边界] 不处理 HTTP 语义；不直接调用底层 SDK；会话由各检索子任务在 async with 内独立打开并关闭。
       仅输入非法（ValidationError）或全部检索来源失败（SearchError）对外抛出，其余阶段失败降级并写入 metadata.stages。
[上游关系] HTTP 层 / scripts/run_search.py 调用 SearchService.search(query, top_k, mode=...)。
[下游关系] PipelineResponse（results/answer/metadata）。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, get_args

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qa_rag.backend.pipelines.base.context import PipelineContext
from qa_rag.backend.pipelines.base.result import StageError, StageResult
from qa_rag.backend.pipelines.generation.generator import GenerationClient, LLMGenerationClient
from qa_rag.backend.pipelines.generation.pipeline import build_fallback_answer, build_no_results_answer, synthesize_answer
from qa_rag.backend.pipelines.preprocess.pipeline import preprocess_query
from qa_rag.backend.pipelines.retrieval.embed import EmbeddingClient, LlamaIndexEmbeddingClient
from qa_rag.backend.pipelines.retrieval.fusion import FusionWeights, fuse_results
from qa_rag.backend.pipelines.retrieval.lexical import lexical_search
from qa_rag.backend.pipelines.retrieval.rerank import LLMRankingClient, RankingClient, rerank
from qa_rag.backend.pipelines.retrieval.semantic import semantic_search
from qa_rag.backend.pipelines.retrieval.types import ScoredDocument, SearchResult
from qa_rag.backend.schemas.query import PreprocessConfig
from qa_rag.backend.schemas.search import (
    DocumentHit,
    PipelineResponse,
    SearchMetadata,
    SearchMode,
    StageStatus,
)
from qa_rag.backend.utils.errors import (
    EMBEDDING_ERROR_CODE,
    SEARCH_ERROR_CODE,
    EmbeddingError,
    SearchError,
    ValidationError,
)
from qa_rag.backend.utils.logging_ import (
    EVENT_STAGE_END,
    EVENT_STAGE_START,
    EventSink,
    LoggingEventSink,
    get_logger,
    hash_text,
    log_event,
    truncate_text,
)
from qa_rag.config import Settings, settings


logger = get_logger("services.search")

SEARCH_MODES: Tuple[str, ...] = get_args(SearchMode)
DEFAULT_TOP_K = 5
MAX_TOP_K = 50
MAX_QUERY_CHARS = 4096

STAGE_PREPROCESS = "preprocess"
STAGE_LEXICAL = "lexical"
STAGE_SEMANTIC = "semantic"
STAGE_FUSION = "fusion"
STAGE_RERANK = "rerank"
STAGE_ANSWER = "answer"


@dataclass(frozen=True)
class SearchConfig:
    """
    [职责] 单次检索的类型化配置：召回上限、阈值、融合权重、超时、重试与开关。
    [边界] 不读环境变量（由 from_settings 负责）；实例不可变，可跨请求共享。
    """

    lexical_limit: int = 20
    semantic_limit: int = 20
    similarity_floor: float = 0.3
    weights: FusionWeights = field(default_factory=FusionWeights)

    rerank_enabled: bool = True
    rerank_candidates: int = 15  # docstring: 送入 rerank 的融合候选数
    generation_enabled: bool = True

    store_timeout_s: float = 30.0
    embed_timeout_s: float = 30.0
    embed_max_attempts: int = 3
    embed_retry_base_s: float = 1.0
    rerank_timeout_s: float = 30.0
    generation_timeout_s: float = 45.0

    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "SearchConfig":
        cfg = s or settings
        return cls(
            lexical_limit=int(cfg.QA_RAG_LEXICAL_LIMIT),
            semantic_limit=int(cfg.QA_RAG_SEMANTIC_LIMIT),
            similarity_floor=float(cfg.QA_RAG_SIMILARITY_FLOOR),
            weights=FusionWeights(
                lexical=float(cfg.QA_RAG_LEXICAL_WEIGHT),
                semantic=float(cfg.QA_RAG_SEMANTIC_WEIGHT),
            ),
            rerank_enabled=bool(cfg.QA_RAG_RERANK_ENABLED),
            rerank_candidates=int(cfg.QA_RAG_RERANK_CANDIDATES),
            generation_enabled=bool(cfg.QA_RAG_GENERATION_ENABLED),
            store_timeout_s=float(cfg.QA_RAG_STORE_TIMEOUT_S),
            embed_timeout_s=float(cfg.QA_RAG_EMBED_TIMEOUT_S),
            embed_max_attempts=int(cfg.QA_RAG_EMBED_MAX_RETRIES),
            embed_retry_base_s=float(cfg.QA_RAG_EMBED_RETRY_BASE_S),
            rerank_timeout_s=float(cfg.QA_RAG_RERANK_TIMEOUT_S),
            generation_timeout_s=float(cfg.QA_RAG_GENERATION_TIMEOUT_S),
            preprocess=PreprocessConfig(max_synonym_variations=int(cfg.QA_RAG_MAX_SYNONYM_VARIATIONS)),
        )


@dataclass(frozen=True)
class Collaborators:
    """External collaborators wired from settings."""

    embedder: EmbeddingClient
    ranker: Optional[RankingClient]
    generator: Optional[GenerationClient]


def build_default_collaborators(s: Optional[Settings] = None) -> Collaborators:
    """
    [职责] 按配置构造 embedding/ranking/generation 协作方（LlamaIndex 实现）。
    [边界] 只构造对象不发请求；缺少密钥等问题在首次调用时以领域错误暴露并降级。
    """
    cfg = s or settings
    embedder = LlamaIndexEmbeddingClient(
        provider=cfg.QA_RAG_EMBED_PROVIDER,
        model=cfg.QA_RAG_EMBED_MODEL,
        dim=int(cfg.QA_RAG_EMBED_DIM),
    )
    ranker = LLMRankingClient(
        LLMGenerationClient(
            provider=cfg.QA_RAG_RERANK_PROVIDER,
            model=cfg.QA_RAG_RERANK_MODEL,
            generation_config=_llm_config(cfg, cfg.QA_RAG_RERANK_PROVIDER, temperature=0.3, max_tokens=500),
        )
    )
    generator = LLMGenerationClient(
        provider=cfg.QA_RAG_GENERATION_PROVIDER,
        model=cfg.QA_RAG_GENERATION_MODEL,
        generation_config=_llm_config(cfg, cfg.QA_RAG_GENERATION_PROVIDER, temperature=0.5, max_tokens=300),
    )
    return Collaborators(embedder=embedder, ranker=ranker, generator=generator)


def _llm_config(cfg: Settings, provider: str, *, temperature: float, max_tokens: int) -> Dict[str, Any]:
    out: Dict[str, Any] = {"temperature": temperature, "max_tokens": max_tokens}
    if str(provider or "").strip().lower() == "ollama":
        out["request_timeout"] = float(cfg.OLLAMA_REQUEST_TIMEOUT_S)  # docstring: .env 中的值也生效
    return out


def _validate_query(query: Any) -> str:
    if not isinstance(query, str):
        raise ValidationError(message="query must be a string", detail={"type": type(query).__name__})
    text = query.strip()
    if not text:
        raise ValidationError(message="query is required")
    if len(text) > MAX_QUERY_CHARS:
        raise ValidationError(message="query is too long", detail={"max_chars": MAX_QUERY_CHARS})
    return text


def _coerce_top_k(top_k: Any) -> int:
    """Out-of-range or non-integer top_k degrades to the nearest usable value."""
    if isinstance(top_k, bool) or not isinstance(top_k, int):
        return DEFAULT_TOP_K
    return max(1, min(int(top_k), MAX_TOP_K))


def _mode_weights(mode: str, weights: FusionWeights) -> FusionWeights:
    if mode == "lexical":
        return FusionWeights(lexical=1.0, semantic=0.0)
    if mode == "semantic":
        return FusionWeights(lexical=0.0, semantic=1.0)
    return weights


def _stage_status(result: Optional[StageResult[Any]], *, strategy: Optional[str] = None, count: Optional[int] = None) -> StageStatus:
    """Map a StageResult onto its response status; None means the stage did not run."""
    if result is None:
        return StageStatus(status="skipped")
    error = result.error.to_dict() if result.error is not None else None
    if not result.ok:
        skipped = result.error is not None and result.error.code == EMBEDDING_ERROR_CODE
        return StageStatus(status="skipped" if skipped else "failed", error=error)
    return StageStatus(
        status="fallback" if result.fallback else "ok",
        strategy=strategy,
        count=count,
        error=error,
    )


def _source_status(result: Optional[StageResult[SearchResult]]) -> StageStatus:
    value = result.value if result is not None else None
    if value is None:
        return _stage_status(result)
    return _stage_status(result, strategy=value.strategy, count=value.count)


def _to_hit(doc: ScoredDocument, position: int) -> DocumentHit:
    return DocumentHit(
        doc_id=doc.doc_id,
        title=doc.title,
        body=doc.body,
        meta=dict(doc.meta or {}),
        rank=doc.final_rank or position,
        score=doc.score,
        lexical_score=doc.lexical_score,
        semantic_score=doc.semantic_score,
        fused_score=doc.fused_score,
        rerank_score=doc.rerank_score,
        rerank_reason=doc.rerank_reason,
    )


class SearchService:
    """
    [职责] 检索服务：一次请求一个 PipelineContext；lexical/semantic 以 asyncio.gather 并发。
    [边界] 不共享跨请求可变状态；协作方由构造注入。
    [上游关系] HTTP 层 / scripts。
    [下游关系] PipelineResponse。
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        embedder: Optional[EmbeddingClient],
        ranker: Optional[RankingClient] = None,
        generator: Optional[GenerationClient] = None,
        config: Optional[SearchConfig] = None,
        events: Optional[EventSink] = None,
    ) -> None:
        self._session_factory = session_factory
        self._embedder = embedder
        self._ranker = ranker
        self._generator = generator
        self._config = config or SearchConfig()
        self._events = events or LoggingEventSink()

    @property
    def config(self) -> SearchConfig:
        return self._config

    async def _run_lexical(self, ctx: PipelineContext, query: str) -> StageResult[SearchResult]:
        ctx.emit(EVENT_STAGE_START, stage=STAGE_LEXICAL)
        with ctx.timing.stage(STAGE_LEXICAL):
            try:
                async with ctx.session_factory() as session:
                    result = await asyncio.wait_for(
                        lexical_search(session, query, limit=self._config.lexical_limit, ctx=ctx),
                        timeout=self._config.store_timeout_s,
                    )
            except Exception as exc:  # noqa: BLE001
                error = StageError.from_exception(exc, default_code=SEARCH_ERROR_CODE)
                log_event(logger, logging.ERROR, "lexical search failed", context=ctx, fields={"error": error.to_dict()})
                ctx.emit(EVENT_STAGE_END, stage=STAGE_LEXICAL, status="failed", error=error.message)
                return StageResult.failure(error)
        ctx.emit(EVENT_STAGE_END, stage=STAGE_LEXICAL, status="ok", strategy=result.strategy, count=result.count)
        if result.strategy == "keyword":
            return StageResult.degraded(result)
        return StageResult.success(result)

    async def _run_semantic(self, ctx: PipelineContext, query: str) -> StageResult[SearchResult]:
        ctx.emit(EVENT_STAGE_START, stage=STAGE_SEMANTIC)
        with ctx.timing.stage(STAGE_SEMANTIC):
            try:
                if self._embedder is None:
                    raise EmbeddingError(message="embedding collaborator is not configured", retryable=False)
                async with ctx.session_factory() as session:
                    result = await asyncio.wait_for(
                        semantic_search(
                            session,
                            query,
                            self._embedder,
                            limit=self._config.semantic_limit,
                            similarity_floor=self._config.similarity_floor,
                            timeout_s=self._config.embed_timeout_s,
                            max_attempts=self._config.embed_max_attempts,
                            retry_base_s=self._config.embed_retry_base_s,
                            ctx=ctx,
                        ),
                        timeout=self._semantic_deadline_s(),
                    )
            except Exception as exc:  # noqa: BLE001
                error = StageError.from_exception(exc, default_code=SEARCH_ERROR_CODE)
                level = logging.WARNING if error.code == EMBEDDING_ERROR_CODE else logging.ERROR
                log_event(logger, level, "semantic search unavailable", context=ctx, fields={"error": error.to_dict()})
                ctx.emit(EVENT_STAGE_END, stage=STAGE_SEMANTIC, status="failed", error=error.message)
                return StageResult.failure(error)
        ctx.emit(EVENT_STAGE_END, stage=STAGE_SEMANTIC, status="ok", strategy=result.strategy, count=result.count)
        return StageResult.success(result)

    def _semantic_deadline_s(self) -> float:
        """Outer bound: every embedding attempt plus backoff plus one store read."""
        cfg = self._config
        attempts = max(1, int(cfg.embed_max_attempts))
        backoff = sum(min(cfg.embed_retry_base_s * (2**i), cfg.embed_retry_base_s * 8) for i in range(attempts - 1))
        return cfg.embed_timeout_s * attempts + backoff + cfg.store_timeout_s

    async def _retrieve(
        self,
        ctx: PipelineContext,
        query: str,
        mode: str,
    ) -> Tuple[Optional[StageResult[SearchResult]], Optional[StageResult[SearchResult]]]:
        """
        [职责] 按模式并发执行 lexical/semantic（asyncio.gather，调用方取消时子任务一并取消）。
        [边界] 未执行的来源返回 None；所有已执行来源均失败时抛 SearchError。
        """
        run_lexical = mode in {"hybrid", "reranked", "lexical"}
        run_semantic = mode in {"hybrid", "reranked", "semantic"}

        coros = []
        if run_lexical:
            coros.append(self._run_lexical(ctx, query))
        if run_semantic:
            coros.append(self._run_semantic(ctx, query))
        outcomes = list(await asyncio.gather(*coros))

        lexical = outcomes.pop(0) if run_lexical else None
        semantic = outcomes.pop(0) if run_semantic else None

        executed = [r for r in (lexical, semantic) if r is not None]
        if executed and all(not r.ok for r in executed):
            detail = {
                name: r.error.to_dict()
                for name, r in ((STAGE_LEXICAL, lexical), (STAGE_SEMANTIC, semantic))
                if r is not None and r.error is not None
            }
            raise SearchError(message="all retrieval stages failed", detail=detail)
        return lexical, semantic

    async def search(
        self,
        query: Any,
        top_k: Any = DEFAULT_TOP_K,
        *,
        mode: str = "hybrid",
        request_id: Optional[str] = None,
    ) -> PipelineResponse:
        """
        [职责] 执行一次完整检索并返回 PipelineResponse。
        [边界] 空/空白/非字符串 query 或未知 mode 抛 ValidationError；全部检索来源失败抛 SearchError；
               融合为空时 success=True、results 为空、answer 为主题提示。
        """
        raw_query = _validate_query(query)
        k = _coerce_top_k(top_k)
        mode_key = str(mode or "hybrid").strip().lower()
        if mode_key not in SEARCH_MODES:
            raise ValidationError(message="unsupported search mode", detail={"mode": str(mode), "allowed": list(SEARCH_MODES)})

        ctx = PipelineContext(session_factory=self._session_factory, events=self._events)
        if request_id:
            ctx.request_id = str(request_id)
        for kind, collaborator in (("embed", self._embedder), ("rerank", self._ranker), ("llm", self._generator)):
            snapshot = getattr(collaborator, "snapshot", None)
            if callable(snapshot):
                ctx.with_provider(kind, snapshot())

        log_event(
            logger,
            logging.INFO,
            "search started",
            context=ctx,
            fields={"query_hash": hash_text(raw_query), "query_preview": truncate_text(raw_query), "top_k": k, "mode": mode_key},
        )
        stages: Dict[str, StageStatus] = {}

        ctx.emit(EVENT_STAGE_START, stage=STAGE_PREPROCESS)
        with ctx.timing.stage(STAGE_PREPROCESS):
            processed = preprocess_query(raw_query, self._config.preprocess)
        search_text = processed.search_text or raw_query.lower()
        stages[STAGE_PREPROCESS] = StageStatus(
            status="fallback" if processed.error else "ok",
            count=len(processed.variations),
            error={"code": "internal_error", "message": processed.error, "retryable": False} if processed.error else None,
        )
        ctx.emit(EVENT_STAGE_END, stage=STAGE_PREPROCESS, status=stages[STAGE_PREPROCESS].status)

        lexical, semantic = await self._retrieve(ctx, search_text, mode_key)
        stages[STAGE_LEXICAL] = _source_status(lexical)
        stages[STAGE_SEMANTIC] = _source_status(semantic)

        with ctx.timing.stage(STAGE_FUSION):
            fused = fuse_results(
                lexical.value if lexical is not None else None,
                semantic.value if semantic is not None else None,
                weights=_mode_weights(mode_key, self._config.weights),
                limit=max(self._config.lexical_limit + self._config.semantic_limit, k),
            )
        stages[STAGE_FUSION] = StageStatus(status="ok", strategy=fused.strategy, count=fused.count)

        if fused.count == 0:
            stages[STAGE_RERANK] = StageStatus(status="skipped")
            stages[STAGE_ANSWER] = StageStatus(status="ok", strategy="no_results")
            return self._respond(
                ctx,
                query=raw_query,
                documents=(),
                answer=build_no_results_answer(raw_query),
                search_text=search_text,
                total_found=0,
                mode=mode_key,
                stages=stages,
                preprocessing=processed.to_snapshot(),
            )

        final_docs = await self._rerank_stage(ctx, raw_query, fused, k, mode_key, stages)
        answer = await self._answer_stage(ctx, raw_query, final_docs, stages)

        return self._respond(
            ctx,
            query=raw_query,
            documents=final_docs,
            answer=answer,
            search_text=search_text,
            total_found=fused.count,
            mode=mode_key,
            stages=stages,
            preprocessing=processed.to_snapshot(),
        )

    async def _rerank_stage(
        self,
        ctx: PipelineContext,
        raw_query: str,
        fused: SearchResult,
        top_k: int,
        mode: str,
        stages: Dict[str, StageStatus],
    ) -> Tuple[ScoredDocument, ...]:
        wants_rerank = mode == "reranked" or (mode == "hybrid" and self._config.rerank_enabled)
        if not wants_rerank:
            stages[STAGE_RERANK] = StageStatus(status="skipped")
            return tuple(replace(doc, final_rank=idx) for idx, doc in enumerate(fused.documents[:top_k], start=1))

        candidates = fused.documents[: max(top_k, int(self._config.rerank_candidates))]
        ctx.emit(EVENT_STAGE_START, stage=STAGE_RERANK, candidates=len(candidates))
        with ctx.timing.stage(STAGE_RERANK):
            outcome = await rerank(
                raw_query,
                candidates,
                top_k=top_k,
                ranker=self._ranker,
                timeout_s=self._config.rerank_timeout_s,
                ctx=ctx,
            )
        value = outcome.value or SearchResult.empty("hybrid", strategy="passthrough")
        stages[STAGE_RERANK] = _stage_status(outcome, strategy=value.strategy, count=value.count)
        ctx.emit(EVENT_STAGE_END, stage=STAGE_RERANK, status=stages[STAGE_RERANK].status, strategy=value.strategy)
        return value.documents

    async def _answer_stage(
        self,
        ctx: PipelineContext,
        raw_query: str,
        documents: Sequence[ScoredDocument],
        stages: Dict[str, StageStatus],
    ) -> str:
        if not self._config.generation_enabled:
            stages[STAGE_ANSWER] = StageStatus(status="skipped", strategy="template")
            return build_fallback_answer(documents)

        ctx.emit(EVENT_STAGE_START, stage=STAGE_ANSWER)
        with ctx.timing.stage(STAGE_ANSWER):
            outcome = await synthesize_answer(
                raw_query,
                documents,
                generator=self._generator,
                timeout_s=self._config.generation_timeout_s,
                ctx=ctx,
            )
        stages[STAGE_ANSWER] = _stage_status(outcome, strategy="template" if outcome.fallback else "llm")
        ctx.emit(EVENT_STAGE_END, stage=STAGE_ANSWER, status=stages[STAGE_ANSWER].status)
        return outcome.value or build_fallback_answer(documents)

    def _respond(
        self,
        ctx: PipelineContext,
        *,
        query: str,
        documents: Sequence[ScoredDocument],
        answer: str,
        search_text: str,
        total_found: int,
        mode: str,
        stages: Dict[str, StageStatus],
        preprocessing: Dict[str, Any],
    ) -> PipelineResponse:
        hits: List[DocumentHit] = [_to_hit(doc, idx) for idx, doc in enumerate(documents, start=1)]
        timing = ctx.timing_ms()
        log_event(
            logger,
            logging.INFO,
            "search complete",
            context=ctx,
            fields={
                "results": len(hits),
                "total_found": total_found,
                "mode": mode,
                "stages": {name: st.status for name, st in stages.items()},
                "providers": ctx.provider_snapshot,
                "total_ms": timing.get("total"),
            },
        )
        return PipelineResponse(
            success=True,
            query=query,
            results=hits,
            answer=answer,
            metadata=SearchMetadata(
                query_used=search_text,
                total_found=total_found,
                mode=mode,
                stages=stages,
                preprocessing=preprocessing,
                timing_ms=timing,
                trace_id=ctx.trace_id,
                request_id=ctx.request_id,
            ),
        )
