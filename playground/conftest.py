# playground/conftest.py

"""
[职责] gate 测试共享夹具：临时 SQLite 文件库、会话工厂、种子文档、可控的协作方替身与事件记录器。
[边界] 不访问网络；不依赖 provider 密钥；每个测试独立库文件，互不污染。
[上游关系] pytest 自动加载。
[下游关系] preprocess/sql/retrieval/generation/services gate 测试。
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from qa_rag.backend.db.engine import create_engine, create_sessionmaker, init_db
from qa_rag.backend.db.repo import DocumentRepo
from qa_rag.backend.pipelines.retrieval.embed import EmbeddingVector
from qa_rag.backend.pipelines.retrieval.rerank import RankingResponse


SEED_DOCUMENTS: List[Dict[str, Any]] = [
    {
        "id": "TP-001",
        "title": "Payment Timeout Test Plan",
        "body": "Negative test cases for payment timeout: gateway delay, hang and unresponsive checkout service.",
        "meta_data": {"type": "test_plan"},
        "embedding": [1.0, 0.0, 0.0, 0.0],
        "embedding_model": "fake-embed",
    },
    {
        "id": "TC-101",
        "title": "Login Regression Suite",
        "body": "Regression testing checklist for login and session handling.",
        "meta_data": {"type": "test_case"},
        "embedding": [0.0, 1.0, 0.0, 0.0],
        "embedding_model": "fake-embed",
    },
    {
        "id": "RN-2024",
        "title": "Release Notes 2024.1",
        "body": "Known issues: payment gateway timeout under load; defect BUG-42 fixed.",
        "meta_data": {"type": "release_notes"},
        "embedding": [0.8, 0.2, 0.0, 0.0],
        "embedding_model": "fake-embed",
    },
    {
        "id": "FAQ-7",
        "title": "FAQ & Known Issues",
        "body": "How to report a defect and attach logs.",
        "meta_data": {"type": "faq"},
        "embedding": None,
        "embedding_model": None,
    },
    {
        "id": "US-12",
        "title": "User Story: Checkout",
        "body": "As a shopper I want a fast checkout flow.",
        "meta_data": {"type": "user_story"},
        "embedding": [0.0, 0.0, 1.0, 0.0],
        "embedding_model": "fake-embed",
    },
]


class FakeEmbedder:
    """EmbeddingClient double: fixed vector, or raises `error` for the first `fail_times` calls."""

    def __init__(
        self,
        vector: Optional[Sequence[float]] = None,
        *,
        error: Optional[BaseException] = None,
        fail_times: int = 0,
        delay_s: float = 0.0,
    ) -> None:
        self.vector = list(vector if vector is not None else [1.0, 0.0, 0.0, 0.0])
        self.error = error
        self.fail_times = fail_times
        self.delay_s = delay_s
        self.calls: List[str] = []

    async def embed(self, text: str) -> EmbeddingVector:
        self.calls.append(text)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None and (self.fail_times <= 0 or len(self.calls) <= self.fail_times):
            raise self.error
        return EmbeddingVector(vector=list(self.vector), model_id="fake-embed")


class FakeRanker:
    """RankingClient double returning a prepared payload (validated like real LLM output)."""

    def __init__(
        self,
        rankings: Optional[List[Mapping[str, Any]]] = None,
        *,
        error: Optional[BaseException] = None,
        delay_s: float = 0.0,
    ) -> None:
        self.rankings = list(rankings or [])
        self.error = error
        self.delay_s = delay_s
        self.calls: List[Dict[str, Any]] = []

    async def rank(self, query: str, candidates: Sequence[Any], top_k: int) -> RankingResponse:
        self.calls.append({"query": query, "candidates": [c.doc_id for c in candidates], "top_k": top_k})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return RankingResponse.model_validate({"rankings": self.rankings})


class FakeGenerator:
    """GenerationClient double: returns `text` or raises `error`; records prompts."""

    def __init__(self, text: str = "", *, error: Optional[BaseException] = None, delay_s: float = 0.0) -> None:
        self.text = text
        self.error = error
        self.delay_s = delay_s
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.text


class RecordingEventSink:
    """EventSink double collecting (event, stage, fields) tuples."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: str, *, stage: str, fields: Mapping[str, Any]) -> None:
        self.events.append({"event": event, "stage": stage, **dict(fields)})

    def stages(self, event: str) -> List[str]:
        return [e["stage"] for e in self.events if e["event"] == event]


@pytest.fixture
def fakes() -> SimpleNamespace:
    return SimpleNamespace(
        Embedder=FakeEmbedder,
        Ranker=FakeRanker,
        Generator=FakeGenerator,
        EventSink=RecordingEventSink,
    )


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'qa_rag_gate.db'}"  # docstring: 独立临时 sqlite 文件


@pytest_asyncio.fixture
async def engine(db_url: str):
    eng: AsyncEngine = create_engine(url=db_url, echo=False)
    await init_db(engine=eng)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_sessionmaker(engine)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]):
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def seeded_factory(session_factory: async_sessionmaker[AsyncSession]) -> async_sessionmaker[AsyncSession]:
    """Session factory over a database holding SEED_DOCUMENTS (committed)."""
    async with session_factory() as s:
        await DocumentRepo(s).bulk_create(SEED_DOCUMENTS)
        await s.commit()
    return session_factory
