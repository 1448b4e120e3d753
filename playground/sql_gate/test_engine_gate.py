# playground/sql_gate/test_engine_gate.py

"""
[职责] engine gate：验证 db/engine.py 的最小可用性（create_engine、init_db、drop_db）与 DocumentRepo 向量读写、init_fts 脚本。
[边界] 只验证 DB 基础设施可用且不污染默认路径；不引入检索 pipeline。
[上游关系] 依赖 backend/db/engine.py、backend/db/models 注册、backend/db/repo、backend/scripts/init_fts.py。
[下游关系] services/search_service 依赖 session_factory 的一致行为。
"""

from __future__ import annotations

import json

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from qa_rag.backend.db.engine import create_engine, drop_db, init_db, resolve_db_url
from qa_rag.backend.db.models.doc import DocumentModel
from qa_rag.backend.db.repo import DocumentRepo
from qa_rag.backend.scripts import init_fts


pytestmark = pytest.mark.sql_gate


@pytest.mark.asyncio
async def test_engine_init_and_drop(tmp_path) -> None:
    """Init DB creates tables; drop DB removes them (on isolated sqlite file)."""  # docstring: 防污染默认本地库
    db_file = tmp_path / "nested" / "engine_gate.db"  # docstring: 父目录自动创建
    url = f"sqlite+aiosqlite:///{db_file}"

    engine: AsyncEngine = create_engine(url=url, echo=False)
    try:
        await drop_db(engine=engine)  # docstring: 幂等（即使不存在也应安全）
        await init_db(engine=engine)

        async with engine.connect() as conn:
            rows = (await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))).fetchall()
        assert "document" in {r[0] for r in rows}

        await drop_db(engine=engine)
        async with engine.connect() as conn:
            rows = (await conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))).fetchall()
        assert "document" not in {r[0] for r in rows}
    finally:
        await engine.dispose()


def test_resolve_db_url_priority(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QA_RAG_DATABASE_URL", "sqlite+aiosqlite:///env.db")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///fallback.db")
    assert resolve_db_url("sqlite+aiosqlite:///explicit.db") == "sqlite+aiosqlite:///explicit.db"
    assert resolve_db_url() == "sqlite+aiosqlite:///env.db"
    monkeypatch.delenv("QA_RAG_DATABASE_URL")
    assert resolve_db_url() == "sqlite+aiosqlite:///fallback.db"


@pytest.mark.asyncio
async def test_document_repo_embedding_roundtrip(seeded_factory) -> None:
    async with seeded_factory() as s:
        repo = DocumentRepo(s)
        missing = await repo.list_missing_embeddings()
        assert [d.id for d in missing] == ["FAQ-7"]  # docstring: None 存为 SQL NULL

        await repo.update_embedding("FAQ-7", vector=[0, 0, 0, 1], model="fake-embed")
        await s.commit()

    async with seeded_factory() as s:
        repo = DocumentRepo(s)
        assert await repo.list_missing_embeddings() == []
        stored = await s.get(DocumentModel, "FAQ-7")
        assert stored is not None and stored.embedding == [0.0, 0.0, 0.0, 1.0]
        assert stored.embedding_model == "fake-embed"
        assert [d.id for d in await repo.list_with_embeddings()] == ["FAQ-7", "RN-2024", "TC-101", "TP-001", "US-12"]


def test_init_fts_script_creates_and_checks(db_url: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert init_fts.main(["--db-url", db_url, "--rebuild", "--json"]) == 0
    result = json.loads(capsys.readouterr().out.strip())
    assert result["ok"] is True
    assert result["created"] is True
    assert result["rebuilt"] == 0
    assert result["checked"]["fts_table_exists"] is True
    assert all(result["checked"]["triggers"].values())

    assert init_fts.main(["--db-url", db_url, "--check", "--json"]) == 0
    checked = json.loads(capsys.readouterr().out.strip())["checked"]
    assert checked["document_count"] == 0
    assert checked["fts_count"] == 0
