# src/qa_rag/backend/db/engine.py

"""
[职责] 数据库引擎与会话工厂：创建 AsyncEngine / async_sessionmaker，提供 init_db/drop_db。
[边界] 不包含 ORM Model 定义；不做事务编排；不负责迁移。
[上游关系] config.settings 提供 QA_RAG_DATABASE_URL；环境变量可覆盖。
[下游关系] services/search_service 使用 session_factory 为每个检索阶段开独立会话；scripts 与 tests 复用。
"""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from qa_rag.config import settings

from .base import Base


def resolve_db_url(override: str | None = None) -> str:
    """
    Resolve database URL.

    Priority:
        1) explicit override
        2) env: QA_RAG_DATABASE_URL
        3) env: DATABASE_URL
        4) settings: QA_RAG_DATABASE_URL (.env / default .Local/qa_rag.db)
    """
    if override:
        return override
    env_url = os.getenv("QA_RAG_DATABASE_URL", "").strip()
    if env_url:
        return env_url
    env_url2 = os.getenv("DATABASE_URL", "").strip()
    if env_url2:
        return env_url2
    return str(settings.QA_RAG_DATABASE_URL)


def _ensure_sqlite_parent(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""  # docstring: 内存库跳过
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return
    database = parsed.database or ""
    if not database or database == ":memory:":
        return
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def create_engine(*, url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Create AsyncEngine.

    NOTE:
      - SQLite goes through the aiosqlite driver.
      - FTS5 must be compiled into the SQLite library (default in CPython builds).
    """  # docstring: 生产/测试共用；测试传入临时 sqlite 文件路径
    db_url = resolve_db_url(url)
    _ensure_sqlite_parent(db_url)
    db_echo = echo if echo is not None else (os.getenv("SQL_ECHO", "0") == "1")

    return create_async_engine(
        db_url,
        echo=db_echo,
        pool_pre_ping=True,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async sessionmaker."""  # docstring: expire_on_commit=False，读出的 ORM 对象在会话关闭后仍可访问
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db(*, engine: AsyncEngine) -> None:
    """
    Initialize database schema (create_all).

    Must import models to register tables in Base.metadata.
    """  # docstring: scripts/tests 使用；FTS 结构由 db.fts.ensure_document_fts 单独创建
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(*, engine: AsyncEngine) -> None:
    """Drop all tables. Only for local/dev/tests."""
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
