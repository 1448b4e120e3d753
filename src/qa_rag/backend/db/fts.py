# src/qa_rag/backend/db/fts.py

"""
[职责] SQLite FTS5 全文检索：为 document.title/body 建立 document_fts 虚表、同步触发器、BM25 检索与 LIKE 关键词兜底查询。
[边界] 仅实现 SQLite FTS5；不做分词扩展（unicode61）；不做结果融合。
[上游关系] 文档写入 document 表后由触发器同步；init_fts 脚本或 lexical 阶段调用 ensure_document_fts。
[下游关系] retrieval/lexical.py 调用 search_documents()（主路径）与 keyword_fallback()（兜底）。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from sqlalchemy import and_, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .models.doc import DocumentModel


# 说明：
# - document.id 是字符串，不适合作为 rowid；FTS 表单独存 doc_id（UNINDEXED）。
# - 列顺序 doc_id/title/body 与 bm25 权重参数一一对应。

FTS_TABLE = "document_fts"  # docstring: FTS 虚表名
TITLE_WEIGHT = 5.0  # docstring: 标题权重
BODY_WEIGHT = 1.0  # docstring: 正文权重

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class FtsHit:
    """Full-text hit (DB-side)."""  # docstring: lexical 阶段的最小返回结构

    doc_id: str
    title: str
    body: str
    score: float  # docstring: -bm25，越大越相关
    meta: Dict[str, Any]


_FTS_OBJECTS = frozenset(
    {
        ("table", FTS_TABLE),
        ("trigger", "document_ai"),
        ("trigger", "document_ad"),
        ("trigger", "document_au"),
    }
)


async def fts_table_exists(session: AsyncSession) -> bool:
    row = (
        await session.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"),
            {"name": FTS_TABLE},
        )
    ).first()
    return row is not None


async def fts_ready(session: AsyncSession) -> bool:
    """True when the FTS table and all three sync triggers exist (one read, no DDL)."""
    rows = (
        await session.execute(
            text(
                "SELECT type, name FROM sqlite_master "
                "WHERE name IN (:t, 'document_ai', 'document_ad', 'document_au')"
            ),
            {"t": FTS_TABLE},
        )
    ).all()
    return _FTS_OBJECTS <= {(str(r[0]), str(r[1])) for r in rows}


async def ensure_document_fts(session: AsyncSession) -> bool:
    """
    Ensure FTS5 structures exist; idempotent, also under concurrent first calls.

    Creates:
      - document_fts virtual table
      - insert/delete/update triggers on document
    Returns True when the table was created by this call (and backfilled from existing rows).
    """  # docstring: 已就绪时只读 sqlite_master，不取写锁
    if await fts_ready(session):
        return False

    existed = await fts_table_exists(session)

    await session.execute(
        text(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE}
            USING fts5(
              doc_id UNINDEXED,
              title,
              body,
              tokenize = 'unicode61'
            );
            """
        )
    )
    await session.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS document_ai AFTER INSERT ON document BEGIN
              INSERT INTO {FTS_TABLE}(doc_id, title, body) VALUES (new.id, new.title, new.body);
            END;
            """
        )
    )
    await session.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS document_ad AFTER DELETE ON document BEGIN
              DELETE FROM {FTS_TABLE} WHERE doc_id = old.id;
            END;
            """
        )
    )
    await session.execute(
        text(
            f"""
            CREATE TRIGGER IF NOT EXISTS document_au AFTER UPDATE OF title, body ON document BEGIN
              UPDATE {FTS_TABLE} SET title = new.title, body = new.body WHERE doc_id = new.id;
            END;
            """
        )
    )

    # 触发器就绪后再回填：之后的写入由触发器同步，回填只补缺失的 doc_id
    await _fill_from_documents(session)
    await session.commit()
    return not existed


async def rebuild_document_fts(session: AsyncSession) -> int:
    """
    Rebuild FTS index from the document table.

    Returns the number of indexed documents.
    """  # docstring: 运维/修复工具
    await session.execute(text(f"DELETE FROM {FTS_TABLE};"))
    await _fill_from_documents(session)
    await session.commit()
    row = (await session.execute(text(f"SELECT count(*) FROM {FTS_TABLE}"))).first()
    return int(row[0]) if row else 0


async def _fill_from_documents(session: AsyncSession) -> None:
    # INSERT ... SELECT 在语句开始即取写锁，并发回填被串行化；NOT IN 保证不重复
    await session.execute(
        text(
            f"""
            INSERT INTO {FTS_TABLE}(doc_id, title, body)
            SELECT id, title, body FROM document
            WHERE id NOT IN (SELECT doc_id FROM {FTS_TABLE});
            """
        )
    )


def build_match_query(query: str) -> str:
    """
    Build an FTS5 MATCH expression: quoted word tokens joined with OR.

    Quoting keeps FTS5 operators (AND/NOT/NEAR, `-`, `:`) in user text literal.
    """
    tokens = _TOKEN_RE.findall(str(query or ""))
    seen: List[str] = []
    for tok in tokens:
        low = tok.lower()
        if low not in seen:
            seen.append(low)
    return " OR ".join(f'"{tok}"' for tok in seen)


async def search_documents(
    session: AsyncSession,
    *,
    query: str,
    limit: int = 20,
) -> List[FtsHit]:
    """
    FTS5 search over title/body ranked by weighted BM25.

    Returns hits ordered by score desc (score = -bm25, larger is better).
    """
    match = build_match_query(query)
    if not match:
        return []

    sql = f"""
    SELECT
      d.id AS doc_id,
      d.title AS title,
      d.body AS body,
      d.meta_data AS meta_data,
      -bm25({FTS_TABLE}, 0.0, {TITLE_WEIGHT}, {BODY_WEIGHT}) AS score
    FROM {FTS_TABLE}
    JOIN document d ON d.id = {FTS_TABLE}.doc_id
    WHERE {FTS_TABLE} MATCH :q
    ORDER BY score DESC, d.id ASC
    LIMIT :limit
    """
    params: Dict[str, Any] = {
        "q": match,
        "limit": int(limit),
    }
    rows = (await session.execute(text(sql), params)).mappings().all()

    hits: List[FtsHit] = []
    for r in rows:
        hits.append(
            FtsHit(
                doc_id=str(r["doc_id"]),
                title=str(r["title"] or ""),
                body=str(r["body"] or ""),
                score=float(r["score"] or 0.0),
                meta=_coerce_meta(r["meta_data"]),
            )
        )
    return hits


def _escape_like(value: str) -> str:
    return value.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2).replace("%", "\\%").replace("_", "\\_")


async def keyword_fallback(
    session: AsyncSession,
    *,
    keywords: Sequence[str],
    limit: int = 20,
) -> List[DocumentModel]:
    """
    Case-insensitive LIKE query: title contains every keyword OR body contains every keyword.

    Empty keyword list returns no rows.
    """  # docstring: FTS 不可用时的兜底；不计算相关度
    terms = [str(k) for k in keywords if str(k)]
    if not terms:
        return []

    title_all = and_(*[DocumentModel.title.ilike(f"%{_escape_like(k)}%", escape=_LIKE_ESCAPE) for k in terms])
    body_all = and_(*[DocumentModel.body.ilike(f"%{_escape_like(k)}%", escape=_LIKE_ESCAPE) for k in terms])
    stmt = select(DocumentModel).where(or_(title_all, body_all)).order_by(DocumentModel.id).limit(int(limit))
    return list((await session.execute(stmt)).scalars().all())


def _coerce_meta(raw: Any) -> Dict[str, Any]:
    """text() 查询返回的 JSON 列可能是 str；统一转 dict。"""
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str) and raw:
        try:
            value = json.loads(raw)
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {}
    return {}
