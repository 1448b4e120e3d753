# src/qa_rag/backend/scripts/init_fts.py

"""
[职责] 初始化 SQLite FTS（document_fts + triggers），并提供可复现、可幂等的 CLI 入口。
[边界] 仅负责 document 表与 FTS 结构/索引重建；不导入业务数据；不执行检索。
[上游关系] 本地开发/CI/部署脚本调用；依赖 db.engine + db.fts。
[下游关系] retrieval/lexical.py 依赖 document_fts；避免首个请求承担建索引耗时。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from qa_rag.backend.db.engine import create_engine, create_sessionmaker, init_db
from qa_rag.backend.db.fts import FTS_TABLE, ensure_document_fts, fts_table_exists, rebuild_document_fts


TRIGGERS = ("document_ai", "document_ad", "document_au")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Initialize SQLite FTS (document_fts) and triggers.")
    parser.add_argument("--db-url", dest="db_url", default=None)  # docstring: 显式 DB 连接串
    parser.add_argument("--drop", action="store_true")  # docstring: 删除 FTS 虚表与 triggers 后重建
    parser.add_argument("--rebuild", action="store_true")  # docstring: 从 document 表重建 FTS 内容
    parser.add_argument("--check", action="store_true")  # docstring: 仅校验/打印状态（不修改）
    echo_group = parser.add_mutually_exclusive_group()
    echo_group.add_argument("--echo", dest="echo", action="store_true", default=None)
    echo_group.add_argument("--no-echo", dest="echo", action="store_false")
    parser.add_argument("--json", action="store_true")  # docstring: 仅输出 JSON
    return parser


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return _build_parser().parse_args(list(argv) if argv is not None else None)


async def _trigger_exists(session: AsyncSession, name: str) -> bool:
    row = (
        await session.execute(
            text("SELECT 1 FROM sqlite_master WHERE type = 'trigger' AND name = :n LIMIT 1"),
            {"n": name},
        )
    ).first()
    return row is not None


async def _drop_fts(session: AsyncSession) -> None:
    """Drop triggers and the FTS virtual table (idempotent)."""
    for trig in TRIGGERS:
        await session.execute(text(f"DROP TRIGGER IF EXISTS {trig};"))
    await session.execute(text(f"DROP TABLE IF EXISTS {FTS_TABLE};"))
    await session.commit()


async def check_status(session: AsyncSession) -> Dict[str, Any]:
    table_ok = await fts_table_exists(session)
    triggers = {trig: await _trigger_exists(session, trig) for trig in TRIGGERS}
    doc_count = int((await session.execute(text("SELECT COUNT(*) FROM document"))).scalar() or 0)
    fts_count = -1  # docstring: FTS 缺失时为 -1
    if table_ok:
        fts_count = int((await session.execute(text(f"SELECT COUNT(*) FROM {FTS_TABLE}"))).scalar() or 0)
    return {
        "fts_table_exists": table_ok,
        "triggers": triggers,
        "document_count": doc_count,
        "fts_count": fts_count,
    }


async def _run_async(
    *,
    db_url: Optional[str],
    drop: bool,
    rebuild: bool,
    check: bool,
    echo: Optional[bool],
) -> Dict[str, Any]:
    start_ms = time.perf_counter() * 1000.0
    engine: AsyncEngine = create_engine(url=db_url, echo=echo)

    result: Dict[str, Any] = {
        "ok": True,
        "db_url": str(engine.url),
        "dropped": False,
        "created": False,
        "rebuilt": None,
        "checked": None,
        "duration_ms": 0.0,
        "error": None,
    }

    try:
        session_factory = create_sessionmaker(engine)
        if not check:
            await init_db(engine=engine)  # docstring: 确保 document 表存在

        async with session_factory() as session:
            if check and not drop and not rebuild:
                result["checked"] = await check_status(session)
                return result

            if drop:
                await _drop_fts(session)
                result["dropped"] = True

            result["created"] = await ensure_document_fts(session)
            if rebuild:
                result["rebuilt"] = await rebuild_document_fts(session)

            result["checked"] = await check_status(session)
    except Exception as exc:  # noqa: BLE001
        result["ok"] = False
        result["error"] = f"{exc.__class__.__name__}: {exc}"
    finally:
        await engine.dispose()
        result["duration_ms"] = round(time.perf_counter() * 1000.0 - start_ms, 2)

    return result


def _print_summary(*, result: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(result, ensure_ascii=True, default=str))
        return

    status = "ok" if result.get("ok") else "failed"
    print(f"[init_fts] status={status}")
    print(f"[init_fts] db_url={result.get('db_url')}")
    print(f"[init_fts] dropped={result.get('dropped')} created={result.get('created')} rebuilt={result.get('rebuilt')}")
    chk = result.get("checked") or {}
    if chk:
        print("[init_fts] check=" + json.dumps(chk, ensure_ascii=True, default=str))
    if result.get("error"):
        print(f"[init_fts] error={result.get('error')}")
    print(f"[init_fts] duration_ms={result.get('duration_ms')}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    result = asyncio.run(
        _run_async(
            db_url=args.db_url,
            drop=bool(args.drop),
            rebuild=bool(args.rebuild),
            check=bool(args.check),
            echo=args.echo,
        )
    )
    _print_summary(result=result, as_json=bool(args.json))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
