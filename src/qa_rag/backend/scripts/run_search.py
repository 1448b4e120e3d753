# src/qa_rag/backend/scripts/run_search.py

"""
[职责] 命令行执行一次检索：构造 SearchService（配置 + 默认协作方）并打印 PipelineResponse JSON。
[边界] 不导入数据；失败时打印 to_http_error 的错误 payload 并以非零码退出。
[上游关系] 本地调试 / 冒烟验证。
[下游关系] SearchService.search。
"""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from typing import Any, Dict, Optional, Sequence, Tuple

from qa_rag.backend.db.engine import create_engine, create_sessionmaker
from qa_rag.backend.services.search_service import (
    DEFAULT_TOP_K,
    SEARCH_MODES,
    SearchConfig,
    SearchService,
    build_default_collaborators,
)
from qa_rag.backend.utils.errors import to_http_error
from qa_rag.backend.utils.logging_ import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one knowledge-base search and print the JSON response.")
    parser.add_argument("query")
    parser.add_argument("--top-k", dest="top_k", type=int, default=DEFAULT_TOP_K)
    parser.add_argument("--mode", choices=SEARCH_MODES, default="hybrid")
    parser.add_argument("--db-url", dest="db_url", default=None)
    parser.add_argument("--no-rerank", dest="no_rerank", action="store_true")  # docstring: hybrid 模式跳过 rerank
    parser.add_argument("--no-answer", dest="no_answer", action="store_true")  # docstring: 仅模板回答
    parser.add_argument("--indent", type=int, default=2)
    return parser


async def _run_async(args: argparse.Namespace) -> Tuple[int, Dict[str, Any]]:
    engine = create_engine(url=args.db_url)
    try:
        cfg = SearchConfig.from_settings()
        if args.no_rerank or args.no_answer:
            cfg = replace(
                cfg,
                rerank_enabled=cfg.rerank_enabled and not args.no_rerank,
                generation_enabled=cfg.generation_enabled and not args.no_answer,
            )
        collab = build_default_collaborators()
        service = SearchService(
            session_factory=create_sessionmaker(engine),
            embedder=collab.embedder,
            ranker=collab.ranker,
            generator=collab.generator,
            config=cfg,
        )
        try:
            response = await service.search(args.query, args.top_k, mode=args.mode)
        except Exception as exc:  # noqa: BLE001
            return to_http_error(exc)
        return 200, response.model_dump(mode="json")
    finally:
        await engine.dispose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    status, payload = asyncio.run(_run_async(args))
    print(json.dumps(payload, ensure_ascii=False, indent=args.indent, default=str))
    return 0 if status < 400 else 1


if __name__ == "__main__":
    raise SystemExit(main())
