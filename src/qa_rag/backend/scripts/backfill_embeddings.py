# src/qa_rag/backend/scripts/backfill_embeddings.py
"""
[职责] 为缺少向量的文档批量生成 embedding 并写回 document.embedding。
[边界] 只处理 embedding 为空的行；不改动 title/body；每批独立提交，失败批次记录后继续。
[用途] 导入新文档后补齐 semantic 检索所需向量。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from qa_rag.backend.db.engine import create_engine, create_sessionmaker
from qa_rag.backend.db.models.doc import DocumentModel
from qa_rag.backend.db.repo import DocumentRepo
from qa_rag.backend.pipelines.retrieval.embed import LlamaIndexEmbeddingClient
from qa_rag.backend.utils.errors import describe_exception
from qa_rag.backend.utils.logging_ import configure_logging, get_logger, log_event
from qa_rag.config import settings


logger = get_logger("scripts.backfill_embeddings")

DEFAULT_BATCH_SIZE = 32
BATCH_PAUSE_S = 0.5  # docstring: 批次间隔，避免触发 provider 限流


def document_text(doc: DocumentModel) -> str:
    """Text embedded for a document: title and body."""
    return f"{doc.title or ''}\n{doc.body or ''}".strip()


async def backfill(
    session_factory: Any,
    client: LlamaIndexEmbeddingClient,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    limit: Optional[int] = None,
    dry_run: bool = False,
    pause_s: float = BATCH_PAUSE_S,
) -> Dict[str, Any]:
    """
    [职责] 分批读取缺向量文档 -> embed_batch -> update_embedding -> commit。
    [边界] 失败批次计入 failed 并停止（避免对同一批重复请求）；dry_run 只统计。
    """
    stats: Dict[str, Any] = {"pending": 0, "embedded": 0, "failed": 0, "batches": 0, "errors": []}
    size = max(1, int(batch_size))

    async with session_factory() as session:
        pending = await DocumentRepo(session).list_missing_embeddings(limit=limit)
        pending_ids = [doc.id for doc in pending]
        texts = {doc.id: document_text(doc) for doc in pending}
    stats["pending"] = len(pending_ids)
    if dry_run or not pending_ids:
        return stats

    for start in range(0, len(pending_ids), size):
        batch_ids: List[str] = pending_ids[start : start + size]
        stats["batches"] += 1
        try:
            vectors = await client.embed_batch([texts[i] for i in batch_ids])
            async with session_factory() as session:
                repo = DocumentRepo(session)
                for doc_id, vec in zip(batch_ids, vectors):
                    await repo.update_embedding(doc_id, vector=vec.vector, model=vec.model_id)
                await session.commit()
            stats["embedded"] += len(vectors)
        except Exception as exc:  # noqa: BLE001
            stats["failed"] += len(batch_ids)
            stats["errors"].append(describe_exception(exc))
            log_event(
                logger,
                logging.ERROR,
                "embedding batch failed",
                fields={"batch": stats["batches"], "size": len(batch_ids), "error": describe_exception(exc)},
            )
            break
        log_event(logger, logging.INFO, "embedding batch stored", fields={"batch": stats["batches"], "size": len(batch_ids)})
        if start + size < len(pending_ids) and pause_s > 0:
            await asyncio.sleep(pause_s)
    return stats


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Embed documents that have no stored vector.")
    ap.add_argument("--db-url", dest="db_url", default=None)
    ap.add_argument("--provider", default=settings.QA_RAG_EMBED_PROVIDER)
    ap.add_argument("--model", default=settings.QA_RAG_EMBED_MODEL)
    ap.add_argument("--dim", type=int, default=settings.QA_RAG_EMBED_DIM)
    ap.add_argument("--batch-size", dest="batch_size", type=int, default=DEFAULT_BATCH_SIZE)
    ap.add_argument("--limit", type=int, default=None)
    ap.add_argument("--dry-run", action="store_true")
    return ap


async def _run_async(args: argparse.Namespace) -> Dict[str, Any]:
    engine = create_engine(url=args.db_url)
    try:
        client = LlamaIndexEmbeddingClient(provider=args.provider, model=args.model, dim=args.dim)
        return await backfill(
            create_sessionmaker(engine),
            client,
            batch_size=args.batch_size,
            limit=args.limit,
            dry_run=bool(args.dry_run),
        )
    finally:
        await engine.dispose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    stats = asyncio.run(_run_async(args))
    print(json.dumps(stats, ensure_ascii=True, default=str))
    return 0 if stats["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
