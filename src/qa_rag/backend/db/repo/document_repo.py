# src/qa_rag/backend/db/repo/document_repo.py

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from qa_rag.backend.db.models.doc import DocumentModel


class DocumentRepo:
    """
    [职责] DocumentRepo：文档读写（导入/回填向量）与语义检索所需的向量读取。
    [边界] 不做检索打分；commit 由调用方控制（bulk_create/update_embedding 仅 flush）。
    [上游关系] scripts（导入/回填）、semantic 阶段、tests fixture。
    [下游关系] document 表；FTS 触发器自动同步 title/body。
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def bulk_create(self, rows: Iterable[Dict[str, Any]]) -> List[DocumentModel]:
        docs: List[DocumentModel] = []
        for row in rows:
            doc = DocumentModel(
                id=str(row["id"]),
                title=str(row.get("title") or ""),
                body=str(row.get("body") or ""),
                source_url=row.get("source_url"),
                meta_data=dict(row.get("meta_data") or {}),
                embedding=row.get("embedding"),
                embedding_model=row.get("embedding_model"),
            )
            self._session.add(doc)
            docs.append(doc)
        await self._session.flush()
        return docs

    async def list_with_embeddings(self) -> List[DocumentModel]:
        """All documents carrying a stored vector, ordered by id."""  # docstring: semantic 阶段全量扫描
        stmt = select(DocumentModel).where(DocumentModel.embedding.is_not(None)).order_by(DocumentModel.id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_missing_embeddings(self, *, limit: Optional[int] = None) -> List[DocumentModel]:
        stmt = select(DocumentModel).where(DocumentModel.embedding.is_(None)).order_by(DocumentModel.id)
        if limit is not None:
            stmt = stmt.limit(int(limit))
        return list((await self._session.execute(stmt)).scalars().all())

    async def update_embedding(self, document_id: str, *, vector: Sequence[float], model: str) -> None:
        stmt = (
            update(DocumentModel)
            .where(DocumentModel.id == str(document_id))
            .values(embedding=[float(x) for x in vector], embedding_model=str(model))
        )
        await self._session.execute(stmt)
        await self._session.flush()
