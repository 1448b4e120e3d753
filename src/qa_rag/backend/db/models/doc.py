# src/qa_rag/backend/db/models/doc.py

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base, TimestampMixin


class DocumentModel(Base, TimestampMixin):
    """
    [职责] QA 知识库文档：标题 + 正文 + 可选来源链接 + 查询无关的 embedding 向量。
    [边界] 检索链路只读；写入由导入脚本/外部系统负责；向量维度固定（由 embedding_model 决定）。
    [上游关系] 外部导入（Confluence/上传/种子数据）写入；backfill_embeddings 脚本补齐 embedding。
    [下游关系] FTS5 document_fts 通过触发器同步 title/body；semantic 阶段读取 embedding。
    """

    __tablename__ = "document"

    id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="文档ID（稳定字符串，如 TC-101 / confluence page id）",  # docstring: 跨来源稳定标识
    )

    title: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        default="",
        comment="文档标题",  # docstring: lexical 检索高权重字段
    )

    body: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="文档正文",
    )

    source_url: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
        comment="来源链接（可选）",
    )

    meta_data: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
        comment="文档元数据（类型/空间/标签等）",  # docstring: 原样透传到检索结果 meta
    )

    embedding: Mapped[Optional[List[float]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
        comment="文档向量（JSON list[float]，可空）",  # docstring: 缺失时 semantic 相似度记为 0
    )

    embedding_model: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="生成向量的模型标识",
    )
