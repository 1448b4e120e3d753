# src/qa_rag/backend/db/repo/__init__.py

"""
[职责] db.repo 聚合导出：集中暴露仓储（Repo）对象，供 pipelines/services/scripts 调用。
[边界] 仅做导入与 __all__ 暴露。
"""

from __future__ import annotations

from .document_repo import DocumentRepo

__all__ = [
    "DocumentRepo",
]
