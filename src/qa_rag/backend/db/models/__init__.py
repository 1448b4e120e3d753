# src/qa_rag/backend/db/models/__init__.py

"""
[职责] db.models 聚合导出：集中声明 ORM Models，供 init_db 注册元数据与应用层统一导入。
[边界] 仅做导入与 __all__ 暴露。
"""

from __future__ import annotations

from ..base import Base
from .doc import DocumentModel

__all__ = [
    "Base",
    "DocumentModel",
]
