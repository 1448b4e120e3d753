# src/qa_rag/backend/pipelines/retrieval/types.py
"""
[职责] Retrieval types：lexical/semantic/fusion/rerank 共享的最小公共类型（无 DB/外部依赖）。
[边界] 仅定义数据结构；标注副本通过 dataclasses.replace 生成，不落库。
[上游关系] lexical/semantic 产出 ScoredDocument；fusion/rerank 在其上追加分数与排名。
[下游关系] services 将最终 ScoredDocument 映射为 DocumentHit。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple


SearchStage = Literal["lexical", "semantic", "hybrid", "reranked"]  # docstring: 结果所处阶段


@dataclass(frozen=True)
class ScoredDocument:
    """
    [职责] 统一候选结构：文档内容 + 各阶段分数/排名。
    [边界] lexical_score 为存储原生分数（-bm25 或兜底合成分）；semantic_score 为余弦 [-1,1]；
           fused_score ∈ [0,1]；rerank_score 存在时决定最终顺序，fused_score 保留。
    """

    doc_id: str
    title: str = ""
    body: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)

    lexical_score: Optional[float] = None
    semantic_score: Optional[float] = None
    fused_score: Optional[float] = None
    rerank_score: Optional[float] = None
    rerank_reason: Optional[str] = None

    lexical_rank: Optional[int] = None  # docstring: 1-based
    semantic_rank: Optional[int] = None
    final_rank: Optional[int] = None

    @property
    def score(self) -> float:
        """Best available ordering score: rerank > fused > semantic > lexical."""
        for value in (self.rerank_score, self.fused_score, self.semantic_score, self.lexical_score):
            if value is not None:
                return float(value)
        return 0.0


@dataclass(frozen=True)
class SearchResult:
    """Ordered result of one retrieval stage."""  # docstring: documents 为不可变有序元组

    stage: SearchStage
    documents: Tuple[ScoredDocument, ...] = ()
    strategy: str = ""  # docstring: fts5/keyword/cosine/weighted/llm/passthrough/none

    @property
    def count(self) -> int:
        return len(self.documents)

    @classmethod
    def empty(cls, stage: SearchStage, strategy: str = "none") -> "SearchResult":
        return cls(stage=stage, documents=(), strategy=strategy)
