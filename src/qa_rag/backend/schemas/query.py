# src/qa_rag/backend/schemas/query.py

"""
[职责] Query 契约层：预处理配置（PreprocessConfig）与预处理结果（ProcessedQuery/Replacement）。
[边界] 不包含规范化/扩展算法；不依赖 ORM；仅表达结构与默认值。
[上游关系] services/search_service 从 SearchConfig 组装 PreprocessConfig；preprocess/pipeline 产出 ProcessedQuery。
[下游关系] lexical/semantic 使用 ProcessedQuery.search_text；PipelineResponse.metadata.preprocessing 输出快照。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Replacement(BaseModel):
    """One abbreviation substitution (`from_` -> `to`)."""  # docstring: JSON 输出字段名为 from/to

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(..., alias="from")
    to: str = Field(...)


class PreprocessConfig(BaseModel):
    """
    [职责] 预处理开关与自定义词典。
    [边界] custom_* 与内置词典合并，键冲突时自定义条目优先（见 dictionaries.merge_dictionary）。
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enable_abbreviations: bool = Field(default=True)
    enable_synonyms: bool = Field(default=True)
    max_synonym_variations: int = Field(default=5, ge=1, le=50)  # docstring: 变体上限（含原句）
    custom_abbreviations: Dict[str, str] = Field(default_factory=dict)
    custom_synonyms: Dict[str, List[str]] = Field(default_factory=dict)


class ProcessedQuery(BaseModel):
    """
    [职责] 预处理产物：规范化文本、缩写展开文本、同义变体、ID、替换记录与诊断信息。
    [边界] variations 非空且首元素为下游主查询；error 非空表示走了降级路径。
    [上游关系] preprocess/pipeline.preprocess_query 构造。
    [下游关系] search_text 供检索；to_snapshot 写入响应 metadata。
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    raw: str = Field(...)  # docstring: 原始输入
    normalized: str = Field(default="")
    expanded: str = Field(default="")  # docstring: 缩写展开后的文本（未启用时等于 normalized）
    variations: List[str] = Field(default_factory=list)  # docstring: 同义变体（首元素为主查询）
    identifiers: List[str] = Field(default_factory=list)  # docstring: TC-001 等 ID（大写、去重、首见顺序）
    replacements: List[Replacement] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)  # docstring: 各步耗时与计数
    error: Optional[str] = Field(default=None)

    @property
    def search_text(self) -> str:
        """Downstream query: first variation, then expanded, normalized, raw."""
        for candidate in (self.variations[0] if self.variations else "", self.expanded, self.normalized, self.raw):
            if candidate:
                return candidate
        return ""

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "normalized": self.normalized,
            "expanded": self.expanded,
            "variations": list(self.variations),
            "identifiers": list(self.identifiers),
            "replacements": [r.model_dump(by_alias=True) for r in self.replacements],
            "metadata": dict(self.metadata),
            "error": self.error,
        }
