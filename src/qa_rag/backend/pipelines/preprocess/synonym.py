# src/qa_rag/backend/pipelines/preprocess/synonym.py

"""
[职责] 同义扩展：对命中词典的单个词元逐一替换为同义词，生成有限的查询变体列表（原句在首位）。
[边界] 每个变体只替换一个词元（无组合爆炸）；多词键可写入词典但只按单词元匹配。
[上游关系] preprocess/pipeline.preprocess_query 以缩写展开后的文本调用。
[下游关系] variations[0] 作为下游主查询；其余变体写入诊断快照。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .dictionaries import SYNONYMS, merge_dictionary


DEFAULT_MAX_VARIATIONS = 5

_NON_WORD = re.compile(r"[^\w]")


@dataclass(frozen=True)
class SynonymResult:
    original: str
    variations: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _variants(text: str, synonyms: Mapping[str, Sequence[str]]) -> List[str]:
    out: List[str] = [text]
    for word in text.lower().split():
        clean = _NON_WORD.sub("", word)
        candidates = synonyms.get(clean) if clean else None
        if not candidates:
            continue
        pattern = re.compile(rf"(?<!\w){re.escape(clean)}(?!\w)", re.IGNORECASE)
        for synonym in candidates:
            variation = pattern.sub(lambda _m, s=str(synonym): s, text)
            if variation not in out:
                out.append(variation)
    return out


def expand_synonyms(
    text: Any,
    synonyms: Optional[Mapping[str, Sequence[str]]] = None,
    max_variations: int = DEFAULT_MAX_VARIATIONS,
) -> SynonymResult:
    """
    [职责] 生成去重后的同义变体，原句始终为第一个元素，截断到 max_variations（最少 1）。
    [边界] 非字符串/空输入返回空列表。
    """
    if not isinstance(text, str) or not text:
        return SynonymResult(original="" if text is None else str(text), variations=[])

    dictionary = merge_dictionary(SYNONYMS, synonyms)
    limit = max(1, int(max_variations))
    all_variations = _variants(text, dictionary)
    limited = all_variations[:limit]
    return SynonymResult(
        original=text,
        variations=limited,
        metadata={"total_variations": len(all_variations), "returned_variations": len(limited)},
    )
