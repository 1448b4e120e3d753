# src/qa_rag/backend/pipelines/preprocess/abbreviation.py

"""
[职责] 缩写展开：按整词（大小写不敏感）将 QA 缩写替换为全称，并记录替换项。
[边界] 替换顺序 = 合并后词典的插入顺序；已位于自身展开式中的缩写不再替换（重复执行结果不变）。
       不同自定义键之间的链式展开由调用方负责。
[上游关系] preprocess/pipeline.preprocess_query 以规范化文本调用。
[下游关系] expanded 作为同义扩展输入；replacements 写入 ProcessedQuery。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from qa_rag.backend.schemas.query import Replacement

from .dictionaries import ABBREVIATIONS, merge_dictionary


@dataclass(frozen=True)
class AbbreviationResult:
    original: str
    expanded: str
    replacements: List[Replacement] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _word_pattern(term: str) -> re.Pattern:
    # lookarounds instead of \b so keys with non-word edges still match as whole tokens
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)


def _replace_term(text: str, key: str, expansion: str) -> Tuple[str, int]:
    """
    Replace whole-word `key` with `expansion`, skipping occurrences that already
    sit inside a copy of `expansion` (e.g. `regression` within `regression testing`).
    """
    pattern = _word_pattern(key)
    exp_low = expansion.lower()
    offsets = [m.start() for m in pattern.finditer(exp_low)]  # docstring: key 在展开式中的位置
    count = 0

    def _sub(match: re.Match) -> str:
        nonlocal count
        start = match.start()
        for k in offsets:
            begin = start - k
            if begin >= 0 and text[begin : begin + len(exp_low)].lower() == exp_low:
                return match.group(0)
        count += 1
        return expansion

    return pattern.sub(_sub, text), count


def expand_abbreviations(text: Any, custom: Optional[Mapping[str, str]] = None) -> AbbreviationResult:
    """
    [职责] 对文本做缩写展开（输出统一小写输入 + 展开式）。
    [边界] 非字符串/空输入返回空结果；自定义条目在键冲突时覆盖内置条目。
    """
    if not isinstance(text, str) or not text:
        return AbbreviationResult(original="" if text is None else str(text), expanded="")

    dictionary = merge_dictionary(ABBREVIATIONS, custom)
    expanded = text.lower()
    replacements: List[Replacement] = []
    for key, full in dictionary.items():
        if not key or not full:
            continue
        expanded, count = _replace_term(expanded, key, str(full))
        if count:
            replacements.append(Replacement(from_=key, to=str(full)))

    return AbbreviationResult(
        original=text,
        expanded=expanded,
        replacements=replacements,
        metadata={"replacements": len(replacements)},
    )
