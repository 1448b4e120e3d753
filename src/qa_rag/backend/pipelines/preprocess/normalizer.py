# src/qa_rag/backend/pipelines/preprocess/normalizer.py

"""
[职责] 查询规范化：小写、去除特殊字符（保留连字符）、合并空白；从原始查询提取测试用例 ID。
[边界] 纯函数；不抛异常（非字符串/空输入返回空串）；不做缩写/同义扩展。
[上游关系] preprocess/pipeline.preprocess_query 调用。
[下游关系] abbreviation 展开的输入；identifiers 写入 ProcessedQuery。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from qa_rag.backend.pipelines.base.timing import now_ms
from qa_rag.backend.utils.errors import describe_exception
from qa_rag.backend.utils.logging_ import get_logger, log_event

from .dictionaries import IDENTIFIER_PATTERNS


logger = get_logger("preprocess.normalizer")

_SPECIAL_CHARS = re.compile(r"[^\w\s\-]")  # docstring: 非单词/空白/连字符 -> 空格
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class NormalizationResult:
    original: str
    normalized: str
    identifiers: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def normalize_text(text: Any) -> str:
    """
    [职责] lowercase -> trim -> 特殊字符替换为空格 -> 合并空白 -> trim。
    [边界] 幂等：normalize_text(normalize_text(x)) == normalize_text(x)。
    """
    if not isinstance(text, str) or not text:
        return ""
    out = text.lower().strip()
    out = _SPECIAL_CHARS.sub(" ", out)
    out = _WHITESPACE.sub(" ", out)
    return out.strip()


def extract_identifiers(text: Any) -> List[str]:
    """Upper-cased, de-duplicated ids in first-seen order (pattern order, then position)."""
    if not isinstance(text, str) or not text:
        return []
    seen: List[str] = []
    for pattern in IDENTIFIER_PATTERNS:
        for match in pattern.findall(text):
            ident = match.upper()
            if ident not in seen:
                seen.append(ident)
    return seen


def normalize_query(raw: str) -> NormalizationResult:
    """
    [职责] 规范化 + ID 提取 + 诊断计数。
    [边界] 内部异常降级为 raw.lower() 并记录 error，不上抛。
    """
    start = now_ms()
    try:
        normalized = normalize_text(raw)
        identifiers = extract_identifiers(raw)
        return NormalizationResult(
            original=raw,
            normalized=normalized,
            identifiers=identifiers,
            metadata={
                "ms": round(now_ms() - start, 3),
                "original_length": len(raw),
                "normalized_length": len(normalized),
                "identifiers": len(identifiers),
            },
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "normalization failed", fields={"error": describe_exception(exc)})
        lowered = str(raw).lower()
        return NormalizationResult(
            original=str(raw),
            normalized=lowered,
            metadata={"ms": round(now_ms() - start, 3)},
            error=describe_exception(exc),
        )
