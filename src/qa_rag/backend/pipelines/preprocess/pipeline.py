# src/qa_rag/backend/pipelines/preprocess/pipeline.py

"""
[职责] 查询预处理编排：normalize -> abbreviation -> synonym，产出 ProcessedQuery（含诊断信息）。
[边界] 永不抛异常：任一步内部故障时返回降级结果（小写原句、单一变体、空替换/ID）并写入 error。
       不做输入校验（空查询由 services 入口拒绝）。
[上游关系] services/search_service.SearchService.search 调用。
[下游关系] lexical/semantic 使用 ProcessedQuery.search_text；响应 metadata.preprocessing 使用 to_snapshot。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from qa_rag.backend.pipelines.base.timing import now_ms
from qa_rag.backend.schemas.query import PreprocessConfig, ProcessedQuery
from qa_rag.backend.utils.errors import describe_exception
from qa_rag.backend.utils.logging_ import get_logger, hash_text, log_event, truncate_text

from .abbreviation import expand_abbreviations
from .normalizer import normalize_query
from .synonym import expand_synonyms


logger = get_logger("preprocess.pipeline")


def _degraded(raw: Any, *, error: str, elapsed_ms: float) -> ProcessedQuery:
    """
    [职责] 构造降级结果：小写原句作为唯一变体。
    [边界] raw 非字符串时按 str() 处理；None 视为空串。
    """
    lowered = "" if raw is None else str(raw).lower()
    return ProcessedQuery(
        raw="" if raw is None else str(raw),
        normalized=lowered,
        expanded=lowered,
        variations=[lowered],
        identifiers=[],
        replacements=[],
        metadata={"ms": round(elapsed_ms, 3)},
        error=error,
    )


def preprocess_query(raw: Any, config: Optional[PreprocessConfig] = None) -> ProcessedQuery:
    """
    [职责] 组合三步预处理并汇总耗时/计数。
    [边界] enable_* 为 False 的步骤直接透传上一步文本。
    [上游关系] SearchService.search。
    [下游关系] ProcessedQuery.search_text 的优先级：首个同义变体 -> 缩写展开 -> 规范化 -> 原句。
    """
    cfg = config or PreprocessConfig()
    start = now_ms()
    try:
        if not isinstance(raw, str) or not raw:
            raise ValueError("query must be a non-empty string")

        norm = normalize_query(raw)
        normalized = norm.normalized

        expanded = normalized
        replacements = []
        abbr_meta: Dict[str, Any] = {}
        if cfg.enable_abbreviations:
            abbr = expand_abbreviations(normalized, cfg.custom_abbreviations)
            expanded = abbr.expanded or normalized
            replacements = list(abbr.replacements)
            abbr_meta = dict(abbr.metadata)

        variations = [expanded]
        syn_meta: Dict[str, Any] = {}
        if cfg.enable_synonyms:
            syn = expand_synonyms(expanded, cfg.custom_synonyms, cfg.max_synonym_variations)
            variations = list(syn.variations) or [expanded]
            syn_meta = dict(syn.metadata)

        metadata: Dict[str, Any] = {
            "ms": round(now_ms() - start, 3),
            "original_length": len(raw),
            "normalized_length": len(normalized),
            "abbreviations_expanded": len(replacements),
            "synonym_variations": len(variations),
            "identifiers": len(norm.identifiers),
            "steps": {
                "normalize": dict(norm.metadata),
                "abbreviation": abbr_meta,
                "synonym": syn_meta,
            },
        }
        processed = ProcessedQuery(
            raw=raw,
            normalized=normalized,
            expanded=expanded,
            variations=variations,
            identifiers=list(norm.identifiers),
            replacements=replacements,
            metadata=metadata,
            error=norm.error,
        )
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "query preprocessing failed",
            fields={"error": describe_exception(exc), "query_hash": hash_text(str(raw))},
        )
        return _degraded(raw, error=describe_exception(exc), elapsed_ms=now_ms() - start)

    log_event(
        logger,
        logging.DEBUG,
        "query preprocessed",
        fields={
            "query_preview": truncate_text(raw),
            "search_text": truncate_text(processed.search_text),
            "variations": len(processed.variations),
            "replacements": len(processed.replacements),
        },
    )
    return processed
