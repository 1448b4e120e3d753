# src/qa_rag/backend/pipelines/generation/pipeline.py

"""
[职责] answer 阶段：基于最终文档生成简短的有据回答；失败时回退为确定性模板（前 3 个标题）。
[边界] 永不抛异常（取消除外）；不访问 DB；不改变检索结果顺序。
[上游关系] services/search_service 在检索完成后调用。
[下游关系] StageResult[str]：value 始终为非空回答文本。
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from qa_rag.backend.pipelines.base.context import PipelineContext
from qa_rag.backend.pipelines.base.result import StageError, StageResult
from qa_rag.backend.pipelines.generation.generator import GenerationClient
from qa_rag.backend.pipelines.generation.prompt import build_answer_prompt
from qa_rag.backend.pipelines.retrieval.types import ScoredDocument
from qa_rag.backend.utils.errors import GENERATION_ERROR_CODE, GenerationError, describe_exception
from qa_rag.backend.utils.logging_ import EVENT_STAGE_FALLBACK, get_logger, log_event


logger = get_logger("generation.pipeline")

DEFAULT_TIMEOUT_S = 45.0
FALLBACK_TITLE_COUNT = 3  # docstring: 模板回答列出的标题数

KNOWLEDGE_BASE_TOPICS = (
    "Test Plans",
    "Test Strategy",
    "Requirements Traceability (RTM)",
    "User Stories",
    "Regression Testing",
    "Defect Analysis",
    "Release Notes",
    "FAQ & Known Issues",
)  # docstring: 无结果时提示的知识库主题


def build_fallback_answer(documents: Sequence[ScoredDocument]) -> str:
    """
    Deterministic summary built only from the titles of the top three documents.

    >>> build_fallback_answer([])
    'Found 0 relevant document(s).\\n\\nTry expanding your search terms for more results.'
    """
    titles: List[str] = [doc.title or doc.doc_id for doc in documents[:FALLBACK_TITLE_COUNT]]
    lines = "".join(f"\n- {t}" for t in titles)
    head = f"Found {len(documents)} relevant document(s):" if titles else f"Found {len(documents)} relevant document(s)."
    return f"{head}{lines}\n\nTry expanding your search terms for more results."


def build_no_results_answer(query: str) -> str:
    """Answer used when retrieval yields nothing: echoes the query and lists the knowledge-base topics."""
    return f'No documents found matching "{str(query or "").strip()}". Available topics: {", ".join(KNOWLEDGE_BASE_TOPICS)}.'


async def synthesize_answer(
    query: str,
    documents: Sequence[ScoredDocument],
    *,
    generator: Optional[GenerationClient],
    timeout_s: float = DEFAULT_TIMEOUT_S,
    ctx: Optional[PipelineContext] = None,
) -> StageResult[str]:
    """
    [职责] 生成 grounded 回答：prompt（标题 + 截断正文）-> generate（带超时）-> 非空校验。
    [边界] generator 缺失/超时/调用失败/空输出 -> 模板回答（fallback=True）。
    [上游关系] SearchService.search。
    [下游关系] PipelineResponse.answer。
    """
    if not documents:
        return StageResult.success(build_no_results_answer(query))
    if generator is None:
        error = StageError(code=GENERATION_ERROR_CODE, message="generation collaborator is not configured")
        return StageResult.degraded(build_fallback_answer(documents), error)

    try:
        prompt = build_answer_prompt(query, documents)
        text = await asyncio.wait_for(generator.generate(prompt), timeout=timeout_s)
        answer = str(text or "").strip()
        if not answer:
            raise GenerationError(message="generation response is empty")
    except Exception as exc:  # noqa: BLE001
        error = StageError.from_exception(exc, default_code=GENERATION_ERROR_CODE)
        log_event(
            logger,
            logging.WARNING,
            "answer generation failed, using template answer",
            context=ctx,
            fields={"error": describe_exception(exc), "documents": len(documents)},
        )
        if ctx is not None:
            ctx.emit(EVENT_STAGE_FALLBACK, stage="answer", reason=error.message, strategy="template")
        return StageResult.degraded(build_fallback_answer(documents), error)

    log_event(
        logger,
        logging.INFO,
        "answer generated",
        context=ctx,
        fields={"documents": len(documents), "answer_chars": len(answer)},
    )
    return StageResult.success(answer)
