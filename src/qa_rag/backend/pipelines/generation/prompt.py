# src/qa_rag/backend/pipelines/generation/prompt.py

"""
[职责] generation prompt：rerank（JSON 排序）与 answer（严格依据文档作答）两类 prompt 的拼装。
[边界] 不做 LLM 调用；不访问 DB；不解析输出。
[上游关系] LLMRankingClient 与 synthesize_answer 传入 query 与 ScoredDocument 列表。
[下游关系] GenerationClient.generate 的 prompt 输入。
"""

from __future__ import annotations

from typing import List, Sequence

from qa_rag.backend.pipelines.retrieval.types import ScoredDocument


__all__ = [
    "NOT_AVAILABLE_TEXT",
    "build_answer_prompt",
    "build_rerank_prompt",
    "excerpt",
]

DEFAULT_MAX_EXCERPT_CHARS = 500  # docstring: 单条文档正文截断长度
NOT_AVAILABLE_TEXT = "Information not available in documents"  # docstring: 文档无答案时的固定表述

RERANK_OUTPUT_SCHEMA = """{
  "rankings": [
    {"doc_id": "...", "rank": 1, "relevance_score": 0.95, "reason": "..."},
    ...
  ]
}"""  # docstring: rerank 输出结构示例


def _normalize_query(query: str) -> str:
    raw = str(query or "")
    return " ".join(raw.strip().split())  # docstring: 合并多余空白


def excerpt(text: str, *, max_chars: int = DEFAULT_MAX_EXCERPT_CHARS) -> str:
    """Collapse whitespace and cut to `max_chars` characters."""
    compact = " ".join(str(text or "").split())
    if max_chars <= 0 or len(compact) <= max_chars:
        return compact
    return compact[:max_chars]


def _doc_title(doc: ScoredDocument) -> str:
    return doc.title or "N/A"


def build_rerank_prompt(
    query: str,
    documents: Sequence[ScoredDocument],
    *,
    top_k: int,
    max_chars: int = DEFAULT_MAX_EXCERPT_CHARS,
) -> str:
    """
    [职责] 构造 rerank prompt：列出候选（序号/ID/标题/正文摘录），要求返回 rankings JSON。
    [边界] 只要求返回前 top_k；doc_id 必须原样取自候选 ID。
    [上游关系] LLMRankingClient.rank。
    [下游关系] 输出由 rerank.parse_rankings 解析。
    """
    lines: List[str] = []
    for idx, doc in enumerate(documents, start=1):
        content = excerpt(doc.body, max_chars=max_chars) or "N/A"
        lines.append(f"{idx}. ID: {doc.doc_id}, Title: {_doc_title(doc)}\nContent: {content}")
    doc_list = "\n\n".join(lines)

    return (
        f'Given the user query: "{_normalize_query(query)}"\n\n'
        "Rank these documents by relevance (1=most relevant):\n"
        f"{doc_list}\n\n"
        "Return a JSON object with this structure:\n"
        f"{RERANK_OUTPUT_SCHEMA}\n\n"
        "Use the document IDs exactly as listed. "
        f"Only include the top {int(top_k)} documents. Output JSON only."
    )


def build_answer_prompt(
    query: str,
    documents: Sequence[ScoredDocument],
    *,
    max_chars: int = DEFAULT_MAX_EXCERPT_CHARS,
) -> str:
    """
    [职责] 构造 grounded answer prompt：仅依据所给文档作答，缺失时明确说明。
    [边界] 正文截断到 max_chars；要求 2-3 句并引用文档 ID。
    [上游关系] synthesize_answer。
    [下游关系] GenerationClient.generate。
    """
    blocks: List[str] = []
    for doc in documents:
        content = excerpt(doc.body, max_chars=max_chars) or "N/A"
        blocks.append(f"Document ID: {doc.doc_id}\nTitle: {_doc_title(doc)}\nContent: {content}")
    doc_list = "\n---\n".join(blocks)

    return (
        "Based on these documents:\n\n"
        f"{doc_list}\n\n"
        f'Answer this question: "{_normalize_query(query)}"\n\n'
        "Requirements:\n"
        "- Only use information from the provided documents\n"
        f'- If the answer is not found, explicitly state "{NOT_AVAILABLE_TEXT}"\n'
        "- Keep answer to 2-3 sentences\n"
        "- Include relevant document IDs if applicable\n"
        "- Be factual and cite sources"
    )
