# src/qa_rag/backend/pipelines/generation/generator.py

"""
[职责] generation 协作方：GenerationClient 协议 + 基于 LlamaIndex LLM 抽象的实现（prompt -> text）。
[边界] 不拼 prompt；不解析 JSON；不做降级（由 rerank/answer 阶段决定）；provider SDK 按需延迟导入。
[上游关系] LLMRankingClient 与 synthesize_answer 通过 generate(prompt) 调用。
[下游关系] 返回原始文本；构造/调用失败统一抛 GenerationError。
"""

from __future__ import annotations

import inspect
import os
from inspect import Parameter
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from qa_rag.backend.utils.errors import GenerationError, describe_exception, is_transient_error
from qa_rag.config import settings


__all__ = ["GenerationClient", "LLMGenerationClient", "resolve_llm"]


class GenerationClient(Protocol):
    """Boundary of the text-generation collaborator: one prompt in, raw text out."""

    async def generate(self, prompt: str) -> str:
        ...


def _load_llama_index() -> Dict[str, Any]:
    """
    [职责] 延迟加载 LlamaIndex LLM 相关类型（LLM/ChatMessage/MessageRole）。
    [边界] 仅负责 import；不执行任何模型逻辑。
    [上游关系] resolve_llm/_build_chat_messages 调用。
    [下游关系] LLM 构造与消息对象构建。
    """
    try:
        from llama_index.core.llms import LLM  # type: ignore  # docstring: LLM 抽象
    except ImportError as exc:  # pragma: no cover - 依赖缺失场景
        raise ImportError("llama_index is required for generation") from exc  # docstring: 强制依赖

    try:
        from llama_index.core.llms import ChatMessage, MessageRole  # type: ignore  # docstring: 消息类型
    except ImportError:
        from llama_index.core.base.llms.types import ChatMessage, MessageRole  # type: ignore  # docstring: 兼容导入路径

    return {"LLM": LLM, "ChatMessage": ChatMessage, "MessageRole": MessageRole}


def _filter_kwargs(fn: Any, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """
    [职责] 过滤参数，仅保留目标函数支持的关键字。
    [边界] 不做值校验；函数支持 **kwargs 时透传全部配置（避免静默丢参）。
    """
    try:
        sig = inspect.signature(fn)  # docstring: 读取可用参数
    except (TypeError, ValueError):
        return {}
    for p in sig.parameters.values():
        if p.kind == Parameter.VAR_KEYWORD:
            return {k: v for k, v in kwargs.items() if v is not None}
    return {k: v for k, v in kwargs.items() if k in sig.parameters and v is not None}


def _normalize_provider(provider: str) -> str:
    return str(provider or "").strip().lower()  # docstring: provider 归一化


def _build_mock_llm(*, cfg: Mapping[str, Any]) -> Any:
    """
    [职责] 构造 LlamaIndex MockLLM（离线冒烟用；输出回显 prompt）。
    [边界] 依赖 LlamaIndex Mock 实现；若缺失则抛错。
    """
    try:
        from llama_index.core.llms import MockLLM  # type: ignore  # docstring: MockLLM
    except ImportError:
        from llama_index.core.llms.mock import MockLLM  # type: ignore  # docstring: 兼容路径

    kwargs = {"max_tokens": cfg.get("max_tokens")}
    return MockLLM(**_filter_kwargs(MockLLM.__init__, kwargs))


def resolve_llm(
    *,
    provider: str,
    model_name: str,
    generation_config: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    [职责] 根据 provider/model 构造 LlamaIndex LLM 实例。
    [边界] 仅支持 mock/groq/openai/ollama/openai_like；未知 provider 或缺少密钥抛 ValueError。
    [上游关系] LLMGenerationClient._get_llm 调用。
    [下游关系] _call_llm 使用返回的 LLM。
    """
    provider_key = _normalize_provider(provider)
    model = str(model_name or "").strip()
    cfg = dict(generation_config or {})

    if provider_key in {"mock", "local"}:
        return _build_mock_llm(cfg=cfg)
    if provider_key == "groq":
        from llama_index.llms.groq import Groq  # type: ignore  # docstring: Groq LLM

        api_key = cfg.pop("api_key", None) or os.getenv("GROQ_API_KEY")  # docstring: 避免把 API key 写入快照
        if not api_key:
            raise ValueError("GROQ_API_KEY is required for the groq provider")
        kwargs = {"model": model, "api_key": str(api_key), **cfg}
        return Groq(**_filter_kwargs(Groq.__init__, kwargs))
    if provider_key == "openai":
        from llama_index.llms.openai import OpenAI  # type: ignore  # docstring: OpenAI LLM

        kwargs = {"model": model, **cfg}
        return OpenAI(**_filter_kwargs(OpenAI.__init__, kwargs))
    if provider_key == "ollama":
        from llama_index.llms.ollama import Ollama  # type: ignore  # docstring: Ollama LLM

        # docstring: 本地模型首 token 较慢，默认放宽 request_timeout
        cfg.setdefault("request_timeout", float(settings.OLLAMA_REQUEST_TIMEOUT_S))
        kwargs = {"model": model, **cfg}
        return Ollama(**_filter_kwargs(Ollama.__init__, kwargs))
    if provider_key in {"openai_like", "openai-like"}:
        from llama_index.llms.openai_like import OpenAILike  # type: ignore  # docstring: OpenAI-like LLM

        kwargs = {"model": model, "api_base": os.getenv("OPENAI_API_BASE"), **cfg}
        return OpenAILike(**_filter_kwargs(OpenAILike.__init__, kwargs))

    raise ValueError(f"unsupported model provider: {provider}")  # docstring: 未接入 provider


def _build_chat_messages(prompt: str) -> List[Any]:
    """Single user message; LlamaIndex ChatMessage when available."""
    li = _load_llama_index()
    ChatMessage = li["ChatMessage"]
    MessageRole = li["MessageRole"]
    return [ChatMessage(role=MessageRole.USER, content=str(prompt))]


async def _call_llm(*, llm: Any, messages: Sequence[Any], prompt: str) -> Any:
    """
    [职责] 调用 LLM（优先 chat，其次 complete）。
    [边界] 不解析输出；仅返回原始响应对象；采样参数已在构造时注入。
    """
    if hasattr(llm, "achat"):
        return await llm.achat(messages)
    if hasattr(llm, "chat"):
        return llm.chat(messages)
    if hasattr(llm, "acomplete"):
        return await llm.acomplete(prompt)
    if hasattr(llm, "complete"):
        return llm.complete(prompt)
    raise AttributeError("LLM instance missing chat/complete interfaces")  # docstring: 强约束


def _extract_text(response: Any) -> str:
    """
    [职责] 从 LLM 响应中提取文本内容。
    [边界] 只做字段探测；不做 JSON 解析。
    """
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if hasattr(response, "message"):
        msg = getattr(response, "message")  # docstring: ChatResponse.message
        if msg is not None and hasattr(msg, "content"):
            return str(getattr(msg, "content") or "")
    if hasattr(response, "text"):
        return str(getattr(response, "text") or "")  # docstring: CompletionResponse.text
    raw = getattr(response, "raw", None)
    if isinstance(raw, Mapping):
        for key in ("text", "content", "response", "output"):
            val = raw.get(key)
            if isinstance(val, str) and val.strip():
                return val
    return str(response)


class LLMGenerationClient:
    """
    [职责] GenerationClient 的 LlamaIndex 实现：懒构造 LLM，chat 优先调用并抽取文本。
    [边界] 构造失败（缺少依赖/密钥、未知 provider）为不可重试 GenerationError；调用失败按瞬时性标记 retryable。
           超时由调用方 asyncio.wait_for 控制。
    [上游关系] services.search_service.build_default_collaborators。
    [下游关系] LLMRankingClient（rerank）与 synthesize_answer（answer）。
    """

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        generation_config: Optional[Dict[str, Any]] = None,
        llm: Any = None,
    ) -> None:
        self.provider = _normalize_provider(provider)
        self.model = str(model or "").strip()
        self._config = dict(generation_config or {})
        self._llm = llm

    def snapshot(self) -> Dict[str, Any]:
        safe_cfg = {k: v for k, v in self._config.items() if k != "api_key"}  # docstring: 快照不含密钥
        return {"provider": self.provider, "model": self.model, "generation_config": safe_cfg}

    def _get_llm(self) -> Any:
        if self._llm is None:
            try:
                self._llm = resolve_llm(
                    provider=self.provider,
                    model_name=self.model,
                    generation_config=self._config,
                )
            except (ImportError, ValueError, TypeError) as exc:
                raise GenerationError(
                    message="generation provider unavailable",
                    detail={"provider": self.provider, "model": self.model, "error": describe_exception(exc)},
                    cause=exc,
                    retryable=False,
                ) from exc
        return self._llm

    async def generate(self, prompt: str) -> str:
        llm = self._get_llm()
        try:
            response = await _call_llm(
                llm=llm,
                messages=_build_chat_messages(prompt),
                prompt=prompt,
            )
        except Exception as exc:  # noqa: BLE001
            raise GenerationError(
                message="generation call failed",
                detail={"provider": self.provider, "model": self.model, "error": describe_exception(exc)},
                cause=exc,
                retryable=is_transient_error(exc),
            ) from exc
        return _extract_text(response)
