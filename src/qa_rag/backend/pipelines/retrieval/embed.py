# src/qa_rag/backend/pipelines/retrieval/embed.py

"""
[职责] embedding 协作方：EmbeddingClient 协议、基于 LlamaIndex BaseEmbedding 的实现、带超时与瞬时错误重试的 embed_query。
[边界] 不读写 DB；不计算相似度；provider SDK 按需延迟导入。
[上游关系] semantic 阶段调用 embed_query；backfill_embeddings 脚本调用 embed_batch。
[下游关系] EmbeddingVector 供 semantic 计算余弦；失败统一抛 EmbeddingError（retryable 区分瞬时/永久）。
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from qa_rag.backend.utils.errors import EmbeddingError, describe_exception, is_transient_error
from qa_rag.backend.utils.logging_ import get_logger, log_event


logger = get_logger("retrieval.embed")

DEFAULT_HASH_DIM = 128


@dataclass(frozen=True)
class EmbeddingVector:
    """Query/document vector plus the model that produced it."""

    vector: List[float]
    model_id: str

    @property
    def dim(self) -> int:
        return len(self.vector)


class EmbeddingClient(Protocol):
    """
    [职责] embedding 协作方边界：单条文本 -> 向量。
    [边界] 实现可抛任意异常；embed_query 负责超时/重试/错误归一。
    """

    async def embed(self, text: str) -> EmbeddingVector:
        ...


def _load_llama_index() -> Dict[str, Any]:
    """
    [职责] 延迟加载 LlamaIndex BaseEmbedding 抽象。
    [边界] 仅负责 import。
    """
    try:
        from llama_index.core.base.embeddings.base import BaseEmbedding  # type: ignore
    except ImportError as exc:  # pragma: no cover - 依赖缺失场景
        raise ImportError("llama_index is required for embeddings") from exc
    return {"BaseEmbedding": BaseEmbedding}


def _filter_kwargs(fn: Any, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keyword arguments accepted by `fn`."""  # docstring: 不同 provider 构造参数不一致
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return {}
    return {k: v for k, v in kwargs.items() if k in sig.parameters and v is not None}


def _build_hash_embedder(*, dim: int, model: str) -> Any:
    """
    [职责] 本地确定性 hash embedding（离线/测试用，非语义）。
    [边界] 同一文本始终得到同一向量。
    """
    from pydantic import PrivateAttr

    BaseEmbedding = _load_llama_index()["BaseEmbedding"]

    class _HashEmbedding(BaseEmbedding):
        """Deterministic sha256-based embedding."""

        _dim: int = PrivateAttr(default=DEFAULT_HASH_DIM)

        def __init__(self, *, dim: int, model_name: str) -> None:
            super().__init__(model_name=model_name)
            self._dim = int(dim)

        def _hash_to_vec(self, text: str) -> List[float]:
            seed = hashlib.sha256(text.encode("utf-8")).digest()
            vals: List[float] = []
            while len(vals) < self._dim:
                for b in seed:
                    vals.append((b / 255.0) * 2.0 - 1.0)  # docstring: 映射到 [-1, 1]
                    if len(vals) >= self._dim:
                        break
                seed = hashlib.sha256(seed).digest()
            return vals

        def _get_text_embedding(self, text: str) -> List[float]:
            return self._hash_to_vec(text)

        def _get_query_embedding(self, query: str) -> List[float]:
            return self._hash_to_vec(query)

        async def _aget_text_embedding(self, text: str) -> List[float]:
            return self._hash_to_vec(text)

        async def _aget_query_embedding(self, query: str) -> List[float]:
            return self._hash_to_vec(query)

    return _HashEmbedding(dim=dim, model_name=model)


def resolve_embedder(
    *,
    provider: str,
    model: str,
    dim: Optional[int] = None,
    embed_config: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    [职责] 根据 provider/model 构造 LlamaIndex BaseEmbedding 实例。
    [边界] 仅支持 hash/mock、mistral、openai、ollama、huggingface；未知 provider 抛 ValueError。
    """
    BaseEmbedding = _load_llama_index()["BaseEmbedding"]

    provider_key = str(provider).strip().lower()
    model_name = str(model).strip()
    cfg = dict(embed_config or {})

    if provider_key in {"mock", "local", "hash"}:
        embedder = _build_hash_embedder(dim=int(dim or DEFAULT_HASH_DIM), model=model_name or "hash")
    elif provider_key in {"mistral", "mistralai"}:
        from llama_index.embeddings.mistralai import MistralAIEmbedding  # type: ignore

        kwargs = {
            "model_name": model_name,
            "api_key": cfg.pop("api_key", None) or os.getenv("MISTRAL_API_KEY"),
            **cfg,
        }
        if not kwargs.get("api_key"):
            raise ValueError("MISTRAL_API_KEY is required for the mistral embedding provider")
        embedder = MistralAIEmbedding(**_filter_kwargs(MistralAIEmbedding.__init__, kwargs))
    elif provider_key == "openai":
        from llama_index.embeddings.openai import OpenAIEmbedding  # type: ignore

        kwargs = {"model": model_name, "model_name": model_name, "dimensions": dim, **cfg}
        embedder = OpenAIEmbedding(**_filter_kwargs(OpenAIEmbedding.__init__, kwargs))
    elif provider_key == "ollama":
        from llama_index.embeddings.ollama import OllamaEmbedding  # type: ignore

        kwargs = {"model_name": model_name, **cfg}
        embedder = OllamaEmbedding(**_filter_kwargs(OllamaEmbedding.__init__, kwargs))
    elif provider_key in {"huggingface", "hf"}:
        from llama_index.embeddings.huggingface import HuggingFaceEmbedding  # type: ignore

        kwargs = {"model_name": model_name, **cfg}
        embedder = HuggingFaceEmbedding(**_filter_kwargs(HuggingFaceEmbedding.__init__, kwargs))
    else:
        raise ValueError(f"unsupported embed provider: {provider}")

    if not isinstance(embedder, BaseEmbedding):
        raise TypeError("embedding must be BaseEmbedding")
    return embedder


class LlamaIndexEmbeddingClient:
    """
    [职责] EmbeddingClient 的 LlamaIndex 实现：懒构造 embedder，异步获取 query/text 向量。
    [边界] 构造失败（缺少依赖/密钥、未知 provider）转为不可重试的 EmbeddingError。
    [上游关系] services.search_service.build_default_collaborators / scripts。
    [下游关系] embed_query、backfill_embeddings。
    """

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        dim: Optional[int] = None,
        embed_config: Optional[Dict[str, Any]] = None,
        embedder: Any = None,
    ) -> None:
        self.provider = str(provider)
        self.model = str(model)
        self.dim = dim
        self._embed_config = dict(embed_config or {})
        self._embedder = embedder

    def snapshot(self) -> Dict[str, Any]:
        return {"provider": self.provider, "model": self.model, "dim": self.dim}

    def _get_embedder(self) -> Any:
        if self._embedder is None:
            try:
                self._embedder = resolve_embedder(
                    provider=self.provider,
                    model=self.model,
                    dim=self.dim,
                    embed_config=self._embed_config,
                )
            except (ImportError, ValueError, TypeError) as exc:
                raise EmbeddingError(
                    message="embedding provider unavailable",
                    detail={"provider": self.provider, "model": self.model, "error": describe_exception(exc)},
                    cause=exc,
                    retryable=False,
                ) from exc
        return self._embedder

    async def embed(self, text: str) -> EmbeddingVector:
        embedder = self._get_embedder()
        vector = await embedder.aget_query_embedding(text)
        return EmbeddingVector(vector=[float(x) for x in vector], model_id=self.model)

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        if not texts:
            return []
        embedder = self._get_embedder()
        vectors = await embedder.aget_text_embedding_batch([str(t) for t in texts])
        return [EmbeddingVector(vector=[float(x) for x in v], model_id=self.model) for v in vectors]


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log_event(
        logger,
        logging.WARNING,
        "embedding attempt failed, retrying",
        fields={
            "attempt": state.attempt_number,
            "error": describe_exception(exc) if exc else None,
            "sleep_s": state.next_action.sleep if state.next_action else None,
        },
    )


async def embed_query(
    client: EmbeddingClient,
    text: str,
    *,
    timeout_s: float = 30.0,
    max_attempts: int = 3,
    retry_base_s: float = 1.0,
) -> EmbeddingVector:
    """
    [职责] 单次查询向量化：每次尝试独立超时；仅瞬时失败（超时/连接/5xx/429）按指数退避重试。
    [边界] 尝试次数上限固定；永久失败立即上抛；结果向量为空视为失败。
    [上游关系] semantic_search。
    [下游关系] 成功返回 EmbeddingVector；失败抛 EmbeddingError。
    """
    if not isinstance(text, str) or not text.strip():
        raise EmbeddingError(message="text must be a non-empty string", retryable=False)

    result: Optional[EmbeddingVector] = None
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, int(max_attempts))),
            wait=wait_exponential(multiplier=max(0.0, float(retry_base_s)), max=max(0.0, float(retry_base_s)) * 8),
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                result = await asyncio.wait_for(client.embed(text), timeout=timeout_s)
    except EmbeddingError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise EmbeddingError(
            message="failed to generate embedding",
            detail={"error": describe_exception(exc)},
            cause=exc,
            retryable=is_transient_error(exc),
        ) from exc

    if result is None or not result.vector:
        raise EmbeddingError(message="embedding response is empty", retryable=False)
    return result
