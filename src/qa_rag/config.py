# src/qa_rag/config.py
from __future__ import annotations

import os
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


def _find_repo_root(start: Path) -> Path:
    """
    Best-effort repository root discovery.
    - Prefer the closest ancestor containing `pyproject.toml`.
    - Fallback to filesystem root if not found.
    """
    cur = start.resolve()
    for _ in range(20):
        if (cur / "pyproject.toml").exists():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    return start.resolve()


PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = _find_repo_root(PACKAGE_ROOT)

# Load .env into process environment early so downstream SDKs can read it.
load_dotenv(str(REPO_ROOT / ".env"), override=False)

DATA_ROOT = REPO_ROOT / ".Local"


class Settings(BaseSettings):
    QA_RAG_DATABASE_URL: str = f"sqlite+aiosqlite:///{(DATA_ROOT / 'qa_rag.db').as_posix()}"

    # embedding collaborator
    QA_RAG_EMBED_PROVIDER: str = "mistral"
    QA_RAG_EMBED_MODEL: str = "mistral-embed"
    QA_RAG_EMBED_DIM: int = int(1024)
    QA_RAG_EMBED_TIMEOUT_S: float = 30.0
    QA_RAG_EMBED_MAX_RETRIES: int = int(3)
    QA_RAG_EMBED_RETRY_BASE_S: float = 1.0

    # ranking / generation collaborators
    QA_RAG_RERANK_PROVIDER: str = "groq"
    QA_RAG_RERANK_MODEL: str = "llama-3.2-3b-preview"
    QA_RAG_RERANK_TIMEOUT_S: float = 30.0
    QA_RAG_RERANK_ENABLED: bool = True

    QA_RAG_GENERATION_PROVIDER: str = "groq"
    QA_RAG_GENERATION_MODEL: str = "llama-3.3-70b-versatile"
    QA_RAG_GENERATION_TIMEOUT_S: float = 45.0
    QA_RAG_GENERATION_ENABLED: bool = True

    # retrieval knobs
    QA_RAG_STORE_TIMEOUT_S: float = 30.0
    QA_RAG_LEXICAL_LIMIT: int = int(20)
    QA_RAG_SEMANTIC_LIMIT: int = int(20)
    QA_RAG_SIMILARITY_FLOOR: float = 0.3
    QA_RAG_LEXICAL_WEIGHT: float = 0.4
    QA_RAG_SEMANTIC_WEIGHT: float = 0.6
    QA_RAG_RERANK_CANDIDATES: int = int(15)
    QA_RAG_MAX_SYNONYM_VARIATIONS: int = int(5)

    MISTRAL_API_KEY: str | None = None
    GROQ_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str | None = "https://api.openai.com/v1"
    OLLAMA_REQUEST_TIMEOUT_S: float = 120.0

    model_config = SettingsConfigDict(
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()


def _set_env_if_missing(key: str, value: str | None) -> None:
    """
    Keep provider SDKs working with .env-based Settings by exporting to os.environ.
    Do not override explicitly provided environment variables.
    """
    if value is None:
        return
    raw = str(value).strip()
    if not raw:
        return
    if os.getenv(key):
        return
    os.environ[key] = raw


def _bootstrap_provider_env(s: Settings) -> None:
    """
    Export provider-related settings into os.environ for downstream SDKs.
    """
    _set_env_if_missing("MISTRAL_API_KEY", s.MISTRAL_API_KEY)
    _set_env_if_missing("GROQ_API_KEY", s.GROQ_API_KEY)
    _set_env_if_missing("OPENAI_API_KEY", s.OPENAI_API_KEY)
    _set_env_if_missing("OPENAI_API_BASE", s.OPENAI_API_BASE)


_bootstrap_provider_env(settings)
