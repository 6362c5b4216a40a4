from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _optional(name: str) -> str | None:
    value = str(os.getenv(name) or "").strip()
    return value or None


REPO_ROOT = _repo_root()

APP_DB_PATH = Path(os.getenv("LMCHAT_DB_PATH", str(REPO_ROOT / "backend" / "data" / "app.sqlite")))

LMSTUDIO_BASE_URL = os.getenv("LMSTUDIO_BASE_URL", "http://localhost:1234").rstrip("/")
LMSTUDIO_MODEL = os.getenv("LMSTUDIO_MODEL") or "local-model"

LLM_TEMPERATURE = float(os.getenv("LMCHAT_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS = int(os.getenv("LMCHAT_MAX_TOKENS", "2000"))
LLM_TIMEOUT_S = float(os.getenv("LMCHAT_LLM_TIMEOUT_S", "60"))
WEB_TIMEOUT_S = float(os.getenv("LMCHAT_WEB_TIMEOUT_S", "15"))

TAVILY_API_KEY = _optional("TAVILY_API_KEY")
SERPER_API_KEY = _optional("SERPER_API_KEY")

CHUNK_SIZE = int(os.getenv("LMCHAT_CHUNK_SIZE", "500"))
RAG_TOP_K = int(os.getenv("LMCHAT_RAG_TOP_K", "5"))

HOST = os.getenv("LMCHAT_HOST", "127.0.0.1")
PORT = int(os.getenv("LMCHAT_PORT", "8000"))


@dataclass(frozen=True)
class ChatConfig:
    backend_url: str = LMSTUDIO_BASE_URL
    default_model: str = LMSTUDIO_MODEL
    temperature: float = LLM_TEMPERATURE
    max_tokens: int = LLM_MAX_TOKENS
    tavily_key: str | None = None
    serper_key: str | None = None
    llm_timeout_s: float = LLM_TIMEOUT_S
    web_timeout_s: float = WEB_TIMEOUT_S
    rag_top_k: int = RAG_TOP_K

    @classmethod
    def from_env(cls) -> "ChatConfig":
        return cls(tavily_key=TAVILY_API_KEY, serper_key=SERPER_API_KEY)
