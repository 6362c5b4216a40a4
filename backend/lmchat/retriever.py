from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any

from . import app_db
from .logging_utils import get_logger

log = get_logger(__name__)

KNOWLEDGE_BASE_HEADER = "Relevant information from knowledge base:"
PREVIEW_CHARS = 100


class RetrievalError(RuntimeError):
    pass


@dataclass(frozen=True)
class RetrievedChunk:
    document_id: str
    filename: str
    content_preview: str
    rank: float


@dataclass(frozen=True)
class KnowledgeContext:
    passages: list[str] = field(default_factory=list)
    sources: list[RetrievedChunk] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.passages)


def preview(content: str, max_chars: int = PREVIEW_CHARS) -> str:
    return f"{(content or '')[:max_chars]}..."


def render_passages(passages: list[str]) -> str:
    lines = [f"[Source {i}]: {text}" for i, text in enumerate(passages, start=1)]
    return f"{KNOWLEDGE_BASE_HEADER}\n" + "\n\n".join(lines)


class ContextRetriever:
    """Pulls the best-matching chunks of a project's documents for a query.

    ``store`` is anything exposing ``list_project_documents`` and
    ``search_document_chunks`` with the signatures of :mod:`lmchat.app_db`.
    """

    def __init__(self, store: ModuleType | Any = app_db, *, top_k: int = 5) -> None:
        self.store = store
        self.top_k = top_k

    def _documents(self, project_id: str, user_id: str) -> list[dict[str, Any]]:
        try:
            return list(self.store.list_project_documents(project_id, user_id))
        except sqlite3.Error as e:
            raise RetrievalError(f"Failed to list documents for project {project_id}: {e}") from e

    def retrieve(self, project_id: str, user_id: str, query: str, top_k: int | None = None) -> KnowledgeContext:
        documents = self._documents(project_id, user_id)
        if not documents:
            return KnowledgeContext()

        k = self.top_k if top_k is None else top_k
        try:
            chunks = list(self.store.search_document_chunks(project_id, query, k))
        except sqlite3.Error as e:
            raise RetrievalError(f"Knowledge base search failed for project {project_id}: {e}") from e
        if not chunks:
            return KnowledgeContext()

        filenames = {str(d["document_id"]): str(d["original_filename"]) for d in documents}
        passages: list[str] = []
        sources: list[RetrievedChunk] = []
        for chunk in chunks:
            content = str(chunk.get("content") or "")
            passages.append(content)
            document_id = str(chunk.get("document_id") or "")
            filename = filenames.get(document_id)
            if filename is None:
                log.info("Chunk %s refers to missing document %s; omitted from sources", chunk.get("chunk_id"), document_id)
                continue
            sources.append(
                RetrievedChunk(
                    document_id=document_id,
                    filename=filename,
                    content_preview=preview(content),
                    rank=float(chunk.get("rank") or 0.0),
                )
            )
        return KnowledgeContext(passages=passages, sources=sources)
