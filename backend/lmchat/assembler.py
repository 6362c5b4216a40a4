"""Builds the message list sent to the model for one chat request.

Order of operations:

1. persisted history, as-is and in creation order;
2. the bound project's system prompt, inserted at position 0;
3. web search results and knowledge-base passages, appended (in that order)
   to the content of the final user turn.

Context is carried as :class:`ContextBlock` values until the last step, and
only a non-empty retrieval ever produces a block.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Literal, Mapping

from .logging_utils import get_logger
from .retriever import ContextRetriever, KnowledgeContext, RetrievedChunk, render_passages
from .web_search import SearchResult, WebSearchGateway

log = get_logger(__name__)

Role = Literal["system", "user", "assistant"]
BlockKind = Literal["web_search", "knowledge_base"]

WEB_SEARCH_HEADER = "Web search results:"
BLOCK_SEPARATOR = "\n\n"


class AssemblyError(RuntimeError):
    pass


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ContextBlock:
    kind: BlockKind
    text: str


@dataclass
class AssembledPrompt:
    turns: list[ConversationTurn]
    web_sources: list[SearchResult] = field(default_factory=list)
    knowledge_sources: list[RetrievedChunk] = field(default_factory=list)
    context_blocks: list[ContextBlock] = field(default_factory=list)

    def messages(self) -> list[dict[str, str]]:
        return [t.to_message() for t in self.turns]


def render_web_results(results: list[SearchResult]) -> str:
    entries = []
    for i, r in enumerate(results, start=1):
        entry = f"[Web {i}]: {r.title} ({r.url})"
        if r.snippet:
            entry += f"\n{r.snippet}"
        entries.append(entry)
    return f"{WEB_SEARCH_HEADER}\n" + "\n\n".join(entries)


def turns_from_history(history: Iterable[Mapping[str, Any]]) -> list[ConversationTurn]:
    turns: list[ConversationTurn] = []
    for m in history:
        role = str(m.get("role") or "")
        if role not in ("system", "user", "assistant"):
            raise AssemblyError(f"Unknown message role: {role!r}")
        turns.append(ConversationTurn(role=role, content=str(m.get("content") or "")))  # type: ignore[arg-type]
    return turns


def with_system_prompt(turns: list[ConversationTurn], system_prompt: str | None) -> list[ConversationTurn]:
    prompt = str(system_prompt or "")
    if not prompt.strip():
        return list(turns)
    # At most one system turn, and it leads.
    rest = [t for t in turns if t.role != "system"]
    return [ConversationTurn(role="system", content=prompt), *rest]


def attach_context(turns: list[ConversationTurn], blocks: list[ContextBlock]) -> list[ConversationTurn]:
    """Append context blocks, in order, to the final turn when it is a user turn."""
    if not blocks:
        return list(turns)
    if not turns or turns[-1].role != "user":
        log.warning("Dropping %d context block(s): conversation does not end with a user turn", len(blocks))
        return list(turns)
    last = turns[-1]
    content = last.content + "".join(BLOCK_SEPARATOR + b.text for b in blocks)
    return [*turns[:-1], replace(last, content=content)]


class PromptAssembler:
    def __init__(self, web_search: WebSearchGateway, retriever: ContextRetriever) -> None:
        self.web_search = web_search
        self.retriever = retriever

    async def _web_results(self, query: str, enabled: bool) -> list[SearchResult]:
        if not enabled:
            return []
        return await self.web_search.search(query)

    async def _knowledge(self, project_id: str | None, user_id: str, query: str) -> KnowledgeContext:
        if not project_id:
            return KnowledgeContext()
        return await asyncio.to_thread(self.retriever.retrieve, project_id, user_id, query)

    async def assemble(
        self,
        history: Iterable[Mapping[str, Any]],
        *,
        user_id: str,
        project: Mapping[str, Any] | None = None,
        project_id: str | None = None,
        web_search_enabled: bool = False,
    ) -> AssembledPrompt:
        """Assemble the turns for one request.

        ``history`` must already end with the new user message. Raises
        :class:`~lmchat.retriever.RetrievalError` when the knowledge base
        lookup fails; web search failures only ever yield no results.
        """
        turns = turns_from_history(history)
        if project is not None:
            turns = with_system_prompt(turns, project.get("system_prompt"))
            project_id = project_id or str(project.get("project_id") or "") or None

        if not turns or turns[-1].role != "user":
            log.warning("Conversation does not end with a user turn; skipping context retrieval")
            return AssembledPrompt(turns=turns)

        query = turns[-1].content
        web_task = asyncio.create_task(self._web_results(query, web_search_enabled))
        try:
            knowledge = await self._knowledge(project_id, user_id, query)
            web_results = await web_task
        finally:
            # A failed lookup must not leave the search running.
            if not web_task.done():
                web_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await web_task

        blocks: list[ContextBlock] = []
        if web_results:
            blocks.append(ContextBlock(kind="web_search", text=render_web_results(web_results)))
        if knowledge:
            blocks.append(ContextBlock(kind="knowledge_base", text=render_passages(knowledge.passages)))

        return AssembledPrompt(
            turns=attach_context(turns, blocks),
            web_sources=list(web_results),
            knowledge_sources=list(knowledge.sources),
            context_blocks=blocks,
        )
