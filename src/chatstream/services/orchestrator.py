"""Drives one chat turn from first metadata event to the terminal ``done``.

States run in a fixed order: INIT, GENERATING, SAFETY_CHECK, METADATA,
PERSISTING, DONE. Only GENERATING can divert to ERROR; failures after it are
logged and the turn still completes with ``done: {ok: true}``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..domain.chat_models import Conversation, Turn
from ..infrastructure.chat_store import ChatStore
from ..infrastructure.context_buffer import ContextBuffer, ContextBufferEntry
from .fallback import StreamAttemptError, run_with_fallback
from .providers.base import ProviderAdapter, StreamRequest, StreamResult
from .streaming import EventEmitter
from .titles import generate_final_title, generate_optimistic_title
from .web_search import WebSearchConfig


logger = logging.getLogger("chatstream.orchestrator")

SAFETY_APOLOGY = (
    "The response was blocked by the safety filter. "
    "Try removing the applied gem or rephrasing the request in a more neutral way."
)
MAX_DISPLAY_SOURCES = 5

OptimisticTitleFn = Callable[[str], Awaitable[Optional[str]]]
FinalTitleFn = Callable[[Sequence[Turn]], Awaitable[Optional[str]]]


class TurnState(str, Enum):
    INIT = "init"
    GENERATING = "generating"
    SAFETY_CHECK = "safety_check"
    METADATA = "metadata"
    PERSISTING = "persisting"
    DONE = "done"
    ERROR = "error"


@dataclass
class ChatTurnPlan:
    """Everything resolved before the first byte is streamed."""

    user_id: str
    conversation_id: str
    content: str
    request: StreamRequest
    web_search: WebSearchConfig
    history: List[Turn] = field(default_factory=list)
    gem: Dict[str, Any] = field(default_factory=dict)
    model: Dict[str, Any] = field(default_factory=dict)
    created_conversation: Optional[Conversation] = None
    should_generate_title: bool = False
    timeout_ms: Optional[int] = None


def is_safety_blocked(result: StreamResult) -> bool:
    if result.text.strip():
        return False
    return bool(result.block_reason) or (result.finish_reason or "").upper() == "SAFETY"


def extract_sources(grounding: Optional[Dict[str, Any]], limit: int = MAX_DISPLAY_SOURCES) -> List[Dict[str, str]]:
    if not isinstance(grounding, dict):
        return []
    chunks = grounding.get("groundingChunks") or grounding.get("grounding_chunks") or []
    seen = set()
    sources: List[Dict[str, str]] = []
    for chunk in chunks if isinstance(chunks, list) else []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        uri = web.get("uri") if isinstance(web, dict) else None
        if not uri or uri in seen:
            continue
        seen.add(uri)
        sources.append({"uri": uri, "title": web.get("title") or uri})
        if len(sources) >= limit:
            break
    return sources


def extract_url_context(metadata: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    if not isinstance(metadata, dict):
        return []
    rows = metadata.get("urlMetadata") or metadata.get("url_metadata") or []
    out: List[Dict[str, str]] = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        out.append(
            {
                "retrievedUrl": row.get("retrievedUrl") or row.get("retrieved_url") or "",
                "status": row.get("urlRetrievalStatus") or row.get("url_retrieval_status") or "",
            }
        )
    return out


class StreamOrchestrator:
    def __init__(
        self,
        adapter: ProviderAdapter,
        emitter: EventEmitter,
        *,
        store: ChatStore,
        buffer: Optional[ContextBuffer] = None,
        optimistic_title: OptimisticTitleFn = generate_optimistic_title,
        final_title: FinalTitleFn = generate_final_title,
    ) -> None:
        self.adapter = adapter
        self.emitter = emitter
        self.store = store
        self.buffer = buffer
        self.optimistic_title = optimistic_title
        self.final_title = final_title
        self.state = TurnState.INIT
        self.result: Optional[StreamResult] = None
        self.blocked = False

    async def run(self, plan: ChatTurnPlan) -> bool:
        """Run the turn; returns the ``ok`` flag sent with ``done``."""

        title_job: Optional[asyncio.Task] = None
        try:
            title_job = self._start(plan)

            self.state = TurnState.GENERATING
            try:
                result = await run_with_fallback(self.adapter, plan.request, self.emitter, timeout_ms=plan.timeout_ms)
            except StreamAttemptError as exc:
                self.state = TurnState.ERROR
                self.result = exc.partial
                logger.info(
                    "turn_failed",
                    extra={"conversation_id": plan.conversation_id, "kind": exc.kind.value, "status": exc.status},
                )
                await self._join(title_job)
                self.emitter.done(False)
                return False
            self.result = result

            self.state = TurnState.SAFETY_CHECK
            self._check_safety(result)

            self.state = TurnState.METADATA
            self._emit_side_channel(result)

            self.state = TurnState.PERSISTING
            await self._persist(plan, result)
            await self._join(title_job)

            self.state = TurnState.DONE
            if result.usage is not None and not result.usage.is_empty():
                self.emitter.meta("usageMetadata", **result.usage.to_wire())
            self.emitter.done(True)
            return True
        except Exception:
            logger.exception("turn_unexpected_error", extra={"conversation_id": plan.conversation_id, "state": self.state.value})
            self.state = TurnState.ERROR
            if title_job is not None and not title_job.done():
                title_job.cancel()
            self.emitter.error({"message": "Stream error", "code": "STREAM_ERROR", "status": 500})
            self.emitter.done(False)
            return False

    def _start(self, plan: ChatTurnPlan) -> Optional[asyncio.Task]:
        if plan.created_conversation is not None:
            self.emitter.meta("conversationCreated", conversation=plan.created_conversation.to_wire())
        self.emitter.meta("webSearch", **plan.web_search.to_meta())
        self.emitter.meta(
            "gem",
            gemId=plan.gem.get("gemId"),
            hasSystemInstruction=bool(plan.gem.get("hasSystemInstruction")),
            systemInstructionChars=int(plan.gem.get("systemInstructionChars") or 0),
            error=plan.gem.get("error") or "",
        )
        self.emitter.meta("model", **plan.model)
        if not plan.should_generate_title:
            return None
        return asyncio.create_task(self._optimistic_title(plan))

    async def _optimistic_title(self, plan: ChatTurnPlan) -> None:
        try:
            title = await self.optimistic_title(plan.content)
        except Exception as exc:
            logger.warning("optimistic_title_failed", extra={"conversation_id": plan.conversation_id, "err": str(exc)})
            return
        if title:
            self.emitter.meta("optimisticTitle", conversationId=plan.conversation_id, title=title)

    async def _join(self, job: Optional[asyncio.Task]) -> None:
        if job is None:
            return
        try:
            await job
        except Exception as exc:
            logger.warning("title_job_failed", extra={"err": str(exc)})

    def _check_safety(self, result: StreamResult) -> None:
        if not is_safety_blocked(result):
            return
        self.blocked = True
        self.emitter.meta(
            "safety",
            blocked=True,
            blockReason=result.block_reason or "",
            finishReason=result.finish_reason or "",
            safetyRatings=result.safety_ratings,
        )
        result.text = SAFETY_APOLOGY
        self.emitter.token(SAFETY_APOLOGY)

    def _emit_side_channel(self, result: StreamResult) -> None:
        sources = extract_sources(result.grounding_metadata)
        if sources:
            self.emitter.meta("sources", sources=sources)
        if result.url_context_metadata:
            self.emitter.meta("urlContext", urls=extract_url_context(result.url_context_metadata))

    def _message_meta(self, result: StreamResult) -> Dict[str, Any]:
        meta: Dict[str, Any] = {}
        if result.continuation_tokens:
            meta["continuationTokens"] = list(result.continuation_tokens)
        if result.usage is not None and not result.usage.is_empty():
            meta["usage"] = result.usage.to_wire()
        return meta

    async def _persist(self, plan: ChatTurnPlan, result: StreamResult) -> None:
        text = result.text.strip()
        if not text:
            return

        jobs = [
            self.store.save_message(
                plan.conversation_id, plan.user_id, "assistant", text, meta=self._message_meta(result) or None
            )
        ]
        if self.buffer is not None:
            jobs.append(
                self.buffer.append(
                    plan.conversation_id,
                    ContextBufferEntry(role="assistant", text=text, continuation_tokens=list(result.continuation_tokens)),
                )
            )
        outcomes = await asyncio.gather(*jobs, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error(
                    "assistant_persist_failed", extra={"conversation_id": plan.conversation_id, "err": str(outcome)}
                )

        if plan.should_generate_title and not self.blocked:
            await self._final_title(plan, text)

    async def _final_title(self, plan: ChatTurnPlan, text: str) -> None:
        turns = list(plan.history)
        if not turns or turns[-1].role != "user" or turns[-1].text != plan.content:
            turns.append(Turn(role="user", text=plan.content))
        turns.append(Turn(role="assistant", text=text))
        try:
            title = await self.final_title(turns)
            title = (title or "").strip()
            if not title:
                return
            await self.store.set_auto_title(plan.user_id, plan.conversation_id, title)
        except Exception as exc:
            logger.warning("final_title_failed", extra={"conversation_id": plan.conversation_id, "err": str(exc)})
            return
        self.emitter.meta("finalTitle", conversationId=plan.conversation_id, title=title)
