from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from ...domain.chat_models import Turn
from ..model_registry import AdapterKind, ProviderSelection


LOG = logging.getLogger("chatstream.llm")

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

TokenSink = Callable[[str], Awaitable[None]]


class ProviderConfigError(RuntimeError):
    """Raised when a backend cannot be constructed (e.g. missing API key)."""


def pick(data: Any, *keys: str) -> Any:
    """Return the first present, non-None value among ``keys``.

    Backends are inconsistent about camelCase vs snake_case, so callers pass
    both spellings.
    """

    if not isinstance(data, Mapping):
        return None
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


@dataclass
class Usage:
    prompt_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    def is_empty(self) -> bool:
        return all(
            v is None for v in (self.prompt_tokens, self.output_tokens, self.reasoning_tokens, self.total_tokens)
        )

    def to_wire(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        if self.prompt_tokens is not None:
            out["promptTokenCount"] = self.prompt_tokens
        if self.output_tokens is not None:
            out["candidatesTokenCount"] = self.output_tokens
        if self.reasoning_tokens is not None:
            out["thoughtsTokenCount"] = self.reasoning_tokens
        if self.total_tokens is not None:
            out["totalTokenCount"] = self.total_tokens
        return out


@dataclass
class StreamResult:
    """Accumulated output of one generation attempt."""

    text: str = ""
    finish_reason: Optional[str] = None
    block_reason: Optional[str] = None
    safety_ratings: Optional[List[Dict[str, Any]]] = None
    grounding_metadata: Optional[Dict[str, Any]] = None
    url_context_metadata: Optional[Dict[str, Any]] = None
    continuation_tokens: List[str] = field(default_factory=list)
    usage: Optional[Usage] = None
    in_thought: bool = False

    def add_continuation_token(self, token: Any) -> None:
        """Append ``token`` keeping first-seen order without duplicates."""

        if isinstance(token, str) and token and token not in self.continuation_tokens:
            self.continuation_tokens.append(token)

    def replace_continuation_token(self, token: Any) -> None:
        """Single-slot backends keep only the latest token."""

        if isinstance(token, str) and token:
            self.continuation_tokens = [token]


@dataclass
class StreamRequest:
    model: str
    turns: List[Turn]
    system_prompt: str = ""
    tools: List[Dict[str, Any]] = field(default_factory=list)
    safety_settings: List[Dict[str, Any]] = field(default_factory=list)
    reasoning_level: Optional[str] = None
    attachment_parts: List[Dict[str, Any]] = field(default_factory=list)

    def without_tools(self) -> "StreamRequest":
        return StreamRequest(
            model=self.model,
            turns=list(self.turns),
            system_prompt=self.system_prompt,
            tools=[],
            safety_settings=list(self.safety_settings),
            reasoning_level=self.reasoning_level,
            attachment_parts=list(self.attachment_parts),
        )


class ProviderAdapter(ABC):
    """One backend family behind a uniform streaming contract."""

    kind: AdapterKind

    def __init__(self, selection: ProviderSelection) -> None:
        if not selection.api_key:
            raise ProviderConfigError(f"{selection.name} API key is not configured")
        self.selection = selection

    @abstractmethod
    async def stream(self, request: StreamRequest, on_token: TokenSink, result: Optional[StreamResult] = None) -> StreamResult:
        """Stream one generation, calling ``on_token`` per non-empty text increment.

        ``result`` is mutated in place, so a caller that passes its own
        instance keeps the partial text when the backend fails mid-stream.
        Transport and API errors propagate unchanged.
        """

    async def _emit_text(self, result: StreamResult, on_token: TokenSink, text: str) -> None:
        if not text:
            return
        if result.in_thought:
            result.in_thought = False
            text = THINK_CLOSE + text
        result.text += text
        await on_token(text)

    async def _emit_thought(self, result: StreamResult, on_token: TokenSink, text: str) -> None:
        if not text:
            return
        if not result.in_thought:
            result.in_thought = True
            text = THINK_OPEN + text
        result.text += text
        await on_token(text)

    async def _close_thought(self, result: StreamResult, on_token: TokenSink) -> None:
        if result.in_thought:
            result.in_thought = False
            result.text += THINK_CLOSE
            await on_token(THINK_CLOSE)


async def raise_for_status(response: httpx.Response) -> None:
    """Raise ``httpx.HTTPStatusError`` carrying the (clipped) error body.

    Streamed responses are not read before the status is checked, so the
    body is pulled first to keep quota/retry hints in the message.
    """

    if response.status_code < 400:
        return
    body = await response.aread()
    detail = body.decode("utf-8", errors="replace").strip()
    message = f"{response.status_code} {response.reason_phrase}: {detail[:1000]}"
    raise httpx.HTTPStatusError(message, request=response.request, response=response)


def iter_sse_data(line: str) -> Optional[Dict[str, Any]]:
    """Decode one ``data: {...}`` SSE line; other lines yield ``None``."""

    if not line.startswith("data:"):
        return None
    raw = line[5:].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        LOG.debug("sse_line_undecodable", extra={"line": raw[:200]})
        return None
    return data if isinstance(data, dict) else None
