"""Deadline race and single tools-free retry around one adapter invocation.

Attempt 1 runs with the requested tools. A rate-limit failure is terminal.
Any other failure (timeouts included) retries once without tools when tools
were requested, announcing the retry with a ``webSearchFallback`` meta event
first. The controller emits the ``error`` event itself; callers only see a
:class:`StreamAttemptError` afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..observability.metrics import observe_generation, record_fallback
from .model_registry import model_tier
from .providers.base import ProviderAdapter, StreamRequest, StreamResult
from .streaming import EventEmitter


logger = logging.getLogger("chatstream.llm.fallback")

TIMEOUT_MS = {
    "pro": 300_000,
    "pro_deep": 600_000,
    "flash": 240_000,
    "flash_deep": 480_000,
    "default": 180_000,
}

MAX_ERROR_CHARS = 200
QUOTA_MESSAGE = "API quota exceeded. Please try again later or switch to a different model."
FALLBACK_MESSAGE = "Tools not supported. Retrying without web search."

_RETRY_IN = re.compile(r"retry in ([\d.]+)s", re.IGNORECASE)
_RETRY_AFTER = re.compile(r"retry-after:?\s*([\d.]+)", re.IGNORECASE)


def stream_timeout_ms(model: Optional[str], reasoning_level: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> int:
    env = env if env is not None else os.environ
    override = (env.get("STREAM_TIMEOUT_MS") or "").strip()
    if override:
        try:
            value = int(override)
            if value > 0:
                return value
        except ValueError:
            logger.warning("stream_timeout_override_invalid", extra={"value": override})
    tier = model_tier(model)
    if tier == "default":
        return TIMEOUT_MS["default"]
    return TIMEOUT_MS[f"{tier}_deep"] if reasoning_level == "high" else TIMEOUT_MS[tier]


class StreamErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    TOOL_INCOMPATIBLE = "tool_incompatible"
    TRANSPORT = "transport"


class StreamTimeoutError(Exception):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"AI stream timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


@dataclass
class ErrorInfo:
    kind: StreamErrorKind
    message: str
    code: str
    status: int
    retry_after: Optional[float] = None

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is StreamErrorKind.RATE_LIMIT

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message, "code": self.code, "status": self.status}
        if self.kind is StreamErrorKind.RATE_LIMIT:
            payload["isRateLimit"] = True
            if self.retry_after is not None:
                payload["retryAfter"] = self.retry_after
        elif self.kind is StreamErrorKind.TIMEOUT:
            payload["isTimeout"] = True
        return payload


class StreamAttemptError(Exception):
    """Generation failed after the fallback policy was exhausted."""

    def __init__(self, info: ErrorInfo, partial: Optional[StreamResult] = None) -> None:
        super().__init__(info.message)
        self.info = info
        self.partial = partial

    @property
    def kind(self) -> StreamErrorKind:
        return self.info.kind

    @property
    def status(self) -> int:
        return self.info.status

    @property
    def code(self) -> str:
        return self.info.code

    @property
    def retry_after(self) -> Optional[float]:
        return self.info.retry_after


def _status_of(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _retry_hint(exc: BaseException, message: str) -> Optional[float]:
    for pattern in (_RETRY_IN, _RETRY_AFTER):
        match = pattern.search(message)
        if match:
            try:
                return float(match.group(1))
            except ValueError:
                return None
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        try:
            header = headers.get("retry-after")
            return float(header) if header else None
        except (TypeError, ValueError):
            return None
    return None


def _clip(message: str) -> str:
    return message if len(message) <= MAX_ERROR_CHARS else message[:MAX_ERROR_CHARS] + "..."


def classify_error(exc: BaseException, tools_requested: bool = False) -> ErrorInfo:
    """Map an adapter failure to the wire-facing error taxonomy."""

    if isinstance(exc, (StreamTimeoutError, asyncio.TimeoutError)):
        timeout_ms = getattr(exc, "timeout_ms", None)
        seconds = round(timeout_ms / 1000) if timeout_ms else None
        message = (
            f"Request timed out after {seconds} seconds. Please try again."
            if seconds is not None
            else "Request timed out. Please try again."
        )
        return ErrorInfo(kind=StreamErrorKind.TIMEOUT, message=message, code="STREAM_TIMEOUT", status=504)

    message = str(getattr(exc, "message", None) or exc or "") or "Stream error"
    code_attr = getattr(exc, "code", None)
    code_text = code_attr.lower() if isinstance(code_attr, str) else ""
    lowered = message.lower()
    status = _status_of(exc)

    is_quota = "quota" in lowered or "resource_exhausted" in lowered
    if status == 429 or is_quota or "rate_limit" in lowered or "rate_limit" in code_text:
        return ErrorInfo(
            kind=StreamErrorKind.RATE_LIMIT,
            message=QUOTA_MESSAGE if is_quota else _clip(message),
            code="RATE_LIMIT_EXCEEDED",
            status=429,
            retry_after=_retry_hint(exc, message),
        )

    kind = StreamErrorKind.TOOL_INCOMPATIBLE if tools_requested else StreamErrorKind.TRANSPORT
    return ErrorInfo(kind=kind, message=_clip(message), code="STREAM_ERROR", status=status or 500)


async def _attempt(
    adapter: ProviderAdapter, request: StreamRequest, emitter: EventEmitter, timeout_ms: int, result: StreamResult
) -> StreamResult:
    started = time.perf_counter()
    outcome = "error"
    try:
        await asyncio.wait_for(adapter.stream(request, emitter.send_token, result), timeout_ms / 1000)
        outcome = "ok"
        return result
    except asyncio.TimeoutError as exc:
        outcome = "timeout"
        raise StreamTimeoutError(timeout_ms) from exc
    finally:
        observe_generation(adapter.kind.value, outcome, time.perf_counter() - started)


async def run_with_fallback(
    adapter: ProviderAdapter,
    request: StreamRequest,
    emitter: EventEmitter,
    *,
    timeout_ms: Optional[int] = None,
) -> StreamResult:
    timeout_ms = timeout_ms or stream_timeout_ms(request.model, request.reasoning_level)
    tools_requested = bool(request.tools)
    first = StreamResult()
    try:
        return await _attempt(adapter, request, emitter, timeout_ms, first)
    except Exception as exc:
        info = classify_error(exc, tools_requested=tools_requested)
        logger.warning(
            "stream_attempt_failed",
            extra={"model": request.model, "kind": info.kind.value, "status": info.status, "err": str(exc)[:500]},
        )
        if info.is_rate_limit or not tools_requested:
            emitter.error(info.to_wire())
            raise StreamAttemptError(info, partial=first) from exc

    emitter.meta("webSearchFallback", message=FALLBACK_MESSAGE)
    record_fallback(info.kind.value)
    logger.info("stream_fallback_without_tools", extra={"model": request.model, "reason": info.kind.value})
    second = StreamResult()
    try:
        return await _attempt(adapter, request.without_tools(), emitter, timeout_ms, second)
    except Exception as exc2:
        info2 = classify_error(exc2, tools_requested=False)
        logger.warning(
            "stream_fallback_failed",
            extra={"model": request.model, "kind": info2.kind.value, "status": info2.status, "err": str(exc2)[:500]},
        )
        emitter.error(info2.to_wire())
        raise StreamAttemptError(info2, partial=second) from exc2
