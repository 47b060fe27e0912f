"""Outbound wire protocol for chat streams.

Events are framed as ``event: <kind>\\ndata: <json>\\n\\n``. The orchestrator
writes into an :class:`EventEmitter`; the HTTP layer drains it. Once the
client goes away the emitter is closed and every later write is dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict

from ..observability.metrics import record_stream_event


logger = logging.getLogger("chatstream.stream")

EVENT_KINDS = ("meta", "token", "error", "done")

_END = object()


def format_sse(kind: str, payload: Any) -> str:
    return f"event: {kind}\ndata: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


class EventEmitter:
    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, kind: str, payload: Dict[str, Any]) -> bool:
        """Queue one event; returns False when it was dropped."""

        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind}")
        if self._closed or self._finished:
            return False
        try:
            frame = format_sse(kind, payload)
        except (TypeError, ValueError) as exc:
            logger.error("sse_encode_failed", extra={"kind": kind, "err": str(exc)})
            return False
        self._queue.put_nowait(frame)
        record_stream_event(kind)
        return True

    def meta(self, type_: str, **fields: Any) -> bool:
        return self.emit("meta", {"type": type_, **fields})

    def token(self, text: str) -> bool:
        if not text:
            return False
        return self.emit("token", {"t": text})

    async def send_token(self, text: str) -> None:
        self.token(text)

    def error(self, payload: Dict[str, Any]) -> bool:
        return self.emit("error", payload)

    def done(self, ok: bool) -> bool:
        sent = self.emit("done", {"ok": bool(ok)})
        self.finish()
        return sent

    def finish(self) -> None:
        """Mark the stream complete; no event may follow ``done``."""

        if not self._finished:
            self._finished = True
            self._queue.put_nowait(_END)

    def close(self) -> None:
        """Client disconnected: drop everything emitted from now on."""

        self._closed = True

    async def frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item
