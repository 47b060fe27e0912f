"""Short-lived per-conversation context buffer backed by Redis.

The buffer is a performance cache for reasoning-continuity data, not a
source of truth: every store error is logged and absorbed, reads degrade
to an empty list and writes become no-ops.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Optional

from redis.asyncio import Redis


logger = logging.getLogger("chatstream.context_buffer")

CONTEXT_MESSAGE_LIMIT = 20
HARD_LIST_CAP = 120
CONTEXT_TTL_SECONDS = 45 * 60


@dataclass
class ContextBufferEntry:
    role: str
    text: str
    continuation_tokens: List[str] = field(default_factory=list)

    def to_json(self) -> str:
        payload: dict[str, Any] = {"role": self.role, "text": self.text}
        if self.continuation_tokens:
            payload["continuationTokens"] = list(self.continuation_tokens)
        return json.dumps(payload, ensure_ascii=False)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ContextBufferEntry"]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        role = data.get("role")
        text = data.get("text", data.get("content"))
        if not isinstance(role, str) or not isinstance(text, str):
            return None
        tokens = data.get("continuationTokens") or data.get("thoughtSignatures") or []
        if not isinstance(tokens, list):
            tokens = []
        return cls(role=role, text=text, continuation_tokens=[t for t in tokens if isinstance(t, str) and t])


def _buffer_key(conversation_id: str) -> str:
    return f"ctx:{conversation_id}"


def _summary_key(conversation_id: str) -> str:
    return f"sum:{conversation_id}"


class ContextBuffer:
    """Capped, TTL-bound list of recent turns keyed by conversation id."""

    def __init__(
        self,
        client: Optional[Redis],
        *,
        cap: int = HARD_LIST_CAP,
        ttl_seconds: int = CONTEXT_TTL_SECONDS,
    ) -> None:
        self._client = client
        self.cap = max(1, int(cap))
        self.ttl_seconds = int(ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def append(self, conversation_id: str, entry: ContextBufferEntry) -> None:
        if self._client is None:
            return
        key = _buffer_key(conversation_id)
        try:
            # Push, cap and TTL land together or not at all.
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, entry.to_json())
                pipe.ltrim(key, -self.cap, -1)
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
        except Exception as exc:
            logger.warning("context_buffer_append_failed", extra={"conversation_id": conversation_id, "err": str(exc)})

    async def read(self, conversation_id: str, limit: int = CONTEXT_MESSAGE_LIMIT) -> List[ContextBufferEntry]:
        if self._client is None or limit <= 0:
            return []
        key = _buffer_key(conversation_id)
        try:
            raw_items = await self._client.lrange(key, -limit, -1)
            await self._client.expire(key, self.ttl_seconds)
        except Exception as exc:
            logger.warning("context_buffer_read_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
            return []
        return self._parse_entries(raw_items)

    async def length(self, conversation_id: str) -> int:
        if self._client is None:
            return 0
        key = _buffer_key(conversation_id)
        try:
            size = await self._client.llen(key)
            await self._client.expire(key, self.ttl_seconds)
            return int(size or 0)
        except Exception as exc:
            logger.warning("context_buffer_length_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
            return 0

    async def overflow_for_summary(
        self, conversation_id: str, keep_last: int = CONTEXT_MESSAGE_LIMIT
    ) -> List[ContextBufferEntry]:
        """Return entries older than the newest ``keep_last`` ones."""

        size = await self.length(conversation_id)
        if self._client is None or size <= keep_last:
            return []
        overflow = size - max(0, keep_last)
        try:
            raw_items = await self._client.lrange(_buffer_key(conversation_id), 0, overflow - 1)
        except Exception as exc:
            logger.warning("context_buffer_overflow_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
            return []
        return self._parse_entries(raw_items)

    async def trim_to_last(self, conversation_id: str, keep_last: int = CONTEXT_MESSAGE_LIMIT) -> None:
        if self._client is None:
            return
        if keep_last <= 0:
            await self.clear(conversation_id)
            return
        key = _buffer_key(conversation_id)
        try:
            await self._client.ltrim(key, -keep_last, -1)
            await self._client.expire(key, self.ttl_seconds)
        except Exception as exc:
            logger.warning("context_buffer_trim_failed", extra={"conversation_id": conversation_id, "err": str(exc)})

    async def remove_last_if_role(self, conversation_id: str, role: str) -> bool:
        """Pop the newest entry when it belongs to ``role`` (used on regenerate)."""

        if self._client is None:
            return False
        key = _buffer_key(conversation_id)
        try:
            last = await self._client.lrange(key, -1, -1)
            entry = ContextBufferEntry.from_raw(last[0]) if last else None
            if entry is None or entry.role != role:
                return False
            await self._client.rpop(key)
            await self._client.expire(key, self.ttl_seconds)
            return True
        except Exception as exc:
            logger.warning("context_buffer_pop_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
            return False

    async def clear(self, conversation_id: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.delete(_buffer_key(conversation_id), _summary_key(conversation_id))
        except Exception as exc:
            logger.warning("context_buffer_clear_failed", extra={"conversation_id": conversation_id, "err": str(exc)})

    async def get_summary(self, conversation_id: str) -> str:
        if self._client is None:
            return ""
        try:
            value = await self._client.get(_summary_key(conversation_id))
        except Exception as exc:
            logger.warning("context_summary_read_failed", extra={"conversation_id": conversation_id, "err": str(exc)})
            return ""
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return str(value) if value else ""

    async def set_summary(self, conversation_id: str, summary: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.set(_summary_key(conversation_id), str(summary or ""), ex=self.ttl_seconds)
        except Exception as exc:
            logger.warning("context_summary_write_failed", extra={"conversation_id": conversation_id, "err": str(exc)})

    @staticmethod
    def _parse_entries(raw_items: Any) -> List[ContextBufferEntry]:
        entries: List[ContextBufferEntry] = []
        for raw in raw_items or []:
            entry = ContextBufferEntry.from_raw(raw)
            if entry is not None:
                entries.append(entry)
        return entries


_buffer: Optional[ContextBuffer] = None


def get_context_buffer() -> ContextBuffer:
    global _buffer
    if _buffer is not None:
        return _buffer
    url = os.getenv("CONTEXT_BUFFER_URL") or os.getenv("REDIS_URL")
    client: Optional[Redis] = None
    if url:
        try:
            client = Redis.from_url(url, socket_timeout=0.5, decode_responses=True)
        except Exception as exc:
            logger.warning("context_buffer_connect_failed", extra={"err": str(exc)})
            client = None
    _buffer = ContextBuffer(client)
    return _buffer


def reset_context_buffer() -> None:
    """Drop the cached buffer handle (useful for tests)."""

    global _buffer
    _buffer = None
