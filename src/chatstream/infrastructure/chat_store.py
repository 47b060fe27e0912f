from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import os
import uuid

from ..domain.chat_models import DEFAULT_CONVERSATION_TITLE, ChatMessage, Conversation, GemProfile


class ChatStore(Protocol):
    async def create_conversation(self, user_id: str, title: str = DEFAULT_CONVERSATION_TITLE, model: Optional[str] = None) -> Conversation: ...

    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]: ...

    async def set_auto_title(self, user_id: str, conversation_id: str, title: str) -> None: ...

    async def set_conversation_gem(self, user_id: str, conversation_id: str, gem_id: Optional[str]) -> None: ...

    async def save_gem(self, gem_id: str, instructions: str) -> None: ...

    async def get_gem_profile(self, user_id: str, conversation_id: str) -> GemProfile: ...

    async def save_message(self, conversation_id: str, user_id: str, role: str, content: str, meta: Optional[Dict[str, Any]] = None) -> ChatMessage: ...

    async def get_recent_messages(self, conversation_id: str, limit: int = 100) -> List[ChatMessage]: ...

    async def delete_last_assistant_message(self, user_id: str, conversation_id: str) -> bool: ...

    async def delete_messages_including_and_after(self, user_id: str, conversation_id: str, message_id: str) -> int: ...


@dataclass
class _Conversation:
    conversation_id: str
    user_id: str
    title: str
    model: Optional[str]
    gem_id: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class _Message:
    message_id: str
    conversation_id: str
    user_id: str
    role: str
    content: str
    created_at: str
    meta: Dict[str, Any] | None = None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class InMemoryChatStore:
    def __init__(self) -> None:
        self._conversations: Dict[str, _Conversation] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._gems: Dict[str, str] = {}
        self._lock = RLock()

    def _conversation_model(self, conv: _Conversation) -> Conversation:
        return Conversation(**conv.__dict__)

    def _message_model(self, message: _Message) -> ChatMessage:
        return ChatMessage(**message.__dict__)

    def _owned(self, user_id: str, conversation_id: str) -> Optional[_Conversation]:
        conv = self._conversations.get(conversation_id)
        if conv is None or conv.user_id != user_id:
            return None
        return conv

    async def create_conversation(
        self,
        user_id: str,
        title: str = DEFAULT_CONVERSATION_TITLE,
        model: Optional[str] = None,
    ) -> Conversation:
        with self._lock:
            now = _now_iso()
            conv = _Conversation(
                conversation_id=uuid.uuid4().hex,
                user_id=user_id,
                title=title or DEFAULT_CONVERSATION_TITLE,
                model=model,
                gem_id=None,
                created_at=now,
                updated_at=now,
            )
            self._conversations[conv.conversation_id] = conv
            self._messages[conv.conversation_id] = []
            return self._conversation_model(conv)

    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._owned(user_id, conversation_id)
            return self._conversation_model(conv) if conv else None

    async def set_auto_title(self, user_id: str, conversation_id: str, title: str) -> None:
        with self._lock:
            conv = self._owned(user_id, conversation_id)
            if not conv:
                raise KeyError("Conversation not found")
            conv.title = title
            conv.updated_at = _now_iso()

    async def set_conversation_gem(self, user_id: str, conversation_id: str, gem_id: Optional[str]) -> None:
        with self._lock:
            conv = self._owned(user_id, conversation_id)
            if not conv:
                raise KeyError("Conversation not found")
            conv.gem_id = gem_id

    async def save_gem(self, gem_id: str, instructions: str) -> None:
        with self._lock:
            self._gems[gem_id] = instructions

    async def get_gem_profile(self, user_id: str, conversation_id: str) -> GemProfile:
        with self._lock:
            conv = self._owned(user_id, conversation_id)
            gem_id = conv.gem_id if conv else None
            if not gem_id:
                return GemProfile()
            if gem_id not in self._gems:
                return GemProfile(gem_id=gem_id, error="Gem not found")
            return GemProfile(gem_id=gem_id, instructions=self._gems[gem_id])

    async def save_message(
        self,
        conversation_id: str,
        user_id: str,
        role: str,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        with self._lock:
            conv = self._owned(user_id, conversation_id)
            if not conv:
                raise KeyError("Conversation not found")
            now = _now_iso()
            msg = _Message(
                message_id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                user_id=user_id,
                role=role,
                content=content,
                created_at=now,
                meta=dict(meta) if meta else None,
            )
            self._messages.setdefault(conversation_id, []).append(msg)
            conv.updated_at = now
            return self._message_model(msg)

    async def get_recent_messages(self, conversation_id: str, limit: int = 100) -> List[ChatMessage]:
        with self._lock:
            if limit <= 0:
                return []
            rows = self._messages.get(conversation_id, [])
            return [self._message_model(m) for m in rows[-limit:]]

    async def delete_last_assistant_message(self, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            if not self._owned(user_id, conversation_id):
                return False
            rows = self._messages.get(conversation_id, [])
            for idx in range(len(rows) - 1, -1, -1):
                if rows[idx].role == "assistant":
                    del rows[idx]
                    return True
            return False

    async def delete_messages_including_and_after(self, user_id: str, conversation_id: str, message_id: str) -> int:
        with self._lock:
            if not self._owned(user_id, conversation_id):
                return 0
            rows = self._messages.get(conversation_id, [])
            for idx, row in enumerate(rows):
                if row.message_id == message_id:
                    removed = len(rows) - idx
                    del rows[idx:]
                    return removed
            return 0


_store: ChatStore | None = None


def get_chat_store() -> ChatStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("CHATSTREAM_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .chat_store_mongo import MongoChatStore

        _store = MongoChatStore()
        return _store
    _store = InMemoryChatStore()
    return _store


def reset_chat_store() -> None:
    global _store
    _store = None
