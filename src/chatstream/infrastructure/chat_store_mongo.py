from __future__ import annotations

from datetime import UTC, datetime
import logging
import os
from typing import Any, Dict, List, Optional
import uuid

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection

from ..domain.chat_models import DEFAULT_CONVERSATION_TITLE, ChatMessage, Conversation, GemProfile
from .chat_store import InMemoryChatStore


logger = logging.getLogger("chatstream.store")


class MongoChatStore:
    """Motor-backed store; degrades to the in-memory store when Mongo is unreachable."""

    def __init__(self, client: Optional[AsyncIOMotorClient] = None, db_name: Optional[str] = None) -> None:
        self._fallback = InMemoryChatStore()
        self._client = client
        self._db_name = db_name or os.getenv("MONGO_DB", "chatstream")
        self._conversations: AsyncIOMotorCollection | None = None
        self._messages: AsyncIOMotorCollection | None = None
        self._gems: AsyncIOMotorCollection | None = None
        self._checked = False

    async def _ready(self) -> bool:
        if self._checked:
            return self._conversations is not None
        self._checked = True
        try:
            if self._client is None:
                mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
                self._client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500)
            await self._client.server_info()
            db = self._client[self._db_name]
            self._conversations = db["conversations"]
            self._messages = db["messages"]
            self._gems = db["gems"]
            await self._conversations.create_index("conversation_id", unique=True)
            await self._conversations.create_index("user_id")
            await self._messages.create_index("conversation_id")
            await self._messages.create_index("created_at")
            await self._gems.create_index("gem_id", unique=True)
        except Exception as exc:
            logger.warning("mongo_unavailable_using_memory", extra={"err": str(exc)})
            self._conversations = None
            self._messages = None
            self._gems = None
        return self._conversations is not None

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _to_conversation(self, doc: Dict[str, Any]) -> Conversation:
        data = dict(doc)
        return Conversation(
            conversation_id=str(data.get("conversation_id")),
            user_id=str(data.get("user_id", "")),
            title=str(data.get("title") or DEFAULT_CONVERSATION_TITLE),
            model=data.get("model"),
            gem_id=data.get("gem_id"),
            created_at=str(data.get("created_at", self._now_iso())),
            updated_at=str(data.get("updated_at", self._now_iso())),
        )

    def _to_message(self, doc: Dict[str, Any]) -> ChatMessage:
        data = dict(doc)
        return ChatMessage(
            message_id=str(data.get("message_id")),
            conversation_id=str(data.get("conversation_id")),
            user_id=str(data.get("user_id", "")),
            role="user" if data.get("role") == "user" else "assistant",
            content=str(data.get("content", "")),
            created_at=str(data.get("created_at", self._now_iso())),
            meta=data.get("meta") or None,
        )

    async def create_conversation(
        self,
        user_id: str,
        title: str = DEFAULT_CONVERSATION_TITLE,
        model: Optional[str] = None,
    ) -> Conversation:
        if not await self._ready():
            return await self._fallback.create_conversation(user_id, title=title, model=model)
        now = self._now_iso()
        doc = {
            "conversation_id": uuid.uuid4().hex,
            "user_id": user_id,
            "title": title or DEFAULT_CONVERSATION_TITLE,
            "model": model,
            "gem_id": None,
            "created_at": now,
            "updated_at": now,
        }
        await self._conversations.insert_one(dict(doc))  # type: ignore[union-attr]
        return self._to_conversation(doc)

    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        if not await self._ready():
            return await self._fallback.get_conversation(user_id, conversation_id)
        doc = await self._conversations.find_one({"conversation_id": conversation_id, "user_id": user_id})  # type: ignore[union-attr]
        return self._to_conversation(doc) if doc else None

    async def set_auto_title(self, user_id: str, conversation_id: str, title: str) -> None:
        if not await self._ready():
            return await self._fallback.set_auto_title(user_id, conversation_id, title)
        result = await self._conversations.update_one(  # type: ignore[union-attr]
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$set": {"title": title, "updated_at": self._now_iso()}},
        )
        if not result.matched_count:
            raise KeyError("Conversation not found")

    async def set_conversation_gem(self, user_id: str, conversation_id: str, gem_id: Optional[str]) -> None:
        if not await self._ready():
            return await self._fallback.set_conversation_gem(user_id, conversation_id, gem_id)
        result = await self._conversations.update_one(  # type: ignore[union-attr]
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$set": {"gem_id": gem_id}},
        )
        if not result.matched_count:
            raise KeyError("Conversation not found")

    async def save_gem(self, gem_id: str, instructions: str) -> None:
        if not await self._ready():
            return await self._fallback.save_gem(gem_id, instructions)
        await self._gems.update_one(  # type: ignore[union-attr]
            {"gem_id": gem_id}, {"$set": {"gem_id": gem_id, "instructions": instructions}}, upsert=True
        )

    async def get_gem_profile(self, user_id: str, conversation_id: str) -> GemProfile:
        if not await self._ready():
            return await self._fallback.get_gem_profile(user_id, conversation_id)
        conv = await self.get_conversation(user_id, conversation_id)
        if conv is None or not conv.gem_id:
            return GemProfile()
        doc = await self._gems.find_one({"gem_id": conv.gem_id})  # type: ignore[union-attr]
        if not doc:
            return GemProfile(gem_id=conv.gem_id, error="Gem not found")
        return GemProfile(gem_id=conv.gem_id, instructions=str(doc.get("instructions") or ""))

    async def save_message(
        self,
        conversation_id: str,
        user_id: str,
        role: str,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        if not await self._ready():
            return await self._fallback.save_message(conversation_id, user_id, role, content, meta=meta)
        if await self.get_conversation(user_id, conversation_id) is None:
            raise KeyError("Conversation not found")
        now = self._now_iso()
        doc = {
            "message_id": uuid.uuid4().hex,
            "conversation_id": conversation_id,
            "user_id": user_id,
            "role": role,
            "content": content,
            "created_at": now,
            "meta": dict(meta) if meta else None,
        }
        await self._messages.insert_one(dict(doc))  # type: ignore[union-attr]
        await self._conversations.update_one(  # type: ignore[union-attr]
            {"conversation_id": conversation_id}, {"$set": {"updated_at": now}}
        )
        return self._to_message(doc)

    async def get_recent_messages(self, conversation_id: str, limit: int = 100) -> List[ChatMessage]:
        if not await self._ready():
            return await self._fallback.get_recent_messages(conversation_id, limit)
        if limit <= 0:
            return []
        cursor = self._messages.find({"conversation_id": conversation_id}).sort("created_at", -1).limit(limit)  # type: ignore[union-attr]
        docs = await cursor.to_list(length=limit)
        return [self._to_message(doc) for doc in reversed(docs)]

    async def delete_last_assistant_message(self, user_id: str, conversation_id: str) -> bool:
        if not await self._ready():
            return await self._fallback.delete_last_assistant_message(user_id, conversation_id)
        doc = await self._messages.find_one(  # type: ignore[union-attr]
            {"conversation_id": conversation_id, "user_id": user_id, "role": "assistant"},
            sort=[("created_at", -1)],
        )
        if not doc:
            return False
        await self._messages.delete_one({"message_id": doc["message_id"]})  # type: ignore[union-attr]
        return True

    async def delete_messages_including_and_after(self, user_id: str, conversation_id: str, message_id: str) -> int:
        if not await self._ready():
            return await self._fallback.delete_messages_including_and_after(user_id, conversation_id, message_id)
        anchor = await self._messages.find_one(  # type: ignore[union-attr]
            {"conversation_id": conversation_id, "user_id": user_id, "message_id": message_id}
        )
        if not anchor:
            return 0
        result = await self._messages.delete_many(  # type: ignore[union-attr]
            {"conversation_id": conversation_id, "created_at": {"$gte": anchor["created_at"]}}
        )
        return int(result.deleted_count)
