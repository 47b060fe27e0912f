from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]
ThinkingLevel = Literal["off", "minimal", "low", "medium", "high"]

DEFAULT_CONVERSATION_TITLE = "New Chat"


class Turn(BaseModel):
    """One user or assistant message as sent to a backend."""

    role: Role
    text: str
    continuation_tokens: List[str] = Field(default_factory=list)

    def latest_continuation_token(self) -> Optional[str]:
        for token in reversed(self.continuation_tokens):
            if token:
                return token
        return None


class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    content: str = Field(min_length=1, max_length=100000)
    regenerate: bool = False
    truncate_message_id: Optional[str] = Field(default=None, alias="truncateMessageId")
    skip_save_user_message: bool = Field(default=False, alias="skipSaveUserMessage")
    thinking_level: Optional[ThinkingLevel] = Field(default=None, alias="thinkingLevel")
    model: Optional[str] = None


class Conversation(BaseModel):
    conversation_id: str
    user_id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    model: Optional[str] = None
    gem_id: Optional[str] = None
    created_at: str
    updated_at: str

    def is_untitled(self) -> bool:
        title = (self.title or "").strip()
        return title in (DEFAULT_CONVERSATION_TITLE, DEFAULT_CONVERSATION_TITLE.lower())

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.conversation_id,
            "title": self.title,
            "model": self.model,
            "gemId": self.gem_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class ChatMessage(BaseModel):
    message_id: str
    conversation_id: str
    user_id: str
    role: Role
    content: str
    created_at: str
    meta: Optional[Dict[str, Any]] = None


class AttachmentRow(BaseModel):
    id: str
    mime_type: str = ""
    filename: str = "file"
    expires_at: Optional[datetime] = None


class GemProfile(BaseModel):
    """Instruction profile applied to a conversation."""

    gem_id: Optional[str] = None
    instructions: str = ""
    error: str = ""
