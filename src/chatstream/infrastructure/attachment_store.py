from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol
import uuid

from ..domain.chat_models import AttachmentRow


class AttachmentStore(Protocol):
    async def list_attachments(self, user_id: str, conversation_id: str) -> List[AttachmentRow]: ...

    async def download_attachment_bytes(self, user_id: str, attachment_id: str) -> bytes: ...


@dataclass
class _Stored:
    row: AttachmentRow
    user_id: str
    conversation_id: str
    data: bytes


class InMemoryAttachmentStore:
    def __init__(self) -> None:
        self._items: Dict[str, _Stored] = {}
        self._order: List[str] = []
        self._lock = RLock()

    def add_attachment(
        self,
        user_id: str,
        conversation_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
        expires_at: Optional[datetime] = None,
    ) -> AttachmentRow:
        with self._lock:
            row = AttachmentRow(id=uuid.uuid4().hex, mime_type=mime_type, filename=filename or "file", expires_at=expires_at)
            self._items[row.id] = _Stored(row=row, user_id=user_id, conversation_id=conversation_id, data=bytes(data))
            self._order.append(row.id)
            return row

    async def list_attachments(self, user_id: str, conversation_id: str) -> List[AttachmentRow]:
        with self._lock:
            return [
                self._items[aid].row.model_copy()
                for aid in self._order
                if self._items[aid].user_id == user_id and self._items[aid].conversation_id == conversation_id
            ]

    async def download_attachment_bytes(self, user_id: str, attachment_id: str) -> bytes:
        with self._lock:
            item = self._items.get(attachment_id)
            if item is None or item.user_id != user_id:
                raise KeyError("Attachment not found")
            return item.data


_store: AttachmentStore | None = None


def get_attachment_store() -> AttachmentStore:
    global _store
    if _store is None:
        _store = InMemoryAttachmentStore()
    return _store


def reset_attachment_store() -> None:
    global _store
    _store = None
