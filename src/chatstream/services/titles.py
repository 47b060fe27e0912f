"""Default title collaborators for new or untitled conversations.

Both are plain async callables so the orchestrator can be handed model-backed
replacements without changing its flow.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from ..domain.chat_models import DEFAULT_CONVERSATION_TITLE, Turn

MAX_TITLE_WORDS = 6

_PUNCT = re.compile(r"[\"'.,!?`]")
_SPACES = re.compile(r"\s+")


def normalize_title(raw: Optional[str]) -> str:
    """First line, punctuation stripped, at most six title-cased words."""

    if raw is None:
        return DEFAULT_CONVERSATION_TITLE
    text = str(raw).split("\n")[0]
    text = _PUNCT.sub("", text)
    text = _SPACES.sub(" ", text).strip()
    words = [w for w in text.split(" ") if w][:MAX_TITLE_WORDS]
    if not words:
        return DEFAULT_CONVERSATION_TITLE
    return " ".join(w[0].upper() + w[1:] for w in words)


def _title_from_message(text: str) -> str:
    short = " ".join(str(text or "").split()[:MAX_TITLE_WORDS])
    return normalize_title(short)


async def generate_optimistic_title(text: str) -> Optional[str]:
    if not (text or "").strip():
        return None
    return _title_from_message(text)


async def generate_final_title(turns: Sequence[Turn]) -> Optional[str]:
    for turn in turns:
        if turn.role == "user" and turn.text.strip():
            title = _title_from_message(turn.text)
            return title if title != DEFAULT_CONVERSATION_TITLE else None
    return None
