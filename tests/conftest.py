import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from tests.fakes import FakeRedis  # noqa: E402


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    from src.chatstream.infrastructure.attachment_store import reset_attachment_store
    from src.chatstream.infrastructure.chat_store import reset_chat_store
    from src.chatstream.infrastructure.context_buffer import reset_context_buffer

    monkeypatch.delenv("CONTEXT_BUFFER_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("STREAM_TIMEOUT_MS", raising=False)
    monkeypatch.delenv("CHATSTREAM_STORE_IMPL", raising=False)
    reset_chat_store()
    reset_context_buffer()
    reset_attachment_store()
    yield
    reset_chat_store()
    reset_context_buffer()
    reset_attachment_store()
