import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from src.chatstream.api.main import app
from src.chatstream.api.routers.chat import get_adapter_factory
from src.chatstream.infrastructure.chat_store import InMemoryChatStore, get_chat_store
from src.chatstream.infrastructure.context_buffer import ContextBuffer, get_context_buffer
from src.chatstream.security.auth import JwtConfig, User, create_access_token
from src.chatstream.services.model_registry import AdapterKind
from src.chatstream.services.providers.base import ProviderConfigError
from tests.fakes import FakeRedis, ScriptedAdapter


def _parse_sse(text):
    events = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        head, data = block.split("\n", 1)
        events.append((head[len("event: ") :], json.loads(data[len("data: ") :])))
    return events


def _meta(events, type_):
    return next(p for k, p in events if k == "meta" and p["type"] == type_)


@pytest.fixture
def harness(monkeypatch):
    monkeypatch.setenv("CHATSTREAM_PUBLIC_MODE", "true")
    monkeypatch.setenv("WEB_SEARCH_ENABLED", "true")
    monkeypatch.setenv("GEMINI_SAFETY_SETTINGS_JSON", '[{"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"}]')
    store = InMemoryChatStore()
    buffer = ContextBuffer(FakeRedis())
    adapters = []
    models = []

    def factory(model):
        models.append(model)
        return adapters.pop(0)

    app.dependency_overrides[get_chat_store] = lambda: store
    app.dependency_overrides[get_context_buffer] = lambda: buffer
    app.dependency_overrides[get_adapter_factory] = lambda: factory
    yield TestClient(app), store, buffer, adapters, models
    app.dependency_overrides.clear()


def test_new_conversation_streams_meta_tokens_and_done(harness):
    client, store, _, adapters, models = harness
    adapter = ScriptedAdapter([{"tokens": ["Hi", " you"], "finish_reason": "STOP"}])
    adapters.append(adapter)
    client.cookies.set("webSearch", "1")

    r = client.post("/chat/stream", json={"content": "hello world"})

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-store, no-transform"
    events = _parse_sse(r.text)
    metas = [p["type"] for k, p in events if k == "meta"]
    assert metas[:4] == ["conversationCreated", "webSearch", "gem", "model"]
    assert "optimisticTitle" in metas and "finalTitle" in metas
    assert events[-1] == ("done", {"ok": True})
    assert "".join(p["t"] for k, p in events if k == "token") == "Hi you"

    assert _meta(events, "webSearch") == {"type": "webSearch", "enabled": True, "available": True, "cookie": "1"}
    assert _meta(events, "model") == {"type": "model", "model": "gemini-2.5-flash", "isDefault": True}
    assert _meta(events, "gem")["hasSystemInstruction"] is False
    assert models == ["gemini-2.5-flash"]

    request = adapter.requests[0]
    assert request.turns[-1].text == "hello world"
    assert request.tools == [{"googleSearch": {}}]
    assert request.safety_settings[0]["threshold"] == "BLOCK_NONE"
    assert "[CHART GENERATION PROTOCOL]" in request.system_prompt
    assert request.reasoning_level is None

    created = _meta(events, "conversationCreated")["conversation"]
    saved = asyncio.run(store.get_recent_messages(created["id"]))
    assert [(m.role, m.content) for m in saved] == [("user", "hello world"), ("assistant", "Hi you")]


def test_tools_and_safety_only_reach_gemini(harness):
    client, _, _, adapters, _ = harness
    adapter = ScriptedAdapter([{"tokens": ["x"]}], kind=AdapterKind.OPENAI_COMPAT)
    adapters.append(adapter)

    client.post("/chat/stream", json={"content": "q", "model": "llama-3.1-8b-instant", "thinkingLevel": "high"})

    request = adapter.requests[0]
    assert request.tools == []
    assert request.safety_settings == []
    # llama has no reasoning control
    assert request.reasoning_level is None


def test_thinking_level_is_forwarded_for_reasoning_models(harness):
    client, _, _, adapters, _ = harness
    adapter = ScriptedAdapter([{"tokens": ["x"]}])
    adapters.append(adapter)

    events = _parse_sse(
        client.post("/chat/stream", json={"content": "q", "model": "gemini-3-pro", "thinkingLevel": "high"}).text
    )

    assert adapter.requests[0].model == "gemini-3-pro-preview"
    assert adapter.requests[0].reasoning_level == "high"
    assert _meta(events, "model") == {"type": "model", "model": "gemini-3-pro-preview", "isDefault": False}


def test_validation_error_is_400(harness):
    client = harness[0]
    r = client.post("/chat/stream", json={"content": ""})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["message"].startswith("Validation error: content")

    r = client.post("/chat/stream", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_missing_provider_key_is_config_error(harness):
    client = harness[0]

    def failing(model):
        raise ProviderConfigError("anthropic API key is not configured")

    app.dependency_overrides[get_adapter_factory] = lambda: failing
    r = client.post("/chat/stream", json={"content": "hi", "model": "claude-haiku-4.5"})
    assert r.status_code == 500
    assert r.json() == {"message": "anthropic API key is not configured", "code": "CONFIG_ERROR"}


def test_regenerate_replaces_last_assistant_turn(harness):
    client, store, buffer, adapters, _ = harness
    adapters.append(ScriptedAdapter([{"tokens": ["first answer"]}]))
    r = client.post("/chat/stream", json={"content": "tell me"})
    conv_id = _meta(_parse_sse(r.text), "conversationCreated")["conversation"]["id"]

    adapters.append(ScriptedAdapter([{"tokens": ["second answer"]}]))
    r = client.post(
        "/chat/stream",
        json={"conversationId": conv_id, "content": "tell me", "regenerate": True, "skipSaveUserMessage": True},
    )
    metas = [p["type"] for k, p in _parse_sse(r.text) if k == "meta"]
    assert "conversationCreated" not in metas
    assert "finalTitle" not in metas

    saved = asyncio.run(store.get_recent_messages(conv_id))
    assert [(m.role, m.content) for m in saved] == [("user", "tell me"), ("assistant", "second answer")]
    buffered = asyncio.run(buffer.read(conv_id))
    assert [e.text for e in buffered] == ["tell me", "second answer"]


def test_truncate_drops_edited_message_and_everything_after(harness):
    client, store, _, adapters, _ = harness
    adapters.append(ScriptedAdapter([{"tokens": ["a1"]}]))
    r = client.post("/chat/stream", json={"content": "q1"})
    conv_id = _meta(_parse_sse(r.text), "conversationCreated")["conversation"]["id"]
    first_user = asyncio.run(store.get_recent_messages(conv_id))[0]

    adapters.append(ScriptedAdapter([{"tokens": ["a2"]}]))
    client.post(
        "/chat/stream", json={"conversationId": conv_id, "content": "q1 edited", "truncateMessageId": first_user.message_id}
    )

    saved = asyncio.run(store.get_recent_messages(conv_id))
    assert [m.content for m in saved] == ["q1 edited", "a2"]


def test_generation_error_surfaces_as_error_event(harness):
    client, _, _, adapters, _ = harness
    adapters.append(ScriptedAdapter([RuntimeError("upstream 503"), RuntimeError("still 503")]))

    events = _parse_sse(client.post("/chat/stream", json={"content": "q"}).text)

    assert "error" in [k for k, _ in events]
    assert events[-1] == ("done", {"ok": False})


def test_auth_required_outside_public_mode(monkeypatch):
    monkeypatch.setenv("CHATSTREAM_PUBLIC_MODE", "false")
    client = TestClient(app)
    assert client.post("/chat/stream", json={"content": "hi"}).status_code == 401


def test_bearer_token_identifies_user(harness, monkeypatch):
    client, store, _, adapters, _ = harness
    monkeypatch.setenv("CHATSTREAM_PUBLIC_MODE", "false")
    monkeypatch.setenv("JWT_SECRET", "route-secret")
    token = create_access_token(User(id="alice", name="Alice"), JwtConfig(secret="route-secret"))
    adapters.append(ScriptedAdapter([{"tokens": ["ok"]}]))

    r = client.post("/api/chat/stream", json={"content": "hi"}, headers={"Authorization": f"Bearer {token}"})

    conv = _meta(_parse_sse(r.text), "conversationCreated")["conversation"]
    assert asyncio.run(store.get_conversation("alice", conv["id"])) is not None
