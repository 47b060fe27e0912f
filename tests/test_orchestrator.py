import json

import pytest

from src.chatstream.domain.chat_models import DEFAULT_CONVERSATION_TITLE, Turn
from src.chatstream.infrastructure.chat_store import InMemoryChatStore
from src.chatstream.infrastructure.context_buffer import ContextBuffer
from src.chatstream.services.orchestrator import (
    SAFETY_APOLOGY,
    ChatTurnPlan,
    StreamOrchestrator,
    TurnState,
    extract_sources,
    extract_url_context,
)
from src.chatstream.services.providers.base import StreamRequest
from src.chatstream.services.streaming import EventEmitter
from src.chatstream.services.web_search import WebSearchConfig
from tests.fakes import ScriptedAdapter


async def _events(emitter):
    out = []
    async for frame in emitter.frames():
        head, data = frame.rstrip("\n").split("\n", 1)
        out.append((head[len("event: ") :], json.loads(data[len("data: ") :])))
    return out


def _metas(events):
    return [payload["type"] for kind, payload in events if kind == "meta"]


async def _fixed_title(_):
    return "Fixed Title"


async def _setup(tmp_store=None, created=True, titles=True):
    store = tmp_store or InMemoryChatStore()
    conv = await store.create_conversation("u1")
    plan = ChatTurnPlan(
        user_id="u1",
        conversation_id=conv.conversation_id,
        content="what is up",
        request=StreamRequest(model="gemini-2.5-flash", turns=[Turn(role="user", text="what is up")]),
        web_search=WebSearchConfig(enabled=True, available=True, cookie="1"),
        gem={"gemId": None, "hasSystemInstruction": False, "systemInstructionChars": 0, "error": ""},
        model={"model": "gemini-2.5-flash", "isDefault": True},
        created_conversation=conv if created else None,
        should_generate_title=titles,
        timeout_ms=1000,
    )
    return store, plan


def _orchestrator(adapter, store, buffer=None):
    emitter = EventEmitter()
    orch = StreamOrchestrator(
        adapter, emitter, store=store, buffer=buffer, optimistic_title=_fixed_title, final_title=_fixed_title
    )
    return orch, emitter


@pytest.mark.asyncio
async def test_happy_path_event_order_and_persistence(fake_redis):
    store, plan = await _setup()
    buffer = ContextBuffer(fake_redis)
    adapter = ScriptedAdapter(
        [
            {
                "tokens": ["Hello", " there"],
                "finish_reason": "STOP",
                "continuation": ["sig"],
                "usage": {"prompt_tokens": 3, "output_tokens": 2, "total_tokens": 5},
            }
        ]
    )
    orch, emitter = _orchestrator(adapter, store, buffer)

    ok = await orch.run(plan)
    events = await _events(emitter)

    assert ok is True
    assert orch.state is TurnState.DONE
    metas = _metas(events)
    assert metas[:4] == ["conversationCreated", "webSearch", "gem", "model"]
    assert metas.index("optimisticTitle") < metas.index("finalTitle") < metas.index("usageMetadata")
    assert events[-2] == (
        "meta",
        {"type": "usageMetadata", "promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5},
    )
    assert events[-1] == ("done", {"ok": True})
    assert "".join(p["t"] for k, p in events if k == "token") == "Hello there"

    saved = await store.get_recent_messages(plan.conversation_id)
    assert saved[-1].role == "assistant"
    assert saved[-1].content == "Hello there"
    assert saved[-1].meta["continuationTokens"] == ["sig"]
    buffered = await buffer.read(plan.conversation_id)
    assert buffered[-1].text == "Hello there"
    assert buffered[-1].continuation_tokens == ["sig"]

    conv = await store.get_conversation("u1", plan.conversation_id)
    assert conv.title == "Fixed Title"


@pytest.mark.asyncio
async def test_safety_block_sends_apology_and_skips_final_title():
    store, plan = await _setup()
    adapter = ScriptedAdapter([{"tokens": [], "finish_reason": "SAFETY", "safety_ratings": [{"category": "HARM"}]}])
    orch, emitter = _orchestrator(adapter, store)

    assert await orch.run(plan) is True
    events = await _events(emitter)

    safety = next(p for k, p in events if k == "meta" and p["type"] == "safety")
    assert safety == {
        "type": "safety",
        "blocked": True,
        "blockReason": "",
        "finishReason": "SAFETY",
        "safetyRatings": [{"category": "HARM"}],
    }
    assert ("token", {"t": SAFETY_APOLOGY}) in events
    assert "finalTitle" not in _metas(events)
    saved = await store.get_recent_messages(plan.conversation_id)
    assert saved[-1].content == SAFETY_APOLOGY


@pytest.mark.asyncio
async def test_prompt_block_reason_alone_counts_as_safety_block():
    store, plan = await _setup()
    orch, emitter = _orchestrator(ScriptedAdapter([{"tokens": [], "block_reason": "PROHIBITED_CONTENT"}]), store)

    assert await orch.run(plan) is True
    events = await _events(emitter)

    safety = next(p for k, p in events if k == "meta" and p["type"] == "safety")
    assert safety["blocked"] is True
    assert safety["blockReason"] == "PROHIBITED_CONTENT"
    assert safety["finishReason"] == ""
    assert [p["t"] for k, p in events if k == "token"] == [SAFETY_APOLOGY]
    assert "finalTitle" not in _metas(events)
    assert events[-1] == ("done", {"ok": True})


@pytest.mark.asyncio
async def test_failing_title_generators_never_block_the_reply():
    async def broken(_):
        raise RuntimeError("title backend down")

    store, plan = await _setup()
    emitter = EventEmitter()
    orch = StreamOrchestrator(
        ScriptedAdapter([{"tokens": ["fine"]}]), emitter, store=store, optimistic_title=broken, final_title=broken
    )

    assert await orch.run(plan) is True
    events = await _events(emitter)

    metas = _metas(events)
    assert "optimisticTitle" not in metas
    assert "finalTitle" not in metas
    assert events[-1] == ("done", {"ok": True})
    saved = await store.get_recent_messages(plan.conversation_id)
    assert saved[-1].content == "fine"
    conv = await store.get_conversation("u1", plan.conversation_id)
    assert conv.title == DEFAULT_CONVERSATION_TITLE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "history",
    [[], [Turn(role="assistant", text="earlier")], [Turn(role="user", text="what is up")]],
)
async def test_final_title_sees_current_user_turn_once(history):
    seen = []

    async def capture(turns):
        seen.append([(t.role, t.text) for t in turns])
        return "Captured"

    store, plan = await _setup()
    plan.history = list(history)
    emitter = EventEmitter()
    orch = StreamOrchestrator(
        ScriptedAdapter([{"tokens": ["answer"]}]), emitter, store=store, optimistic_title=_fixed_title, final_title=capture
    )

    await orch.run(plan)

    turns = seen[0]
    assert turns[-2:] == [("user", "what is up"), ("assistant", "answer")]
    assert turns.count(("user", "what is up")) == 1


@pytest.mark.asyncio
async def test_sources_and_url_context_are_emitted():
    store, plan = await _setup(titles=False)
    chunks = [{"web": {"uri": f"https://s{i % 7}.test", "title": "" if i == 0 else f"S{i}"}} for i in range(12)]
    adapter = ScriptedAdapter(
        [
            {
                "tokens": ["x"],
                "grounding": {"groundingChunks": chunks},
                "url_context": {"urlMetadata": [{"retrievedUrl": "https://u.test", "urlRetrievalStatus": "OK"}]},
            }
        ]
    )
    orch, emitter = _orchestrator(adapter, store)

    await orch.run(plan)
    events = await _events(emitter)

    sources = next(p for k, p in events if k == "meta" and p["type"] == "sources")["sources"]
    assert len(sources) == 5
    assert sources[0] == {"uri": "https://s0.test", "title": "https://s0.test"}
    assert len({s["uri"] for s in sources}) == 5
    url_ctx = next(p for k, p in events if k == "meta" and p["type"] == "urlContext")
    assert url_ctx["urls"] == [{"retrievedUrl": "https://u.test", "status": "OK"}]
    assert "optimisticTitle" not in _metas(events)


@pytest.mark.asyncio
async def test_generation_error_ends_with_done_false_and_persists_nothing():
    store, plan = await _setup(titles=False)
    adapter = ScriptedAdapter([RuntimeError("backend exploded")])
    orch, emitter = _orchestrator(adapter, store)

    assert await orch.run(plan) is False
    events = await _events(emitter)

    assert orch.state is TurnState.ERROR
    assert events[-2][0] == "error"
    assert events[-1] == ("done", {"ok": False})
    assert await store.get_recent_messages(plan.conversation_id) == []


@pytest.mark.asyncio
async def test_disconnect_still_persists_the_turn():
    store, plan = await _setup(created=False, titles=False)
    adapter = ScriptedAdapter([{"tokens": ["kept"]}])
    orch, emitter = _orchestrator(adapter, store)
    emitter.close()

    assert await orch.run(plan) is True
    assert await _events(emitter) == []
    saved = await store.get_recent_messages(plan.conversation_id)
    assert [m.content for m in saved] == ["kept"]


@pytest.mark.asyncio
async def test_persist_failure_is_logged_not_raised():
    class Broken(InMemoryChatStore):
        async def save_message(self, *args, **kwargs):
            raise RuntimeError("db down")

    store, plan = await _setup(Broken(), titles=False)
    orch, emitter = _orchestrator(ScriptedAdapter([{"tokens": ["hi"]}]), store)

    assert await orch.run(plan) is True
    assert (await _events(emitter))[-1] == ("done", {"ok": True})


def test_extractors_tolerate_missing_metadata():
    assert extract_sources(None) == []
    assert extract_sources({"groundingChunks": [{"retrievedContext": {}}]}) == []
    assert extract_url_context({"url_metadata": [{"retrieved_url": "a", "url_retrieval_status": "ERR"}]}) == [
        {"retrievedUrl": "a", "status": "ERR"}
    ]
