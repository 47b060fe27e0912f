import json

import pytest

from src.chatstream.infrastructure.context_buffer import (
    CONTEXT_TTL_SECONDS,
    HARD_LIST_CAP,
    ContextBuffer,
    ContextBufferEntry,
    get_context_buffer,
)
from tests.fakes import FakeRedis


@pytest.mark.asyncio
async def test_append_then_read_returns_entry_verbatim(fake_redis):
    buf = ContextBuffer(fake_redis)
    entry = ContextBufferEntry(role="assistant", text="Xin chào!", continuation_tokens=["sig-1", "sig-2"])
    await buf.append("c1", entry)

    got = await buf.read("c1", 1)
    assert got == [entry]
    assert fake_redis.ttls["ctx:c1"] == CONTEXT_TTL_SECONDS


@pytest.mark.asyncio
async def test_length_never_exceeds_cap_and_keeps_newest(fake_redis):
    buf = ContextBuffer(fake_redis, cap=5)
    for i in range(12):
        await buf.append("c1", ContextBufferEntry(role="user", text=f"m{i}"))
        assert await buf.length("c1") <= 5

    tail = await buf.read("c1", 5)
    assert [e.text for e in tail] == ["m7", "m8", "m9", "m10", "m11"]
    # repeated reads inside the TTL window are stable
    assert await buf.read("c1", 5) == tail


@pytest.mark.asyncio
async def test_default_cap_is_hard_list_cap(fake_redis):
    buf = ContextBuffer(fake_redis)
    for i in range(HARD_LIST_CAP + 3):
        await buf.append("c1", ContextBufferEntry(role="user", text=str(i)))
    assert await buf.length("c1") == HARD_LIST_CAP


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(fake_redis):
    buf = ContextBuffer(fake_redis)
    fake_redis.lists["ctx:c1"] = [
        "not json",
        json.dumps({"role": "user"}),
        json.dumps(["list"]),
        json.dumps({"role": "user", "text": "ok"}),
        json.dumps({"role": "assistant", "text": "legacy", "thoughtSignatures": ["s"]}),
    ]
    got = await buf.read("c1", 10)
    assert [(e.role, e.text) for e in got] == [("user", "ok"), ("assistant", "legacy")]
    assert got[1].continuation_tokens == ["s"]


@pytest.mark.asyncio
async def test_trim_to_last_and_clear(fake_redis):
    buf = ContextBuffer(fake_redis)
    for i in range(6):
        await buf.append("c1", ContextBufferEntry(role="user", text=str(i)))
    await buf.set_summary("c1", "summary")

    overflow = await buf.overflow_for_summary("c1", keep_last=4)
    assert [e.text for e in overflow] == ["0", "1"]

    await buf.trim_to_last("c1", 2)
    assert [e.text for e in await buf.read("c1", 10)] == ["4", "5"]

    await buf.trim_to_last("c1", 0)
    assert await buf.length("c1") == 0
    assert await buf.get_summary("c1") == ""


@pytest.mark.asyncio
async def test_remove_last_if_role(fake_redis):
    buf = ContextBuffer(fake_redis)
    await buf.append("c1", ContextBufferEntry(role="user", text="q"))
    await buf.append("c1", ContextBufferEntry(role="assistant", text="a"))

    assert await buf.remove_last_if_role("c1", "user") is False
    assert await buf.remove_last_if_role("c1", "assistant") is True
    assert [e.role for e in await buf.read("c1")] == ["user"]


@pytest.mark.asyncio
async def test_append_pushes_trims_and_expires_in_one_transaction(fake_redis):
    buf = ContextBuffer(fake_redis, cap=2)
    for i in range(3):
        await buf.append("c1", ContextBufferEntry(role="user", text=str(i)))

    assert fake_redis.executed == [["rpush", "ltrim", "expire"]] * 3
    assert len(fake_redis.lists["ctx:c1"]) == 2


@pytest.mark.asyncio
async def test_failed_append_leaves_list_and_ttl_untouched(fake_redis):
    buf = ContextBuffer(fake_redis, cap=2)
    await buf.append("c1", ContextBufferEntry(role="user", text="a"))
    await buf.append("c1", ContextBufferEntry(role="user", text="b"))
    fake_redis.ttls["ctx:c1"] = 5

    fake_redis.fail = True
    await buf.append("c1", ContextBufferEntry(role="user", text="c"))
    fake_redis.fail = False

    assert fake_redis.ttls["ctx:c1"] == 5
    assert [e.text for e in await buf.read("c1")] == ["a", "b"]
    assert fake_redis.executed == [["rpush", "ltrim", "expire"]] * 2


@pytest.mark.asyncio
async def test_store_failures_are_absorbed():
    buf = ContextBuffer(FakeRedis(fail=True))
    await buf.append("c1", ContextBufferEntry(role="user", text="x"))
    assert await buf.read("c1") == []
    assert await buf.length("c1") == 0
    assert await buf.remove_last_if_role("c1", "user") is False
    assert await buf.get_summary("c1") == ""
    await buf.trim_to_last("c1", 3)
    await buf.clear("c1")
    await buf.set_summary("c1", "s")


@pytest.mark.asyncio
async def test_disabled_buffer_is_a_no_op():
    buf = ContextBuffer(None)
    assert buf.enabled is False
    await buf.append("c1", ContextBufferEntry(role="user", text="x"))
    assert await buf.read("c1") == []


def test_entry_json_omits_empty_tokens():
    assert json.loads(ContextBufferEntry(role="user", text="hi").to_json()) == {"role": "user", "text": "hi"}


def test_factory_without_url_is_disabled_singleton():
    first = get_context_buffer()
    assert first.enabled is False
    assert get_context_buffer() is first
