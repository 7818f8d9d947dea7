from __future__ import annotations

import asyncio

import pytest

from agent_sidecar.stream_session import CLOSED_MESSAGE, SessionState, StreamSession
from tests.utils import PAUSE, FakeEngine, assistant, for_request, kinds, make_config, make_writer, wait_until


def make_session(engine: FakeEngine, out, **kwargs) -> StreamSession:
    return StreamSession("s1", make_config(prompt="start", systemPrompt="sys"), engine, out, **kwargs)


@pytest.mark.asyncio
async def test_start_sends_composed_initial_prompt() -> None:
    raw, out = make_writer()
    engine = FakeEngine()
    session = make_session(engine, out)

    await session.start("r1")

    assert engine.conversations[0].sent == ["sys\n\nstart"]
    assert kinds(raw.lines()) == [
        "system:init_start",
        "system:sdk_ready",
        "agent_event",
        "response:echo: sys\n\nstart:False",
        "agent_event",
        "response::True",
        "request_complete",
    ]
    assert session.state is SessionState.OPEN
    assert engine.conversations[0].options.resumable is True


@pytest.mark.asyncio
async def test_follow_up_turns_reuse_conversation() -> None:
    raw, out = make_writer()
    engine = FakeEngine()
    session = make_session(engine, out)

    await session.start("r1")
    await session.send_turn("r2", "second")

    assert len(engine.conversations) == 1
    assert engine.conversations[0].sent == ["sys\n\nstart", "second"]
    r2 = for_request(raw.lines(), "r2")
    assert kinds(r2)[0] == "system:init_start"
    assert "response:echo: second:False" in kinds(r2)
    assert kinds(r2)[-1] == "request_complete"


@pytest.mark.asyncio
async def test_turns_never_interleave() -> None:
    raw, out = make_writer()
    engine = FakeEngine(lambda text: [assistant(f"{text}-a"), assistant(f"{text}-b"), {"type": "result"}])
    session = make_session(engine, out)

    await asyncio.gather(
        session.start("r1"),
        session.send_turn("r2", "two"),
        session.send_turn("r3", "three"),
    )

    ids = [line["requestId"] for line in raw.lines()]
    first_index = {rid: ids.index(rid) for rid in ("r1", "r2", "r3")}
    last_index = {rid: len(ids) - 1 - ids[::-1].index(rid) for rid in ("r1", "r2", "r3")}
    assert last_index["r1"] < first_index["r2"]
    assert last_index["r2"] < first_index["r3"]
    for rid in ("r1", "r2", "r3"):
        assert kinds(for_request(raw.lines(), rid))[-1] == "request_complete"
    assert engine.conversations[0].sent == ["sys\n\nstart", "two", "three"]


@pytest.mark.asyncio
async def test_failed_turn_does_not_poison_later_turns() -> None:
    def script(text: str) -> list[object]:
        if text == "bad":
            return [RuntimeError("turn exploded")]
        return [assistant(f"ok {text}"), {"type": "result"}]

    raw, out = make_writer()
    session = make_session(FakeEngine(script), out)

    await session.start("r1")
    await session.send_turn("r2", "bad")
    await session.send_turn("r3", "good")

    assert kinds(for_request(raw.lines(), "r2"))[-3:] == ["error:turn exploded", "response::True", "request_complete"]
    assert "response:ok good:False" in kinds(for_request(raw.lines(), "r3"))


@pytest.mark.asyncio
async def test_failed_open_is_retried_on_next_turn() -> None:
    raw, out = make_writer()
    engine = FakeEngine(create_error=RuntimeError("no engine"))
    session = make_session(engine, out)

    await session.start("r1")
    engine.create_error = None
    await session.send_turn("r2", "again")

    assert "error:no engine" in kinds(for_request(raw.lines(), "r1"))
    assert "response:echo: again:False" in kinds(for_request(raw.lines(), "r2"))
    assert len(engine.conversations) == 1


@pytest.mark.asyncio
async def test_resume_uses_engine_conversation_id() -> None:
    raw, out = make_writer()
    engine = FakeEngine()
    engine.known_ids.add("conv-old")
    session = make_session(engine, out, resume_id="conv-old")

    await session.start("r1")

    assert engine.resumed == ["conv-old"]
    assert session.conversation is not None
    assert session.conversation.conversation_id == "conv-old"


@pytest.mark.asyncio
async def test_unknown_resume_id_fails_the_turn() -> None:
    raw, out = make_writer()
    session = make_session(FakeEngine(), out, resume_id="missing")

    await session.start("r1")

    assert kinds(raw.lines()) == [
        "system:init_start",
        "error:no conversation found for 'missing'",
        "response::True",
        "request_complete",
    ]


@pytest.mark.asyncio
async def test_close_fails_queued_turns_fast() -> None:
    raw, out = make_writer()
    engine = FakeEngine(lambda text: [assistant("working"), PAUSE, {"type": "result"}])
    session = make_session(engine, out)

    first = asyncio.create_task(session.start("r1"))
    await wait_until(lambda: "response:working:False" in kinds(raw.lines()))
    assert session.state is SessionState.TURN_ACTIVE
    queued = asyncio.create_task(session.send_turn("r2", "later"))
    await wait_until(lambda: session.pending_turns == 1)

    session.close()
    session.close()
    await asyncio.gather(first, queued)

    assert engine.conversations[0].closed
    assert session.state is SessionState.CLOSED
    assert kinds(for_request(raw.lines(), "r1"))[-2:] == ["response::True", "request_complete"]
    assert kinds(for_request(raw.lines(), "r2")) == [f"error:{CLOSED_MESSAGE}", "request_complete"]
    assert engine.started == ["sys\n\nstart"]


@pytest.mark.asyncio
async def test_turn_after_close_is_rejected() -> None:
    raw, out = make_writer()
    engine = FakeEngine()
    session = make_session(engine, out)

    session.close()
    await session.send_turn("r1", "hello?")

    assert kinds(raw.lines()) == [f"error:{CLOSED_MESSAGE}", "request_complete"]
    assert engine.conversations == []
