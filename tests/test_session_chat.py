from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from cortex.core.errors import (
    EmbeddingError,
    GenerationCancelled,
    GenerationError,
    InvalidInput,
    SessionClosed,
    Timeout,
)
from cortex.inference.stub_engine import StubEngine
from cortex.repos.message_repo import MessageRepo
from cortex.runtime import create_runtime
from cortex.state.types import Role, SessionStatus


class RecordingEngine(StubEngine):
    """Stub engine that keeps every context it was asked to continue."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.contexts: list[list[dict]] = []

    async def generate(self, context, params):
        self.contexts.append([dict(item) for item in context])
        async for piece in super().generate(context, params):
            yield piece


class ExplodingEngine(StubEngine):
    async def generate(self, context, params):
        raise ValueError("kaboom")
        yield ""  # pragma: no cover


async def wait_for_call(engine: StubEngine, name: str) -> None:
    while name not in engine.calls:
        await asyncio.sleep(0.01)


async def stored_messages(runtime, session_id: str):
    async with runtime.sessionmaker() as db:
        return await MessageRepo(db).list_messages(session_id)


@pytest.mark.anyio
async def test_chat_commits_user_and_assistant_messages(runtime, session):
    assert session.status is SessionStatus.UNINITIALIZED

    reply = await session.chat("What is the weather like?")

    assert reply.startswith('[Stub response for: "What is the weather like?"')
    assert [item.role for item in session.messages] == [Role.USER, Role.ASSISTANT]
    assert session.messages[1].content == reply
    assert session.status is SessionStatus.ACTIVE
    assert session.turns_since_checkpoint == 1
    stored = await stored_messages(runtime, session.id)
    assert [(item.role, item.content) for item in stored] == [
        (item.role, item.content) for item in session.messages
    ]


@pytest.mark.anyio
async def test_chat_context_includes_system_prompt_and_memory(settings):
    engine = RecordingEngine(embedding_dim=64)
    runtime = await create_runtime(settings, inference_engine=engine)
    try:
        session = await runtime.open_session("with-memory", system_prompt="You are terse.")
        assert session.messages[0].role is Role.SYSTEM
        await session.remember("The launch code is tangerine")

        await session.chat("What is the launch code?")

        context = engine.contexts[-1]
        assert context[0]["role"] == "system"
        assert "You are terse." in context[0]["content"]
        assert "The launch code is tangerine" in context[0]["content"]
        assert context[-1] == {"role": "user", "content": "What is the launch code?"}
    finally:
        await runtime.close()


@pytest.mark.anyio
async def test_cancelled_generation_commits_nothing(runtime, stub_engine, session):
    await session.chat("first turn")
    stub_engine.calls.clear()
    stub_engine.token_delay = 0.05

    task = asyncio.create_task(session.chat("please write a very long answer about everything"))
    await wait_for_call(stub_engine, "generate")
    await asyncio.sleep(0.06)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(session.messages) == 2
    assert len(await stored_messages(runtime, session.id)) == 2
    assert len(runtime.checkpoints.tree) == 0

    stub_engine.token_delay = 0.0
    await session.chat("still usable")
    assert len(session.messages) == 4


@pytest.mark.anyio
async def test_stream_chat_callback_can_stop_the_turn(runtime, session):
    pieces: list[str] = []

    def on_token(piece: str):
        pieces.append(piece)
        return len(pieces) < 2

    with pytest.raises(GenerationCancelled):
        await session.stream_chat("stream this please", on_token)

    assert len(pieces) == 2
    assert session.messages == ()
    assert session.status is SessionStatus.UNINITIALIZED

    streamed: list[str] = []
    reply = await session.stream_chat("stream this please", streamed.append)
    assert "".join(streamed) == reply


@pytest.mark.anyio
async def test_generation_deadline_raises_timeout(runtime, stub_engine, session):
    stub_engine.token_delay = 0.1
    runtime.options.generation_timeout = 0.05

    with pytest.raises(Timeout) as excinfo:
        await session.chat("too slow")

    assert excinfo.value.retryable
    assert session.messages == ()


@pytest.mark.anyio
async def test_engine_failures_leave_history_unchanged(settings, runtime, stub_engine, session):
    await session.chat("ok")
    stub_engine.fail_on = {"generate"}

    with pytest.raises(GenerationError):
        await session.chat("this fails")
    assert len(session.messages) == 2

    stub_engine.fail_on = set()
    await session.remember("a memory so search has to embed")
    stub_engine.fail_on = {"embed"}
    with pytest.raises(EmbeddingError):
        await session.chat("embedding fails now")
    assert len(session.messages) == 2
    assert len(await stored_messages(runtime, session.id)) == 2

    other = await create_runtime(settings, inference_engine=ExplodingEngine(embedding_dim=64))
    try:
        broken = await other.open_session("broken")
        with pytest.raises(GenerationError) as excinfo:
            await broken.chat("hello")
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert broken.messages == ()
    finally:
        await other.close()


@pytest.mark.anyio
async def test_empty_input_is_rejected(session):
    with pytest.raises(InvalidInput):
        await session.chat("   ")


@pytest.mark.anyio
async def test_auto_checkpoint_cadence(runtime, session):
    runtime.options.auto_checkpoint_every_n_turns = 2

    await session.chat("one")
    assert session.current_checkpoint_id is None
    assert session.turns_since_checkpoint == 1

    await session.chat("two")
    assert session.current_checkpoint_id is not None
    assert session.turns_since_checkpoint == 0
    checkpoint = runtime.checkpoints.tree.get(session.current_checkpoint_id)
    assert checkpoint.message_count == 4


@pytest.mark.anyio
async def test_failed_auto_checkpoint_keeps_turn_and_retries(runtime, stub_engine, session):
    runtime.options.auto_checkpoint_every_n_turns = 1
    stub_engine.fail_on = {"export"}

    reply = await session.chat("first")

    assert reply
    assert len(session.messages) == 2
    assert session.current_checkpoint_id is None
    assert session.turns_since_checkpoint == 1

    stub_engine.fail_on = set()
    await session.chat("second")
    assert session.current_checkpoint_id is not None
    assert runtime.checkpoints.tree.get(session.current_checkpoint_id).message_count == 4


@pytest.mark.anyio
async def test_closed_session_accepts_only_restore(runtime, session, tmp_path):
    runtime.options.memory_path = tmp_path / "memory.json"
    await session.chat("before close")
    checkpoint = await session.checkpoint()
    await session.remember("flush me on close")

    await session.close()

    assert session.status is SessionStatus.CLOSED
    assert (tmp_path / "memory.json").exists()
    with pytest.raises(SessionClosed):
        await session.chat("after close")
    with pytest.raises(SessionClosed):
        await session.checkpoint()

    await session.restore(checkpoint.id)
    assert session.status is SessionStatus.ACTIVE
    await session.chat("back again")
    assert len(session.messages) == 4


@pytest.mark.anyio
async def test_calls_on_one_session_are_serialized(runtime, stub_engine, session):
    stub_engine.token_delay = 0.01

    await asyncio.gather(session.chat("first question"), session.chat("second question"))

    roles = [item.role for item in session.messages]
    assert roles == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
    assert session.messages[0].content == "first question"
    assert "first question" in session.messages[1].content
    assert session.messages[2].content == "second question"
    assert stub_engine.peak_in_flight == 1


@pytest.mark.anyio
async def test_sessions_share_one_engine_one_call_at_a_time(runtime, stub_engine):
    stub_engine.token_delay = 0.01
    sessions = [await runtime.open_session(f"parallel-{index}") for index in range(3)]

    replies = await asyncio.gather(*(item.chat(f"hello {index}") for index, item in enumerate(sessions)))

    assert len(replies) == 3
    assert all(len(item.messages) == 2 for item in sessions)
    assert stub_engine.peak_in_flight == 1


@pytest.mark.anyio
async def test_runtime_reuses_handles_and_deletes_sessions(runtime, session):
    assert await runtime.open_session(session.id) is session
    await session.chat("to be deleted")
    await session.checkpoint()

    assert [row.id for row in await runtime.list_sessions()] == [session.id]
    assert await runtime.delete_session(session.id)

    assert await runtime.list_sessions() == []
    assert runtime.checkpoints.list_all(session.id) == []
    assert session.status is SessionStatus.CLOSED
    assert not await runtime.delete_session(session.id)


@pytest.mark.anyio
async def test_concurrent_opens_of_a_new_session_share_one_handle(runtime):
    first, second = await asyncio.gather(
        runtime.open_session("brand-new"), runtime.open_session("brand-new")
    )

    assert first is second
    assert [row.id for row in await runtime.list_sessions()] == ["brand-new"]


@pytest.mark.anyio
async def test_storage_failure_during_auto_checkpoint_keeps_turn(runtime, session, monkeypatch):
    runtime.options.auto_checkpoint_every_n_turns = 1

    async def failing_checkpoint(session_id, *, name=None):
        raise OperationalError("INSERT INTO checkpoints", {}, Exception("disk I/O error"))

    monkeypatch.setattr(runtime.checkpoints, "checkpoint", failing_checkpoint)

    reply = await session.chat("still committed")

    assert reply
    assert len(await stored_messages(runtime, session.id)) == 2
    assert session.current_checkpoint_id is None
    assert session.turns_since_checkpoint == 1


@pytest.mark.anyio
async def test_clear_keeps_system_prompt_and_detaches_from_checkpoints(settings):
    engine = StubEngine(embedding_dim=64)
    runtime = await create_runtime(settings, inference_engine=engine)
    try:
        session = await runtime.open_session("to-clear", system_prompt="Stay calm.")
        await session.chat("remember this turn")
        old = await session.checkpoint()
        await session.remember("long-term fact survives")
        assert engine.context_used > 0

        await session.clear()

        assert [(item.role, item.content) for item in session.messages] == [(Role.SYSTEM, "Stay calm.")]
        assert session.current_checkpoint_id is None
        assert engine.context_used == 0
        assert "clear" in engine.calls
        assert len(runtime.memory) == 1
        assert len(await stored_messages(runtime, session.id)) == 1

        fresh = await session.checkpoint()
        assert fresh.parent_id is None
        assert fresh.message_count == 1

        snapshot = await session.restore(old.id)
        assert len(snapshot.messages) == 3
    finally:
        await runtime.close()


@pytest.mark.anyio
async def test_set_system_replaces_the_prompt_and_starts_over(runtime, session):
    await session.chat("an old turn")

    await session.set_system("You answer in French.")

    assert [(item.role, item.content) for item in session.messages] == [
        (Role.SYSTEM, "You answer in French.")
    ]
    stored = await stored_messages(runtime, session.id)
    assert [item.content for item in stored] == ["You answer in French."]
    with pytest.raises(InvalidInput):
        await session.set_system("  ")

    await session.close()
    with pytest.raises(SessionClosed):
        await session.clear()
