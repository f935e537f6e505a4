"""Unit tests for the stream orchestrator: validation, persistence and terminal states."""

import pytest

from polychat.clients.registry import ProviderKind
from polychat.core.errors import (
    ConfigurationError,
    ConversationNotFoundError,
    PersistenceError,
    UnknownModelError,
    UpstreamStreamError,
    ValidationError,
)
from polychat.core.events import Done, StreamError, TextDelta, ToolCallResult, ToolCallStart
from polychat.core.orchestrator import StreamOrchestrator, Turn, TurnState, message_text, normalize_messages
from polychat.core.tools import MAX_STEPS

from tests.fakes import FakeClient


def user(text):
    return {"role": "user", "content": text}


@pytest.fixture
def orchestrator(registry, tools, store):
    return StreamOrchestrator(registry, tools, store)


async def drain(stream):
    return [event async for event in stream]


class TestNormalizeMessages:
    """Input validation."""

    def test_parts_flatten_to_text(self) -> None:
        message = {"role": "user", "parts": [
            {"type": "text", "text": "Hello "},
            {"type": "tool-webSearch", "output": {}},
            {"type": "text", "text": "world"},
        ]}
        assert message_text(message) == "Hello world"

    @pytest.mark.parametrize("messages", [None, [], "hi", [{"role": "robot", "content": "x"}]])
    def test_malformed_rejected(self, messages) -> None:
        with pytest.raises(ValidationError):
            normalize_messages(messages)

    def test_last_message_must_be_user(self) -> None:
        with pytest.raises(ValidationError):
            normalize_messages([user("q"), {"role": "assistant", "content": "a"}])

    def test_empty_last_user_message(self) -> None:
        with pytest.raises(ValidationError):
            normalize_messages([user("  ")])


class TestPreStream:
    """Failures that happen before a stream exists."""

    @pytest.mark.asyncio
    async def test_unknown_model_writes_nothing(self, orchestrator, store) -> None:
        conv = store.create_conversation()

        with pytest.raises(UnknownModelError):
            await orchestrator.handle_turn(Turn(messages=[user("hi")], model="nope", conversation_id=conv.id))

        assert store.get_messages(conv.id) == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, orchestrator) -> None:
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4.1-mini", conversation_id=99))

    @pytest.mark.asyncio
    async def test_missing_credentials_keeps_user_message(self, registry, tools, store) -> None:
        registry.settings.google_api_key = None
        orchestrator = StreamOrchestrator(registry, tools, store)
        conv = store.create_conversation()

        with pytest.raises(ConfigurationError):
            await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gemini-2.5-flash",
                                                conversation_id=conv.id))

        assert [m.role for m in store.get_messages(conv.id)] == ["user"]

    @pytest.mark.asyncio
    async def test_user_message_persisted_before_streaming(self, orchestrator, store) -> None:
        conv = store.create_conversation()

        stream = await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4o-mini",
                                                     conversation_id=conv.id))

        assert stream.state is TurnState.PROVIDER_RESOLVED
        assert [m.content for m in store.get_messages(conv.id)] == ["hi"]
        assert store.get_conversation(conv.id).model == "gpt-4o-mini"


class TestStreaming:
    """Event forwarding and the terminal states."""

    @pytest.mark.asyncio
    async def test_completed_turn_persists_and_retitles(self, orchestrator, store, client_factory) -> None:
        client_factory.script(ProviderKind.ANTHROPIC, FakeClient([TextDelta("Bonjour"), TextDelta(" !")]))
        conv = store.create_conversation()

        stream = await orchestrator.handle_turn(Turn(
            messages=[user("Say hello in French please")],
            model="claude-4.5-sonnet",
            system_prompt="Be brief.",
            conversation_id=conv.id,
        ))
        events = await drain(stream)

        assert events == [TextDelta("Bonjour"), TextDelta(" !"), Done()]
        assert stream.state is TurnState.COMPLETED
        assert stream.text == "Bonjour !"
        stored = store.get_messages(conv.id)
        assert [(m.role, m.content) for m in stored] == [
            ("user", "Say hello in French please"),
            ("assistant", "Bonjour !"),
        ]
        assert store.get_conversation(conv.id).title == "Say hello in French please"

    @pytest.mark.asyncio
    async def test_system_prompt_prepended_and_step_cap_passed(self, orchestrator, client_factory) -> None:
        fake = client_factory.script(ProviderKind.OPENAI, FakeClient([TextDelta("ok")]))

        stream = await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4.1-mini",
                                                     system_prompt="You are terse."))
        await drain(stream)

        call = fake.calls[0]
        assert call["messages"][0] == {"role": "system", "content": "You are terse."}
        assert call["messages"][-1] == {"role": "user", "content": "hi"}
        assert call["max_steps"] == MAX_STEPS

    @pytest.mark.asyncio
    async def test_tool_events_forwarded_not_folded(self, orchestrator, client_factory) -> None:
        client_factory.script(ProviderKind.OPENAI, FakeClient([
            ToolCallStart("c1", "webSearch", {"query": "news"}),
            ToolCallResult("c1", "webSearch", output={"text": "headline"}),
            TextDelta("Here is the news."),
        ]))

        stream = await orchestrator.handle_turn(Turn(messages=[user("news?")], model="gpt-4.1-mini"))
        events = await drain(stream)

        assert [type(e) for e in events] == [ToolCallStart, ToolCallResult, TextDelta, Done]
        assert stream.text == "Here is the news."

    @pytest.mark.asyncio
    async def test_empty_reply_not_persisted(self, orchestrator, store, client_factory) -> None:
        client_factory.script(ProviderKind.OPENAI, FakeClient([]))
        conv = store.create_conversation()

        stream = await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4.1-mini",
                                                     conversation_id=conv.id))
        events = await drain(stream)

        assert events == [Done()]
        assert [m.role for m in store.get_messages(conv.id)] == ["user"]
        assert store.get_conversation(conv.id).title == "New Chat"

    @pytest.mark.asyncio
    async def test_upstream_failure_is_in_band(self, orchestrator, store, client_factory) -> None:
        client_factory.script(ProviderKind.OPENAI, FakeClient(
            [TextDelta("par")], error=UpstreamStreamError("OpenAI request failed: reset"),
        ))
        conv = store.create_conversation()

        stream = await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4.1-mini",
                                                     conversation_id=conv.id))
        events = await drain(stream)

        assert events == [TextDelta("par"), StreamError("OpenAI request failed: reset")]
        assert stream.state is TurnState.FAILED
        assert [m.role for m in store.get_messages(conv.id)] == ["user"]

    @pytest.mark.asyncio
    async def test_cancelled_turn_closes_upstream(self, orchestrator, store, client_factory) -> None:
        fake = client_factory.script(ProviderKind.OPENAI, FakeClient([TextDelta("a"), TextDelta("b")]))
        conv = store.create_conversation()

        stream = await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4.1-mini",
                                                     conversation_id=conv.id))
        first = await stream.__anext__()
        await stream.aclose()

        assert first == TextDelta("a")
        assert stream.state is TurnState.CANCELLED
        assert fake.closed
        assert [m.role for m in store.get_messages(conv.id)] == ["user"]

    @pytest.mark.asyncio
    async def test_retry_does_not_duplicate_user_message(self, orchestrator, store, client_factory) -> None:
        client_factory.script(ProviderKind.OPENAI, FakeClient([]))
        conv = store.create_conversation()
        turn = Turn(messages=[user("hi")], model="gpt-4.1-mini", conversation_id=conv.id)

        await drain(await orchestrator.handle_turn(turn))
        await drain(await orchestrator.handle_turn(turn))

        assert [m.role for m in store.get_messages(conv.id)] == ["user"]

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_stream(self, orchestrator, store, client_factory,
                                                            monkeypatch) -> None:
        client_factory.script(ProviderKind.OPENAI, FakeClient([TextDelta("answer")]))
        conv = store.create_conversation()
        stream = await orchestrator.handle_turn(Turn(messages=[user("hi")], model="gpt-4.1-mini",
                                                     conversation_id=conv.id))

        def broken(*args, **kwargs):
            raise PersistenceError("disk full")

        monkeypatch.setattr(store, "append_message", broken)
        events = await drain(stream)

        assert events == [TextDelta("answer"), Done()]
        assert stream.state is TurnState.COMPLETED
