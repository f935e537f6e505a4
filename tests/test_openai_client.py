"""Unit tests for the OpenAI-compatible streaming client and its tool step loop."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from polychat.clients.openai_client import OpenAICompatibleClient, _classify_openai_error
from polychat.core.errors import UpstreamStreamError
from polychat.core.events import TextDelta, ToolCallResult, ToolCallStart
from polychat.core.tools import Tool, ToolRegistry


class FakeStream:
    """Async-iterable stand-in for the SDK's AsyncStream."""

    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def close(self):
        self.closed = True


def text_chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text, tool_calls=None))])


def tool_chunk(index, call_id=None, name=None, arguments=None):
    tc = SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[tc]))])


def make_client(*streams):
    sdk = MagicMock()
    sdk.chat.completions.create = AsyncMock(side_effect=list(streams))
    return OpenAICompatibleClient(provider="OpenAI", api_key="k", client=sdk), sdk


async def collect(agen):
    return [event async for event in agen]


@pytest.fixture
def lookup_tools():
    async def lookup(args):
        return {"answer": args["q"].upper()}

    registry = ToolRegistry()
    registry.register(Tool("lookup", "Look something up", {
        "type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"],
    }, lookup))
    return registry


class TestTextStreaming:
    """Plain text generations."""

    @pytest.mark.asyncio
    async def test_yields_deltas_in_order(self) -> None:
        stream = FakeStream([text_chunk("Hel"), text_chunk("lo"), text_chunk(None)])
        client, sdk = make_client(stream)

        events = await collect(client.generate_text("gpt-4.1-mini", [{"role": "user", "content": "hi"}]))

        assert events == [TextDelta("Hel"), TextDelta("lo")]
        assert stream.closed
        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_error_before_stream_is_upstream_error(self) -> None:
        sdk = MagicMock()
        sdk.chat.completions.create = AsyncMock(side_effect=OpenAIError("connection refused"))
        client = OpenAICompatibleClient(provider="LM Studio", api_key="lm-studio", client=sdk)

        with pytest.raises(UpstreamStreamError) as exc:
            await collect(client.generate_text("m", [{"role": "user", "content": "hi"}]))
        assert "LM Studio" in str(exc.value)

    @pytest.mark.asyncio
    async def test_error_mid_stream_after_deltas(self) -> None:
        stream = FakeStream([text_chunk("partial")], error=OpenAIError("stream reset"))
        client, _ = make_client(stream)
        seen = []

        with pytest.raises(UpstreamStreamError):
            async for event in client.generate_text("m", [{"role": "user", "content": "hi"}]):
                seen.append(event)

        assert seen == [TextDelta("partial")]
        assert stream.closed


class TestToolLoop:
    """Tool calls run between generation steps."""

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, lookup_tools) -> None:
        step1 = FakeStream([
            tool_chunk(0, call_id="call_a", name="lookup", arguments='{"q": '),
            tool_chunk(0, arguments='"paris"}'),
        ])
        step2 = FakeStream([text_chunk("It is PARIS.")])
        client, sdk = make_client(step1, step2)

        events = await collect(client.generate_text("m", [{"role": "user", "content": "q"}], tools=lookup_tools))

        assert events == [
            ToolCallStart("call_a", "lookup", {"q": "paris"}),
            ToolCallResult("call_a", "lookup", output={"answer": "PARIS"}),
            TextDelta("It is PARIS."),
        ]
        second_messages = sdk.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert second_messages[-2]["tool_calls"][0]["function"]["arguments"] == '{"q": "paris"}'
        assert second_messages[-1] == {
            "role": "tool",
            "tool_call_id": "call_a",
            "content": json.dumps({"answer": "PARIS"}),
        }

    @pytest.mark.asyncio
    async def test_failing_tool_is_reported_and_loop_continues(self, lookup_tools) -> None:
        step1 = FakeStream([tool_chunk(0, call_id="call_b", name="missing", arguments="{}")])
        step2 = FakeStream([text_chunk("Sorry.")])
        client, sdk = make_client(step1, step2)

        events = await collect(client.generate_text("m", [{"role": "user", "content": "q"}], tools=lookup_tools))

        assert isinstance(events[1], ToolCallResult) and events[1].failed
        assert events[-1] == TextDelta("Sorry.")
        tool_message = sdk.chat.completions.create.call_args_list[1].kwargs["messages"][-1]
        assert "error" in json.loads(tool_message["content"])

    @pytest.mark.asyncio
    async def test_step_cap(self, lookup_tools) -> None:
        """A model that keeps calling tools is stopped after max_steps calls."""
        streams = [
            FakeStream([tool_chunk(0, call_id=f"c{i}", name="lookup", arguments='{"q": "x"}')])
            for i in range(3)
        ]
        client, sdk = make_client(*streams)

        events = await collect(client.generate_text("m", [{"role": "user", "content": "q"}],
                                                    tools=lookup_tools, max_steps=3))

        assert sdk.chat.completions.create.await_count == 3
        assert sum(isinstance(e, ToolCallStart) for e in events) == 3


class TestErrorClassification:
    def test_rate_limit(self) -> None:
        err = OpenAIError("Rate limit reached")
        assert _classify_openai_error(err) == "upstream_rate_limit"

    def test_unknown(self) -> None:
        assert _classify_openai_error(OpenAIError("weird")) == "upstream_unknown"
