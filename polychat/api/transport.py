# polychat/api/transport.py
"""
Server-Sent Events framing for turn streams.

Two framings are supported:

- plain : text-only frames `{"content": ...}`, tool events dropped,
          `[DONE]` at the end (or `{"error": ...}` as the terminal frame).
- ui    : typed UI-message frames (text-delta, tool-<name> parts with a state,
          finish / error), followed by `[DONE]` on success.

Also holds the client-side helpers that turn an SSE line stream back into
message parts, used by the terminal client and the tests.
"""

import json
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional

from polychat.core.events import Done, StreamError, StreamEvent, TextDelta, ToolCallResult, ToolCallStart
from polychat.core.tools import TOOL_DISPLAY_NAMES

DONE_SENTINEL = "[DONE]"


class StreamProtocol(str, Enum):
    PLAIN = "plain"
    UI = "ui"

    @property
    def header_value(self) -> str:
        return "plain" if self is StreamProtocol.PLAIN else "ui-message"


def sse_frame(payload: Any) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, default=str)
    return f"data: {data}\n\n"


def response_headers(protocol: StreamProtocol) -> Dict[str, str]:
    return {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
        "X-Chat-Stream-Protocol": protocol.header_value,
    }


# ---------------------------------------------------------------------------
# Encoders
# ---------------------------------------------------------------------------

def encode_plain(event: StreamEvent) -> List[str]:
    if isinstance(event, TextDelta):
        return [sse_frame({"content": event.text})]
    if isinstance(event, Done):
        return [sse_frame(DONE_SENTINEL)]
    if isinstance(event, StreamError):
        return [sse_frame({"error": event.message})]
    # tool events have no plain representation
    return []


def _tool_part(event: Any, state: str) -> Dict[str, Any]:
    return {
        "type": f"tool-{event.name}",
        "toolCallId": event.tool_call_id,
        "title": TOOL_DISPLAY_NAMES.get(event.name, event.name),
        "state": state,
    }


def encode_ui(event: StreamEvent) -> List[str]:
    if isinstance(event, TextDelta):
        return [sse_frame({"type": "text-delta", "delta": event.text})]
    if isinstance(event, ToolCallStart):
        part = _tool_part(event, "input-streaming")
        part["input"] = event.input
        return [sse_frame(part)]
    if isinstance(event, ToolCallResult):
        if event.failed:
            part = _tool_part(event, "output-error")
            part["errorText"] = event.error
        else:
            part = _tool_part(event, "output-available")
            part["output"] = event.output
        return [sse_frame(part)]
    if isinstance(event, Done):
        return [sse_frame({"type": "finish"}), sse_frame(DONE_SENTINEL)]
    if isinstance(event, StreamError):
        return [sse_frame({"type": "error", "errorText": event.message})]
    return []


async def encode_stream(events: AsyncIterable[StreamEvent], protocol: StreamProtocol) -> AsyncIterator[str]:
    """
    Encode events as they arrive. Stops after the first terminal event and
    always closes the event source, including when the consumer goes away.
    """
    encode = encode_plain if protocol is StreamProtocol.PLAIN else encode_ui
    async with aclosing(events) as source:
        async for event in source:
            for frame in encode(event):
                yield frame
            if isinstance(event, (Done, StreamError)):
                break


# ---------------------------------------------------------------------------
# Client-side decoding
# ---------------------------------------------------------------------------

def iter_sse_payloads(lines: Iterable[str]) -> Iterator[Any]:
    """
    Yield decoded `data:` payloads from raw SSE lines. JSON payloads are
    parsed; anything else (e.g. `[DONE]`) is yielded as a string.
    """
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data:
            continue
        if data == DONE_SENTINEL:
            yield data
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            yield data


def assemble_parts(frames: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    Rebuild ordered message parts from decoded frames of either framing.

    Consecutive text deltas merge into one text part; a tool part is updated
    in place as its state advances.
    """
    parts: List[Dict[str, Any]] = []
    tool_index: Dict[str, int] = {}

    def _append_text(text: str) -> None:
        if parts and parts[-1]["type"] == "text":
            parts[-1]["text"] += text
        else:
            parts.append({"type": "text", "text": text})

    for frame in frames:
        if not isinstance(frame, dict):
            continue
        if "content" in frame and "type" not in frame:
            _append_text(frame["content"])
            continue

        ftype: Optional[str] = frame.get("type")
        if ftype == "text-delta":
            _append_text(frame.get("delta", ""))
        elif ftype and ftype.startswith("tool-"):
            call_id = frame.get("toolCallId")
            if call_id in tool_index:
                parts[tool_index[call_id]].update(frame)
            else:
                tool_index[call_id] = len(parts)
                parts.append(dict(frame))
    return parts
