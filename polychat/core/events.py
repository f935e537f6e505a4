# polychat/core/events.py
"""
Stream events produced by provider clients and consumed by the orchestrator.

Events are transient: they are forwarded to the transport encoder and folded
into the assistant text accumulator, never persisted as such.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    tool_call_id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    tool_call_id: str
    name: str
    output: Any = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamError:
    """Terminal event for a turn whose upstream failed after the stream opened."""

    message: str


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallResult, Done, StreamError]


def fold_text(accumulated: str, event: StreamEvent) -> str:
    """Fold one event into the assistant text. Only text deltas contribute."""
    if isinstance(event, TextDelta):
        return accumulated + event.text
    return accumulated
