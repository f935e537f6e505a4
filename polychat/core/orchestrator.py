# polychat/core/orchestrator.py
"""
Stream orchestrator: one chat turn from validated input to a lazy event stream.

Pre-stream failures (bad input, unknown model, unknown conversation, missing
credentials) raise ChatError subclasses before any stream exists, so the API
layer can still answer with a status code. Once the stream is handed out,
failures are reported in-band as a terminal StreamError event.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from polychat.clients.registry import ProviderRegistry
from polychat.core.conversations import ConversationService
from polychat.core.errors import PersistenceError, UpstreamStreamError, ValidationError
from polychat.core.events import Done, StreamError, StreamEvent, fold_text
from polychat.core.tools import MAX_STEPS, ToolRegistry
from polychat.transcripts.models import ROLES
from polychat.transcripts.repository import TranscriptStore
from polychat.utils.logging import get_logger

logger = get_logger(__name__)


class TurnState(str, Enum):
    """
    Lifecycle of a turn. IDLE and VALIDATING cover handle_turn before a
    TurnStream exists; TurnStream.state starts at PROVIDER_RESOLVED.
    """
    IDLE = "idle"
    VALIDATING = "validating"
    PROVIDER_RESOLVED = "provider_resolved"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Turn:
    messages: List[Dict[str, Any]]
    model: str
    system_prompt: Optional[str] = None
    conversation_id: Optional[int] = None
    request_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------

def message_text(message: Dict[str, Any]) -> str:
    """
    Flatten one input message to plain text.

    Accepts either {"content": str} or {"parts": [...]}; only parts of
    type "text" contribute.
    """
    content = message.get("content")
    if isinstance(content, str):
        return content

    parts = message.get("parts")
    if parts is None:
        parts = content if isinstance(content, list) else None
    if not isinstance(parts, list):
        raise ValidationError("Each message needs string 'content' or a 'parts' list")

    chunks: List[str] = []
    for part in parts:
        if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
            chunks.append(part["text"])
    return "".join(chunks)


def normalize_messages(messages: Any) -> List[Dict[str, str]]:
    """
    Validate the incoming message list and return provider-ready
    [{"role", "content"}] dicts. The last message must be a non-empty user turn.
    """
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Messages are required")

    normalized: List[Dict[str, str]] = []
    for i, message in enumerate(messages):
        if not isinstance(message, dict):
            raise ValidationError(f"Message {i} must be an object")
        role = message.get("role")
        if role not in ROLES:
            raise ValidationError(f"Message {i} has invalid role {role!r}")
        normalized.append({"role": role, "content": message_text(message)})

    last = normalized[-1]
    if last["role"] != "user":
        raise ValidationError("Last message must be from the user")
    if not last["content"].strip():
        raise ValidationError("Last user message is empty")
    return normalized


# ---------------------------------------------------------------------------
# Turn stream
# ---------------------------------------------------------------------------

class TurnStream:
    """
    Single-pass async iterator over one turn's StreamEvents.

    Ends with exactly one terminal event: Done on success, StreamError when
    the upstream fails. Closing it early cancels the upstream stream and
    leaves the transcript without an assistant message.
    """

    def __init__(
        self,
        client: Any,
        model: str,
        messages: List[Dict[str, str]],
        tools: Optional[ToolRegistry],
        conversations: Optional[ConversationService],
        conversation_id: Optional[int],
        user_text: str,
        request_id: str,
    ) -> None:
        self.model = model
        self.conversation_id = conversation_id
        self.request_id = request_id
        self.state = TurnState.PROVIDER_RESOLVED
        self.text = ""
        self._client = client
        self._messages = messages
        self._tools = tools
        self._conversations = conversations
        self._user_text = user_text
        self._gen: Optional[AsyncIterator[StreamEvent]] = None

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self.state is TurnState.CANCELLED and self._gen is None:
            raise StopAsyncIteration
        if self._gen is None:
            self._gen = self._run()
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        if self._gen is not None:
            await self._gen.aclose()
        elif self.state is TurnState.PROVIDER_RESOLVED:
            self.state = TurnState.CANCELLED

    async def _run(self) -> AsyncIterator[StreamEvent]:
        self.state = TurnState.STREAMING
        t0 = time.monotonic()
        n_events = 0
        events = self._client.generate_text(self.model, self._messages, tools=self._tools, max_steps=MAX_STEPS)

        try:
            async for event in events:
                n_events += 1
                self.text = fold_text(self.text, event)
                yield event
        except UpstreamStreamError as e:
            self.state = TurnState.FAILED
            logger.error("[turn] request_id=%s FAILED model=%s code=%s events=%d err=%s",
                         self.request_id, self.model, e.code, n_events, e)
            yield StreamError(str(e))
            return
        except (asyncio.CancelledError, GeneratorExit):
            self.state = TurnState.CANCELLED
            logger.info("[turn] request_id=%s CANCELLED model=%s events=%d text_len=%d",
                        self.request_id, self.model, n_events, len(self.text))
            raise
        except Exception as e:
            self.state = TurnState.FAILED
            logger.exception("[turn] request_id=%s unexpected error model=%s: %s",
                             self.request_id, self.model, e)
            yield StreamError("Unexpected error while generating a response")
            return
        finally:
            await events.aclose()

        self.state = TurnState.COMPLETED
        latency_ms = int((time.monotonic() - t0) * 1000)
        logger.info("[turn] request_id=%s COMPLETED model=%s events=%d text_len=%d latency_ms=%d",
                    self.request_id, self.model, n_events, len(self.text), latency_ms)

        if self.conversation_id is not None and self._conversations is not None:
            await self._persist_reply()
        yield Done()

    async def _persist_reply(self) -> None:
        conv_id = self.conversation_id
        try:
            stored = await asyncio.to_thread(
                self._conversations.record_assistant_message, conv_id, self.text, self.model
            )
            if stored is not None:
                await asyncio.to_thread(
                    self._conversations.retitle_if_first_exchange, conv_id, self._user_text
                )
        except PersistenceError as e:
            logger.error("[turn] request_id=%s could not persist assistant message conversation_id=%s: %s",
                         self.request_id, conv_id, e)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class StreamOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        tools: Optional[ToolRegistry],
        store: TranscriptStore,
        conversations: Optional[ConversationService] = None,
    ) -> None:
        self.registry = registry
        self.tools = tools
        self.store = store
        self.conversations = conversations or ConversationService(store)

    async def handle_turn(self, turn: Turn) -> TurnStream:
        """
        Validate the turn, persist the user message and resolve the provider.
        Raises ChatError subclasses; returns a not-yet-started TurnStream.
        """
        request_id = turn.request_id or str(uuid.uuid4())
        messages = normalize_messages(turn.messages)
        if not isinstance(turn.model, str) or not turn.model.strip():
            raise ValidationError("Model is required")
        model = turn.model.strip()
        kind = self.registry.lookup(model)
        user_text = messages[-1]["content"]

        logger.info("[turn] request_id=%s model=%s provider=%s msg_count=%d conversation_id=%s",
                    request_id, model, kind.value, len(messages), turn.conversation_id)

        conv_id = turn.conversation_id
        if conv_id is not None:
            await asyncio.to_thread(self.conversations.require, conv_id)
            await asyncio.to_thread(self.conversations.record_user_message, conv_id, user_text, model)

        if turn.system_prompt:
            messages = [{"role": "system", "content": turn.system_prompt}] + messages

        client = self.registry.resolve(model)

        return TurnStream(
            client=client,
            model=model,
            messages=messages,
            tools=self.tools,
            conversations=self.conversations if conv_id is not None else None,
            conversation_id=conv_id,
            user_text=user_text,
            request_id=request_id,
        )
