# polychat/api/server.py
"""
FastAPI server for polychat:

- /chat                         : streamed chat turn (SSE), any configured provider
- /conversations                : list / create conversations
- /conversations/{id}           : read / rename / delete one conversation
- /conversations/{id}/messages  : bulk append messages (client-side first exchange)
- /models                       : selectable models with provider + configured flag
- /health                       : basic health check

Errors raised before a stream opens are answered as JSON with a status code.
Once the first frame is sent, failures travel in-band as a terminal frame.
"""

import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, constr

from polychat.api.transport import StreamProtocol, encode_stream, response_headers
from polychat.clients.registry import ProviderRegistry
from polychat.config.settings import Settings, load_settings
from polychat.core.errors import ChatError
from polychat.core.events import StreamError, StreamEvent
from polychat.core.orchestrator import StreamOrchestrator, Turn, TurnStream
from polychat.core.tools import ToolRegistry, build_default_tools
from polychat.transcripts.models import DEFAULT_TITLE, ROLES
from polychat.transcripts.repository import TranscriptStore
from polychat.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Models (Chat)
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    """
    Input contract for /chat.

    messages       : full message history, [{role, content}] or [{role, parts}]
    model          : model id from /models (server default when omitted)
    systemPrompt   : optional system prompt, prepended for this turn only
    conversationId : optional conversation to persist the exchange into
    """
    model_config = ConfigDict(populate_by_name=True)

    messages: List[Dict[str, Any]] = Field(..., description="Chat history, last message from the user.")
    model: Optional[str] = Field(default=None, description="Model id, e.g. 'gpt-4.1-mini'.")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")


# ---------------------------------------------------------------------------
# Models (Conversations)
# ---------------------------------------------------------------------------

class ConversationCreateRequest(BaseModel):
    title: str = DEFAULT_TITLE
    model: Optional[str] = None


class ConversationUpdateRequest(BaseModel):
    title: Optional[str] = None
    model: Optional[str] = None


class MessageIn(BaseModel):
    role: constr(pattern=f"^({'|'.join(ROLES)})$")
    content: str


class MessagesAppendRequest(BaseModel):
    messages: List[MessageIn] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store(request: Request) -> TranscriptStore:
    return request.app.state.store


def _require_conversation(request: Request, conversation_id: int):
    conv = _store(request).get_conversation(conversation_id)
    if conv is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


async def _replay(first: StreamEvent, stream: TurnStream):
    """Re-emit the primed first event, then the rest of the turn."""
    try:
        yield first
        async for event in stream:
            yield event
    finally:
        await stream.aclose()


# ---------------------------------------------------------------------------
# Chat endpoint
# ---------------------------------------------------------------------------

@router.post("/chat")
async def chat(req: ChatRequest, request: Request):
    """
    Run one chat turn and stream it back as Server-Sent Events.
    """
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    app_state = request.app.state
    model = req.model or app_state.settings.default_model
    logger.info("[chat] request_id=%s model=%s msg_count=%d conversation_id=%s",
                request_id, model, len(req.messages), req.conversation_id)

    try:
        protocol = StreamProtocol(app_state.settings.stream_protocol)
    except ValueError:
        logger.error("[chat] request_id=%s unknown stream protocol %r", request_id, app_state.settings.stream_protocol)
        raise HTTPException(status_code=500, detail="Server stream protocol is misconfigured.")

    turn = Turn(
        messages=req.messages,
        model=model,
        system_prompt=req.system_prompt,
        conversation_id=req.conversation_id,
        request_id=request_id,
    )
    try:
        stream = await app_state.orchestrator.handle_turn(turn)
    except ChatError as e:
        logger.error("[chat] %s request_id=%s status=%d error=%s",
                     e.__class__.__name__, request_id, e.status_code, e)
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.exception("[chat] Unexpected error request_id=%s error=%s", request_id, e)
        raise HTTPException(status_code=500, detail="Unexpected error in chat.")

    # Prime the first event so an upstream that fails immediately still gets a status code
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        raise HTTPException(status_code=500, detail="Chat stream ended without a response.")
    if isinstance(first, StreamError):
        await stream.aclose()
        logger.error("[chat] request_id=%s upstream failed before first event: %s", request_id, first.message)
        raise HTTPException(status_code=500, detail=first.message)

    latency_ms = int((time.monotonic() - start_time) * 1000)
    logger.info("[chat] request_id=%s streaming protocol=%s first_event_ms=%d",
                request_id, protocol.value, latency_ms)

    return StreamingResponse(
        encode_stream(_replay(first, stream), protocol),
        media_type="text/event-stream",
        headers=response_headers(protocol),
    )


# ---------------------------------------------------------------------------
# Conversation endpoints
# ---------------------------------------------------------------------------

@router.get("/conversations")
def list_conversations(request: Request) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in _store(request).list_conversations()]


@router.post("/conversations")
def create_conversation(req: ConversationCreateRequest, request: Request) -> Dict[str, Any]:
    conv = _store(request).create_conversation(title=req.title.strip() or DEFAULT_TITLE, model=req.model)
    logger.info("[conversations] created id=%s model=%s", conv.id, conv.model)
    return conv.to_dict()


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: int, request: Request) -> Dict[str, Any]:
    """
    Conversation metadata plus its messages in insertion order.
    """
    conv = _require_conversation(request, conversation_id)
    messages = _store(request).get_messages(conversation_id)
    return {**conv.to_dict(), "messages": [m.to_dict() for m in messages]}


@router.put("/conversations/{conversation_id}")
def update_conversation(conversation_id: int, req: ConversationUpdateRequest, request: Request) -> Dict[str, Any]:
    title = (req.title or "").strip() or None
    if title is None and not req.model:
        raise HTTPException(status_code=400, detail="Title or model is required")

    conv = _store(request).update_conversation(conversation_id, title=title, model=req.model or None)
    if conv is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv.to_dict()


@router.delete("/conversations/{conversation_id}")
def delete_conversation(conversation_id: int, request: Request) -> Dict[str, bool]:
    if not _store(request).delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    logger.info("[conversations] deleted id=%s", conversation_id)
    return {"success": True}


@router.post("/conversations/{conversation_id}/messages")
def append_messages(conversation_id: int, req: MessagesAppendRequest, request: Request) -> List[Dict[str, Any]]:
    """
    Append messages in order. Used by clients that create the conversation
    only after the first exchange has streamed.
    """
    _require_conversation(request, conversation_id)
    stored = _store(request).append_messages(conversation_id, [(m.role, m.content) for m in req.messages])
    return [m.to_dict() for m in stored]


# ---------------------------------------------------------------------------
# Models / health
# ---------------------------------------------------------------------------

@router.get("/models")
def list_models(request: Request) -> List[Dict[str, Any]]:
    registry: ProviderRegistry = request.app.state.registry
    return [
        {
            "value": m.value,
            "label": m.label,
            "provider": m.provider.value,
            "configured": registry.is_configured(m.provider),
        }
        for m in registry.models()
    ]


@router.get("/health")
def health_check(request: Request) -> dict:
    """
    Very simple health check endpoint.
    """
    settings: Settings = request.app.state.settings
    return {"status": "ok", "protocol": settings.stream_protocol, "default_model": settings.default_model}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("[request] invalid body path=%s errors=%d", request.url.path, len(exc.errors()))
    return JSONResponse(status_code=400, content={"detail": "Invalid request body", "errors": jsonable_encoder(exc.errors())})


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[TranscriptStore] = None,
    registry: Optional[ProviderRegistry] = None,
    tools: Optional[ToolRegistry] = None,
) -> FastAPI:
    settings = settings or load_settings()
    if store is None:
        store = TranscriptStore(settings.db_path)
    store.initialize()
    registry = registry or ProviderRegistry(settings)
    tools = tools if tools is not None else build_default_tools(settings)

    app = FastAPI(
        title="polychat API",
        description="Multi-provider streaming chat with a local transcript store.",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.tools = tools
    app.state.orchestrator = StreamOrchestrator(registry, tools, store)

    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)

    logger.info("polychat app ready: db=%s protocol=%s models=%d tools=%s",
                settings.db_path, settings.stream_protocol, len(registry.models()), tools.names())
    return app
