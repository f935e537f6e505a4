# polychat/core/errors.py
"""
Error taxonomy for a chat turn.

Errors raised before a stream opens carry the HTTP status the API layer
reports. Errors after the stream opens never reach the client as a status
code; the orchestrator turns them into an in-band terminal frame.
"""


class ChatError(RuntimeError):
    """Base class for turn failures that map to an HTTP status."""

    status_code = 500


class ValidationError(ChatError):
    """Malformed turn input (missing/empty message list, bad roles)."""

    status_code = 400


class UnknownModelError(ChatError):
    """Model id is not in the configured model table."""

    status_code = 400

    def __init__(self, model: str) -> None:
        super().__init__(f"Unknown model: {model!r}")
        self.model = model


class ConversationNotFoundError(ChatError):
    status_code = 404

    def __init__(self, conversation_id: int) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class ConfigurationError(ChatError):
    """Resolved provider lacks required credentials or endpoint config."""

    status_code = 500


class UpstreamStreamError(ChatError):
    """Provider failed while generating."""

    status_code = 502

    def __init__(self, message: str, code: str = "upstream_unknown") -> None:
        super().__init__(message)
        self.code = code


class ToolExecutionError(RuntimeError):
    """A tool could not produce a result. Reported in-band, never fatal to a turn."""


class PersistenceError(RuntimeError):
    """Transcript store write failed."""
