# polychat/core/conversations.py
"""
Conversation bookkeeping around a chat turn.

Thin layer over TranscriptStore that owns the turn-level rules: user message
dedupe on retry, assistant message only when text was produced, and the
first-exchange retitle.
"""

from typing import Optional

from polychat.core.errors import ConversationNotFoundError
from polychat.transcripts.models import Conversation, Message
from polychat.transcripts.repository import TranscriptStore
from polychat.utils.logging import get_logger

logger = get_logger(__name__)

TITLE_MAX_CHARS = 50


def initial_title(text: str) -> str:
    """Conversation title derived from the first user message."""
    title = (text or "").strip()[:TITLE_MAX_CHARS]
    return title or "New Chat"


class ConversationService:
    def __init__(self, store: TranscriptStore) -> None:
        self.store = store

    def require(self, conversation_id: int) -> Conversation:
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

    def record_user_message(self, conversation_id: int, content: str, model: Optional[str] = None) -> Optional[Message]:
        """
        Append the turn's user message unless it is already the newest stored
        message (a retried turn). Returns the new message, or None when skipped.
        """
        stored = self.store.append_user_message_once(conversation_id, content, model=model)
        if stored is None:
            logger.info("Conversation %s: user message already stored; not appending again", conversation_id)
        return stored

    def record_assistant_message(self, conversation_id: int, content: str, model: Optional[str] = None) -> Optional[Message]:
        if not content:
            logger.info("Conversation %s: empty assistant reply; nothing persisted", conversation_id)
            return None
        return self.store.append_message(conversation_id, "assistant", content, model=model)

    def is_first_exchange(self, conversation_id: int) -> bool:
        counts = self.store.count_messages(conversation_id)
        return counts.get("user", 0) == 1 and counts.get("assistant", 0) == 1 and len(counts) == 2

    def retitle_if_first_exchange(self, conversation_id: int, user_text: str) -> bool:
        if not self.is_first_exchange(conversation_id):
            return False
        self.store.update_conversation(conversation_id, title=initial_title(user_text))
        return True
