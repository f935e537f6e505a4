# polychat/transcripts/models.py

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ISO_FMT = "%Y-%m-%dT%H:%M:%S.%f"

ROLES = ("user", "assistant", "system")
DEFAULT_TITLE = "New Chat"


def now_iso() -> str:
    # microsecond precision keeps lexicographic order == insertion order
    return datetime.now(timezone.utc).strftime(ISO_FMT)


@dataclass
class Conversation:
    id: int
    title: str
    model: Optional[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    id: int
    conversation_id: int
    role: str            # 'user', 'assistant' or 'system'
    content: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
