# polychat/transcripts/repository.py

import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from polychat.core.errors import PersistenceError
from polychat.transcripts.db import PathLike, get_connection, init_db
from polychat.transcripts.models import DEFAULT_TITLE, Conversation, Message, now_iso


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        model=row["model"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        timestamp=row["timestamp"],
    )


class TranscriptStore:
    """
    Durable per-conversation message log.

    Every method opens its own connection, so the store can be called from
    worker threads. Writes that touch both tables run in one transaction.
    """

    def __init__(self, db_path: PathLike) -> None:
        self.db_path = db_path

    def initialize(self) -> None:
        """
        Initialize DB schema. Call once at startup.
        """
        init_db(self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Transcript store operation failed: {e}") from e
        finally:
            conn.close()

    # ---------- conversations ----------

    def create_conversation(self, title: Optional[str] = None, model: Optional[str] = None) -> Conversation:
        """
        Create a new conversation row and return it.
        """
        ts = now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO conversations (title, model, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (title or DEFAULT_TITLE, model, ts, ts),
            )
            conv_id = cur.lastrowid
        return Conversation(id=conv_id, title=title or DEFAULT_TITLE, model=model, created_at=ts, updated_at=ts)

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, title, model, created_at, updated_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(self) -> List[Conversation]:
        """
        All conversations, most recently updated first.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, title, model, created_at, updated_at
                FROM conversations
                ORDER BY updated_at DESC, id DESC
                """
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]

    def update_conversation(
        self,
        conversation_id: int,
        title: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Optional[Conversation]:
        """
        Overwrite title and/or model and bump updated_at.
        Returns None if the conversation does not exist.
        """
        updates = ["updated_at = ?"]
        values: List[object] = [now_iso()]
        if title:
            updates.append("title = ?")
            values.append(title)
        if model is not None:
            updates.append("model = ?")
            values.append(model)
        values.append(conversation_id)

        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE conversations SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            if cur.rowcount == 0:
                return None
        return self.get_conversation(conversation_id)

    def delete_conversation(self, conversation_id: int) -> bool:
        """
        Delete a conversation; its messages go with it (ON DELETE CASCADE).
        """
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            return cur.rowcount > 0

    # ---------- messages ----------

    def append_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        model: Optional[str] = None,
    ) -> Message:
        """
        Insert a message row, bump the conversation's updated_at (and model,
        when given) and return the stored message.
        """
        return self.append_messages(conversation_id, [(role, content)], model=model)[0]

    def append_messages(
        self,
        conversation_id: int,
        items: Iterable[Tuple[str, str]],
        model: Optional[str] = None,
    ) -> List[Message]:
        """
        Bulk-append (role, content) pairs in order, in a single transaction.
        """
        stored: List[Message] = []
        with self._connect() as conn:
            for role, content in items:
                ts = now_iso()
                cur = conn.execute(
                    """
                    INSERT INTO messages (conversation_id, role, content, timestamp)
                    VALUES (?, ?, ?, ?)
                    """,
                    (conversation_id, role, content, ts),
                )
                stored.append(Message(
                    id=cur.lastrowid,
                    conversation_id=conversation_id,
                    role=role,
                    content=content,
                    timestamp=ts,
                ))

            if stored:
                if model is not None:
                    conn.execute(
                        "UPDATE conversations SET updated_at = ?, model = ? WHERE id = ?",
                        (stored[-1].timestamp, model, conversation_id),
                    )
                else:
                    conn.execute(
                        "UPDATE conversations SET updated_at = ? WHERE id = ?",
                        (stored[-1].timestamp, conversation_id),
                    )
        return stored

    def append_user_message_once(
        self,
        conversation_id: int,
        content: str,
        model: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Append a user message unless the newest stored message is already
        that same user message. Check and insert share one write-locked
        transaction, so concurrent retries store it at most once.
        Returns the new message, or None when it was already there.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            last = conn.execute(
                """
                SELECT role, content
                FROM messages
                WHERE conversation_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()

            ts = now_iso()
            if last is not None and last["role"] == "user" and last["content"] == content:
                stored = None
            else:
                cur = conn.execute(
                    """
                    INSERT INTO messages (conversation_id, role, content, timestamp)
                    VALUES (?, 'user', ?, ?)
                    """,
                    (conversation_id, content, ts),
                )
                stored = Message(
                    id=cur.lastrowid,
                    conversation_id=conversation_id,
                    role="user",
                    content=content,
                    timestamp=ts,
                )

            if model is not None:
                conn.execute(
                    "UPDATE conversations SET updated_at = ?, model = ? WHERE id = ?",
                    (ts, model, conversation_id),
                )
            else:
                conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (ts, conversation_id))
        return stored

    def get_messages(self, conversation_id: int) -> List[Message]:
        """
        Messages of one conversation in insertion order.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, conversation_id, role, content, timestamp
                FROM messages
                WHERE conversation_id = ?
                ORDER BY timestamp ASC, id ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def last_message(self, conversation_id: int) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, conversation_id, role, content, timestamp
                FROM messages
                WHERE conversation_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
        return _row_to_message(row) if row else None

    def count_messages(self, conversation_id: int) -> Dict[str, int]:
        """
        Number of stored messages per role, e.g. {'user': 1, 'assistant': 1}.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role, COUNT(*) AS n FROM messages WHERE conversation_id = ? GROUP BY role",
                (conversation_id,),
            ).fetchall()
        return {row["role"]: row["n"] for row in rows}
