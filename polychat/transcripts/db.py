# polychat/transcripts/db.py

import sqlite3
from pathlib import Path
from typing import Union

from polychat.utils.logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


def get_connection(db_path: PathLike) -> sqlite3.Connection:
    """
    Return a SQLite connection.
    Uses Row factory for dict-like access and enables foreign keys so that
    deleting a conversation cascades to its messages.
    Caller is responsible for closing.
    """
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _migrate(conn: sqlite3.Connection) -> None:
    """Bring databases created before the model column existed up to date."""
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(conversations)")}
    if "model" not in columns:
        logger.info("Migrating database: adding model column to conversations table")
        conn.execute("ALTER TABLE conversations ADD COLUMN model TEXT")


def init_db(db_path: PathLike) -> None:
    """
    Initialize the database schema if it does not exist.
    Safe to call multiple times.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    try:
        cur = conn.cursor()

        # conversations: one per chat thread
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                model TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        # messages: append-only log per conversation
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                role TEXT NOT NULL,            -- 'user', 'assistant' or 'system'
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations (id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, timestamp, id)"
        )

        _migrate(conn)
        conn.commit()
    finally:
        conn.close()
