"""
SQLite storage for conversations.
This is the source of truth - every message, every checkpoint.
Single portable file. Query with SQL. Export to JSON.

Each call opens its own connection and runs in a worker thread, so the
event loop never blocks on disk.
"""

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from orchestrate.errors import PersistenceError
from orchestrate.models import Conversation, Message
from orchestrate.storage.base import DEFAULT_TITLE, ConversationStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    source TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_conversations_updated
    ON conversations(updated_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore(ConversationStore):
    """Thread-safe SQLite conversation store."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Sync implementations (run in a worker thread)
    # ------------------------------------------------------------------

    def _create_conversation(self, title: str) -> str:
        conversation_id = uuid4().hex
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (conversation_id, title, now, now),
            )
        logger.debug("Created conversation %s (%r)", conversation_id, title)
        return conversation_id

    def _append_message(self, conversation_id: str, content: str, source: str) -> str:
        message_id = uuid4().hex
        now = _now()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,),
            ).fetchone()
            if row is None:
                raise PersistenceError(f"Unknown conversation {conversation_id}")
            conn.execute(
                """INSERT INTO messages
                   (id, conversation_id, source, content, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (message_id, conversation_id, source, content, now, now),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id),
            )
        logger.debug("Stored message %s (source=%s, conv=%s)", message_id, source, conversation_id)
        return message_id

    def _update_message_content(self, message_id: str, content: str) -> bool:
        now = _now()
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE messages SET content = ?, updated_at = ? WHERE id = ?",
                (content, now, message_id),
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                """UPDATE conversations SET updated_at = ?
                   WHERE id = (SELECT conversation_id FROM messages WHERE id = ?)""",
                (now, message_id),
            )
        return True

    def _delete_message(self, message_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        return cur.rowcount > 0

    def _delete_conversation(self, conversation_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        return cur.rowcount > 0

    def _list_messages(self, conversation_id: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, source, content FROM messages
                   WHERE conversation_id = ?
                   ORDER BY created_at, rowid""",
                (conversation_id,),
            ).fetchall()
        return [Message.from_source(r["content"], r["source"], message_id=r["id"]) for r in rows]

    def _rename_conversation(self, conversation_id: str, title: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE conversations SET title = ? WHERE id = ?", (title, conversation_id),
            )
        return cur.rowcount > 0

    def _get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, title, created_at, updated_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return Conversation(**dict(row)) if row else None

    def _list_conversations(self, limit: int, offset: int) -> list[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, title, created_at, updated_at FROM conversations
                   ORDER BY updated_at DESC, rowid DESC
                   LIMIT ? OFFSET ?""",
                (limit, offset),
            ).fetchall()
        return [Conversation(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Async contract
    # ------------------------------------------------------------------

    async def create_conversation(self, title: str = DEFAULT_TITLE) -> str:
        return await asyncio.to_thread(self._create_conversation, title)

    async def append_message(self, conversation_id: str, content: str, source: str) -> str:
        return await asyncio.to_thread(self._append_message, conversation_id, content, source)

    async def update_message_content(self, message_id: str, content: str) -> bool:
        return await asyncio.to_thread(self._update_message_content, message_id, content)

    async def delete_message(self, message_id: str) -> bool:
        return await asyncio.to_thread(self._delete_message, message_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        return await asyncio.to_thread(self._delete_conversation, conversation_id)

    async def list_messages(self, conversation_id: str) -> list[Message]:
        return await asyncio.to_thread(self._list_messages, conversation_id)

    async def rename_conversation(self, conversation_id: str, title: str) -> bool:
        return await asyncio.to_thread(self._rename_conversation, conversation_id, title)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await asyncio.to_thread(self._get_conversation, conversation_id)

    async def list_conversations(self, limit: int = 50, offset: int = 0) -> list[Conversation]:
        return await asyncio.to_thread(self._list_conversations, limit, offset)

    def export_all_json(self) -> list[dict]:
        """Export every conversation with its messages (OpenAI-style role/content plus model)."""
        export = []
        for conv in self._list_conversations(limit=-1, offset=0):
            messages = self._list_messages(conv.id)
            export.append({
                **conv.to_dict(),
                "messages": [
                    {"role": m.role, "content": m.content, "model": m.model}
                    for m in messages
                ],
            })
        return export
