"""Chat history persistence.

``HistoryStore`` is the contract the session controller consumes; the SQLite
implementation keeps chats and messages in two tables and wraps every
``sqlite3`` failure in ``StorageError``.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Protocol

from ..errors import StorageError
from .models import Chat, ChatMessage, DEFAULT_SYSTEM_PROMPT, DEFAULT_USER_TEMPLATE

logger = logging.getLogger("airchat.storage")


class HistoryStore(Protocol):
    def create_chat(self, name: str, model_key: str | None = None, **settings) -> Chat:
        ...

    def list_chats(self) -> list[Chat]:
        ...

    def get_messages(self, chat_id: int) -> list[ChatMessage]:
        ...

    def append_user_message(self, chat_id: int, text: str) -> ChatMessage:
        ...

    def append_assistant_message(self, chat_id: int, text: str) -> ChatMessage:
        ...

    def delete_message(self, message_id: int) -> None:
        ...

    def delete_messages_from(self, chat_id: int, message_id: int) -> int:
        ...

    def get_message(self, message_id: int) -> ChatMessage | None:
        ...

    def get_chat(self, chat_id: int) -> Chat | None:
        ...

    def update_chat(self, chat: Chat) -> None:
        ...

    def get_last_accessed_chat(self) -> Chat | None:
        ...

    def update_last_accessed_time(self, chat_id: int) -> None:
        ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    model_key TEXT,
    system_prompt TEXT NOT NULL,
    user_template TEXT NOT NULL,
    num_threads INTEGER NOT NULL,
    context_size INTEGER NOT NULL,
    num_gpu_layers INTEGER NOT NULL,
    last_accessed REAL NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id INTEGER NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    text TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, id);
"""

_CHAT_COLUMNS = (
    "id, name, model_key, system_prompt, user_template, "
    "num_threads, context_size, num_gpu_layers, last_accessed"
)


def _row_to_chat(row: sqlite3.Row) -> Chat:
    return Chat(
        id=int(row["id"]),
        name=row["name"],
        model_key=row["model_key"],
        system_prompt=row["system_prompt"],
        user_template=row["user_template"],
        num_threads=int(row["num_threads"]),
        context_size=int(row["context_size"]),
        num_gpu_layers=int(row["num_gpu_layers"]),
        last_accessed=float(row["last_accessed"]),
    )


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        id=int(row["id"]),
        chat_id=int(row["chat_id"]),
        role=row["role"],
        text=row["text"],
        created_at=float(row["created_at"]),
    )


class SQLiteHistoryStore:
    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open history database {path!r}: {exc}") from exc

    @contextmanager
    def _cursor(self, write: bool = False) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                yield cur
                if write:
                    self._conn.commit()
            except sqlite3.Error as exc:
                if write:
                    self._conn.rollback()
                raise StorageError(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_chat(
        self,
        name: str,
        model_key: str | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        user_template: str = DEFAULT_USER_TEMPLATE,
        num_threads: int = 4,
        context_size: int = 2048,
        num_gpu_layers: int = 0,
    ) -> Chat:
        now = time.time()
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT INTO chats (name, model_key, system_prompt, user_template, "
                "num_threads, context_size, num_gpu_layers, last_accessed) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (name, model_key, system_prompt, user_template,
                 num_threads, context_size, num_gpu_layers, now),
            )
            chat_id = int(cur.lastrowid)
        logger.debug("Created chat %s (%s)", chat_id, name)
        return Chat(
            id=chat_id,
            name=name,
            model_key=model_key,
            system_prompt=system_prompt,
            user_template=user_template,
            num_threads=num_threads,
            context_size=context_size,
            num_gpu_layers=num_gpu_layers,
            last_accessed=now,
        )

    def list_chats(self) -> list[Chat]:
        with self._cursor() as cur:
            rows = cur.execute(
                f"SELECT {_CHAT_COLUMNS} FROM chats ORDER BY last_accessed DESC, id DESC"
            ).fetchall()
        return [_row_to_chat(row) for row in rows]

    def get_chat(self, chat_id: int) -> Chat | None:
        with self._cursor() as cur:
            row = cur.execute(
                f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = ?", (chat_id,)
            ).fetchone()
        return _row_to_chat(row) if row is not None else None

    def update_chat(self, chat: Chat) -> None:
        with self._cursor(write=True) as cur:
            cur.execute(
                "UPDATE chats SET name = ?, model_key = ?, system_prompt = ?, user_template = ?, "
                "num_threads = ?, context_size = ?, num_gpu_layers = ? WHERE id = ?",
                (chat.name, chat.model_key, chat.system_prompt, chat.user_template,
                 chat.num_threads, chat.context_size, chat.num_gpu_layers, chat.id),
            )
            if cur.rowcount == 0:
                raise StorageError(f"Chat not found: {chat.id}")

    def get_last_accessed_chat(self) -> Chat | None:
        with self._cursor() as cur:
            row = cur.execute(
                f"SELECT {_CHAT_COLUMNS} FROM chats ORDER BY last_accessed DESC, id DESC LIMIT 1"
            ).fetchone()
        return _row_to_chat(row) if row is not None else None

    def update_last_accessed_time(self, chat_id: int) -> None:
        with self._cursor(write=True) as cur:
            cur.execute("UPDATE chats SET last_accessed = ? WHERE id = ?", (time.time(), chat_id))

    def get_messages(self, chat_id: int) -> list[ChatMessage]:
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT id, chat_id, role, text, created_at FROM messages "
                "WHERE chat_id = ? ORDER BY id",
                (chat_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get_message(self, message_id: int) -> ChatMessage | None:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT id, chat_id, role, text, created_at FROM messages WHERE id = ?",
                (message_id,),
            ).fetchone()
        return _row_to_message(row) if row is not None else None

    def _append(self, chat_id: int, role: str, text: str) -> ChatMessage:
        now = time.time()
        with self._cursor(write=True) as cur:
            cur.execute(
                "INSERT INTO messages (chat_id, role, text, created_at) VALUES (?, ?, ?, ?)",
                (chat_id, role, text, now),
            )
            message_id = int(cur.lastrowid)
        return ChatMessage(id=message_id, chat_id=chat_id, role=role, text=text, created_at=now)

    def append_user_message(self, chat_id: int, text: str) -> ChatMessage:
        return self._append(chat_id, "user", text)

    def append_assistant_message(self, chat_id: int, text: str) -> ChatMessage:
        return self._append(chat_id, "assistant", text)

    def delete_message(self, message_id: int) -> None:
        with self._cursor(write=True) as cur:
            cur.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    def delete_messages_from(self, chat_id: int, message_id: int) -> int:
        """Delete ``message_id`` and every later message of the chat."""
        with self._cursor(write=True) as cur:
            cur.execute(
                "DELETE FROM messages WHERE chat_id = ? AND id >= ?", (chat_id, message_id)
            )
            return int(cur.rowcount)
