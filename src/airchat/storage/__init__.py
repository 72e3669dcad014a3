"""Chat history storage."""
from __future__ import annotations

from .history import HistoryStore, SQLiteHistoryStore
from .models import Chat, ChatMessage, ChatSettings

__all__ = ["Chat", "ChatMessage", "ChatSettings", "HistoryStore", "SQLiteHistoryStore"]
