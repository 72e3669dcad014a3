"""Context window trimming."""
from __future__ import annotations

from typing import Sequence

from .storage.models import ChatMessage

DEFAULT_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Cheap token estimate from character length; not a tokenizer call."""
    if chars_per_token <= 0:
        raise ValueError("chars_per_token must be > 0")
    return len(text) // chars_per_token


def trim_messages(
    history: Sequence[ChatMessage],
    budget: int,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> list[ChatMessage]:
    """Return the most recent suffix of ``history`` whose estimated cost fits ``budget``.

    Messages are walked newest to oldest. The first message that would push the
    running total over the budget is dropped together with everything older, so
    an oversized latest message yields an empty list.
    """
    kept: list[ChatMessage] = []
    total = 0
    for message in reversed(history):
        cost = estimate_tokens(message.text, chars_per_token)
        if total + cost > budget:
            break
        total += cost
        kept.append(message)
    kept.reverse()
    return kept
