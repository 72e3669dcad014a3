"""Prompt builders."""
from __future__ import annotations

from typing import Any, Sequence

from .storage.models import DEFAULT_SYSTEM_PROMPT, ChatMessage


def apply_user_template(template: str, prompt: str) -> str:
    if not template or "{prompt}" not in template:
        return prompt
    return template.replace("{prompt}", prompt)


def build_chat_messages(
    system_prompt: str | None, history: Sequence[ChatMessage], user_message: str | None = None
) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = [
        {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT}
    ]
    for message in history:
        messages.append({"role": message.role, "content": message.text})
    if user_message is not None:
        messages.append({"role": "user", "content": user_message})
    return messages


def _render_prompt(tokenizer: Any, messages: list[dict[str, str]]) -> str:
    if hasattr(tokenizer, "apply_chat_template") and getattr(tokenizer, "chat_template", None):
        return tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
    lines = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content','')}")
    lines.append("Assistant:")
    return "\n".join(lines)


def record_exchange(messages: list[dict[str, str]], reply: str) -> list[dict[str, str]]:
    """Conversation after a finished or interrupted turn.

    ``messages`` already ends with the user turn; a blank reply adds no
    assistant turn, the same as what is persisted for it.
    """
    if not reply.strip():
        return list(messages)
    return messages + [{"role": "assistant", "content": reply}]
