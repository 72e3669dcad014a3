"""Chat and message records."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Role = Literal["user", "assistant"]

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_USER_TEMPLATE = "{prompt}"


@dataclass
class Chat:
    id: int
    name: str
    model_key: str | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    user_template: str = DEFAULT_USER_TEMPLATE
    num_threads: int = 4
    context_size: int = 2048
    num_gpu_layers: int = 0
    last_accessed: float = 0.0


@dataclass
class ChatSettings:
    name: str
    system_prompt: str
    user_template: str
    context_size: int
    num_threads: int
    num_gpu_layers: int
    model_key: str | None = None

    @classmethod
    def from_chat(cls, chat: Chat, context_budget: int | None = None) -> "ChatSettings":
        context_size = chat.context_size
        if context_budget is not None:
            context_size = min(context_size, context_budget)
        return cls(
            name=chat.name,
            system_prompt=chat.system_prompt,
            user_template=chat.user_template,
            context_size=context_size,
            num_threads=chat.num_threads,
            num_gpu_layers=chat.num_gpu_layers,
            model_key=chat.model_key,
        )


@dataclass(frozen=True)
class ChatMessage:
    id: int
    chat_id: int
    role: Role
    text: str
    created_at: float = 0.0
