"""Engine protocol and dataclasses."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterator, Protocol

from ..storage.models import ChatMessage


@dataclass
class SamplingSpec:
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.95


@dataclass
class EngineConfig:
    model_path: str
    context_size: int
    num_threads: int
    num_gpu_layers: int
    system_prompt: str
    history: list[ChatMessage] = field(default_factory=list)
    sampling: SamplingSpec = field(default_factory=SamplingSpec)


class LLMEngine(Protocol):
    @property
    def is_loaded(self) -> bool:
        ...

    def load(self, config: EngineConfig) -> None:
        ...

    def generate(self, prompt: str, stop: threading.Event) -> Iterator[str]:
        ...

    def unload(self) -> None:
        ...
