"""Session state."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

from ..metrics.instrumentation import GenerationMetrics


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class GenerationState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class SessionSnapshot:
    model_state: ModelState
    generation_state: GenerationState
    active_chat_id: int | None
    partial_buffer: str
    last_metrics: GenerationMetrics | None
    last_error: str | None
    prefill_text: str


@dataclass
class Session:
    active_chat_id: int | None = None
    model_state: ModelState = ModelState.UNLOADED
    generation_state: GenerationState = GenerationState.IDLE
    active_task: asyncio.Task | None = None
    partial_buffer: str = ""
    last_metrics: GenerationMetrics | None = None
    last_error: str | None = None
    prefill_text: str = ""

    @property
    def is_idle(self) -> bool:
        return self.generation_state is GenerationState.IDLE

    def reset_generation(self) -> None:
        self.generation_state = GenerationState.IDLE
        self.active_task = None
        self.partial_buffer = ""

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            model_state=self.model_state,
            generation_state=self.generation_state,
            active_chat_id=self.active_chat_id,
            partial_buffer=self.partial_buffer,
            last_metrics=self.last_metrics,
            last_error=self.last_error,
            prefill_text=self.prefill_text,
        )
