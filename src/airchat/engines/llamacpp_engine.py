"""llama.cpp (GGUF) engine implementation."""
from __future__ import annotations

import gc
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

from .base import EngineConfig
from ..errors import EngineLoadError, EngineRuntimeError
from ..prompts import build_chat_messages, record_exchange

logger = logging.getLogger("airchat.engines.llama_cpp")


def _default_llama_factory(**kwargs: Any) -> Any:
    from llama_cpp import Llama

    return Llama(**kwargs)


def _find_gguf(model_path: str) -> str | None:
    path = Path(model_path)
    if path.is_file():
        return str(path) if path.suffix.lower() == ".gguf" else None
    if path.is_dir():
        candidates = sorted(path.glob("*.gguf"))
        if candidates:
            return str(candidates[0])
    return None


def _delta_text(chunk: Any) -> str:
    choices = chunk.get("choices") if isinstance(chunk, dict) else None
    if not choices:
        return ""
    first = choices[0]
    delta = first.get("delta") or {}
    if isinstance(delta, dict) and delta.get("content"):
        return str(delta["content"])
    return str(first.get("text") or "")


class LlamaCppEngine:
    def __init__(self, llama_factory: Callable[..., Any] | None = None) -> None:
        self._factory = llama_factory or _default_llama_factory
        self._llm: Any | None = None
        self._config: EngineConfig | None = None
        self._messages: list[dict[str, str]] = []

    @property
    def is_loaded(self) -> bool:
        return self._llm is not None

    def load(self, config: EngineConfig) -> None:
        if not os.path.exists(config.model_path):
            raise EngineLoadError(f"Model path not found: {config.model_path}")
        gguf_path = _find_gguf(config.model_path)
        if gguf_path is None:
            raise EngineLoadError(f"No GGUF file found in {config.model_path}")

        try:
            self._llm = self._factory(
                model_path=gguf_path,
                n_ctx=int(config.context_size),
                n_threads=max(1, int(config.num_threads)),
                n_gpu_layers=int(config.num_gpu_layers),
                verbose=False,
            )
        except Exception as exc:  # noqa: BLE001
            self._llm = None
            raise EngineLoadError(f"Failed to load {gguf_path}: {exc}") from exc

        self._config = config
        self._messages = build_chat_messages(config.system_prompt, config.history)
        logger.debug(
            "llama.cpp loaded %s (n_ctx=%d, threads=%d, gpu_layers=%d, seeded=%d)",
            gguf_path,
            config.context_size,
            config.num_threads,
            config.num_gpu_layers,
            len(config.history),
        )

    def unload(self) -> None:
        llm = self._llm
        self._llm = None
        self._config = None
        self._messages = []
        if llm is not None:
            close = getattr(llm, "close", None)
            if callable(close):
                close()
            del llm
            gc.collect()

    def generate(self, prompt: str, stop: threading.Event) -> Iterator[str]:
        if self._llm is None or self._config is None:
            raise EngineRuntimeError("Engine not loaded")

        messages = self._messages + [{"role": "user", "content": prompt}]
        sampling = self._config.sampling
        llm = self._llm
        stream = None
        reply: list[str] = []
        try:
            stream = llm.create_chat_completion(
                messages=messages,
                max_tokens=int(sampling.max_new_tokens),
                temperature=float(max(0.0, sampling.temperature)),
                top_p=float(max(0.0, min(1.0, sampling.top_p))),
                stream=True,
            )
            for chunk in stream:
                if stop.is_set():
                    break
                text = _delta_text(chunk)
                if text:
                    reply.append(text)
                    yield text
        except Exception as exc:  # noqa: BLE001
            raise EngineRuntimeError(f"Generation failed: {exc}") from exc
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
            # Matches the stored history on every exit path.
            if self._llm is llm:
                self._messages = record_exchange(messages, "".join(reply))
