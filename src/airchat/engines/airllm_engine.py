"""AirLLM engine implementation."""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterator

import torch
from airllm import AutoModel
from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

from .base import EngineConfig
from ..errors import EngineLoadError, EngineRuntimeError
from ..prompts import _render_prompt, build_chat_messages, record_exchange

logger = logging.getLogger("airchat.engines.airllm")

_JOIN_TIMEOUT_S = 10.0


def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    weight_map: dict[str, str] = {}
    with safe_open(str(st_path), framework="pt") as f:
        for key in f.keys():
            weight_map[key] = st_path.name
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


class _StopOnEvent(StoppingCriteria):
    def __init__(self, stop: threading.Event) -> None:
        self._stop = stop

    def __call__(self, input_ids, scores, **kwargs) -> bool:
        return self._stop.is_set()


class AirLLMEngine:
    """Layer-streamed Hugging Face checkpoints through AirLLM.

    ``num_gpu_layers > 0`` selects the first CUDA device when one is present;
    AirLLM always streams layers, so the exact count is not used beyond that.
    """

    def __init__(self, layer_cache_dir: str = "", compression: str | None = None) -> None:
        self._layer_cache_dir = layer_cache_dir
        self._compression = compression
        self._model: Any | None = None
        self._tokenizer: Any | None = None
        self._device: torch.device | None = None
        self._config: EngineConfig | None = None
        self._messages: list[dict[str, str]] = []

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self, config: EngineConfig) -> None:
        if not os.path.exists(config.model_path):
            raise EngineLoadError(f"Model path not found: {config.model_path}")

        if config.num_gpu_layers > 0 and torch.cuda.is_available():
            self._device = torch.device("cuda:0")
        else:
            self._device = torch.device("cpu")
        torch.set_num_threads(max(1, config.num_threads))

        try:
            if os.path.isdir(config.model_path):
                _ensure_safetensors_index(config.model_path)
            if self._layer_cache_dir:
                os.makedirs(self._layer_cache_dir, exist_ok=True)
            self._model = AutoModel.from_pretrained(
                config.model_path,
                layer_shards_saving_path=self._layer_cache_dir or None,
                compression=self._compression,
            )
        except Exception as exc:  # noqa: BLE001
            self.unload()
            raise EngineLoadError(f"Failed to load {config.model_path}: {exc}") from exc

        self._tokenizer = getattr(self._model, "tokenizer", None)
        if self._tokenizer is None:
            self.unload()
            raise EngineLoadError("Model tokenizer not available")

        self._config = config
        self._messages = build_chat_messages(config.system_prompt, config.history)

    def unload(self) -> None:
        self._model = None
        self._tokenizer = None
        self._device = None
        self._config = None
        self._messages = []
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def generate(self, prompt: str, stop: threading.Event) -> Iterator[str]:
        if self._model is None or self._tokenizer is None or self._config is None:
            raise EngineRuntimeError("Engine not loaded")

        messages = self._messages + [{"role": "user", "content": prompt}]
        rendered = _render_prompt(self._tokenizer, messages)
        inputs = self._tokenizer(
            rendered,
            return_tensors="pt",
            truncation=True,
            max_length=self._config.context_size,
        )
        input_ids = inputs["input_ids"].to(self._device)
        attention_mask = inputs.get("attention_mask")
        if attention_mask is not None:
            attention_mask = attention_mask.to(self._device)

        sampling = self._config.sampling
        streamer = TextIteratorStreamer(self._tokenizer, skip_prompt=True, skip_special_tokens=True)
        failure: list[BaseException] = []
        model = self._model

        def _run() -> None:
            try:
                model.generate(
                    input_ids=input_ids,
                    attention_mask=attention_mask,
                    max_new_tokens=sampling.max_new_tokens,
                    temperature=sampling.temperature,
                    top_p=sampling.top_p,
                    do_sample=sampling.temperature > 0,
                    use_cache=False,
                    streamer=streamer,
                    stopping_criteria=StoppingCriteriaList([_StopOnEvent(stop)]),
                )
            except Exception as exc:  # noqa: BLE001
                failure.append(exc)
                streamer.end()

        worker = threading.Thread(target=_run, name="airllm-generate", daemon=True)
        worker.start()
        reply: list[str] = []
        try:
            for fragment in streamer:
                if stop.is_set():
                    break
                if fragment:
                    reply.append(fragment)
                    yield fragment
        finally:
            stop.set()
            worker.join(timeout=_JOIN_TIMEOUT_S)
            if worker.is_alive():
                logger.warning("AirLLM generation thread did not stop within %.0fs", _JOIN_TIMEOUT_S)
            if self._model is model:
                self._messages = record_exchange(messages, "".join(reply))

        if failure:
            raise EngineRuntimeError(f"Generation failed: {failure[0]}") from failure[0]
