"""Inference engine adapters."""
from __future__ import annotations

from .base import EngineConfig, LLMEngine, SamplingSpec

BACKENDS = ("llama_cpp", "airllm")


def create_engine(backend: str, **kwargs) -> LLMEngine:
    """Build an engine adapter; backend libraries are imported on demand."""
    if backend == "llama_cpp":
        from .llamacpp_engine import LlamaCppEngine

        return LlamaCppEngine(**kwargs)
    if backend == "airllm":
        from .airllm_engine import AirLLMEngine

        return AirLLMEngine(**kwargs)
    raise ValueError(f"Unknown engine backend: {backend!r} (expected one of {BACKENDS})")


__all__ = ["BACKENDS", "EngineConfig", "LLMEngine", "SamplingSpec", "create_engine"]
