"""Configuration loading and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml


@dataclass
class AppConfig:
    title: str = "AirChat"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 1
    db_path: str = "airchat.db"
    log_level: str = "INFO"
    engine_backend: str = "llama_cpp"


@dataclass
class SessionConfig:
    context_budget: int = 1536
    chars_per_token: int = 4
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.95


@dataclass
class MemoryConfig:
    enabled: bool = True
    min_available_mb: int = 512
    sampling_interval_ms: int = 1000


@dataclass
class ModelSpec:
    key: str
    display_name: str
    local_path: str


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    models: list[ModelSpec] = field(default_factory=list)


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def parse_config(raw: dict[str, Any]) -> RootConfig:
    app_raw = _get(raw, "app", {})
    session_raw = _get(raw, "session", {})
    memory_raw = _get(raw, "memory", {})
    models_raw = _get(raw, "models", [])

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        db_path=_get(app_raw, "db_path", AppConfig.db_path),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)).upper(),
        engine_backend=_get(app_raw, "engine_backend", AppConfig.engine_backend),
    )

    session = SessionConfig(
        context_budget=int(_get(session_raw, "context_budget", SessionConfig.context_budget)),
        chars_per_token=int(_get(session_raw, "chars_per_token", SessionConfig.chars_per_token)),
        max_new_tokens=int(_get(session_raw, "max_new_tokens", SessionConfig.max_new_tokens)),
        temperature=float(_get(session_raw, "temperature", SessionConfig.temperature)),
        top_p=float(_get(session_raw, "top_p", SessionConfig.top_p)),
    )
    if session.context_budget <= 0:
        raise ValueError("session.context_budget must be > 0")
    if session.chars_per_token <= 0:
        raise ValueError("session.chars_per_token must be > 0")

    memory = MemoryConfig(
        enabled=bool(_get(memory_raw, "enabled", MemoryConfig.enabled)),
        min_available_mb=int(_get(memory_raw, "min_available_mb", MemoryConfig.min_available_mb)),
        sampling_interval_ms=int(
            _get(memory_raw, "sampling_interval_ms", MemoryConfig.sampling_interval_ms)
        ),
    )

    models: list[ModelSpec] = []
    if isinstance(models_raw, list):
        for item in models_raw:
            models.append(
                ModelSpec(
                    key=_get(item, "key", ""),
                    display_name=_get(item, "display_name", "") or _get(item, "key", ""),
                    local_path=_get(item, "local_path", ""),
                )
            )

    return RootConfig(app=app, session=session, memory=memory, models=models)


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)
