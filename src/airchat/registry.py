"""Model registry helpers."""
from __future__ import annotations

from .config import ModelSpec


class ModelRegistry:
    def __init__(self, models: list[ModelSpec]):
        self._models = models

    def list(self) -> list[ModelSpec]:
        return list(self._models)

    def find(self, key: str | None) -> ModelSpec | None:
        if key is None:
            return None
        for model in self._models:
            if model.key == key:
                return model
        return None

    def get(self, key: str) -> ModelSpec:
        model = self.find(key)
        if model is None:
            raise KeyError(f"Model not found: {key}")
        return model
