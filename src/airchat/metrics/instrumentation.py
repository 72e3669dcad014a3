"""Timing for streamed generations."""
from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class GenerationMetrics:
    token_count: int
    elapsed_ms: int

    @property
    def elapsed_s(self) -> float:
        return self.elapsed_ms / 1000.0

    @property
    def tokens_per_s(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return self.token_count / (self.elapsed_ms / 1000.0)


class GenerationClock:
    """Counts streamed fragments and wall-clock time from start() to stop()."""

    def __init__(self) -> None:
        self._start: float | None = None
        self.token_count = 0

    def start(self) -> None:
        self._start = time.perf_counter()
        self.token_count = 0

    def tick(self) -> None:
        self.token_count += 1

    def stop(self) -> GenerationMetrics:
        if self._start is None:
            raise RuntimeError("GenerationClock.stop() called before start()")
        elapsed_ms = int((time.perf_counter() - self._start) * 1000)
        return GenerationMetrics(token_count=self.token_count, elapsed_ms=elapsed_ms)
