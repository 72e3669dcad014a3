"""System memory pressure monitor."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import psutil

logger = logging.getLogger("airchat.metrics")

_MB = 1024 * 1024


@dataclass(frozen=True)
class MemoryUsage:
    used_mb: int
    total_mb: int


def current_memory_usage() -> MemoryUsage:
    """System RAM in use (total minus available) and installed."""
    mem = psutil.virtual_memory()
    return MemoryUsage(used_mb=(mem.total - mem.available) // _MB, total_mb=mem.total // _MB)


class MemoryPressureMonitor:
    """Polls available system memory and fires ``callback`` once per low-memory episode.

    The monitor re-arms after available memory climbs back above the threshold.
    """

    def __init__(
        self,
        interval_ms: int,
        min_available_mb: int,
        callback: Callable[[], None],
    ) -> None:
        self._interval = interval_ms / 1000.0
        self._threshold = min_available_mb * _MB
        self._callback = callback
        self._armed = True
        self._running = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="airchat-memory", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running.clear()
        if self._thread:
            self._thread.join(timeout=max(1.0, self._interval * 2))
        self._thread = None

    def sample(self) -> bool:
        """Take one reading; return True when the callback fired."""
        available = psutil.virtual_memory().available
        if available >= self._threshold:
            self._armed = True
            return False
        if not self._armed:
            return False
        self._armed = False
        logger.warning(
            "Low memory: %.0f MB available (threshold %.0f MB)",
            available / _MB,
            self._threshold / _MB,
        )
        self._callback()
        return True

    def _run(self) -> None:
        while self._running.is_set():
            try:
                self.sample()
            except Exception:  # noqa: BLE001
                logger.exception("Memory sampling failed")
            time.sleep(self._interval)
