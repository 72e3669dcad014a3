import argparse
import asyncio
import logging
from types import SimpleNamespace

import pytest

from airchat.config import MemoryConfig, RootConfig
from airchat.errors import StorageError
from airchat.main import MemoryWatch, _status_markdown, apply_overrides, shutdown
from airchat.metrics import memory_monitor
from airchat.metrics.instrumentation import GenerationMetrics
from airchat.metrics.memory_monitor import MemoryUsage
from airchat.session.controller import SessionController
from airchat.session.state import ModelState, Session

MB = 1024 * 1024


@pytest.fixture
def plenty_of_memory(monkeypatch):
    monkeypatch.setattr(
        memory_monitor.psutil,
        "virtual_memory",
        lambda: SimpleNamespace(total=16384 * MB, available=8192 * MB),
    )


def test_status_line_with_metrics_and_ram():
    session = Session(model_state=ModelState.READY)
    session.last_metrics = GenerationMetrics(token_count=20, elapsed_ms=4000)

    text = _status_markdown(session.snapshot(), MemoryUsage(used_mb=3000, total_mb=8000))

    assert "**model:** ready" in text
    assert "**tokens/s:** 5.00" in text
    assert text.endswith("**RAM:** 3000 MB / 8000 MB")


def test_status_line_reports_failure():
    session = Session(model_state=ModelState.FAILED, last_error="bad file")

    text = _status_markdown(session.snapshot())

    assert text == "**model:** failed (bad file)"


def test_cli_overrides():
    args = argparse.Namespace(
        title=None,
        host="0.0.0.0",
        port=8080,
        db=None,
        backend="airllm",
        context_budget=1024,
        log_level="debug",
    )

    cfg = apply_overrides(RootConfig(), args)

    assert cfg.app.host == "0.0.0.0"
    assert cfg.app.port == 8080
    assert cfg.app.engine_backend == "airllm"
    assert cfg.session.context_budget == 1024
    assert cfg.app.log_level == "DEBUG"
    assert cfg.app.title == "AirChat"


async def test_low_memory_unloads_on_ui_loop(controller, chat, plenty_of_memory):
    await controller.load_model(chat.id)
    watch = MemoryWatch(controller, MemoryConfig(sampling_interval_ms=10))
    watch.start(asyncio.get_running_loop())
    try:
        await asyncio.to_thread(watch.notify_low_memory)
        await asyncio.wrap_future(watch.pending)
    finally:
        watch.stop()

    assert controller.session.model_state is ModelState.UNLOADED


async def test_failed_pressure_unload_is_logged(controller, plenty_of_memory, monkeypatch, caplog):
    async def _broken():
        raise StorageError("database is locked")

    monkeypatch.setattr(controller, "on_memory_pressure", _broken)
    watch = MemoryWatch(controller, MemoryConfig(sampling_interval_ms=10))
    watch.start(asyncio.get_running_loop())
    try:
        with caplog.at_level(logging.ERROR, logger="airchat"):
            await asyncio.to_thread(watch.notify_low_memory)
            with pytest.raises(StorageError):
                await asyncio.wrap_future(watch.pending)
    finally:
        watch.stop()

    assert "Unload on memory pressure failed" in caplog.text


def test_low_memory_before_ui_loop_is_ignored(store, engine, registry, session_config):
    controller = SessionController(store, engine, registry, session_config)
    watch = MemoryWatch(controller, MemoryConfig())

    watch.notify_low_memory()

    assert watch.pending is None


def test_shutdown_stops_monitor_and_closes(store, engine, registry, session_config, plenty_of_memory):
    controller = SessionController(store, engine, registry, session_config)
    watch = MemoryWatch(controller, MemoryConfig(sampling_interval_ms=10))
    loop = asyncio.new_event_loop()
    try:
        watch.start(loop)
        assert watch.monitor.running

        shutdown(controller, store, watch)
    finally:
        loop.close()

    assert not watch.monitor.running
    assert engine.unload_calls == 1
    with pytest.raises(StorageError):
        store.get_messages(1)
