import asyncio
import threading

import pytest
import pytest_asyncio

from airchat.config import ModelSpec, SessionConfig
from airchat.errors import EngineRuntimeError
from airchat.registry import ModelRegistry
from airchat.session.controller import SessionController
from airchat.storage import SQLiteHistoryStore


class FakeEngine:
    """Scriptable engine.

    ``hold_after`` pauses the stream after that many fragments until
    ``release`` is set (or the stop event fires); ``fail_after`` raises
    ``EngineRuntimeError`` instead of yielding that fragment.
    """

    def __init__(self, fragments=("Hel", "lo", "!")):
        self.fragments = list(fragments)
        self.load_error = None
        self.load_gate = None
        self.hold_after = None
        self.fail_after = None
        self.release = threading.Event()
        self.stream_closed = threading.Event()
        self.loaded_config = None
        self.load_calls = 0
        self.unload_calls = 0
        self.prompts = []

    @property
    def is_loaded(self):
        return self.loaded_config is not None

    def load(self, config):
        self.load_calls += 1
        if self.load_gate is not None:
            self.load_gate.wait(timeout=5)
        if self.load_error is not None:
            raise self.load_error
        self.loaded_config = config

    def unload(self):
        self.unload_calls += 1
        self.loaded_config = None

    def generate(self, prompt, stop):
        if self.loaded_config is None:
            raise EngineRuntimeError("Engine not loaded")
        self.prompts.append(prompt)
        self.stream_closed.clear()
        try:
            for index, fragment in enumerate(self.fragments):
                if index == self.hold_after:
                    while not self.release.wait(timeout=0.01):
                        if stop.is_set():
                            return
                if index == self.fail_after:
                    raise EngineRuntimeError("backend crashed")
                if stop.is_set():
                    return
                yield fragment
        finally:
            self.stream_closed.set()


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def store():
    history = SQLiteHistoryStore(":memory:")
    yield history
    history.close()


@pytest.fixture
def registry(tmp_path):
    return ModelRegistry(
        [
            ModelSpec(key="tiny", display_name="Tiny", local_path=str(tmp_path / "tiny.gguf")),
            ModelSpec(key="small", display_name="Small", local_path=str(tmp_path / "small.gguf")),
        ]
    )


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def session_config():
    return SessionConfig(context_budget=1536, chars_per_token=4)


@pytest_asyncio.fixture
async def controller(store, engine, registry, session_config):
    ctrl = SessionController(store, engine, registry, session_config)
    yield ctrl
    engine.release.set()
    await ctrl.close()


@pytest.fixture
def chat(store):
    return store.create_chat(name="First", model_key="tiny", context_size=4096, num_threads=2)
