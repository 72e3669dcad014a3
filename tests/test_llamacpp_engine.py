import threading

import pytest

from airchat.engines import create_engine
from airchat.engines.base import EngineConfig
from airchat.engines.llamacpp_engine import LlamaCppEngine
from airchat.errors import EngineLoadError, EngineRuntimeError
from airchat.storage.models import ChatMessage


class FakeLlama:
    def __init__(self, chunks=("Hi", " there"), **kwargs):
        self.kwargs = kwargs
        self.chunks = list(chunks)
        self.calls = []
        self.closed = False
        self.stream_closed = False

    def create_chat_completion(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream()

    def _stream(self):
        try:
            yield {"choices": [{"delta": {"role": "assistant"}}]}
            for chunk in self.chunks:
                yield {"choices": [{"delta": {"content": chunk}}]}
            yield {"choices": [{"delta": {}, "finish_reason": "stop"}]}
        finally:
            self.stream_closed = True

    def close(self):
        self.closed = True


@pytest.fixture
def gguf(tmp_path):
    path = tmp_path / "model.gguf"
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture
def llama_engine():
    created = []

    def _factory(**kwargs):
        llm = FakeLlama(**kwargs)
        created.append(llm)
        return llm

    engine = LlamaCppEngine(llama_factory=_factory)
    engine.created = created
    return engine


def _config(path, **overrides):
    values = dict(
        model_path=str(path),
        context_size=1536,
        num_threads=4,
        num_gpu_layers=8,
        system_prompt="Be brief.",
        history=[
            ChatMessage(id=1, chat_id=1, role="user", text="earlier"),
            ChatMessage(id=2, chat_id=1, role="assistant", text="reply"),
        ],
    )
    values.update(overrides)
    return EngineConfig(**values)


def test_load_passes_engine_settings(llama_engine, gguf):
    llama_engine.load(_config(gguf))

    kwargs = llama_engine.created[0].kwargs
    assert kwargs["model_path"] == str(gguf)
    assert kwargs["n_ctx"] == 1536
    assert kwargs["n_threads"] == 4
    assert kwargs["n_gpu_layers"] == 8
    assert llama_engine.is_loaded


def test_load_finds_gguf_in_directory(llama_engine, gguf):
    llama_engine.load(_config(gguf.parent))

    assert llama_engine.created[0].kwargs["model_path"] == str(gguf)


def test_load_missing_path(llama_engine, tmp_path):
    with pytest.raises(EngineLoadError):
        llama_engine.load(_config(tmp_path / "nope.gguf"))


def test_load_non_gguf_file(llama_engine, tmp_path):
    other = tmp_path / "weights.bin"
    other.write_bytes(b"")

    with pytest.raises(EngineLoadError):
        llama_engine.load(_config(other))


def test_backend_failure_becomes_load_error(gguf):
    def _factory(**kwargs):
        raise ValueError("failed to load model")

    engine = LlamaCppEngine(llama_factory=_factory)

    with pytest.raises(EngineLoadError) as excinfo:
        engine.load(_config(gguf))
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert not engine.is_loaded


def test_generate_streams_with_seeded_history(llama_engine, gguf):
    llama_engine.load(_config(gguf))

    fragments = list(llama_engine.generate("again?", threading.Event()))

    assert fragments == ["Hi", " there"]
    messages = llama_engine.created[0].calls[0]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[0]["content"] == "Be brief."
    assert messages[-1]["content"] == "again?"


def test_completed_exchange_is_kept_in_context(llama_engine, gguf):
    llama_engine.load(_config(gguf, history=[]))
    list(llama_engine.generate("one", threading.Event()))

    list(llama_engine.generate("two", threading.Event()))

    messages = llama_engine.created[0].calls[1]["messages"]
    assert [m["content"] for m in messages[1:]] == ["one", "Hi there", "two"]


def test_stop_event_ends_stream(llama_engine, gguf):
    llama_engine.load(_config(gguf))
    stop = threading.Event()
    stream = llama_engine.generate("hi", stop)

    assert next(stream) == "Hi"
    stop.set()

    assert list(stream) == []
    assert llama_engine.created[0].stream_closed


def test_closing_consumer_releases_stream(llama_engine, gguf):
    llama_engine.load(_config(gguf))
    stream = llama_engine.generate("hi", threading.Event())
    next(stream)

    stream.close()

    assert llama_engine.created[0].stream_closed


def test_generate_while_unloaded(llama_engine):
    with pytest.raises(EngineRuntimeError):
        list(llama_engine.generate("hi", threading.Event()))


def test_unload_is_idempotent(llama_engine, gguf):
    llama_engine.load(_config(gguf))
    llm = llama_engine.created[0]

    llama_engine.unload()
    llama_engine.unload()

    assert llm.closed
    assert not llama_engine.is_loaded


def test_create_engine_rejects_unknown_backend():
    with pytest.raises(ValueError):
        create_engine("onnx")


def test_create_engine_llama_cpp():
    assert isinstance(create_engine("llama_cpp"), LlamaCppEngine)


def _stop_with_event(stream, stop):
    stop.set()
    assert list(stream) == []


def _stop_by_closing(stream, stop):
    stream.close()


@pytest.mark.parametrize("interrupt", [_stop_with_event, _stop_by_closing])
def test_interrupted_turn_is_kept_in_context(llama_engine, gguf, interrupt):
    llama_engine.load(_config(gguf, history=[]))
    stop = threading.Event()
    stream = llama_engine.generate("one", stop)
    assert next(stream) == "Hi"

    interrupt(stream, stop)
    list(llama_engine.generate("two", threading.Event()))

    messages = llama_engine.created[0].calls[1]["messages"]
    assert [(m["role"], m["content"]) for m in messages[1:]] == [
        ("user", "one"),
        ("assistant", "Hi"),
        ("user", "two"),
    ]


def test_turn_stopped_before_output_keeps_only_the_question(llama_engine, gguf):
    llama_engine.load(_config(gguf, history=[]))
    stop = threading.Event()
    stop.set()

    assert list(llama_engine.generate("one", stop)) == []
    list(llama_engine.generate("two", threading.Event()))

    messages = llama_engine.created[0].calls[1]["messages"]
    assert [m["content"] for m in messages[1:]] == ["one", "two"]


def test_backend_failure_mid_stream(gguf):
    class _Crashing(FakeLlama):
        def _stream(self):
            yield {"choices": [{"delta": {"content": "Hi"}}]}
            raise RuntimeError("decode failed")

    created = []

    def _factory(**kwargs):
        created.append(_Crashing(**kwargs))
        return created[-1]

    engine = LlamaCppEngine(llama_factory=_factory)
    engine.load(_config(gguf, history=[]))
    stream = engine.generate("one", threading.Event())

    assert next(stream) == "Hi"
    with pytest.raises(EngineRuntimeError):
        next(stream)
    assert engine.is_loaded
