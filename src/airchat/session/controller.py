"""Inference session controller.

Owns the model lifecycle and the single in-flight generation for one
``Session``. Commands that touch the engine are serialized through one
``asyncio.Lock`` and every engine call runs on a dedicated single-worker
thread pool, so load, generate and unload never overlap. Streaming output is
handed from the engine thread to the event loop through an ``asyncio.Queue``.

State is reported through the session (``model_state``, ``last_error``)
rather than raised: only ``StorageError`` reaches the caller, after the
session has been put back into the state it had before the command.
"""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from ..config import SessionConfig
from ..engines.base import EngineConfig, LLMEngine, SamplingSpec
from ..errors import ConfigurationError, EngineLoadError, StorageError
from ..metrics.instrumentation import GenerationClock
from ..prompts import apply_user_template
from ..registry import ModelRegistry
from ..storage.history import HistoryStore
from ..storage.models import Chat, ChatMessage, ChatSettings
from ..trimming import trim_messages
from .state import GenerationState, ModelState, Session, SessionSnapshot

logger = logging.getLogger("airchat.session")

Observer = Callable[[SessionSnapshot], None]

_END = object()


class _StreamFailure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


class SessionController:
    def __init__(
        self,
        store: HistoryStore,
        engine: LLMEngine,
        registry: ModelRegistry,
        config: SessionConfig | None = None,
        session: Session | None = None,
    ) -> None:
        self.session = session if session is not None else Session()
        self._store = store
        self._engine = engine
        self._registry = registry
        self._config = config or SessionConfig()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="airchat-engine")
        self._lock = asyncio.Lock()
        self._observers: list[Observer] = []
        self._chat: Chat | None = None
        self._current_chat_id: int | None = None
        self._load_task: asyncio.Future | None = None
        self._load_chat_id: int | None = None
        self._stop_event: threading.Event | None = None
        self._unload_deferred = False
        self._hidden = False

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def current_chat_id(self) -> int | None:
        """Chat selected by the user; bound to the engine only while READY."""
        return self._current_chat_id

    def snapshot(self) -> SessionSnapshot:
        return self.session.snapshot()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _publish(self) -> None:
        snapshot = self.session.snapshot()
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Session observer %r failed", observer)

    def _set_model_state(self, state: ModelState, error: str | None = None) -> None:
        logger.debug("model_state %s -> %s", self.session.model_state.value, state.value)
        self.session.model_state = state
        self.session.last_error = error
        self._publish()

    def set_prefill_text(self, text: str) -> None:
        self.session.prefill_text = text
        self._publish()

    async def _run_engine(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ModelState:
        """Bind the most recently accessed chat, if any, and load its model."""
        chat = self._store.get_last_accessed_chat()
        if chat is None:
            logger.info("No previous chat to restore")
            return self.session.model_state
        self._current_chat_id = chat.id
        return await self.load_model(chat.id)

    async def load_model(self, chat_id: int | None = None) -> ModelState:
        if chat_id is None:
            chat_id = self._current_chat_id
        pending = self._load_task
        if pending is not None and not pending.done():
            if self._load_chat_id == chat_id:
                logger.debug("load_model(%s): joining in-flight load", chat_id)
                return await asyncio.shield(pending)
        task = asyncio.ensure_future(self._load_serialized(chat_id))
        self._load_task = task
        self._load_chat_id = chat_id
        return await asyncio.shield(task)

    async def _load_serialized(self, chat_id: int | None) -> ModelState:
        async with self._lock:
            return await self._load_locked(chat_id)

    async def _load_locked(self, chat_id: int | None) -> ModelState:
        s = self.session
        if s.model_state is ModelState.READY and s.active_chat_id == chat_id:
            logger.debug("load_model(%s): already loaded", chat_id)
            return s.model_state
        if s.model_state is ModelState.READY and not s.is_idle:
            logger.warning("load_model(%s): rejected, generation in progress", chat_id)
            return s.model_state

        if chat_id is None:
            await self._unload_locked()
            self._set_model_state(ModelState.FAILED, "No chat selected")
            logger.info("load_model: no chat selected")
            return s.model_state

        chat, messages = self._read_chat(chat_id)
        if s.model_state is ModelState.READY:
            await self._unload_locked()
        return await self._bind_locked(chat_id, chat, messages)

    async def _reload_locked(self, chat_id: int) -> ModelState:
        """Stop any generation, drop the current model and load ``chat_id``.

        The store is read before anything is torn down, so a ``StorageError``
        leaves the session as it was.
        """
        chat, messages = self._read_chat(chat_id)
        self._cancel()
        await self._unload_locked()
        return await self._bind_locked(chat_id, chat, messages)

    def _read_chat(self, chat_id: int) -> tuple[Chat | None, list[ChatMessage]]:
        try:
            chat = self._store.get_chat(chat_id)
            if chat is None:
                return None, []
            messages = self._store.get_messages(chat_id)
            self._store.update_last_accessed_time(chat_id)
        except StorageError:
            logger.exception("load_model(%s): history store failed", chat_id)
            raise
        return chat, messages

    async def _bind_locked(
        self, chat_id: int, chat: Chat | None, messages: list[ChatMessage]
    ) -> ModelState:
        s = self.session
        self._current_chat_id = chat_id
        self._set_model_state(ModelState.LOADING)
        try:
            config = self._engine_config(chat_id, chat, messages)
            await self._run_engine(self._engine.load, config)
        except (ConfigurationError, EngineLoadError) as exc:
            logger.error("load_model(%s): FAILURE - %s", chat_id, exc)
            return await self._fail_load(str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("load_model(%s): unexpected engine failure", chat_id)
            return await self._fail_load(f"Engine failure: {exc}")

        self._chat = chat
        s.active_chat_id = chat_id
        self._set_model_state(ModelState.READY)
        logger.info("load_model(%s): SUCCESS", chat_id)
        return s.model_state

    async def _fail_load(self, reason: str) -> ModelState:
        try:
            await self._run_engine(self._engine.unload)
        except Exception:  # noqa: BLE001
            logger.exception("Engine cleanup after failed load also failed")
        self._chat = None
        self.session.active_chat_id = None
        self._set_model_state(ModelState.FAILED, reason)
        return self.session.model_state

    def _engine_config(
        self, chat_id: int, chat: Chat | None, messages: list[ChatMessage]
    ) -> EngineConfig:
        if chat is None:
            raise ConfigurationError(f"Chat not found: {chat_id}")
        if chat.model_key is None:
            raise ConfigurationError(f"No model selected for chat {chat_id}")
        model = self._registry.find(chat.model_key)
        if model is None:
            raise ConfigurationError(f"Model not found: {chat.model_key}")

        budget = self._config.context_budget
        trimmed = trim_messages(messages, budget, self._config.chars_per_token)
        logger.info("Trimmed %d messages to %d (budget %d)", len(messages), len(trimmed), budget)
        return EngineConfig(
            model_path=model.local_path,
            context_size=min(chat.context_size, budget),
            num_threads=chat.num_threads,
            num_gpu_layers=chat.num_gpu_layers,
            system_prompt=chat.system_prompt,
            history=trimmed,
            sampling=SamplingSpec(
                max_new_tokens=self._config.max_new_tokens,
                temperature=self._config.temperature,
                top_p=self._config.top_p,
            ),
        )

    async def unload_model(self) -> bool:
        async with self._lock:
            return await self._unload_locked()

    async def _unload_locked(self) -> bool:
        s = self.session
        if not s.is_idle:
            logger.warning("unload_model: rejected, generation in progress")
            return False
        try:
            await self._run_engine(self._engine.unload)
        except Exception as exc:  # noqa: BLE001
            logger.exception("unload_model: FAILURE")
            self._chat = None
            s.active_chat_id = None
            self._set_model_state(ModelState.FAILED, f"Unload failed: {exc}")
            return False
        self._unload_deferred = False
        self._chat = None
        s.active_chat_id = None
        s.last_metrics = None
        if s.model_state is not ModelState.UNLOADED:
            self._set_model_state(ModelState.UNLOADED)
            logger.info("unload_model: SUCCESS")
        return True

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def send_query(self, text: str, persist: bool = True) -> bool:
        async with self._lock:
            return self._start_generation(text, persist)

    def _start_generation(self, text: str, persist: bool) -> bool:
        s = self.session
        if not s.is_idle:
            logger.warning("send_query: already generating a response")
            return False
        if s.model_state is not ModelState.READY or s.active_chat_id is None:
            logger.warning("send_query: model not ready (%s)", s.model_state.value)
            return False

        chat_id = s.active_chat_id
        if persist:
            self._store.append_user_message(chat_id, text)

        template = self._chat.user_template if self._chat is not None else ""
        prompt = apply_user_template(template, text)
        stop = threading.Event()
        self._stop_event = stop
        s.partial_buffer = ""
        s.generation_state = GenerationState.STREAMING
        s.active_task = asyncio.ensure_future(self._generate(chat_id, prompt, stop))
        self._publish()
        return True

    async def _generate(self, chat_id: int, prompt: str, stop: threading.Event) -> None:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        clock = GenerationClock()
        clock.start()
        producer = loop.run_in_executor(
            self._executor, self._produce, loop, queue, prompt, stop
        )
        producer.add_done_callback(_log_producer_result)

        failure: BaseException | None = None
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _StreamFailure):
                    failure = item.error
                    continue
                clock.tick()
                self.session.partial_buffer += item
                self._publish()
        except asyncio.CancelledError:
            # cancel_generation() has already saved the buffer and reset the session.
            stop.set()
            raise

        metrics = clock.stop()
        s = self.session
        text = s.partial_buffer
        if failure is not None:
            logger.error(
                "Generation failed after %d fragments: %s", metrics.token_count, failure
            )
        try:
            if text.strip():
                self._store.append_assistant_message(chat_id, text)
                s.last_metrics = metrics
                logger.info(
                    "Response generated: %d tokens in %dms (%.2f tokens/s)",
                    metrics.token_count,
                    metrics.elapsed_ms,
                    metrics.tokens_per_s,
                )
        except StorageError:
            logger.exception("Failed to save response for chat %s", chat_id)
        finally:
            self._stop_event = None
            s.reset_generation()
            self._publish()
        await self._flush_deferred_unload()

    def _produce(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        prompt: str,
        stop: threading.Event,
    ) -> None:
        """Runs on the engine thread; always ends the stream with ``_END``."""

        def put(item: object) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        stream = None
        try:
            stream = self._engine.generate(prompt, stop)
            for fragment in stream:
                if stop.is_set():
                    break
                put(fragment)
        except Exception as exc:  # noqa: BLE001
            put(_StreamFailure(exc))
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
            put(_END)

    async def cancel_generation(self) -> bool:
        cancelled = self._cancel()
        if cancelled:
            await self._flush_deferred_unload()
        return cancelled

    def _cancel(self) -> bool:
        s = self.session
        if s.generation_state is not GenerationState.STREAMING:
            return False
        s.generation_state = GenerationState.CANCELLING
        self._publish()
        if self._stop_event is not None:
            self._stop_event.set()
        if s.active_task is not None:
            s.active_task.cancel()

        text = s.partial_buffer
        chat_id = s.active_chat_id
        try:
            if text.strip() and chat_id is not None:
                self._store.append_assistant_message(chat_id, text)
                logger.info("Saved partial response (%d chars) on cancel", len(text))
        finally:
            self._stop_event = None
            s.reset_generation()
            self._publish()
        return True

    async def wait_for_generation(self) -> None:
        task = self.session.active_task
        if task is not None:
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Chat commands
    # ------------------------------------------------------------------

    async def switch_chat(self, chat_id: int) -> ModelState:
        async with self._lock:
            return await self._reload_locked(chat_id)

    async def update_chat_settings(self, chat_id: int, settings: ChatSettings) -> Chat:
        async with self._lock:
            chat = self._store.get_chat(chat_id)
            if chat is None:
                raise ConfigurationError(f"Chat not found: {chat_id}")
            updated = dataclasses.replace(
                chat,
                name=settings.name,
                model_key=settings.model_key if settings.model_key is not None else chat.model_key,
                system_prompt=settings.system_prompt,
                user_template=settings.user_template,
                context_size=min(settings.context_size, self._config.context_budget),
                num_threads=settings.num_threads,
                num_gpu_layers=settings.num_gpu_layers,
            )
            self._store.update_chat(updated)
            if chat_id in (self.session.active_chat_id, self._current_chat_id):
                await self._reload_locked(chat_id)
        return updated

    async def delete_message(self, message_id: int) -> None:
        self._store.delete_message(message_id)

    async def edit_message(self, message_id: int, new_text: str) -> bool:
        """Replace a user message and everything after it, then regenerate.

        Context is fixed at load time, so the model is reloaded from the
        shortened history before ``new_text`` is sent.
        """
        async with self._lock:
            message = self._store.get_message(message_id)
            if message is None:
                logger.warning("edit_message: message %s not found", message_id)
                return False
            if message.role != "user":
                logger.warning("edit_message: message %s is not a user message", message_id)
                return False
            self._cancel()
            removed = self._store.delete_messages_from(message.chat_id, message_id)
            logger.info("edit_message: removed %d messages from chat %s", removed, message.chat_id)
            state = await self._reload_locked(message.chat_id)
            if state is not ModelState.READY:
                return False
            return self._start_generation(new_text, persist=True)

    async def open_shared_text(self, text: str) -> Chat:
        """Start a new chat for text shared from outside and prefill the query box."""
        count = len(self._store.list_chats())
        models = self._registry.list()
        chat = self._store.create_chat(
            name=f"Untitled {count + 1}",
            model_key=models[0].key if models else None,
            context_size=self._config.context_budget,
        )
        await self.switch_chat(chat.id)
        self.set_prefill_text(text)
        return chat

    # ------------------------------------------------------------------
    # Lifecycle signals
    # ------------------------------------------------------------------

    async def on_memory_pressure(self) -> bool:
        if not self.session.is_idle:
            logger.info("Memory pressure during generation; unload deferred")
            self._unload_deferred = True
            return False
        return await self.unload_model()

    async def on_visibility_lost(self) -> bool:
        self._hidden = True
        if not self.session.is_idle:
            logger.info("Visibility lost during generation; unload deferred")
            self._unload_deferred = True
            return False
        return await self.unload_model()

    async def on_visibility_restored(self) -> ModelState:
        was_hidden, self._hidden = self._hidden, False
        if was_hidden and self.session.model_state is ModelState.UNLOADED:
            return await self.load_model()
        return self.session.model_state

    async def _flush_deferred_unload(self) -> None:
        if not self._unload_deferred:
            return
        async with self._lock:
            if self._unload_deferred and self.session.is_idle:
                logger.info("Running deferred unload")
                await self._unload_locked()

    async def close(self) -> None:
        async with self._lock:
            self._cancel()
            await self._unload_locked()
        self._executor.shutdown(wait=False)
        logger.info("Session controller closed")


def _log_producer_result(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Engine producer crashed: %s", exc)
