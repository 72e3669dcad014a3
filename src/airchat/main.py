"""AirChat UI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import atexit
import concurrent.futures
import logging
import os
from typing import Any

import gradio as gr

from .config import MemoryConfig, RootConfig, load_config
from .engines import BACKENDS, create_engine
from .metrics.memory_monitor import MemoryPressureMonitor, MemoryUsage, current_memory_usage
from .registry import ModelRegistry
from .session.controller import SessionController
from .session.state import GenerationState, ModelState, SessionSnapshot
from .storage import ChatSettings, SQLiteHistoryStore

logger = logging.getLogger("airchat")

_POLL_INTERVAL_S = 0.05
_PREVIEW_CHARS = 60


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AirChat UI")
    parser.add_argument("--config", default="configs/airchat.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--db")
    parser.add_argument("--backend", choices=BACKENDS)
    parser.add_argument("--context-budget", type=int)
    parser.add_argument("--log-level")
    parser.add_argument("--share", action="store_true")
    parser.add_argument("--shared-text", help="open a new chat with this text prefilled")
    return parser.parse_args()


def load_root_config(path: str) -> RootConfig:
    if not os.path.exists(path):
        return RootConfig()
    return load_config(path)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.title:
        cfg.app.title = args.title
    if args.host:
        cfg.app.host = args.host
    if args.port is not None:
        cfg.app.port = args.port
    if args.db:
        cfg.app.db_path = args.db
    if args.backend:
        cfg.app.engine_backend = args.backend
    if args.context_budget is not None:
        cfg.session.context_budget = args.context_budget
    if args.log_level:
        cfg.app.log_level = args.log_level.upper()
    return cfg


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _status_markdown(snapshot: SessionSnapshot, memory: MemoryUsage | None = None) -> str:
    if snapshot.model_state is ModelState.FAILED:
        lines = [f"**model:** failed ({snapshot.last_error or 'unknown error'})"]
    else:
        lines = [
            f"**model:** {snapshot.model_state.value}",
            f"**generation:** {snapshot.generation_state.value}",
        ]
        metrics = snapshot.last_metrics
        if metrics is not None:
            lines.append(f"**tokens/s:** {metrics.tokens_per_s:.2f}")
            lines.append(f"**time:** {metrics.elapsed_s:.1f}s")
    if memory is not None:
        lines.append(f"**RAM:** {memory.used_mb} MB / {memory.total_mb} MB")
    return "\n".join(lines)


def _log_unload_result(future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Unload on memory pressure failed: %s", exc, exc_info=exc)


class MemoryWatch:
    """Runs the memory monitor and hands its callbacks to the UI event loop."""

    def __init__(self, controller: SessionController, memory_cfg: MemoryConfig) -> None:
        self._controller = controller
        self._loop: asyncio.AbstractEventLoop | None = None
        self.pending: concurrent.futures.Future | None = None
        self.monitor = MemoryPressureMonitor(
            memory_cfg.sampling_interval_ms,
            memory_cfg.min_available_mb,
            self.notify_low_memory,
        )

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.monitor.running:
            return
        self._loop = loop
        self.monitor.start()

    def stop(self) -> None:
        self.monitor.stop()

    def notify_low_memory(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Low memory reported with no UI loop; model left loaded")
            return
        self.pending = asyncio.run_coroutine_threadsafe(self._controller.on_memory_pressure(), loop)
        self.pending.add_done_callback(_log_unload_result)


def shutdown(
    controller: SessionController,
    store: SQLiteHistoryStore,
    watch: MemoryWatch | None = None,
) -> None:
    if watch is not None:
        watch.stop()
    try:
        asyncio.run(controller.close())
    finally:
        store.close()
        logger.info("Shutdown complete")


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= _PREVIEW_CHARS:
        return flat
    return flat[: _PREVIEW_CHARS - 3] + "..."


def build_app(
    cfg: RootConfig,
    controller: SessionController,
    store: SQLiteHistoryStore,
    registry: ModelRegistry,
    watch: MemoryWatch | None = None,
    shared_text: str | None = None,
) -> gr.Blocks:
    budget = cfg.session.context_budget
    model_choices = [(m.display_name, m.key) for m in registry.list()]
    show_ram = {"on": False}

    def _chat_choices() -> list[tuple[str, int]]:
        return [(chat.name, chat.id) for chat in store.list_chats()]

    def _message_choices() -> list[tuple[str, int]]:
        chat_id = controller.current_chat_id
        if chat_id is None:
            return []
        return [(f"{m.role}: {_preview(m.text)}", m.id) for m in store.get_messages(chat_id)]

    def _history(partial: str | None = None) -> list[dict[str, str]]:
        chat_id = controller.current_chat_id
        if chat_id is None:
            return []
        history: list[dict[str, Any]] = [
            {"role": m.role, "content": m.text} for m in store.get_messages(chat_id)
        ]
        if partial:
            history.append({"role": "assistant", "content": partial})
        return history

    def _status(snapshot: SessionSnapshot | None = None) -> str:
        memory = current_memory_usage() if show_ram["on"] else None
        return _status_markdown(snapshot or controller.snapshot(), memory)

    def _settings_values() -> list[Any]:
        chat = store.get_chat(controller.current_chat_id) if controller.current_chat_id else None
        if chat is None:
            return [gr.update()] * 7
        settings = ChatSettings.from_chat(chat, budget)
        return [
            settings.name,
            settings.model_key,
            settings.system_prompt,
            settings.user_template,
            settings.context_size,
            settings.num_threads,
            settings.num_gpu_layers,
        ]

    def _view() -> list[Any]:
        return [
            gr.update(choices=_chat_choices(), value=controller.current_chat_id),
            _history(),
            _status(),
            gr.update(choices=_message_choices(), value=None),
        ]

    async def _follow_generation():
        while True:
            snapshot = controller.snapshot()
            if snapshot.generation_state is GenerationState.IDLE:
                return
            yield snapshot
            await asyncio.sleep(_POLL_INTERVAL_S)

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            chat_dd = gr.Dropdown(label="Chat", choices=_chat_choices())
            new_chat_name = gr.Textbox(label="New chat", placeholder="Chat name")
            new_chat_btn = gr.Button("Create")

        with gr.Accordion("Chat settings", open=False):
            name_box = gr.Textbox(label="Name")
            model_dd = gr.Dropdown(label="Model", choices=model_choices)
            system_box = gr.Textbox(label="System prompt", lines=3)
            template_box = gr.Textbox(label="User prompt template", value="{prompt}")
            context_slider = gr.Slider(minimum=256, maximum=budget, step=128, label="Context size")
            threads_slider = gr.Slider(minimum=1, maximum=os.cpu_count() or 8, step=1, label="Threads")
            gpu_layers = gr.Number(label="GPU layers", precision=0, value=0)
            save_btn = gr.Button("Save and reload")

        chatbot = gr.Chatbot(label="Chat")
        user_input = gr.Textbox(label="Message", placeholder="Type a message...")
        with gr.Row():
            send_btn = gr.Button("Send", variant="primary")
            stop_btn = gr.Button("Stop")
            reload_btn = gr.Button("Reload model")
            unload_btn = gr.Button("Release model")

        with gr.Accordion("Edit messages", open=False):
            message_dd = gr.Dropdown(label="Message", choices=[])
            message_text = gr.Textbox(label="Text", lines=3)
            with gr.Row():
                edit_btn = gr.Button("Edit and regenerate")
                delete_btn = gr.Button("Delete message")

        with gr.Row():
            status_md = gr.Markdown("No model loaded.")
            ram_toggle = gr.Checkbox(label="Show RAM usage", value=False)

        settings_outputs = [
            name_box,
            model_dd,
            system_box,
            template_box,
            context_slider,
            threads_slider,
            gpu_layers,
        ]

        async def _on_load():
            if watch is not None:
                watch.start(asyncio.get_running_loop())
            if shared_text and not controller.snapshot().prefill_text:
                await controller.open_shared_text(shared_text)
            elif controller.current_chat_id is None:
                await controller.start()
            else:
                await controller.on_visibility_restored()
            return _view() + [controller.snapshot().prefill_text] + _settings_values()

        async def _on_page_closed():
            await controller.on_visibility_lost()

        async def _on_send(message: str):
            if not message:
                yield _history(), "", _status(), gr.update()
                return
            if not await controller.send_query(message):
                yield _history(), message, _status(), gr.update()
                return
            async for snapshot in _follow_generation():
                yield _history(snapshot.partial_buffer), "", _status(snapshot), gr.update()
            yield _history(), "", _status(), gr.update(choices=_message_choices(), value=None)

        async def _on_stop():
            await controller.cancel_generation()
            return _history(), _status()

        async def _on_pick_message(message_id: int | None):
            message = store.get_message(int(message_id)) if message_id is not None else None
            return message.text if message is not None else ""

        async def _on_edit_message(message_id: int | None, text: str):
            if message_id is None or not text:
                yield _history(), _status(), gr.update(), text
                return
            if not await controller.edit_message(int(message_id), text):
                gr.Warning("Only your own messages can be edited, and the model must load.")
                yield _history(), _status(), gr.update(), text
                return
            async for snapshot in _follow_generation():
                yield _history(snapshot.partial_buffer), _status(snapshot), gr.update(), ""
            yield _history(), _status(), gr.update(choices=_message_choices(), value=None), ""

        async def _on_delete_message(message_id: int | None):
            if message_id is not None:
                await controller.delete_message(int(message_id))
            return _view() + [""]

        async def _on_select(chat_id: int | None):
            if chat_id is not None and chat_id != controller.session.active_chat_id:
                await controller.switch_chat(int(chat_id))
            return _view() + _settings_values()

        async def _on_new_chat(name: str):
            models = registry.list()
            chat = store.create_chat(
                name=name or f"Untitled {len(store.list_chats()) + 1}",
                model_key=models[0].key if models else None,
                context_size=budget,
            )
            await controller.switch_chat(chat.id)
            return _view() + [""] + _settings_values()

        async def _on_save(name, model_key, system_prompt, template, context_size, threads, layers):
            chat_id = controller.current_chat_id
            if chat_id is None:
                return _view()
            settings = ChatSettings(
                name=name,
                model_key=model_key,
                system_prompt=system_prompt,
                user_template=template,
                context_size=int(context_size),
                num_threads=int(threads),
                num_gpu_layers=int(layers or 0),
            )
            await controller.update_chat_settings(chat_id, settings)
            return _view()

        async def _on_reload():
            await controller.load_model()
            return _status()

        async def _on_unload():
            await controller.unload_model()
            return _status()

        def _on_ram_toggle(visible: bool):
            show_ram["on"] = bool(visible)
            return _status()

        view_outputs = [chat_dd, chatbot, status_md, message_dd]
        stream_outputs = [chatbot, user_input, status_md, message_dd]
        demo.load(_on_load, outputs=view_outputs + [user_input] + settings_outputs)
        demo.unload(_on_page_closed)
        chat_dd.input(_on_select, inputs=[chat_dd], outputs=view_outputs + settings_outputs)
        new_chat_btn.click(
            _on_new_chat,
            inputs=[new_chat_name],
            outputs=view_outputs + [new_chat_name] + settings_outputs,
        )
        save_btn.click(_on_save, inputs=settings_outputs, outputs=view_outputs)
        send_btn.click(_on_send, inputs=[user_input], outputs=stream_outputs)
        user_input.submit(_on_send, inputs=[user_input], outputs=stream_outputs)
        stop_btn.click(_on_stop, outputs=[chatbot, status_md], concurrency_limit=None)
        reload_btn.click(_on_reload, outputs=[status_md])
        unload_btn.click(_on_unload, outputs=[status_md])
        message_dd.input(_on_pick_message, inputs=[message_dd], outputs=[message_text])
        edit_btn.click(
            _on_edit_message,
            inputs=[message_dd, message_text],
            outputs=[chatbot, status_md, message_dd, message_text],
        )
        delete_btn.click(
            _on_delete_message,
            inputs=[message_dd],
            outputs=view_outputs + [message_text],
        )
        ram_toggle.change(_on_ram_toggle, inputs=[ram_toggle], outputs=[status_md])

    return demo


def main() -> None:
    args = parse_args()
    cfg = load_root_config(args.config)
    cfg = apply_overrides(cfg, args)
    setup_logging(cfg.app.log_level)

    store = SQLiteHistoryStore(cfg.app.db_path)
    registry = ModelRegistry(cfg.models)
    engine = create_engine(cfg.app.engine_backend)
    controller = SessionController(store, engine, registry, cfg.session)
    watch = MemoryWatch(controller, cfg.memory) if cfg.memory.enabled else None
    atexit.register(shutdown, controller, store, watch)
    logger.info(
        "Starting %s with %s backend, %d models, context budget %d",
        cfg.app.title,
        cfg.app.engine_backend,
        len(cfg.models),
        cfg.session.context_budget,
    )

    app = build_app(cfg, controller, store, registry, watch=watch, shared_text=args.shared_text)
    app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
    app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)


if __name__ == "__main__":
    main()
