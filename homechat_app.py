#!/usr/bin/env python3

# Copyright (c) 2025 James Baker VA7ODR
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of this software
# and associated documentation files (the “Software”), to deal in the Software without
# restriction, including without limitation the rights to use, copy, modify, merge, publish,
# distribute, sublicense, and/or sell copies of the Software, and to permit persons to whom the
# Software is furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all copies or
# substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL
# THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR
# OTHER LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE,
# ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR
# OTHER DEALINGS IN THE SOFTWARE.

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence, Tuple

import gradio as gr

import homechat.config as homechat_config
from homechat.api_client import ChatApiClient
from homechat.attachments import (
    UploadedDocument,
    UploadedImage,
    guess_mime_type,
    is_document_file,
    is_image_file,
    read_file_as_data_url,
    read_text_document,
)
from homechat.conversation_store import ConversationStore
from homechat.errors import ConfigurationError, DocumentExtractionError
from homechat.kv_store import KeyValueStore
from homechat.models import Persona
from homechat.personas import DEFAULT_PERSONA, PersonaRegistry, is_default_persona
from homechat.streaming import StreamingSessionController
from homechat.ui_utils import conversation_choices, render_history, safe_component


homechat_config.reload_from_environment()

_safe_component = safe_component
logger = logging.getLogger(__name__)


@dataclass
class AppDependencies:
    kv: KeyValueStore
    personas: PersonaRegistry
    store: ConversationStore
    client: ChatApiClient
    controller: StreamingSessionController


_dependencies: AppDependencies | None = None


def build_dependencies(
    *,
    data_dir: Optional[Path] = None,
    client_factory: Optional[Callable[[], ChatApiClient]] = None,
) -> AppDependencies:
    kv = KeyValueStore(data_dir) if data_dir is not None else KeyValueStore.from_config()
    personas = PersonaRegistry(kv)
    store = ConversationStore(kv)
    client = client_factory() if client_factory else ChatApiClient()
    controller = StreamingSessionController(store, client, personas)
    return AppDependencies(kv=kv, personas=personas, store=store, client=client, controller=controller)


def configure_dependencies(deps: AppDependencies) -> AppDependencies:
    global _dependencies
    _dependencies = deps
    return deps


def get_dependencies() -> AppDependencies:
    if _dependencies is None:
        return configure_dependencies(build_dependencies())
    return _dependencies


# ----- View helpers ----------------------------------------------------------


def _chat_value() -> List[Dict[str, str]]:
    return render_history(get_dependencies().controller.visible_messages())


def _conversation_dropdown_update() -> Any:
    store = get_dependencies().store
    return gr.update(choices=conversation_choices(store.conversations), value=store.active_id)


def _persona_choices() -> List[Tuple[str, str]]:
    return [(persona.name or persona.id or "Persona", persona.id or "") for persona in get_dependencies().personas.all()]


def _persona_dropdown_update(value: Optional[str] = None) -> Any:
    return gr.update(choices=_persona_choices(), value=value or DEFAULT_PERSONA.id)


def _custom_persona_choices(keyword: str = "") -> List[Tuple[str, str]]:
    return [
        (persona.name or persona.id or "Persona", persona.id or "")
        for persona in get_dependencies().personas.search(keyword)
        if not is_default_persona(persona)
    ]


def _status_markdown() -> str:
    controller = get_dependencies().controller
    if controller.composer_error:
        return f"⚠️ {controller.composer_error}"
    conversation = get_dependencies().store.active_conversation
    if conversation is None:
        return ""
    persona_name = conversation.persona.name if conversation.persona else DEFAULT_PERSONA.name
    pin = " · 📌 pinned" if conversation.pinned else ""
    return f"**{conversation.title}** · {persona_name}{pin}"


def _refresh_outputs() -> Tuple[Any, Any, str]:
    return _chat_value(), _conversation_dropdown_update(), _status_markdown()


def _file_path(upload: Any) -> Optional[Path]:
    if upload is None:
        return None
    if isinstance(upload, (str, Path)):
        return Path(upload)
    name = getattr(upload, "name", None) or getattr(upload, "path", None)
    return Path(name) if name else None


def _collect_uploads(files: Optional[Sequence[Any]]) -> Tuple[List[UploadedImage], List[UploadedDocument], List[str]]:
    images: List[UploadedImage] = []
    documents: List[UploadedDocument] = []
    problems: List[str] = []
    client = get_dependencies().client
    for upload in files or []:
        path = _file_path(upload)
        if path is None:
            continue
        mime = guess_mime_type(path.name)
        if is_image_file(path.name, mime):
            images.append(UploadedImage(url=read_file_as_data_url(path, mime), mime_type=mime, name=path.name))
        elif is_document_file(path.name, mime) and path.suffix.lower() in (".txt", ".csv"):
            documents.append(read_text_document(path, mime))
        elif is_document_file(path.name, mime) and path.suffix.lower() == ".pdf":
            try:
                documents.append(client.extract_document(path, mime_type=mime))
            except DocumentExtractionError as exc:
                logger.warning("Could not extract %s: %s", path.name, exc)
                problems.append(f"{path.name}: {exc}")
        else:
            problems.append(f"{path.name}: unsupported file type")
    return images, documents, problems


# ----- Event handlers --------------------------------------------------------


def on_load():
    deps = get_dependencies()
    deps.store.hydrate()
    chat, dropdown, status = _refresh_outputs()
    picker = gr.update(choices=_custom_persona_choices(), value=None)
    return chat, dropdown, _persona_dropdown_update(), picker, status


def on_user(message: str, files: Optional[List[Any]]) -> Generator[Tuple[Any, ...], None, None]:
    controller = get_dependencies().controller
    images, documents, problems = _collect_uploads(files)
    if problems:
        controller.composer_error = "; ".join(problems)
        yield _chat_value(), gr.update(), gr.update(), _conversation_dropdown_update(), _status_markdown()
        return

    if not controller.send(message or "", images, documents):
        yield _chat_value(), gr.update(), gr.update(), _conversation_dropdown_update(), _status_markdown()
        return

    yield _chat_value(), "", None, _conversation_dropdown_update(), _status_markdown()
    try:
        for _event in controller.stream():
            yield _chat_value(), gr.update(), gr.update(), gr.update(), _status_markdown()
    except ConfigurationError as exc:
        logger.error("Chat endpoint is not configured: %s", exc)
        raise gr.Error(str(exc))
    yield _chat_value(), gr.update(), gr.update(), _conversation_dropdown_update(), _status_markdown()


def on_retry() -> Generator[Tuple[Any, ...], None, None]:
    controller = get_dependencies().controller
    if not controller.retry():
        yield _refresh_outputs()
        return
    try:
        for _event in controller.stream():
            yield _chat_value(), gr.update(), _status_markdown()
    except ConfigurationError as exc:
        raise gr.Error(str(exc))
    yield _refresh_outputs()


def on_stop():
    get_dependencies().controller.stop()
    return _refresh_outputs()


def on_select_conversation(selected_id: Optional[str]):
    deps = get_dependencies()
    conversation = deps.store.get_by_id(selected_id) if selected_id else None
    if conversation is not None and conversation.id != deps.store.active_id:
        deps.controller.select_conversation(conversation)
    return _refresh_outputs()


def on_new_conversation(persona_id: Optional[str]):
    deps = get_dependencies()
    persona = deps.personas.get_by_id(persona_id) or DEFAULT_PERSONA
    deps.controller.new_conversation(persona)
    return _refresh_outputs()


def on_delete_conversation():
    deps = get_dependencies()
    conversation = deps.store.active_conversation
    if conversation is not None:
        deps.controller.delete_conversation(conversation)
    return _refresh_outputs()


def on_toggle_pin():
    store = get_dependencies().store
    conversation = store.active_conversation
    if conversation is not None:
        store.update_pinned(conversation.id, not conversation.pinned)
    return _refresh_outputs()


def on_rename(title: str):
    store = get_dependencies().store
    conversation = store.active_conversation
    if conversation is not None and (title or "").strip():
        store.update_title(conversation.id, title.strip())
    return (*_refresh_outputs(), "")


def on_clear():
    get_dependencies().controller.clear()
    return _refresh_outputs()


def on_search_personas(keyword: str):
    return gr.update(choices=_custom_persona_choices(keyword), value=None)


def on_pick_persona(persona_id: Optional[str]):
    persona = get_dependencies().personas.get_by_id(persona_id)
    if persona is None or is_default_persona(persona):
        return "", "", "", ""
    return persona.name or "", persona.prompt or "", persona.id or "", f"Editing **{persona.name}**."


def _persona_editor_reset(status: str, selected: Optional[str] = None):
    return (
        _persona_dropdown_update(selected),
        gr.update(choices=_custom_persona_choices(), value=None),
        status,
        "",
        "",
        "",
    )


def on_save_persona(name: str, prompt: str, editing_id: Optional[str] = None):
    personas = get_dependencies().personas
    if not (name or "").strip() or not (prompt or "").strip():
        return (
            _persona_dropdown_update(),
            gr.update(),
            "⚠️ A persona needs a name and a prompt.",
            name,
            prompt,
            editing_id or "",
        )
    try:
        saved = personas.save(
            Persona(id=editing_id or None, role="system", name=name.strip(), prompt=prompt.strip())
        )
    except ValueError as exc:
        return _persona_editor_reset(f"⚠️ {exc}")
    return _persona_editor_reset(f"Saved persona **{saved.name}**.", saved.id)


def on_delete_persona(editing_id: Optional[str]):
    personas = get_dependencies().personas
    persona = personas.get_by_id(editing_id)
    if persona is None or not personas.delete(persona.id or ""):
        return _persona_editor_reset("⚠️ Pick a custom persona to delete.")
    return _persona_editor_reset(f"Deleted persona **{persona.name}**.")


def build_demo() -> gr.Blocks:
    with gr.Blocks(title="HomeChat") as demo:
        gr.Markdown("# HomeChat")

        with gr.Row(elem_id="homechat-conversation-bar"):
            conversation_selector = gr.Dropdown(label="Conversation", choices=[], value=None, scale=3)
            persona_selector = gr.Dropdown(label="Persona for new chats", choices=[], value=None, scale=2)
            new_btn = gr.Button("➕ New", scale=0)
            pin_btn = gr.Button("📌 Pin", scale=0)
            delete_btn = gr.Button("🗑️ Delete", scale=0)

        with gr.Row():
            rename_box = gr.Textbox(label="Rename conversation", placeholder="New title", scale=3)
            rename_btn = gr.Button("Rename", scale=0)
            clear_btn = gr.Button("Clear messages", scale=0)

        status_md = gr.Markdown("")
        chat = _safe_component(gr.Chatbot, label="Chat", value=[], height=520, type="messages", show_copy_button=True)

        with gr.Row():
            user_box = gr.Textbox(label="Message", placeholder="Type a message…", lines=2, scale=4)
            uploads = _safe_component(
                gr.File,
                label="Attachments",
                file_count="multiple",
                file_types=["image", ".txt", ".csv", ".pdf"],
                scale=1,
            )
        with gr.Row():
            send_btn = gr.Button("Send", variant="primary")
            stop_btn = gr.Button("Stop", variant="stop")
            retry_btn = gr.Button("Retry")

        with gr.Accordion("Custom personas", open=False):
            with gr.Row():
                persona_search = gr.Textbox(label="Search personas", placeholder="Name or prompt", scale=2)
                persona_picker = gr.Dropdown(label="Edit persona", choices=[], value=None, scale=2)
            persona_name = gr.Textbox(label="Name")
            persona_prompt = gr.Textbox(label="Prompt", lines=3)
            persona_editing = gr.State("")
            with gr.Row():
                persona_save = gr.Button("Save persona")
                persona_delete = gr.Button("Delete persona", variant="stop")
            persona_status = gr.Markdown("")

        refresh_outputs = [chat, conversation_selector, status_md]

        demo.load(
            on_load, inputs=None, outputs=[chat, conversation_selector, persona_selector, persona_picker, status_md]
        )

        send_outputs = [chat, user_box, uploads, conversation_selector, status_md]
        send_event = send_btn.click(on_user, inputs=[user_box, uploads], outputs=send_outputs)
        submit_event = user_box.submit(on_user, inputs=[user_box, uploads], outputs=send_outputs)
        retry_event = retry_btn.click(on_retry, inputs=None, outputs=refresh_outputs)
        stop_btn.click(
            on_stop, inputs=None, outputs=refresh_outputs, cancels=[send_event, submit_event, retry_event]
        )

        conversation_selector.input(on_select_conversation, inputs=conversation_selector, outputs=refresh_outputs)
        new_btn.click(on_new_conversation, inputs=persona_selector, outputs=refresh_outputs)
        delete_btn.click(on_delete_conversation, inputs=None, outputs=refresh_outputs)
        pin_btn.click(on_toggle_pin, inputs=None, outputs=refresh_outputs)
        rename_btn.click(on_rename, inputs=rename_box, outputs=[*refresh_outputs, rename_box])
        clear_btn.click(on_clear, inputs=None, outputs=refresh_outputs)
        persona_search.change(on_search_personas, inputs=persona_search, outputs=persona_picker)
        persona_picker.input(
            on_pick_persona,
            inputs=persona_picker,
            outputs=[persona_name, persona_prompt, persona_editing, persona_status],
        )
        editor_outputs = [persona_selector, persona_picker, persona_status, persona_name, persona_prompt, persona_editing]
        persona_save.click(
            on_save_persona, inputs=[persona_name, persona_prompt, persona_editing], outputs=editor_outputs
        )
        persona_delete.click(on_delete_persona, inputs=persona_editing, outputs=editor_outputs)
    return demo


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    configure_dependencies(build_dependencies())
    build_demo().queue().launch(server_name="0.0.0.0", server_port=7860, show_error=True)
