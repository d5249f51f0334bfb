from __future__ import annotations

import html
from typing import Any, Callable, Dict, List, Sequence, Tuple

from .models import ChatMessage, Conversation, parse_iso
from .transport import to_display_message

DOCUMENT_PREVIEW_CHARS = 500


def safe_component(
    factory: Callable[..., Any],
    *args: Any,
    optional_keys: Tuple[str, ...] = ("type", "show_copy_button", "file_types"),
    **kwargs: Any,
) -> Any:
    """Build a Gradio component, retrying without kwargs this Gradio release rejects."""

    attempt_kwargs = dict(kwargs)
    while True:
        try:
            return factory(*args, **attempt_kwargs)
        except TypeError as exc:
            message = str(exc)
            dropped = next(
                (key for key in optional_keys if key in attempt_kwargs and f"'{key}'" in message),
                None,
            )
            if dropped is None:
                raise
            attempt_kwargs.pop(dropped)


def conversation_label(conversation: Conversation) -> str:
    prefix = "📌 " if conversation.pinned else ""
    stamp = parse_iso(conversation.updated_at).strftime("%Y-%m-%d %H:%M")
    return f"{prefix}{conversation.title} · {stamp}"


def conversation_choices(conversations: Sequence[Conversation]) -> List[Tuple[str, str]]:
    return [(conversation_label(conv), conv.id) for conv in conversations]


def _render_sources(sources: Sequence[Dict[str, Any]]) -> str:
    lines = []
    for index, source in enumerate(sources, start=1):
        if source.get("type") == "url":
            title = source.get("title") or source.get("url")
            lines.append(f"{index}. [{title}]({source.get('url')})")
        else:
            title = source.get("title") or source.get("filename") or "Document"
            lines.append(f"{index}. {title}")
    return "\n\n**Sources**\n" + "\n".join(lines) if lines else ""


def render_message(message: ChatMessage) -> Dict[str, str]:
    """Turn a stored message into a ``gr.Chatbot`` entry (messages format)."""

    display = to_display_message(message)
    chunks: List[str] = []
    if display["content"]:
        chunks.append(display["content"])
    for image in display["images"]:
        alt = html.escape(image.get("filename") or "Uploaded")
        chunks.append(f'<img src="{image["url"]}" alt="{alt}" style="max-height:300px">')
    for doc in display["documents"]:
        content = str(doc.get("content") or "")
        preview = content[:DOCUMENT_PREVIEW_CHARS] + ("..." if len(content) > DOCUMENT_PREVIEW_CHARS else "")
        quoted = "\n".join(f"> {line}" for line in preview.splitlines())
        chunks.append(f"📄 **{doc.get('name', 'Document')}**\n{quoted}")
    body = "\n\n".join(chunks) + _render_sources(display["sources"])
    role = "assistant" if display["role"] == "assistant" else "user"
    return {"role": role, "content": body}


def render_history(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    return [render_message(message) for message in messages if message.role != "system"]


__all__ = [
    "conversation_choices",
    "conversation_label",
    "render_history",
    "render_message",
    "safe_component",
]
