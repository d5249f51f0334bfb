"""Shape outgoing chat requests and fold incoming stream events into messages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import config
from .attachments import (
    MessageContent,
    build_message_content_from_parts,
    find_last_message_index,
    get_text_from_parts,
)
from .models import ChatMessage, now_iso
from .normalizer import generate_message_id

_TRAILING_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)\s*$")

ACCEPT_BY_PROTOCOL = {
    "ui": "text/event-stream",
    "text": "text/plain",
}


@dataclass
class ChatRequest:
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class StreamEvent:
    """One normalized event from the completion stream.

    ``kind`` is ``delta`` (``text`` set), ``source`` (``source`` holds the
    ``source-url`` or ``source-document`` part) or ``finish`` (``message`` and
    ``finish_reason`` set).
    """

    kind: str
    text: str = ""
    source: Optional[Dict[str, Any]] = None
    message: Optional[ChatMessage] = None
    finish_reason: Optional[str] = None


# ----- Outbound --------------------------------------------------------------


def to_completion_message(message: ChatMessage) -> Dict[str, Any]:
    if message.role in ("assistant", "system"):
        return {"role": message.role, "content": get_text_from_parts(message.parts)}
    return {"role": "user", "content": build_message_content_from_parts(message.parts)}


def prepare_send_messages_request(
    messages: Sequence[ChatMessage],
    *,
    prompt: str,
    model: Optional[str] = None,
    protocol: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> ChatRequest:
    """Split ``messages`` at the last user turn into history and ``input``."""

    selected_protocol = protocol or config.STREAM_PROTOCOL
    last_user_index = find_last_message_index(messages, "user")
    if last_user_index >= 0:
        history = list(messages[:last_user_index])
        input_content: MessageContent = build_message_content_from_parts(messages[last_user_index].parts)
    else:
        history = list(messages)
        input_content = ""

    body: Dict[str, Any] = {
        "prompt": prompt or "",
        "messages": [to_completion_message(message) for message in history],
        "input": input_content,
    }
    if model:
        body["model"] = model

    merged_headers = dict(headers or {})
    merged_headers["Accept"] = ACCEPT_BY_PROTOCOL.get(selected_protocol, ACCEPT_BY_PROTOCOL["ui"])
    return ChatRequest(body=body, headers=merged_headers)


# ----- Sources ---------------------------------------------------------------


def source_key(source: Dict[str, Any]) -> str:
    if source.get("type") == "url":
        return f"url:{source.get('url', '')}"
    return f"document:{source.get('mediaType', '')}:{source.get('filename') or ''}:{source.get('title', '')}"


def dedupe_sources(sources: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    deduped: List[Dict[str, Any]] = []
    for source in sources:
        key = source_key(source)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(source)
    return deduped


def _source_from_part(part: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    kind = part.get("type")
    if kind == "source-url":
        return {"type": "url", "id": part.get("sourceId"), "url": part.get("url", ""), "title": part.get("title")}
    if kind == "source-document":
        return {
            "type": "document",
            "id": part.get("sourceId"),
            "mediaType": part.get("mediaType", ""),
            "title": part.get("title", ""),
            "filename": part.get("filename"),
        }
    return None


def sources_from_parts(parts: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    found = [_source_from_part(part) for part in parts]
    return dedupe_sources(source for source in found if source is not None)


def strip_trailing_source_links(text: str, sources: Sequence[Dict[str, Any]]) -> str:
    """Remove a trailing run of markdown links that repeat cited URLs.

    A single trailing link is kept; only runs of two or more are stripped.
    """

    urls = {source.get("url") for source in sources if source.get("type") == "url"}
    if not urls:
        return text

    working = text.rstrip()
    stripped = 0
    while True:
        match = _TRAILING_LINK_RE.search(working)
        if match is None or match.group(2) not in urls:
            break
        stripped += 1
        working = working[: match.start()].rstrip()
    return working if stripped >= 2 else text


# ----- Inbound ---------------------------------------------------------------


class UIMessageAssembler:
    """Accumulate structured stream events into a single assistant message."""

    def __init__(self, message_id: Optional[str] = None) -> None:
        self.message_id = message_id or generate_message_id()
        self.parts: List[Dict[str, Any]] = []
        self.finish_reason: Optional[str] = None
        self.error_text: Optional[str] = None
        self._text_index: Dict[str, int] = {}
        self._source_keys: set = set()

    def _text_part(self, text_id: Optional[str]) -> Dict[str, Any]:
        key = text_id or "__default__"
        index = self._text_index.get(key)
        if index is None:
            self.parts.append({"type": "text", "text": ""})
            index = self._text_index[key] = len(self.parts) - 1
        return self.parts[index]

    def append_text(self, delta: str, text_id: Optional[str] = None) -> None:
        if delta:
            part = self._text_part(text_id)
            part["text"] = part["text"] + delta

    def add_source_part(self, part: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        source = _source_from_part(part)
        if source is None:
            return None
        key = source_key(source)
        if key in self._source_keys:
            return None
        self._source_keys.add(key)
        self.parts.append(dict(part))
        return source

    def feed(self, event: Dict[str, Any]) -> List[StreamEvent]:
        """Apply one decoded stream chunk and return the resulting events."""

        kind = event.get("type")
        if kind == "start":
            message_id = event.get("messageId")
            if isinstance(message_id, str) and message_id:
                self.message_id = message_id
        elif kind == "text-start":
            self._text_part(event.get("id"))
        elif kind == "text-delta":
            delta = str(event.get("delta") or "")
            self.append_text(delta, event.get("id"))
            if delta:
                return [StreamEvent(kind="delta", text=delta)]
        elif kind in ("source-url", "source-document"):
            part = {key: value for key, value in event.items() if value is not None}
            if self.add_source_part(part) is not None:
                return [StreamEvent(kind="source", source=part)]
        elif kind == "finish":
            reason = event.get("finishReason")
            self.finish_reason = str(reason) if reason else "stop"
        elif kind == "error":
            self.error_text = str(event.get("errorText") or "Stream error")
        return []

    def build_message(self) -> ChatMessage:
        parts = [part for part in self.parts if part.get("type") != "text" or part.get("text")]
        return ChatMessage(id=self.message_id, role="assistant", parts=parts, created_at=now_iso())


def to_display_message(message: ChatMessage) -> Dict[str, Any]:
    """Flatten a stored message into what the chat view renders."""

    images: List[Dict[str, Any]] = []
    documents: List[Dict[str, Any]] = []
    for part in message.parts:
        kind = part.get("type")
        if kind == "file" and str(part.get("mediaType") or "").startswith("image/"):
            images.append(
                {"url": part.get("url", ""), "mediaType": part.get("mediaType"), "filename": part.get("filename")}
            )
        elif kind == "data-document":
            documents.append(dict(part.get("data") or {}))

    sources = sources_from_parts(message.parts) if message.role == "assistant" else []
    text = "".join(str(part.get("text", "")) for part in message.parts if part.get("type") == "text")
    if sources:
        text = strip_trailing_source_links(text, sources)
    return {
        "id": message.id,
        "role": message.role,
        "content": text,
        "images": images,
        "documents": documents,
        "sources": sources,
    }


__all__ = [
    "ACCEPT_BY_PROTOCOL",
    "ChatRequest",
    "StreamEvent",
    "UIMessageAssembler",
    "dedupe_sources",
    "prepare_send_messages_request",
    "source_key",
    "sources_from_parts",
    "strip_trailing_source_links",
    "to_completion_message",
    "to_display_message",
]
