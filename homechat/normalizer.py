"""Message normalization: stable ids, timestamps, legacy detection and titles."""

from __future__ import annotations

import re
import uuid
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Sequence

from . import config
from .attachments import get_text_from_parts
from .kv_store import KeyValueStore
from .models import ChatMessage, Conversation, now_iso

_WORD_SPLIT_RE = re.compile(r"\s+")
_BR_TAG_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_HTML_TAG_RE = re.compile(r"<[^>]*>")

TITLE_WORDS = 4


def generate_message_id() -> str:
    return uuid.uuid4().hex


def normalize_message(record: Any) -> ChatMessage:
    """Build a ``ChatMessage`` from a stored record, dropping empty parts."""

    if isinstance(record, ChatMessage):
        message = replace(record, parts=[dict(part) for part in record.parts if part])
    else:
        message = ChatMessage.from_dict(dict(record) if isinstance(record, Mapping) else {})
        message.parts = [part for part in message.parts if part]
    if not message.created_at:
        message.created_at = now_iso()
    return message


def ensure_ids(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    return [
        replace(
            message,
            id=message.id or generate_message_id(),
            created_at=message.created_at or now_iso(),
        )
        for message in messages
    ]


def is_legacy(record: Any) -> bool:
    if not isinstance(record, Mapping):
        return True
    if "content" in record or "sources" in record:
        return True
    return not isinstance(record.get("parts"), list)


def legacy_conversation_ids(conversations: Sequence[Conversation], kv: KeyValueStore) -> List[str]:
    """Return ids whose stored message log uses the pre-``parts`` schema."""

    offending: List[str] = []
    for conversation in conversations:
        if not conversation.id:
            continue
        stored = kv.get_json(config.messages_key(conversation.id), [])
        if not isinstance(stored, list) or any(is_legacy(record) for record in stored):
            offending.append(conversation.id)
    return offending


def detect_legacy_store(conversations: Sequence[Conversation], kv: KeyValueStore) -> bool:
    if not kv.enabled or not conversations:
        return False
    return bool(legacy_conversation_ids(conversations, kv))


def strip_html_tags(text: str) -> str:
    return _HTML_TAG_RE.sub("", _BR_TAG_RE.sub(" ", text))


def truncate_to_words(text: str, max_words: int = TITLE_WORDS) -> str:
    words = [word for word in _WORD_SPLIT_RE.split(text.strip()) if word]
    return " ".join(words[:max_words])


def derive_title(messages: Sequence[ChatMessage], fallback: str) -> str:
    user_message = next((msg for msg in messages if msg.role == "user"), None)
    user_text = get_text_from_parts(user_message.parts).strip() if user_message else ""
    first_text = get_text_from_parts(messages[0].parts).strip() if messages else ""
    candidate = truncate_to_words(strip_html_tags(user_text or first_text))
    return candidate or fallback


__all__ = [
    "TITLE_WORDS",
    "derive_title",
    "detect_legacy_store",
    "ensure_ids",
    "generate_message_id",
    "is_legacy",
    "legacy_conversation_ids",
    "normalize_message",
    "strip_html_tags",
    "truncate_to_words",
]
