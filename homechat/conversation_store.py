"""Conversation list and message-log state machine.

``ConversationStore`` owns the authoritative in-memory list of conversations
and the map from conversation id to its message log.  Every list mutation goes
through :meth:`ConversationStore.apply_state`, which normalizes, sorts,
resolves the active conversation, garbage-collects orphaned logs and mirrors
the result into the durable key-value store (write-through).

The rendering side is represented by a :class:`ConversationView`.  The store
pushes the active log into the view when a switch happens and, before
switching away, asks the view for whatever it currently shows so that output
nobody saved yet is not lost.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import config
from .kv_store import KeyValueStore
from .models import ChatMessage, Conversation, Persona, now_iso, parse_iso
from .normalizer import (
    derive_title,
    detect_legacy_store,
    ensure_ids,
    legacy_conversation_ids,
    normalize_message,
    truncate_to_words,
)
from .personas import DEFAULT_PERSONA, is_default_persona


class ConversationView(ABC):
    """What the store needs from whatever renders the active conversation."""

    @abstractmethod
    def set_conversation(self, messages: List[ChatMessage], conversation_id: Optional[str]) -> None:
        ...

    @abstractmethod
    def get_conversation(self) -> List[ChatMessage]:
        ...

    @abstractmethod
    def focus(self) -> None:
        ...

    @abstractmethod
    def is_streaming(self) -> bool:
        ...


def _coerce_conversation(item: Any) -> Optional[Conversation]:
    if isinstance(item, Conversation):
        return replace(item)
    if isinstance(item, Mapping):
        conv_id = item.get("id")
        if isinstance(conv_id, str) and conv_id:
            return Conversation.from_dict(dict(item))
    return None


def normalize_conversation_list(items: Any) -> List[Conversation]:
    """Drop malformed and duplicate entries and fill in missing metadata."""

    if not isinstance(items, (list, tuple)):
        return []
    seen = set()
    now = now_iso()
    result: List[Conversation] = []
    for item in items:
        record = _coerce_conversation(item)
        if record is None or record.id in seen:
            continue
        seen.add(record.id)
        created = record.created_at or now
        updated = record.updated_at or created
        persona_name = record.persona.name if record.persona else None
        title = record.title or persona_name or config.DEFAULT_TITLE
        result.append(
            replace(record, created_at=created, updated_at=updated, title=title, pinned=bool(record.pinned))
        )
    return result


def sort_conversations(conversations: Iterable[Conversation]) -> List[Conversation]:
    """Pinned first, then most recently updated first."""

    return sorted(
        conversations,
        key=lambda conv: (0 if conv.pinned else 1, -parse_iso(conv.updated_at).timestamp()),
    )


class ConversationStore:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        legacy_migration: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.kv = kv
        self.legacy_migration = legacy_migration or config.LEGACY_MIGRATION
        self._logger = logger or logging.getLogger(__name__)
        self._view: Optional[ConversationView] = None
        self._conversations: List[Conversation] = []
        self._active_id: Optional[str] = None
        self._messages: Dict[str, List[ChatMessage]] = {}
        self._hydration_started = False
        self.hydrated = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self.get_by_id()

    @property
    def messages_by_conversation(self) -> Dict[str, List[ChatMessage]]:
        return {key: list(value) for key, value in self._messages.items()}

    def messages_for(self, conversation_id: Optional[str] = None) -> List[ChatMessage]:
        target = conversation_id or self._active_id
        if not target:
            return []
        return list(self._messages.get(target, []))

    def get_by_id(self, conversation_id: Optional[str] = None) -> Optional[Conversation]:
        target = conversation_id or self._active_id
        if not target:
            return None
        for conversation in self._conversations:
            if conversation.id == target:
                return conversation
        return None

    def attach_view(self, view: Optional[ConversationView]) -> None:
        self._view = view

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------
    def _clear_stored_chats(self) -> None:
        try:
            self.kv.remove(config.CHAT_LIST_KEY)
            self.kv.remove(config.CURRENT_CHAT_ID_KEY)
            for key in self.kv.keys():
                if key.startswith(config.MESSAGES_KEY_PREFIX):
                    self.kv.remove(key)
        except OSError as exc:
            self._logger.warning("Failed to clear legacy chats: %s", exc)

    def _migrate_legacy(self, conversations: List[Conversation]) -> List[Conversation]:
        if not detect_legacy_store(conversations, self.kv):
            return conversations
        if self.legacy_migration == "conversation":
            offending = set(legacy_conversation_ids(conversations, self.kv))
            self._logger.warning(
                "Dropping %d conversation(s) stored in the legacy message format", len(offending)
            )
            for conv_id in offending:
                self.kv.remove(config.messages_key(conv_id))
            remaining = [conv for conv in conversations if conv.id not in offending]
            self.kv.set_json(config.CHAT_LIST_KEY, [conv.to_dict() for conv in remaining])
            return remaining
        self._logger.warning("Legacy chat history detected; clearing all stored conversations")
        self._clear_stored_chats()
        return []

    def _load_stored(self) -> Tuple[List[Conversation], Optional[str], Dict[str, List[ChatMessage]]]:
        if not self.kv.enabled:
            return [], None, {}
        try:
            conversations = normalize_conversation_list(self.kv.get_json(config.CHAT_LIST_KEY, []))
            conversations = self._migrate_legacy(conversations)
            if not conversations:
                return [], None, {}
            stored_active = self.kv.get(config.CURRENT_CHAT_ID_KEY)
            messages: Dict[str, List[ChatMessage]] = {}
            for conversation in conversations:
                raw = self.kv.get_json(config.messages_key(conversation.id), [])
                records = [r for r in raw if isinstance(r, Mapping)] if isinstance(raw, list) else []
                messages[conversation.id] = ensure_ids(normalize_message(r) for r in records)
            ids = {conv.id for conv in conversations}
            active = stored_active if stored_active in ids else conversations[0].id
            return conversations, active, messages
        except Exception as exc:
            self._logger.warning("Failed to hydrate stored chats: %s", exc, exc_info=True)
            return [], None, {}

    def _new_default_conversation(self) -> Conversation:
        now = now_iso()
        return Conversation(
            id=str(uuid.uuid4()),
            title=config.DEFAULT_TITLE,
            persona=DEFAULT_PERSONA,
            created_at=now,
            updated_at=now,
        )

    def hydrate(self) -> None:
        """Load persisted state once; later calls are no-ops."""

        if self._hydration_started:
            return
        self._hydration_started = True

        # Anything created before hydration is kept on top of what was stored.
        pending = list(self._conversations)
        pending_messages = dict(self._messages)
        pending_active = self._active_id

        stored, stored_active, messages = self._load_stored()
        messages.update(pending_messages)
        self._messages = messages

        stored_ids = {conv.id for conv in stored}
        merged = stored + [conv for conv in pending if conv.id not in stored_ids]
        if not merged:
            default = self._new_default_conversation()
            self.apply_state([default], default.id, persist=True)
        elif pending:
            self.apply_state(merged, pending_active, persist=True)
            for conv_id, log in pending_messages.items():
                self.kv.set_json(config.messages_key(conv_id), [m.to_dict() for m in log])
        else:
            self.apply_state(merged, stored_active, persist=False)
        self.hydrated = True
        self._logger.debug(
            "Hydrated %d conversation(s); active=%s", len(self._conversations), self._active_id
        )

    # ------------------------------------------------------------------
    # State choke point
    # ------------------------------------------------------------------
    def apply_state(
        self,
        next_list: Sequence[Any],
        requested_active_id: Optional[str] = None,
        *,
        persist: Optional[bool] = None,
        refresh_conversation: bool = True,
    ) -> None:
        normalized = sort_conversations(normalize_conversation_list(list(next_list)))
        requested = requested_active_id if requested_active_id is not None else self._active_id
        valid_ids = {conv.id for conv in normalized}
        resolved = requested if requested in valid_ids else (normalized[0].id if normalized else None)
        should_persist = self.hydrated if persist is None else persist

        self._conversations = normalized
        self._active_id = resolved

        for conv_id in [key for key in self._messages if key not in valid_ids]:
            del self._messages[conv_id]
            if should_persist:
                self.kv.remove(config.messages_key(conv_id))

        if should_persist:
            self.kv.set_json(config.CHAT_LIST_KEY, [conv.to_dict() for conv in normalized])
            if resolved:
                self.kv.set(config.CURRENT_CHAT_ID_KEY, resolved)
            else:
                self.kv.remove(config.CURRENT_CHAT_ID_KEY)

        if refresh_conversation and self._view is not None:
            self._view.set_conversation(self.messages_for(resolved), resolved)
            self._view.focus()

    # ------------------------------------------------------------------
    # Metadata mutations
    # ------------------------------------------------------------------
    def update_title(self, conversation_id: str, title: str) -> None:
        next_list = [
            replace(conv, title=title or conv.title) if conv.id == conversation_id else conv
            for conv in self._conversations
        ]
        self.apply_state(next_list, self._active_id, refresh_conversation=False)

    def update_pinned(self, conversation_id: str, pinned: bool) -> None:
        next_list = [
            replace(conv, pinned=bool(pinned)) if conv.id == conversation_id else conv
            for conv in self._conversations
        ]
        self.apply_state(next_list, self._active_id, refresh_conversation=False)

    # ------------------------------------------------------------------
    # Message commits
    # ------------------------------------------------------------------
    def save_messages(
        self,
        messages: Sequence[ChatMessage],
        conversation_id: Optional[str] = None,
        *,
        conversation: Optional[Conversation] = None,
    ) -> None:
        target_id = conversation_id or self._active_id
        if not target_id:
            return

        previous_count = len(self._messages.get(target_id, []))
        normalized = ensure_ids(normalize_message(message) for message in messages)
        latest_timestamp = normalized[-1].created_at if normalized else None
        latest_timestamp = latest_timestamp or now_iso()
        has_new_messages = len(normalized) > previous_count
        activity_timestamp = now_iso() if has_new_messages else latest_timestamp

        if normalized:
            self.kv.set_json(config.messages_key(target_id), [m.to_dict() for m in normalized])
            self._messages[target_id] = normalized
        else:
            self.kv.remove(config.messages_key(target_id))
            self._messages.pop(target_id, None)

        is_first_message = previous_count == 0 and bool(normalized)
        hint_persona = conversation.persona if conversation else None
        hint_title = conversation.title if conversation else ""

        existing = self.get_by_id(target_id)
        if existing is not None:
            fallback = existing.title or hint_title or (hint_persona.name if hint_persona else None)
            fallback = fallback or config.DEFAULT_TITLE
            title = existing.title
            if is_first_message and is_default_persona(existing.persona):
                title = derive_title(normalized, fallback)
            updated = replace(
                existing,
                updated_at=activity_timestamp if normalized else existing.updated_at,
                title=title,
            )
            next_list = [updated if conv.id == target_id else conv for conv in self._conversations]
        else:
            created = Conversation(
                id=target_id,
                persona=hint_persona,
                title=hint_title or (hint_persona.name if hint_persona else None) or config.DEFAULT_TITLE,
                created_at=latest_timestamp,
                updated_at=latest_timestamp,
            )
            next_list = [created] + self._conversations

        self.apply_state(next_list, self._active_id, refresh_conversation=False)

    def clear_messages(self, conversation_id: Optional[str] = None) -> None:
        self.save_messages([], conversation_id)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def activate(self, conversation: Conversation, *, persist_outgoing: bool = True) -> None:
        previous_id = self._active_id
        view = self._view
        streaming = view.is_streaming() if view is not None else False
        if persist_outgoing and view is not None and previous_id and previous_id != conversation.id and not streaming:
            self.save_messages(view.get_conversation(), previous_id)

        exists = any(conv.id == conversation.id for conv in self._conversations)
        next_list = self._conversations if exists else [conversation] + self._conversations
        self.apply_state(next_list, conversation.id)

    def create(self, persona: Persona, first_message: Optional[str] = None) -> Conversation:
        now = now_iso()
        title = truncate_to_words(first_message) if first_message else ""
        conversation = Conversation(
            id=str(uuid.uuid4()),
            persona=persona,
            title=title or persona.name or config.DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
        )
        self.activate(conversation)
        self._logger.debug("Created conversation %s", conversation.id)
        return self.get_by_id(conversation.id) or conversation

    def create_default(self, first_message: Optional[str] = None) -> Conversation:
        return self.create(DEFAULT_PERSONA, first_message)

    def delete(self, conversation: Conversation) -> None:
        remaining = [conv for conv in self._conversations if conv.id != conversation.id]
        self.kv.remove(config.messages_key(conversation.id))
        self._messages.pop(conversation.id, None)

        has_left = bool(remaining)
        next_list = remaining if has_left else [self._new_default_conversation()]
        needs_selection = self._active_id == conversation.id or not has_left
        next_id = _sorted_first_id(next_list) if needs_selection else self._active_id
        self.apply_state(next_list, next_id)
        self._logger.debug("Deleted conversation %s", conversation.id)


def _sorted_first_id(conversations: Sequence[Conversation]) -> Optional[str]:
    ordered = sort_conversations(conversations)
    return ordered[0].id if ordered else None


__all__ = [
    "ConversationStore",
    "ConversationView",
    "normalize_conversation_list",
    "sort_conversations",
]
