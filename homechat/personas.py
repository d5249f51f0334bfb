from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import List, Optional

from . import config
from .kv_store import KeyValueStore
from .models import Persona

DEFAULT_PERSONA = Persona(
    id="chatgpt",
    role="system",
    name="ChatGPT",
    prompt="You are an AI assistant that helps people find information.",
)

DEFAULT_PERSONAS: List[Persona] = [DEFAULT_PERSONA]


def is_default_persona(persona: Optional[Persona]) -> bool:
    return persona is None or persona.id == DEFAULT_PERSONA.id


class PersonaRegistry:
    """Built-in personas plus user-defined ones persisted in the key-value store."""

    def __init__(self, kv: KeyValueStore, *, logger: Optional[logging.Logger] = None) -> None:
        self.kv = kv
        self._logger = logger or logging.getLogger(__name__)
        self._custom: List[Persona] = self._load()

    def _load(self) -> List[Persona]:
        raw = self.kv.get_json(config.PERSONAS_KEY, [])
        if not isinstance(raw, list):
            return []
        return [Persona.from_dict(item) for item in raw if isinstance(item, dict)]

    def _persist(self) -> None:
        self.kv.set_json(config.PERSONAS_KEY, [persona.to_dict() for persona in self._custom])

    @property
    def defaults(self) -> List[Persona]:
        return list(DEFAULT_PERSONAS)

    @property
    def custom(self) -> List[Persona]:
        return list(self._custom)

    def all(self) -> List[Persona]:
        return self.defaults + self.custom

    def get_by_id(self, persona_id: Optional[str]) -> Optional[Persona]:
        if not persona_id:
            return None
        for persona in self.all():
            if persona.id == persona_id:
                return persona
        return None

    def save(self, persona: Persona) -> Persona:
        if any(p.id == persona.id for p in DEFAULT_PERSONAS):
            raise ValueError(f"Built-in persona '{persona.id}' cannot be modified")
        stored = persona if persona.id else replace(persona, id=uuid.uuid4().hex)
        for index, existing in enumerate(self._custom):
            if existing.id == stored.id:
                self._custom[index] = stored
                break
        else:
            self._custom.append(stored)
        self._persist()
        self._logger.debug("Saved persona %s", stored.id)
        return stored

    def delete(self, persona_id: str) -> bool:
        remaining = [p for p in self._custom if p.id != persona_id]
        if len(remaining) == len(self._custom):
            return False
        self._custom = remaining
        self._persist()
        return True

    def search(self, keyword: str) -> List[Persona]:
        needle = (keyword or "").lower()
        if not needle:
            return self.all()
        return [
            persona
            for persona in self.all()
            if needle in (persona.name or "").lower() or needle in (persona.prompt or "").lower()
        ]


__all__ = ["DEFAULT_PERSONA", "DEFAULT_PERSONAS", "PersonaRegistry", "is_default_persona"]
