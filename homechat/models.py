from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ROLES = ("assistant", "user", "system")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(ts: Optional[Any]) -> datetime:
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts
    if isinstance(ts, (int, float)):
        try:
            return datetime.fromtimestamp(float(ts), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return datetime.fromtimestamp(0, tz=timezone.utc)
    if not ts:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Persona:
    role: str = "system"
    id: Optional[str] = None
    name: Optional[str] = None
    prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role}
        if self.id is not None:
            data["id"] = self.id
        if self.name is not None:
            data["name"] = self.name
        if self.prompt is not None:
            data["prompt"] = self.prompt
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Persona":
        role = data.get("role")
        return cls(
            role=role if role in ROLES else "system",
            id=data.get("id"),
            name=data.get("name"),
            prompt=data.get("prompt"),
        )


@dataclass
class Conversation:
    id: str
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    title: str = ""
    pinned: bool = False
    persona: Optional[Persona] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "title": self.title,
            "pinned": self.pinned,
        }
        if self.persona is not None:
            data["persona"] = self.persona.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        persona_raw = data.get("persona")
        persona = Persona.from_dict(persona_raw) if isinstance(persona_raw, dict) else None
        created = data.get("createdAt") or data.get("created_at") or ""
        updated = data.get("updatedAt") or data.get("updated_at") or ""
        return cls(
            id=str(data["id"]),
            created_at=str(created),
            updated_at=str(updated),
            title=str(data.get("title") or ""),
            pinned=bool(data.get("pinned", False)),
            persona=persona,
        )


@dataclass
class ChatMessage:
    """One turn in a conversation; ``parts`` holds JSON-compatible part dicts."""

    role: str
    parts: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "parts": [dict(part) for part in self.parts],
            "createdAt": self.created_at,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        parts = data.get("parts")
        metadata = data.get("metadata")
        return cls(
            id=data.get("id") or None,
            role=str(data.get("role") or "user"),
            parts=[dict(part) for part in parts if isinstance(part, dict)] if isinstance(parts, list) else [],
            created_at=data.get("createdAt") or data.get("created_at") or None,
            metadata=dict(metadata) if isinstance(metadata, dict) else None,
        )


__all__ = ["ChatMessage", "Conversation", "Persona", "ROLES", "now_iso", "parse_iso"]
