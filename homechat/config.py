from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

DATA_DIR: Optional[Path]
API_URL: str
PARSE_URL: str
MODEL: str
STREAM_PROTOCOL: str
REQUEST_TIMEOUT: int
LEGACY_MIGRATION: str

CHAT_LIST_KEY = "chatList"
CURRENT_CHAT_ID_KEY = "chatCurrentID"
MESSAGES_KEY_PREFIX = "ms_"
PERSONAS_KEY = "personas"

DEFAULT_TITLE = "New Chat"

STREAM_PROTOCOLS = ("ui", "text")
LEGACY_MIGRATION_MODES = ("wipe", "conversation")


def messages_key(conversation_id: str) -> str:
    return f"{MESSAGES_KEY_PREFIX}{conversation_id}"


def reload_from_environment() -> None:
    """Refresh configuration values from the current environment."""

    global DATA_DIR, API_URL, PARSE_URL, MODEL, STREAM_PROTOCOL, REQUEST_TIMEOUT
    global LEGACY_MIGRATION

    raw_dir = os.getenv("HOMECHAT_DATA_DIR")
    if raw_dir is None:
        DATA_DIR = Path.home() / ".homechat" / "store"
    elif raw_dir.strip():
        DATA_DIR = Path(raw_dir.strip()).expanduser()
    else:
        # An explicitly empty value turns persistence off.
        DATA_DIR = None

    API_URL = os.getenv("HOMECHAT_API_URL", "http://127.0.0.1:3000/api/chat").strip()
    PARSE_URL = os.getenv("HOMECHAT_PARSE_URL", "http://127.0.0.1:3000/api/parse-pdf").strip()
    MODEL = os.getenv("HOMECHAT_MODEL", "openai/gpt-oss-120b")

    protocol = os.getenv("HOMECHAT_STREAM_PROTOCOL", "ui").strip().lower()
    STREAM_PROTOCOL = protocol if protocol in STREAM_PROTOCOLS else "ui"

    try:
        REQUEST_TIMEOUT = int(os.getenv("HOMECHAT_REQUEST_TIMEOUT", "120"))
    except ValueError:
        REQUEST_TIMEOUT = 120

    migration = os.getenv("HOMECHAT_LEGACY_MIGRATION", "wipe").strip().lower()
    LEGACY_MIGRATION = migration if migration in LEGACY_MIGRATION_MODES else "wipe"


reload_from_environment()


__all__ = [
    "API_URL",
    "CHAT_LIST_KEY",
    "CURRENT_CHAT_ID_KEY",
    "DATA_DIR",
    "DEFAULT_TITLE",
    "LEGACY_MIGRATION",
    "LEGACY_MIGRATION_MODES",
    "MESSAGES_KEY_PREFIX",
    "MODEL",
    "PARSE_URL",
    "PERSONAS_KEY",
    "REQUEST_TIMEOUT",
    "STREAM_PROTOCOL",
    "STREAM_PROTOCOLS",
    "messages_key",
    "reload_from_environment",
]
