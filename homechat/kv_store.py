"""Durable key-value storage for chat state.

Each key lives in its own file under the data directory so that a corrupt
value only ever affects one key.  Values are plain strings; the JSON helpers
sit on top and never raise on bad data.  A store created without a directory
is disabled and silently ignores writes, which keeps import-time and test-time
construction safe when no data directory is configured.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Optional, TypeVar
from urllib.parse import quote, unquote

from . import config

T = TypeVar("T")

_SUFFIX = ".kv"


def _atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=str(path.parent), encoding="utf-8") as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = tmp.name
    os.replace(tmp_path, path)  # atomic on same filesystem


def _key_to_filename(key: str) -> str:
    return quote(key, safe="") + _SUFFIX


def _filename_to_key(name: str) -> str:
    return unquote(name[: -len(_SUFFIX)])


class KeyValueStore:
    """File-backed string store with JSON convenience helpers."""

    def __init__(self, base_dir: Optional[Path] = None, *, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        if base_dir is None:
            self.base_dir: Optional[Path] = None
            return
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, *, logger: Optional[logging.Logger] = None) -> "KeyValueStore":
        return cls(config.DATA_DIR, logger=logger)

    @property
    def enabled(self) -> bool:
        return self.base_dir is not None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _path(self, key: str) -> Path:
        assert self.base_dir is not None
        return self.base_dir / _key_to_filename(key)

    # ------------------------------------------------------------------
    # Raw string access
    # ------------------------------------------------------------------
    def get(self, key: str) -> Optional[str]:
        if self.base_dir is None:
            return None
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        if self.base_dir is None:
            return
        with self._lock:
            _atomic_write(self._path(key), value)

    def remove(self, key: str) -> None:
        if self.base_dir is None:
            return
        with self._lock:
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                pass

    def keys(self) -> List[str]:
        if self.base_dir is None:
            return []
        with self._lock:
            try:
                names = [p.name for p in self.base_dir.glob(f"*{_SUFFIX}") if p.is_file()]
            except OSError:
                names = []
        return sorted(_filename_to_key(name) for name in names)

    # ------------------------------------------------------------------
    # JSON access
    # ------------------------------------------------------------------
    def get_json(self, key: str, fallback: T) -> T:
        try:
            raw = self.get(key)
            if not raw:
                return fallback
            return json.loads(raw)
        except ValueError as exc:  # includes UnicodeDecodeError
            self._logger.warning("Discarding corrupt value stored under %r: %s", key, exc)
            self.remove(key)
            return fallback

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False))


__all__ = ["KeyValueStore"]
