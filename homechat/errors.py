from __future__ import annotations

from typing import Any, Dict, Optional


class HomeChatError(Exception):
    """Base class for errors raised by the chat client."""


class ChatValidationError(HomeChatError):
    """A send was refused before any state changed (composer-level problem)."""


class TransportError(HomeChatError):
    """The completion endpoint failed or returned a non-success response."""

    def __init__(self, message: str, *, status: Optional[int] = None, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status = status
        self.meta = dict(meta or {})


class ConfigurationError(HomeChatError):
    """No usable endpoint or model provider; not recoverable locally."""


class DocumentExtractionError(HomeChatError):
    """The document extraction endpoint rejected an upload."""


__all__ = [
    "ChatValidationError",
    "ConfigurationError",
    "DocumentExtractionError",
    "HomeChatError",
    "TransportError",
]
