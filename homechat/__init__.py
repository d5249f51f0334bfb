"""Internal modules that back the HomeChat Gradio application."""

from . import config as _config
from .api_client import ChatApiClient
from .conversation_store import ConversationStore, ConversationView
from .errors import (
    ChatValidationError,
    ConfigurationError,
    DocumentExtractionError,
    HomeChatError,
    TransportError,
)
from .kv_store import KeyValueStore
from .models import ChatMessage, Conversation, Persona
from .personas import DEFAULT_PERSONA, PersonaRegistry
from .streaming import StreamingSessionController
from .ui_utils import safe_component

reload_from_environment = _config.reload_from_environment

__all__ = [
    "ChatApiClient",
    "ChatMessage",
    "ChatValidationError",
    "ConfigurationError",
    "Conversation",
    "ConversationStore",
    "ConversationView",
    "DEFAULT_PERSONA",
    "DocumentExtractionError",
    "HomeChatError",
    "KeyValueStore",
    "Persona",
    "PersonaRegistry",
    "StreamingSessionController",
    "TransportError",
    "safe_component",
    "reload_from_environment",
]


def __getattr__(name: str):
    if hasattr(_config, name):
        return getattr(_config, name)
    raise AttributeError(name)
