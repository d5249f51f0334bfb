"""Send/stop state machine that binds each streamed reply to its conversation.

A send captures the target conversation id, the committed message log and
the request up front in a :class:`StreamTask`.  Whatever happens to the
active selection afterwards, the finished reply is committed to the captured
id and nowhere else.  A task that was stopped or superseded (tracked by the
generation counter) never commits.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence

from . import config
from .api_client import ChatApiClient
from .attachments import UploadedDocument, UploadedImage, build_user_message_parts
from .conversation_store import ConversationStore, ConversationView
from .errors import ChatValidationError, ConfigurationError, TransportError
from .models import ChatMessage, Conversation, Persona, now_iso
from .normalizer import ensure_ids
from .personas import DEFAULT_PERSONA, PersonaRegistry
from .transport import ChatRequest, StreamEvent, prepare_send_messages_request

IDLE = "idle"
SUBMITTED = "submitted"
STREAMING = "streaming"
FINISHED = "finished"
ABORTED = "aborted"
ERRORED = "errored"

STATES = (IDLE, SUBMITTED, STREAMING, FINISHED, ABORTED, ERRORED)


@dataclass
class StreamTask:
    generation: int
    conversation_id: str
    conversation: Conversation
    base_messages: List[ChatMessage]
    request: ChatRequest
    cancel_event: threading.Event = field(default_factory=threading.Event)
    parts: List[Dict[str, Any]] = field(default_factory=list)

    def partial_message(self) -> Optional[ChatMessage]:
        if not self.parts:
            return None
        return ChatMessage(role="assistant", parts=[dict(part) for part in self.parts])


class StreamingSessionController(ConversationView):
    def __init__(
        self,
        store: ConversationStore,
        client: ChatApiClient,
        personas: PersonaRegistry,
        *,
        model: Optional[str] = None,
        protocol: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.personas = personas
        self.model = model or config.MODEL
        self.protocol = protocol or config.STREAM_PROTOCOL
        self._logger = logger or logging.getLogger(__name__)

        self.status = IDLE
        self.generation = 0
        self.composer_error: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self.focus_requests = 0

        self._lock = threading.RLock()
        self._task: Optional[StreamTask] = None
        self._messages: List[ChatMessage] = []
        self._displayed_id: Optional[str] = None
        store.attach_view(self)

    # ------------------------------------------------------------------
    # ConversationView
    # ------------------------------------------------------------------
    def set_conversation(self, messages: List[ChatMessage], conversation_id: Optional[str]) -> None:
        self._messages = list(messages)
        self._displayed_id = conversation_id

    def get_conversation(self) -> List[ChatMessage]:
        return list(self._messages)

    def focus(self) -> None:
        self.focus_requests += 1

    def is_streaming(self) -> bool:
        return self._task is not None

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    @property
    def displayed_conversation_id(self) -> Optional[str]:
        return self._displayed_id

    @property
    def task(self) -> Optional[StreamTask]:
        return self._task

    def visible_messages(self) -> List[ChatMessage]:
        """Messages on screen, including the reply being streamed into them."""

        messages = list(self._messages)
        task = self._task
        if task is not None and task.conversation_id == self._displayed_id:
            partial = task.partial_message()
            if partial is not None:
                messages.append(partial)
        return messages

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------
    def _resolve_persona(self, conversation: Optional[Conversation]) -> Persona:
        stored = conversation.persona if conversation else None
        if stored is None:
            return DEFAULT_PERSONA
        return self.personas.get_by_id(stored.id) or stored

    def _prepare(
        self,
        text: str,
        images: Sequence[UploadedImage],
        documents: Sequence[UploadedDocument],
        model: Optional[str],
    ) -> StreamTask:
        if self._task is not None:
            raise ChatValidationError("A reply is still streaming; stop it before sending again.")
        if not self.store.hydrated:
            raise ChatValidationError("Chat history is still loading.")

        parts = build_user_message_parts((text or "").strip(), images, documents)
        if not parts:
            raise ChatValidationError("Please enter a message or attach a file.")

        conversation = self.store.active_conversation
        persona = self._resolve_persona(conversation)
        if not (persona.prompt or "").strip():
            raise ChatValidationError("The selected persona has no prompt.")

        if conversation is None:
            conversation = self.store.create_default(first_message=(text or "").strip() or None)

        if self._displayed_id == conversation.id:
            visible = list(self._messages)
        else:
            visible = self.store.messages_for(conversation.id)
        user_message = ensure_ids([ChatMessage(role="user", parts=parts, created_at=now_iso())])[0]
        committed = [*visible, user_message]

        self.store.save_messages(committed, conversation.id, conversation=conversation)
        committed = self.store.messages_for(conversation.id)
        if self._displayed_id == conversation.id or self._displayed_id is None:
            self.set_conversation(committed, conversation.id)

        request = prepare_send_messages_request(
            committed,
            prompt=persona.prompt or "",
            model=model or self.model,
            protocol=self.protocol,
        )
        self.generation += 1
        return StreamTask(
            generation=self.generation,
            conversation_id=conversation.id,
            conversation=self.store.get_by_id(conversation.id) or conversation,
            base_messages=committed,
            request=request,
        )

    def send(
        self,
        text: str = "",
        images: Sequence[UploadedImage] = (),
        documents: Sequence[UploadedDocument] = (),
        *,
        model: Optional[str] = None,
    ) -> bool:
        """Commit the user turn and arm a stream for it.

        Returns ``False`` with ``composer_error`` set when the send was refused;
        nothing is committed in that case.
        """

        with self._lock:
            try:
                task = self._prepare(text, images, documents, model)
            except ChatValidationError as exc:
                self.composer_error = str(exc)
                return False
            self._task = task
            self.status = SUBMITTED
            self.composer_error = None
            self.last_error = None
        self._logger.debug("Submitted generation %d for %s", task.generation, task.conversation_id)
        return True

    def retry(self, *, model: Optional[str] = None) -> bool:
        """Re-arm a stream for an unanswered trailing user turn."""

        with self._lock:
            conversation = self.store.active_conversation
            messages = self.store.messages_for(conversation.id) if conversation else []
            persona = self._resolve_persona(conversation)
            if self._task is not None:
                self.composer_error = "A reply is still streaming; stop it before sending again."
                return False
            if conversation is None or not messages or messages[-1].role != "user":
                self.composer_error = "There is no unanswered message to retry."
                return False
            if not (persona.prompt or "").strip():
                self.composer_error = "The selected persona has no prompt."
                return False
            request = prepare_send_messages_request(
                messages,
                prompt=persona.prompt or "",
                model=model or self.model,
                protocol=self.protocol,
            )
            self.generation += 1
            self._task = StreamTask(
                generation=self.generation,
                conversation_id=conversation.id,
                conversation=conversation,
                base_messages=messages,
                request=request,
            )
            self.status = SUBMITTED
            self.composer_error = None
            self.last_error = None
        return True

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------
    def _is_current(self, task: StreamTask) -> bool:
        return self._task is task and not task.cancel_event.is_set()

    def _finalize(self, task: StreamTask, message: Optional[ChatMessage]) -> bool:
        assistant = message if message is not None else task.partial_message()
        final = list(task.base_messages)
        if assistant is not None and assistant.parts:
            final.append(assistant)
        final = ensure_ids(final)
        with self._lock:
            # stop() may have run on another worker since the last check.
            if not self._is_current(task):
                return False
            self.store.save_messages(final, task.conversation_id, conversation=task.conversation)
            if self._displayed_id == task.conversation_id:
                self._messages = self.store.messages_for(task.conversation_id)
            self._task = None
            self.status = FINISHED
        self._logger.debug("Committed reply for %s", task.conversation_id)
        return True

    def _abandon(self, task: StreamTask, status: str, exc: Optional[Exception] = None) -> None:
        """Clear the in-flight markers for ``task`` without committing anything."""

        with self._lock:
            if self._task is not task:
                return
            task.cancel_event.set()
            self._task = None
            self.status = status
            if exc is not None:
                self.last_error = exc
                self.composer_error = str(exc)

    def stream(self) -> Iterator[StreamEvent]:
        """Drive the armed task, yielding events until it finishes or stops.

        However the loop exits, the task no longer counts as streaming
        afterwards; only a ``finish`` event (or a clean end of stream)
        commits the reply.
        """

        task = self._task
        if task is None:
            return
        events: Optional[Iterator[StreamEvent]] = None
        try:
            events = self.client.stream(task.request, protocol=self.protocol, cancel_event=task.cancel_event)
            for event in events:
                if not self._is_current(task):
                    break
                if self.status == SUBMITTED:
                    self.status = STREAMING
                if event.kind == "delta":
                    if task.parts and task.parts[-1].get("type") == "text":
                        task.parts[-1]["text"] += event.text
                    else:
                        task.parts.append({"type": "text", "text": event.text})
                elif event.kind == "source" and event.source is not None:
                    task.parts.append(dict(event.source))
                elif event.kind == "finish" and not self._finalize(task, event.message):
                    break
                yield event
        except TransportError as exc:
            self._logger.error("Stream for %s failed: %s", task.conversation_id, exc)
            self._abandon(task, ERRORED, exc)
            return
        except ConfigurationError as exc:
            self._abandon(task, ERRORED, exc)
            raise
        except GeneratorExit:
            self._abandon(task, ABORTED)
            raise
        except Exception as exc:
            self._logger.exception("Stream for %s failed unexpectedly", task.conversation_id)
            self._abandon(task, ERRORED, exc)
            raise
        finally:
            close = getattr(events, "close", None)
            if callable(close):
                close()
        if self._is_current(task):
            # The stream ended without a finish event.
            self._finalize(task, None)

    def run(self) -> Optional[ChatMessage]:
        """Drain :meth:`stream` and return the committed reply, if any."""

        reply: Optional[ChatMessage] = None
        for event in self.stream():
            if event.kind == "finish":
                reply = event.message
        return reply

    def stop(self) -> bool:
        with self._lock:
            task = self._task
            if task is None:
                return False
            task.cancel_event.set()
            self._task = None
            self.status = ABORTED
        self._logger.debug("Stopped generation %d for %s", task.generation, task.conversation_id)
        return True

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def select_conversation(self, conversation: Conversation) -> None:
        self.stop()
        self.store.activate(conversation)

    def new_conversation(self, persona: Optional[Persona] = None) -> Conversation:
        self.stop()
        return self.store.create(persona or DEFAULT_PERSONA)

    def delete_conversation(self, conversation: Conversation) -> None:
        task = self._task
        if task is not None and task.conversation_id == conversation.id:
            self.stop()
        self.store.delete(conversation)

    def clear(self) -> bool:
        if self.is_streaming():
            self.composer_error = "Stop the current reply before clearing the conversation."
            return False
        target = self._displayed_id or self.store.active_id
        self._messages = []
        self.store.clear_messages(target)
        return True


__all__ = [
    "ABORTED",
    "ERRORED",
    "FINISHED",
    "IDLE",
    "STATES",
    "STREAMING",
    "SUBMITTED",
    "StreamTask",
    "StreamingSessionController",
]
