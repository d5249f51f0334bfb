from __future__ import annotations

import codecs
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import requests

from . import config
from .attachments import UploadedDocument, guess_mime_type
from .errors import ConfigurationError, DocumentExtractionError, TransportError
from .transport import ChatRequest, StreamEvent, UIMessageAssembler

NO_PROVIDER_MARKER = "No AI provider configured"
MAX_DOCUMENT_BYTES = 10 * 1024 * 1024


class ChatApiClient:
    """Streaming client for the chat completion and document extraction endpoints."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        parse_url: Optional[str] = None,
        *,
        timeout: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_url = config.API_URL if api_url is None else api_url
        self.parse_url = config.PARSE_URL if parse_url is None else parse_url
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self._logger = logger or logging.getLogger(__name__)
        self._session = requests.Session()

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "ChatApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ----- Internal helpers
    def _error_from_response(self, response, *, endpoint: str) -> Exception:
        try:
            body: Any = response.json()
        except ValueError:
            body = None
        detail = ""
        if isinstance(body, dict) and body.get("error"):
            detail = str(body["error"])
        if not detail:
            detail = (getattr(response, "text", "") or "")[:4000] or getattr(response, "reason", "") or ""
        meta = {"endpoint": endpoint, "status": response.status_code}
        if body is not None:
            meta["response"] = body
        if NO_PROVIDER_MARKER.lower() in detail.lower():
            return ConfigurationError(detail)
        return TransportError(
            f"{endpoint} returned HTTP {response.status_code}: {detail or 'No response body.'}",
            status=response.status_code,
            meta=meta,
        )

    # The endpoint sends no charset; lines and chunks are always UTF-8.
    def _iter_sse_payload(self, response) -> Iterator[str]:
        iter_lines = getattr(response, "iter_lines", None)
        if not callable(iter_lines):
            return
        for raw_line in iter_lines():
            if raw_line is None:
                continue
            yield raw_line.decode("utf-8", errors="replace")

    def _iter_text_payload(self, response) -> Iterator[str]:
        iter_content = getattr(response, "iter_content", None)
        if not callable(iter_content):
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        for chunk in iter_content(chunk_size=None):
            if chunk:
                yield decoder.decode(chunk)
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    def _stream_ui(self, response, cancel_event: Optional[threading.Event]) -> Iterator[StreamEvent]:
        assembler = UIMessageAssembler()
        for raw_line in self._iter_sse_payload(response):
            if cancel_event is not None and cancel_event.is_set():
                return
            line = raw_line.strip()
            if not line or not line.startswith("data:"):
                continue
            payload_text = line[len("data:") :].strip()
            if not payload_text:
                continue
            if payload_text == "[DONE]":
                break
            try:
                payload = json.loads(payload_text)
            except json.JSONDecodeError:
                self._logger.debug("Skipping undecodable stream line: %s", payload_text[:200])
                continue
            if not isinstance(payload, dict):
                continue
            for event in assembler.feed(payload):
                yield event
            if assembler.error_text:
                if NO_PROVIDER_MARKER.lower() in assembler.error_text.lower():
                    raise ConfigurationError(assembler.error_text)
                raise TransportError(assembler.error_text, meta={"endpoint": "chat"})
            if assembler.finish_reason:
                break
        if cancel_event is not None and cancel_event.is_set():
            return
        yield StreamEvent(
            kind="finish",
            message=assembler.build_message(),
            finish_reason=assembler.finish_reason or "stop",
        )

    def _stream_text(self, response, cancel_event: Optional[threading.Event]) -> Iterator[StreamEvent]:
        assembler = UIMessageAssembler()
        for chunk in self._iter_text_payload(response):
            if cancel_event is not None and cancel_event.is_set():
                return
            if not chunk:
                continue
            assembler.append_text(chunk)
            yield StreamEvent(kind="delta", text=chunk)
        if cancel_event is not None and cancel_event.is_set():
            return
        yield StreamEvent(kind="finish", message=assembler.build_message(), finish_reason="stop")

    # ----- Public API
    def stream(
        self,
        request: ChatRequest,
        *,
        protocol: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[StreamEvent]:
        """Post ``request`` and yield normalized events until the reply finishes.

        Nothing is yielded after ``cancel_event`` is set; the response is
        closed as soon as the generator stops.
        """

        if not self.api_url:
            raise ConfigurationError("No chat endpoint configured (set HOMECHAT_API_URL)")
        selected_protocol = protocol or config.STREAM_PROTOCOL
        t0 = time.perf_counter()
        try:
            response = self._session.post(
                self.api_url,
                json=request.body,
                headers=request.headers,
                timeout=self.timeout,
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            self._logger.error("Chat request to %s failed: %s", self.api_url, exc)
            raise TransportError(
                f"Chat request failed while calling {self.api_url}: {exc}",
                meta={"endpoint": "chat", "error": f"{exc.__class__.__name__}: {exc}"},
            ) from exc

        try:
            if response.status_code >= 400:
                error = self._error_from_response(response, endpoint="chat")
                self._logger.error("Chat endpoint error: %s", error)
                raise error
            if selected_protocol == "text":
                events = self._stream_text(response, cancel_event)
            else:
                events = self._stream_ui(response, cancel_event)
            try:
                for event in events:
                    yield event
            except requests.exceptions.RequestException as exc:
                self._logger.error("Chat stream interrupted: %s", exc)
                raise TransportError(f"Chat stream interrupted: {exc}", meta={"endpoint": "chat"}) from exc
        finally:
            response.close()
            self._logger.debug("Chat stream closed after %.3fs", time.perf_counter() - t0)

    def extract_document(self, path: Union[str, Path], *, mime_type: Optional[str] = None) -> UploadedDocument:
        """Upload a PDF to the extraction endpoint and wrap the result as a document."""

        if not self.parse_url:
            raise ConfigurationError("No document extraction endpoint configured (set HOMECHAT_PARSE_URL)")
        p = Path(path)
        mime = mime_type or guess_mime_type(p.name)
        size = p.stat().st_size
        if size > MAX_DOCUMENT_BYTES:
            raise DocumentExtractionError(
                f"File size ({size / (1024 * 1024):.2f}MB) exceeds the maximum allowed size of 10MB"
            )

        try:
            with p.open("rb") as handle:
                response = self._session.post(
                    self.parse_url,
                    files={"file": (p.name, handle, mime)},
                    timeout=self.timeout,
                )
        except requests.exceptions.RequestException as exc:
            raise DocumentExtractionError(f"Extraction request failed: {exc}") from exc

        try:
            data: Any = response.json()
        except ValueError:
            data = None
        if response.status_code >= 400 or not isinstance(data, dict) or data.get("success") is False:
            detail = data.get("error") if isinstance(data, dict) else None
            raise DocumentExtractionError(str(detail or "Failed to parse document"))

        images = [image for image in data.get("images") or [] if isinstance(image, dict)]
        pages = data.get("pages")
        content = f"[PDF File: {p.name}]\n\nPages: {pages}\n\n"
        if images:
            content += f"Images found: {len(images)}\n\n"
        content += str(data.get("content") or "")
        return UploadedDocument(
            name=p.name,
            content=content,
            mime_type=mime,
            images=images,
            pages=pages if isinstance(pages, int) else None,
        )


__all__ = ["ChatApiClient", "NO_PROVIDER_MARKER"]
