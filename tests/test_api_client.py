from __future__ import annotations

import io
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest
import requests

from homechat.api_client import ChatApiClient
from homechat.errors import ConfigurationError, DocumentExtractionError, TransportError
from homechat.transport import ChatRequest

API_URL = "http://chat.test/api/chat"
PARSE_URL = "http://chat.test/api/parse-pdf"


class _FakeResponse:
    def __init__(
        self,
        *,
        status_code: int = 200,
        json_payload: Any = None,
        text: str = "",
        lines: List[bytes] | None = None,
        chunks: List[bytes] | None = None,
    ):
        self.status_code = status_code
        self._json_payload = json_payload
        self.text = text
        self.reason = "Server Error" if status_code >= 400 else "OK"
        self._lines = list(lines or [])
        self._chunks = list(chunks or [])
        self.closed = False

    def json(self) -> Any:
        if self._json_payload is None:
            raise ValueError("no json")
        return self._json_payload

    def iter_lines(self):
        for line in self._lines:
            yield line

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            yield chunk

    def close(self) -> None:
        self.closed = True


class _QueuedSession:
    def __init__(self, responses: List[Any]):
        self._responses = responses
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def post(self, url: str, **kwargs) -> _FakeResponse:
        self.calls.append((url, kwargs))
        if not self._responses:
            raise AssertionError("No queued responses left")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def close(self) -> None:  # pragma: no cover - nothing to clean up in tests
        pass


@pytest.fixture
def fake_session(monkeypatch):
    sessions: List[_QueuedSession] = []

    def enqueue(responses: List[Any]) -> _QueuedSession:
        session = _QueuedSession(responses)
        sessions.append(session)
        return session

    def factory() -> _QueuedSession:
        if not sessions:
            raise AssertionError("Test did not seed session responses")
        return sessions.pop(0)

    monkeypatch.setattr(requests, "Session", lambda: factory())
    return enqueue


def _sse(*events: Dict[str, Any]) -> List[bytes]:
    lines = [f"data: {json.dumps(event, ensure_ascii=False)}" for event in events] + ["", "data: [DONE]"]
    return [line.encode("utf-8") for line in lines]


def _request() -> ChatRequest:
    return ChatRequest(body={"prompt": "p", "messages": [], "input": "hi"}, headers={"Accept": "text/event-stream"})


def _wire_response(body: bytes, content_type: str) -> requests.Response:
    response = requests.Response()
    response.status_code = 200
    response.headers["Content-Type"] = content_type
    response.encoding = requests.utils.get_encoding_from_headers(response.headers)
    response.raw = io.BytesIO(body)
    return response


def test_stream_parses_structured_events(fake_session) -> None:
    response = _FakeResponse(
        lines=_sse(
            {"type": "start"},
            {"type": "text-start", "id": "t"},
            {"type": "text-delta", "id": "t", "delta": "Hi "},
            {"type": "text-delta", "id": "t", "delta": "there"},
            {"type": "source-url", "sourceId": "s", "url": "https://a", "title": "A"},
            {"type": "finish", "finishReason": "stop"},
        )
    )
    session = fake_session([response])
    client = ChatApiClient(API_URL, PARSE_URL)

    events = list(client.stream(_request(), protocol="ui"))

    assert [event.kind for event in events] == ["delta", "delta", "source", "finish"]
    final = events[-1].message
    assert final.parts[0] == {"type": "text", "text": "Hi there"}
    assert final.parts[1]["url"] == "https://a"
    assert events[-1].finish_reason == "stop"
    url, kwargs = session.calls[0]
    assert url == API_URL
    assert kwargs["json"] == _request().body
    assert kwargs["headers"]["Accept"] == "text/event-stream"
    assert kwargs["stream"] is True
    assert response.closed


def test_stream_skips_noise_lines(fake_session) -> None:
    lines = [b": keep-alive", b"event: message", b"data: not-json", b"data: 42"] + _sse(
        {"type": "text-delta", "id": "t", "delta": "ok"}
    )
    fake_session([_FakeResponse(lines=lines)])

    events = list(ChatApiClient(API_URL, PARSE_URL).stream(_request(), protocol="ui"))

    assert [event.kind for event in events] == ["delta", "finish"]
    assert events[-1].message.parts == [{"type": "text", "text": "ok"}]


def test_text_protocol_accumulates_chunks(fake_session) -> None:
    fake_session([_FakeResponse(chunks=[b"Hel", b"lo", b""])])

    events = list(ChatApiClient(API_URL, PARSE_URL).stream(_request(), protocol="text"))

    assert [event.text for event in events if event.kind == "delta"] == ["Hel", "lo"]
    assert events[-1].message.parts == [{"type": "text", "text": "Hello"}]


def test_stream_decodes_utf8_without_charset(fake_session) -> None:
    body = b"\n".join(_sse({"type": "text-delta", "id": "t", "delta": "caf\u00e9 \u4f60\u597d"}, {"type": "finish"}))
    fake_session([_wire_response(body, "text/event-stream")])

    events = list(ChatApiClient(API_URL, PARSE_URL).stream(_request(), protocol="ui"))

    assert events[0].text == "caf\u00e9 \u4f60\u597d"
    assert events[-1].message.parts == [{"type": "text", "text": "caf\u00e9 \u4f60\u597d"}]


def test_stream_accepts_non_text_content_type(fake_session) -> None:
    body = b"\n".join(_sse({"type": "text-delta", "id": "t", "delta": "na\u00efve"}))
    fake_session([_wire_response(body, "application/octet-stream")])

    events = list(ChatApiClient(API_URL, PARSE_URL).stream(_request(), protocol="ui"))

    assert events[-1].message.parts == [{"type": "text", "text": "na\u00efve"}]


def test_text_protocol_joins_characters_split_across_chunks(fake_session) -> None:
    encoded = "caf\u00e9 \u4f60".encode("utf-8")
    fake_session([_FakeResponse(chunks=[encoded[:4], encoded[4:7], encoded[7:]])])

    events = list(ChatApiClient(API_URL, PARSE_URL).stream(_request(), protocol="text"))

    assert "".join(event.text for event in events if event.kind == "delta") == "caf\u00e9 \u4f60"
    assert events[-1].message.parts == [{"type": "text", "text": "caf\u00e9 \u4f60"}]


def test_stream_error_event_raises_transport_error(fake_session) -> None:
    fake_session([_FakeResponse(lines=_sse({"type": "error", "errorText": "upstream exploded"}))])

    with pytest.raises(TransportError, match="upstream exploded"):
        list(ChatApiClient(API_URL, PARSE_URL).stream(_request(), protocol="ui"))


def test_missing_provider_maps_to_configuration_error(fake_session) -> None:
    body = {"error": "No AI provider configured. Set OPENAI_API_KEY or GROQ_API_KEY."}
    fake_session([_FakeResponse(status_code=500, json_payload=body)])

    with pytest.raises(ConfigurationError):
        list(ChatApiClient(API_URL, PARSE_URL).stream(_request()))


def test_http_error_maps_to_transport_error(fake_session) -> None:
    fake_session([_FakeResponse(status_code=502, text="Bad gateway")])

    with pytest.raises(TransportError) as excinfo:
        list(ChatApiClient(API_URL, PARSE_URL).stream(_request()))

    assert excinfo.value.status == 502
    assert "Bad gateway" in str(excinfo.value)


def test_network_failure_maps_to_transport_error(fake_session) -> None:
    fake_session([requests.exceptions.ConnectionError("refused")])

    with pytest.raises(TransportError, match="refused"):
        list(ChatApiClient(API_URL, PARSE_URL).stream(_request()))


def test_missing_endpoint_is_a_configuration_error(fake_session) -> None:
    fake_session([])

    with pytest.raises(ConfigurationError):
        list(ChatApiClient("", PARSE_URL).stream(_request()))


def test_cancel_stops_stream_without_finish(fake_session) -> None:
    cancel = threading.Event()
    response = _FakeResponse(
        lines=_sse(
            {"type": "text-delta", "id": "t", "delta": "one"},
            {"type": "text-delta", "id": "t", "delta": "two"},
            {"type": "finish"},
        )
    )
    fake_session([response])
    client = ChatApiClient(API_URL, PARSE_URL)

    seen = []
    for event in client.stream(_request(), protocol="ui", cancel_event=cancel):
        seen.append(event)
        cancel.set()

    assert [event.kind for event in seen] == ["delta"]
    assert response.closed


def test_extract_document_wraps_payload(fake_session, tmp_path: Path) -> None:
    pdf = tmp_path / "manual.pdf"
    pdf.write_bytes(b"%PDF-1.4")
    payload = {"success": True, "content": "Chapter 1", "pages": 3, "images": [{"name": "img1"}]}
    session = fake_session([_FakeResponse(json_payload=payload)])

    document = ChatApiClient(API_URL, PARSE_URL).extract_document(pdf)

    assert document.name == "manual.pdf"
    assert document.pages == 3
    assert document.content == "[PDF File: manual.pdf]\n\nPages: 3\n\nImages found: 1\n\nChapter 1"
    assert document.images == [{"name": "img1"}]
    url, kwargs = session.calls[0]
    assert url == PARSE_URL
    assert kwargs["files"]["file"][0] == "manual.pdf"


def test_extract_document_error_payload(fake_session, tmp_path: Path) -> None:
    pdf = tmp_path / "broken.pdf"
    pdf.write_bytes(b"%PDF")
    fake_session([_FakeResponse(status_code=400, json_payload={"error": "File must be a PDF"})])

    with pytest.raises(DocumentExtractionError, match="File must be a PDF"):
        ChatApiClient(API_URL, PARSE_URL).extract_document(pdf)
