from homechat.attachments import UploadedImage, build_user_message_parts
from homechat.models import ChatMessage
from homechat.transport import (
    UIMessageAssembler,
    dedupe_sources,
    prepare_send_messages_request,
    sources_from_parts,
    strip_trailing_source_links,
    to_completion_message,
    to_display_message,
)


def _text(role: str, text: str) -> ChatMessage:
    return ChatMessage(role=role, parts=[{"type": "text", "text": text}])


def test_request_splits_at_last_user_message() -> None:
    messages = [
        _text("user", "first question"),
        _text("assistant", "first answer"),
        ChatMessage(
            role="user",
            parts=[
                {"type": "text", "text": "what is this?"},
                {"type": "file", "mediaType": "image/png", "url": "data:image/png;base64,AA=="},
            ],
        ),
    ]

    request = prepare_send_messages_request(messages, prompt="Be helpful.", model="m1", protocol="ui")

    assert request.body == {
        "prompt": "Be helpful.",
        "messages": [
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "first answer"},
        ],
        "input": [
            {"type": "text", "text": "what is this?"},
            {"type": "image", "image": "data:image/png;base64,AA==", "mimeType": "image/png"},
        ],
        "model": "m1",
    }
    assert request.headers["Accept"] == "text/event-stream"


def test_request_without_user_message_sends_full_history() -> None:
    messages = [_text("assistant", "hello"), _text("system", "context")]

    request = prepare_send_messages_request(messages, prompt="p", protocol="text", headers={"X-Trace": "1"})

    assert request.body["input"] == ""
    assert len(request.body["messages"]) == 2
    assert "model" not in request.body
    assert request.headers == {"X-Trace": "1", "Accept": "text/plain"}


def test_assistant_content_is_flattened() -> None:
    message = ChatMessage(
        role="assistant",
        parts=[{"type": "text", "text": "see"}, {"type": "source-url", "sourceId": "s", "url": "https://a"}],
    )

    assert to_completion_message(message) == {"role": "assistant", "content": "see"}


def test_sources_dedupe_by_composite_key() -> None:
    sources = [
        {"type": "url", "id": "1", "url": "https://a"},
        {"type": "url", "id": "2", "url": "https://a"},
        {"type": "document", "id": "3", "mediaType": "application/pdf", "title": "Spec", "filename": None},
        {"type": "document", "id": "4", "mediaType": "application/pdf", "title": "Spec", "filename": ""},
        {"type": "document", "id": "5", "mediaType": "application/pdf", "title": "Spec", "filename": "s.pdf"},
    ]

    assert [source["id"] for source in dedupe_sources(sources)] == ["1", "3", "5"]


def test_sources_from_parts() -> None:
    parts = [
        {"type": "text", "text": "x"},
        {"type": "source-url", "sourceId": "a", "url": "https://a", "title": "A"},
        {"type": "source-url", "sourceId": "b", "url": "https://a", "title": "A again"},
        {"type": "source-document", "sourceId": "c", "mediaType": "text/plain", "title": "Notes"},
    ]

    sources = sources_from_parts(parts)

    assert [source["type"] for source in sources] == ["url", "document"]
    assert sources[0]["title"] == "A"


def test_strip_trailing_links_needs_two_matches() -> None:
    sources = [{"type": "url", "url": "https://a"}, {"type": "url", "url": "https://b"}]

    two = "Answer text.\n\n[A](https://a) [B](https://b)  "
    one = "Answer text. [A](https://a)"
    foreign = "Answer text. [C](https://c) [B](https://b)"

    assert strip_trailing_source_links(two, sources) == "Answer text."
    assert strip_trailing_source_links(one, sources) == one
    assert strip_trailing_source_links(foreign, sources) == foreign
    assert strip_trailing_source_links(two, []) == two


def test_assembler_merges_deltas_and_sources() -> None:
    assembler = UIMessageAssembler()
    events = [
        {"type": "start", "messageId": "srv-1"},
        {"type": "text-start", "id": "t1"},
        {"type": "text-delta", "id": "t1", "delta": "Hel"},
        {"type": "text-delta", "id": "t1", "delta": "lo"},
        {"type": "source-url", "sourceId": "s1", "url": "https://a", "title": "A"},
        {"type": "source-url", "sourceId": "s2", "url": "https://a", "title": "dup"},
        {"type": "text-end", "id": "t1"},
        {"type": "finish", "finishReason": "stop"},
    ]

    emitted = [event for payload in events for event in assembler.feed(payload)]
    message = assembler.build_message()

    assert [event.kind for event in emitted] == ["delta", "delta", "source"]
    assert message.id == "srv-1"
    assert message.role == "assistant"
    assert message.parts == [
        {"type": "text", "text": "Hello"},
        {"type": "source-url", "sourceId": "s1", "url": "https://a", "title": "A"},
    ]
    assert assembler.finish_reason == "stop"


def test_assembler_records_error() -> None:
    assembler = UIMessageAssembler()

    assembler.feed({"type": "error", "errorText": "rate limited"})

    assert assembler.error_text == "rate limited"


def test_display_message_groups_attachments_and_sources() -> None:
    message = ChatMessage(
        role="assistant",
        parts=[
            {"type": "text", "text": "Answer [A](https://a) [B](https://b)"},
            {"type": "source-url", "sourceId": "1", "url": "https://a"},
            {"type": "source-url", "sourceId": "2", "url": "https://b"},
        ],
    )

    display = to_display_message(message)

    assert display["content"] == "Answer"
    assert [source["url"] for source in display["sources"]] == ["https://a", "https://b"]
    assert display["images"] == [] and display["documents"] == []


def test_image_and_text_survive_send_and_display() -> None:
    image_url = "data:image/png;base64,iVBORw0KGgo="
    parts = build_user_message_parts(
        "what breed is this?",
        [UploadedImage(url=image_url, mime_type="image/png", name="dog.png")],
    )
    message = ChatMessage(role="user", parts=parts)

    request = prepare_send_messages_request([message], prompt="p", protocol="ui")
    display = to_display_message(message)

    assert request.body["messages"] == []
    assert request.body["input"] == [
        {"type": "text", "text": "what breed is this?"},
        {"type": "image", "image": image_url, "mimeType": "image/png"},
    ]
    assert display["content"] == "what breed is this?"
    assert display["images"] == [{"url": image_url, "mediaType": "image/png", "filename": "dog.png"}]
