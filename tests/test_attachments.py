from pathlib import Path

from homechat.attachments import (
    UploadedDocument,
    UploadedImage,
    build_message_content_from_parts,
    build_user_message_parts,
    find_last_message_index,
    get_text_from_parts,
    is_document_file,
    is_image_file,
    read_file_as_data_url,
    read_text_document,
)
from homechat.models import ChatMessage


def test_user_parts_order_text_images_documents() -> None:
    parts = build_user_message_parts(
        "look",
        [UploadedImage(url="data:image/png;base64,AA==", mime_type="image/png", name="a.png")],
        [UploadedDocument(name="notes.txt", content="body", mime_type="text/plain")],
    )

    assert [part["type"] for part in parts] == ["text", "file", "data-document"]
    assert parts[1]["filename"] == "a.png"
    assert parts[2]["data"] == {"name": "notes.txt", "content": "body", "mimeType": "text/plain"}


def test_content_collapses_single_text_part() -> None:
    assert build_message_content_from_parts([]) == ""
    assert build_message_content_from_parts([{"type": "text", "text": "hi"}]) == "hi"


def test_content_keeps_images_and_documents_and_drops_other_files() -> None:
    content = build_message_content_from_parts(
        [
            {"type": "text", "text": "see"},
            {"type": "file", "mediaType": "image/jpeg", "url": "data:x"},
            {"type": "file", "mediaType": "application/zip", "url": "data:y"},
            {"type": "data-document", "data": {"name": "r.pdf", "content": "txt", "mimeType": "application/pdf"}},
        ]
    )

    assert content == [
        {"type": "text", "text": "see"},
        {"type": "image", "image": "data:x", "mimeType": "image/jpeg"},
        {"type": "document", "name": "r.pdf", "content": "txt", "mimeType": "application/pdf"},
    ]


def test_text_from_parts_includes_document_names() -> None:
    parts = [{"type": "text", "text": "summary of"}, {"type": "data-document", "data": {"name": "q3.csv"}}]

    assert get_text_from_parts(parts) == "summary of q3.csv"


def test_file_classification() -> None:
    assert is_image_file("photo.HEIC")
    assert is_image_file("blob", "image/png")
    assert is_document_file("report.pdf")
    assert is_document_file("data", "text/csv")
    assert not is_document_file("archive.zip", "application/zip")


def test_read_file_helpers(tmp_path: Path) -> None:
    image = tmp_path / "dot.png"
    image.write_bytes(b"\x89PNG")
    table = tmp_path / "table.csv"
    table.write_text("name,qty\nbolts,4\n", encoding="utf-8")

    assert read_file_as_data_url(image).startswith("data:image/png;base64,")
    doc = read_text_document(table)
    assert doc.name == "table.csv"
    assert doc.content.startswith("[CSV File: table.csv]\n\nname | qty\n" + "-" * 50 + "\nbolts | 4")


def test_find_last_message_index() -> None:
    messages = [ChatMessage(role="user"), ChatMessage(role="assistant"), ChatMessage(role="user")]

    assert find_last_message_index(messages, "user") == 2
    assert find_last_message_index(messages, "system") == -1
