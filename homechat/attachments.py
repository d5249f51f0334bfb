"""Helpers that turn composer input into message parts and back into text."""

from __future__ import annotations

import base64
import csv
import io
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .models import ChatMessage

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".heif")
SUPPORTED_DOCUMENT_MIME_TYPES = (
    "text/plain",
    "text/csv",
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
)
DOCUMENT_EXTENSIONS = (".txt", ".csv", ".pdf", ".xlsx", ".xls")

MessageContent = Union[str, List[Dict[str, Any]]]


@dataclass
class UploadedImage:
    url: str
    mime_type: str
    name: Optional[str] = None


@dataclass
class UploadedDocument:
    name: str
    content: str
    mime_type: str
    images: List[Dict[str, Any]] = field(default_factory=list)
    pages: Optional[int] = None


def guess_mime_type(name: str) -> str:
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"


def is_image_file(name: str, mime_type: str = "") -> bool:
    lowered = name.lower()
    return mime_type.startswith("image/") or lowered.endswith(IMAGE_EXTENSIONS)


def is_document_file(name: str, mime_type: str = "") -> bool:
    lowered = name.lower()
    return mime_type.lower() in SUPPORTED_DOCUMENT_MIME_TYPES or lowered.endswith(DOCUMENT_EXTENSIONS)


def read_file_as_data_url(path: Union[str, Path], mime_type: Optional[str] = None) -> str:
    p = Path(path)
    mime = mime_type or guess_mime_type(p.name)
    encoded = base64.b64encode(p.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def _format_rows(rows: Sequence[Sequence[str]]) -> str:
    lines: List[str] = []
    for index, row in enumerate(rows):
        lines.append(" | ".join(row))
        if index == 0:
            lines.append("-" * 50)
    return "\n".join(lines) + ("\n" if lines else "")


def read_text_document(path: Union[str, Path], mime_type: Optional[str] = None) -> UploadedDocument:
    """Read a plain-text or CSV upload into a document attachment."""

    p = Path(path)
    mime = mime_type or guess_mime_type(p.name)
    text = p.read_text(encoding="utf-8", errors="replace")
    if mime == "text/csv" or p.name.lower().endswith(".csv"):
        rows = list(csv.reader(io.StringIO(text)))
        text = f"[CSV File: {p.name}]\n\n" + _format_rows(rows)
    return UploadedDocument(name=p.name, content=text, mime_type=mime)


def build_user_message_parts(
    text: str,
    images: Sequence[UploadedImage] = (),
    documents: Sequence[UploadedDocument] = (),
) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    for image in images:
        part: Dict[str, Any] = {"type": "file", "mediaType": image.mime_type, "url": image.url}
        if image.name:
            part["filename"] = image.name
        parts.append(part)
    for doc in documents:
        data: Dict[str, Any] = {"name": doc.name, "content": doc.content, "mimeType": doc.mime_type}
        if doc.images:
            data["images"] = list(doc.images)
        parts.append({"type": "data-document", "data": data})
    return parts


def build_message_content_from_parts(parts: Sequence[Dict[str, Any]]) -> MessageContent:
    """Collapse message parts into the wire ``content`` shape.

    A lone text part becomes a bare string; image files become ``image`` parts
    and documents keep their extracted text.  Non-image files are dropped.
    """

    result: List[Dict[str, Any]] = []
    for part in parts:
        kind = part.get("type")
        if kind == "text":
            result.append({"type": "text", "text": part.get("text", "")})
        elif kind == "file":
            media_type = str(part.get("mediaType") or "")
            if media_type.startswith("image/"):
                result.append({"type": "image", "image": part.get("url", ""), "mimeType": media_type})
        elif kind == "data-document":
            doc = part.get("data") or {}
            entry: Dict[str, Any] = {
                "type": "document",
                "name": doc.get("name", ""),
                "content": doc.get("content", ""),
                "mimeType": doc.get("mimeType", ""),
            }
            if doc.get("images"):
                entry["images"] = list(doc["images"])
            result.append(entry)

    if not result:
        return ""
    if len(result) == 1 and result[0]["type"] == "text":
        return result[0]["text"]
    return result


def get_text_from_parts(parts: Sequence[Dict[str, Any]]) -> str:
    segments: List[str] = []
    for part in parts:
        kind = part.get("type")
        if kind == "text":
            segments.append(str(part.get("text", "")))
        elif kind == "data-document":
            segments.append(str((part.get("data") or {}).get("name", "")))
    return " ".join(segments)


def find_last_message_index(messages: Sequence[ChatMessage], role: str) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == role:
            return index
    return -1


__all__ = [
    "DOCUMENT_EXTENSIONS",
    "IMAGE_EXTENSIONS",
    "MessageContent",
    "SUPPORTED_DOCUMENT_MIME_TYPES",
    "UploadedDocument",
    "UploadedImage",
    "build_message_content_from_parts",
    "build_user_message_parts",
    "find_last_message_index",
    "get_text_from_parts",
    "guess_mime_type",
    "is_document_file",
    "is_image_file",
    "read_file_as_data_url",
    "read_text_document",
]
