"""Map uploads onto timeline content types."""

from __future__ import annotations

import os
import re

from .schemas import ContentType

# purpose: classify uploads by detected MIME type and filename, never by what the client claims the item is
# status: pilot

CODE_EXTENSIONS = {
    ".c": "c",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".css": "css",
    ".go": "go",
    ".h": "c",
    ".html": "html",
    ".java": "java",
    ".js": "javascript",
    ".json": "json",
    ".kt": "kotlin",
    ".php": "php",
    ".py": "python",
    ".rb": "ruby",
    ".rs": "rust",
    ".sh": "bash",
    ".sql": "sql",
    ".swift": "swift",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
}

_TEXT_MARKERS = ("json", "javascript", "xml", "yaml", "x-sh", "x-python")
_PDF_PAGE = re.compile(rb"/Type\s*/Page(?![a-zA-Z])")


def code_language(filename: str | None) -> str | None:
    if not filename:
        return None
    return CODE_EXTENSIONS.get(os.path.splitext(filename)[1].lower())


def classify(mime_type: str | None, filename: str | None = None) -> str:
    """Return the ContentType for a payload with the given MIME type and filename."""

    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    if mime.startswith("image/"):
        return ContentType.IMAGE
    if mime == "application/pdf":
        return ContentType.PDF
    if mime.startswith("text/") or any(marker in mime for marker in _TEXT_MARKERS):
        return ContentType.CODE if code_language(filename) else ContentType.TEXT
    if not mime or mime == "application/octet-stream":
        extension = os.path.splitext(filename or "")[1].lower()
        if extension == ".pdf":
            return ContentType.PDF
    return ContentType.FILE_BLOB


def pdf_page_count(data: bytes) -> int | None:
    """Estimate page count from page object markers; None when none are found."""

    count = len(_PDF_PAGE.findall(data))
    return count or None
