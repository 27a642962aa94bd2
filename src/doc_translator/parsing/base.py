"""
Base classes and interfaces for format handlers.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote

from doc_translator.errors import UnsupportedFormatError

logger = logging.getLogger(__name__)


class FormatFamily(str, Enum):
    """Handler families."""

    PDF = "pdf"
    WORD = "word"
    HTML = "html"
    TEXT = "text"
    OFFICE = "office"


class DocumentFormat(str, Enum):
    """Concrete document formats."""

    PDF = "pdf"
    DOCX = "docx"
    DOC = "doc"
    HTML = "html"
    TEXT = "text"
    MARKDOWN = "markdown"
    RTF = "rtf"
    ODT = "odt"
    CSV = "csv"
    XML = "xml"
    JSON = "json"

    @property
    def family(self) -> FormatFamily:
        return _FAMILIES[self]


_FAMILIES = {
    DocumentFormat.PDF: FormatFamily.PDF,
    DocumentFormat.DOCX: FormatFamily.WORD,
    DocumentFormat.DOC: FormatFamily.WORD,
    DocumentFormat.HTML: FormatFamily.HTML,
    DocumentFormat.TEXT: FormatFamily.TEXT,
    DocumentFormat.MARKDOWN: FormatFamily.TEXT,
    DocumentFormat.RTF: FormatFamily.OFFICE,
    DocumentFormat.ODT: FormatFamily.OFFICE,
    DocumentFormat.CSV: FormatFamily.OFFICE,
    DocumentFormat.XML: FormatFamily.OFFICE,
    DocumentFormat.JSON: FormatFamily.OFFICE,
}

EXTENSION_FORMATS = {
    ".pdf": DocumentFormat.PDF,
    ".docx": DocumentFormat.DOCX,
    ".doc": DocumentFormat.DOC,
    ".html": DocumentFormat.HTML,
    ".htm": DocumentFormat.HTML,
    ".xhtml": DocumentFormat.HTML,
    ".txt": DocumentFormat.TEXT,
    ".text": DocumentFormat.TEXT,
    ".md": DocumentFormat.MARKDOWN,
    ".markdown": DocumentFormat.MARKDOWN,
    ".rtf": DocumentFormat.RTF,
    ".odt": DocumentFormat.ODT,
    ".csv": DocumentFormat.CSV,
    ".xml": DocumentFormat.XML,
    ".json": DocumentFormat.JSON,
}

# Checked in order; first substring match wins
MEDIA_TYPE_FORMATS = [
    ("application/pdf", DocumentFormat.PDF),
    ("officedocument.wordprocessingml.document", DocumentFormat.DOCX),
    ("application/msword", DocumentFormat.DOC),
    ("text/html", DocumentFormat.HTML),
    ("application/xhtml+xml", DocumentFormat.HTML),
    ("text/markdown", DocumentFormat.MARKDOWN),
    ("text/x-markdown", DocumentFormat.MARKDOWN),
    ("rtf", DocumentFormat.RTF),
    ("opendocument.text", DocumentFormat.ODT),
    ("text/csv", DocumentFormat.CSV),
    ("application/xml", DocumentFormat.XML),
    ("text/xml", DocumentFormat.XML),
    ("application/json", DocumentFormat.JSON),
    ("text/", DocumentFormat.TEXT),
]


def detect_document_format(file_name: str | None, content_type: str | None) -> DocumentFormat:
    """
    Decide the document format from the file extension and declared type.

    The extension wins when both are present and disagree.

    Raises:
        UnsupportedFormatError: If neither identifies a supported format.
    """
    suffix = PurePosixPath((file_name or "").lower()).suffix
    if suffix in EXTENSION_FORMATS:
        return EXTENSION_FORMATS[suffix]

    media_type = (content_type or "").split(";")[0].strip().lower()
    for needle, fmt in MEDIA_TYPE_FORMATS:
        if needle in media_type:
            return fmt

    raise UnsupportedFormatError(
        f"Unsupported content type for parsing: {content_type or 'unknown'} "
        f"(filename: {file_name or 'unknown'})",
        context={"content_type": content_type, "file_name": file_name},
    )


@dataclass
class AssetCandidate:
    """
    An embedded binary found by a format handler.

    Handlers reference candidates from their HTML with
    ``<img data-asset-token="...">``.
    """

    token: str
    data: bytes | None = None
    media_type: str | None = None
    file_name: str | None = None
    source_url: str | None = None
    alt_text: str | None = None
    caption: str | None = None
    width: int | None = None
    height: int | None = None
    align: str | None = None
    keep_original_language: bool = False


@dataclass
class HandlerResult:
    """Output of a format handler: HTML or plain text, plus assets."""

    html: str | None = None
    text: str | None = None
    assets: list[AssetCandidate] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.html and self.html.strip()) and not (self.text and self.text.strip())


class FormatHandler(ABC):
    """Converts one family of documents to HTML."""

    formats: frozenset[DocumentFormat] = frozenset()

    @property
    @abstractmethod
    def name(self) -> str:
        """Handler name for logs and metadata."""
        ...

    @abstractmethod
    def convert(self, data: bytes, fmt: DocumentFormat, file_name: str | None = None) -> HandlerResult:
        """
        Convert raw bytes to HTML (or text).

        Raises:
            ParseError: If the underlying library fails.
        """
        ...

    def can_handle(self, fmt: DocumentFormat) -> bool:
        return fmt in self.formats


def decode_text(data: bytes) -> tuple[str, str]:
    """Decode bytes as UTF-8, falling back to common single-byte encodings."""
    for encoding in ("utf-8-sig", "cp1252", "latin-1"):
        try:
            return data.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    # latin-1 accepts every byte sequence, so this is unreachable in practice
    return data.decode("utf-8", errors="replace"), "utf-8"


_DATA_URI = re.compile(r"^data:([^;,]+)?(;base64)?,(.*)$", re.IGNORECASE | re.DOTALL)


def decode_data_uri(uri: str | None) -> tuple[bytes, str] | None:
    """Decode a ``data:`` URI into ``(bytes, media_type)``; None if malformed."""
    match = _DATA_URI.match(uri or "")
    if not match:
        return None
    media_type = match.group(1) or "application/octet-stream"
    payload = match.group(3) or ""
    try:
        if match.group(2):
            return base64.b64decode(payload, validate=False), media_type
        return unquote(payload).encode("utf-8"), media_type
    except (binascii.Error, ValueError) as e:
        logger.warning("Failed to decode data URI: %s", e)
        return None
