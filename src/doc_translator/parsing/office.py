"""
Handler for the office and data catch-all family: RTF, ODT, CSV, XML, JSON.

Extraction is best effort; most of these yield plain text that the parser
turns into paragraphs.
"""

from __future__ import annotations

import csv
import io
import json
import re
import zipfile
from xml.etree import ElementTree

from bs4 import BeautifulSoup

from doc_translator.errors import ParseError
from doc_translator.parsing.base import DocumentFormat, FormatHandler, HandlerResult, decode_text

_ODF_TEXT_NS = "urn:oasis:names:tc:opendocument:xmlns:text:1.0"

_RTF_DESTINATIONS = re.compile(
    r"\{\\\*?\\(?:fonttbl|colortbl|stylesheet|info|pict|header|footer|generator)\b"
)
_RTF_UNICODE = re.compile(r"\\u(-?\d+)\??")
_RTF_HEX = re.compile(r"\\'([0-9a-fA-F]{2})")
_RTF_PARAGRAPH = re.compile(r"\\(?:par|line)\b ?")
_RTF_CONTROL = re.compile(r"\\[a-zA-Z]+-?\d* ?|\\[^a-zA-Z]")


def _strip_rtf_group(content: str, start: int) -> int:
    """Index just past the brace group opening at ``start``."""
    depth = 0
    i = start
    while i < len(content):
        char = content[i]
        if char == "\\":
            i += 2
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return len(content)


def rtf_to_text(content: str) -> str:
    """Strip RTF control words, keeping paragraph breaks."""
    # Drop non-text destinations (font tables, pictures, metadata)
    while True:
        match = _RTF_DESTINATIONS.search(content)
        if not match:
            break
        content = content[: match.start()] + content[_strip_rtf_group(content, match.start()) :]

    content = _RTF_UNICODE.sub(lambda m: chr(int(m.group(1)) % 65536), content)
    content = _RTF_HEX.sub(lambda m: bytes([int(m.group(1), 16)]).decode("cp1252", errors="ignore"), content)
    content = _RTF_PARAGRAPH.sub("\n", content)
    content = content.replace("\\tab", "\t")
    content = _RTF_CONTROL.sub("", content)
    content = content.replace("{", "").replace("}", "")
    lines = [line.strip() for line in content.splitlines()]
    return "\n\n".join(line for line in lines if line)


class OfficeHandler(FormatHandler):
    """Best-effort text extraction for office and data formats."""

    formats = frozenset(
        {
            DocumentFormat.RTF,
            DocumentFormat.ODT,
            DocumentFormat.CSV,
            DocumentFormat.XML,
            DocumentFormat.JSON,
        }
    )

    @property
    def name(self) -> str:
        return "office"

    def convert(self, data: bytes, fmt: DocumentFormat, file_name: str | None = None) -> HandlerResult:
        converters = {
            DocumentFormat.RTF: self._rtf,
            DocumentFormat.ODT: self._odt,
            DocumentFormat.CSV: self._csv,
            DocumentFormat.XML: self._xml,
            DocumentFormat.JSON: self._json,
        }
        converter = converters.get(fmt)
        if converter is None:
            raise ParseError(f"Unsupported office document format: {fmt.value}")
        return converter(data)

    def _rtf(self, data: bytes) -> HandlerResult:
        content, _ = decode_text(data)
        return HandlerResult(
            text=rtf_to_text(content),
            metadata={
                "format": "rtf",
                "has_structure": True,
                "warning": "RTF format - limited HTML structure preservation",
            },
        )

    def _odt(self, data: bytes) -> HandlerResult:
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                root = ElementTree.fromstring(archive.read("content.xml"))
        except (zipfile.BadZipFile, KeyError, ElementTree.ParseError) as e:
            raise ParseError(f"ODT parsing error: {e}") from e

        soup = BeautifulSoup("", "html.parser")
        blocks = []
        texts = []
        for element in root.iter():
            if element.tag == f"{{{_ODF_TEXT_NS}}}h":
                level = int(element.get(f"{{{_ODF_TEXT_NS}}}outline-level") or 1)
                tag = soup.new_tag(f"h{min(max(level, 1), 6)}")
            elif element.tag == f"{{{_ODF_TEXT_NS}}}p":
                tag = soup.new_tag("p")
            else:
                continue
            text = "".join(element.itertext()).strip()
            if not text:
                continue
            tag.string = text
            blocks.append(str(tag))
            texts.append(text)

        return HandlerResult(
            html="".join(blocks),
            text="\n\n".join(texts),
            metadata={
                "format": "odt",
                "has_structure": True,
                "paragraph_count": len(blocks),
            },
        )

    def _csv(self, data: bytes) -> HandlerResult:
        content, _ = decode_text(data)
        try:
            rows = list(csv.reader(io.StringIO(content)))
        except csv.Error as e:
            raise ParseError(f"CSV parsing error: {e}") from e
        rows = [row for row in rows if any(cell.strip() for cell in row)]
        if not rows:
            return HandlerResult(metadata={"format": "csv", "has_structure": False})

        soup = BeautifulSoup("", "html.parser")
        table = soup.new_tag("table")
        headers = rows[0]
        for row_index, row in enumerate(rows):
            tr = soup.new_tag("tr")
            for col in range(len(headers)):
                cell = soup.new_tag("th" if row_index == 0 else "td")
                cell.string = row[col] if col < len(row) else ""
                tr.append(cell)
            table.append(tr)

        return HandlerResult(
            html=str(table),
            text="\n".join(" | ".join(row) for row in rows[1:]),
            metadata={
                "format": "csv",
                "has_structure": True,
                "row_count": len(rows) - 1,
                "column_count": len(headers),
            },
        )

    def _xml(self, data: bytes) -> HandlerResult:
        try:
            root = ElementTree.fromstring(data)
        except ElementTree.ParseError as e:
            raise ParseError(f"XML parsing error: {e}") from e
        texts = [t.strip() for t in root.itertext() if t.strip()]
        return HandlerResult(
            text="\n\n".join(texts),
            metadata={"format": "xml", "has_structure": False, "root_element": root.tag},
        )

    def _json(self, data: bytes) -> HandlerResult:
        content, _ = decode_text(data)
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise ParseError(f"JSON parsing error: {e}") from e

        soup = BeautifulSoup("", "html.parser")
        pre = soup.new_tag("pre")
        code = soup.new_tag("code")
        code.string = json.dumps(parsed, indent=2, ensure_ascii=False)
        pre.append(code)
        return HandlerResult(
            html=str(pre),
            text=code.string,
            metadata={
                "format": "json",
                "has_structure": True,
                "type": type(parsed).__name__,
            },
        )
