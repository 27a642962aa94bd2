"""
Plain text and Markdown handler.

Markdown is rendered with mistune; plain text is split into paragraphs.
"""

from __future__ import annotations

import mistune

from doc_translator.parsing.base import DocumentFormat, FormatHandler, HandlerResult, decode_text


class TextHandler(FormatHandler):
    """Handle .txt, .md and other text/* uploads."""

    formats = frozenset({DocumentFormat.TEXT, DocumentFormat.MARKDOWN})

    def __init__(self) -> None:
        self._markdown = mistune.create_markdown(
            escape=False,
            hard_wrap=True,
            plugins=["table", "strikethrough"],
        )

    @property
    def name(self) -> str:
        return "text"

    def convert(self, data: bytes, fmt: DocumentFormat, file_name: str | None = None) -> HandlerResult:
        content, encoding = decode_text(data)
        line_count = len(content.splitlines())

        if fmt == DocumentFormat.MARKDOWN:
            return HandlerResult(
                html=self._markdown(content),
                text=content,
                metadata={
                    "format": "markdown",
                    "encoding": encoding,
                    "has_structure": True,
                    "line_count": line_count,
                },
            )

        # The parser turns bare text into paragraphs
        return HandlerResult(
            text=content,
            metadata={
                "format": "text",
                "encoding": encoding,
                "has_structure": False,
                "line_count": line_count,
                "char_count": len(content),
            },
        )
