"""
PDF handler built on PyMuPDF.

Each page becomes a ``<section class="pdf-page">`` holding absolutely
positioned text spans, so the translated document keeps the page layout.
Embedded raster images are emitted as asset candidates.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import fitz  # PyMuPDF
from bs4 import BeautifulSoup

from doc_translator.assets import deterministic_id
from doc_translator.errors import ParseError
from doc_translator.parsing.base import AssetCandidate, DocumentFormat, FormatHandler, HandlerResult

logger = logging.getLogger(__name__)

IMAGE_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "jpx": "image/jp2",
    "bmp": "image/bmp",
    "gif": "image/gif",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}


def _font_family(font_name: str | None) -> str | None:
    safe = re.sub(r"[^a-zA-Z0-9 _-]", "", font_name or "").strip()
    if not safe:
        return None
    return f"'{safe}'" if " " in safe else safe


class PdfHandler(FormatHandler):
    """Extract positioned text and images from native PDFs."""

    formats = frozenset({DocumentFormat.PDF})

    @property
    def name(self) -> str:
        return "pymupdf"

    def convert(self, data: bytes, fmt: DocumentFormat, file_name: str | None = None) -> HandlerResult:
        if not data:
            raise ParseError("Missing PDF content", context={"file_name": file_name})

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ParseError(f"PDF parsing error: {e}", context={"file_name": file_name}) from e

        warnings: list[str] = []
        try:
            try:
                return self._render(doc, file_name, warnings)
            except (RuntimeError, ValueError) as e:
                # Broken cross-reference tables usually survive a clean rewrite
                logger.warning("PDF extraction failed (%s), retrying after repair", e)
                repaired = fitz.open(stream=doc.tobytes(garbage=3, clean=True), filetype="pdf")
                warnings.append(f"Extracted after repair due to parse error: {e}")
                try:
                    return self._render(repaired, file_name, warnings)
                finally:
                    repaired.close()
        except (RuntimeError, ValueError) as e:
            raise ParseError(f"PDF parsing error: {e}", context={"file_name": file_name}) from e
        finally:
            doc.close()

    def _render(self, doc: fitz.Document, file_name: str | None, warnings: list[str]) -> HandlerResult:
        soup = BeautifulSoup("", "html.parser")
        sections = []
        texts = []
        candidates: list[AssetCandidate] = []

        for page in doc:
            page_number = page.number + 1
            section, page_text = self._render_page(soup, page, page_number, file_name, candidates)
            if not page_text.strip() and not section.find("img"):
                warnings.append(f"Page {page_number} contains no extractable text layer.")
            sections.append(str(section))
            texts.append(page_text)

        metadata: dict[str, Any] = {
            "format": "pdf",
            "pages": doc.page_count,
            "info": {k: v for k, v in (doc.metadata or {}).items() if v},
            "has_structure": bool(sections),
            "warnings": list(dict.fromkeys(warnings)),
        }
        return HandlerResult(
            html="".join(sections),
            text="\n\n".join(t for t in texts if t.strip()),
            assets=candidates,
            metadata=metadata,
        )

    def _render_page(
        self,
        soup: BeautifulSoup,
        page: fitz.Page,
        page_number: int,
        file_name: str | None,
        candidates: list[AssetCandidate],
    ):
        width, height = page.rect.width, page.rect.height
        section = soup.new_tag(
            "section",
            attrs={
                "class": "pdf-page",
                "data-page": str(page_number),
                "style": f"position:relative;width:{width:.2f}px;height:{height:.2f}px;",
            },
        )
        lines_text = []
        span_index = 0

        for block in page.get_text("dict").get("blocks", []):
            if block.get("type") != 0:
                continue
            for line in block.get("lines", []):
                line_parts = []
                for span in line.get("spans", []):
                    text = span.get("text", "")
                    if not text.strip():
                        continue
                    x0, y0 = span["bbox"][0], span["bbox"][1]
                    size = span.get("size") or 0
                    styles = [
                        "position:absolute",
                        "white-space:pre",
                        f"left:{x0:.2f}px",
                        f"top:{y0:.2f}px",
                    ]
                    if size:
                        styles.append(f"font-size:{size:.2f}px")
                        styles.append(f"line-height:{size:.2f}px")
                    family = _font_family(span.get("font"))
                    if family:
                        styles.append(f"font-family:{family}")
                    tag = soup.new_tag(
                        "span",
                        attrs={
                            "class": "pdf-text",
                            "data-span-id": f"p{page_number}-s{span_index}",
                            "style": ";".join(styles),
                        },
                    )
                    tag.string = text
                    section.append(tag)
                    line_parts.append(text)
                    span_index += 1
                if line_parts:
                    lines_text.append("".join(line_parts))

        for index, info in enumerate(page.get_images(full=True)):
            xref = info[0]
            extracted = _extract_image(page, xref)
            if not extracted:
                continue
            rects = page.get_image_rects(xref)
            rect = rects[0] if rects else None
            token = deterministic_id("pdf-image", [file_name or "document.pdf", page_number, index])
            ext = str(extracted.get("ext") or "png").lower()
            img_width = round(rect.width) if rect else extracted.get("width")
            img_height = round(rect.height) if rect else extracted.get("height")
            attrs = {"data-asset-token": token, "alt": ""}
            if rect:
                attrs["style"] = (
                    f"position:absolute;left:{rect.x0:.2f}px;top:{rect.y0:.2f}px;width:{rect.width:.2f}px"
                )
            section.append(soup.new_tag("img", attrs=attrs))
            candidates.append(
                AssetCandidate(
                    token=token,
                    data=extracted["image"],
                    media_type=IMAGE_MEDIA_TYPES.get(ext, f"image/{ext}"),
                    file_name=f"page{page_number}-image{index + 1}.{ext}",
                    width=img_width,
                    height=img_height,
                )
            )

        return section, "\n".join(lines_text)


def _extract_image(page: fitz.Page, xref: int) -> dict[str, Any] | None:
    """Raw bytes of an embedded image, or None if it cannot be read."""
    try:
        extracted = page.parent.extract_image(xref)
    except (RuntimeError, ValueError) as e:
        logger.warning("Skipping unreadable PDF image xref %s: %s", xref, e)
        return None
    if not extracted or not extracted.get("image"):
        return None
    return extracted
