"""
Word document handler.

DOCX is read with python-docx and rebuilt as semantic HTML; inline images
become asset candidates sized from their EMU extents. Legacy binary DOC files
only get best-effort text recovery.
"""

from __future__ import annotations

import io
import re
from typing import Any

from bs4 import BeautifulSoup, Tag
from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table
from docx.text.paragraph import Paragraph

from doc_translator.assets import compute_asset_id, deterministic_id, emu_to_px, guess_extension
from doc_translator.errors import ParseError
from doc_translator.parsing.base import AssetCandidate, DocumentFormat, FormatHandler, HandlerResult

_ALIGNMENTS = {
    WD_ALIGN_PARAGRAPH.LEFT: "left",
    WD_ALIGN_PARAGRAPH.CENTER: "center",
    WD_ALIGN_PARAGRAPH.RIGHT: "right",
    WD_ALIGN_PARAGRAPH.JUSTIFY: "justify",
}

# Printable runs in legacy Word binaries: UTF-16LE first, then single-byte
_UTF16_RUN = re.compile(rb"(?:[\x20-\x7e\xa0-\xff]\x00|[\r\n\t]\x00){6,}")
_ANSI_RUN = re.compile(rb"[\x20-\x7e\xa0-\xff\r\n\t]{12,}")


class WordHandler(FormatHandler):
    """Convert DOCX (and, best effort, DOC) to HTML."""

    formats = frozenset({DocumentFormat.DOCX, DocumentFormat.DOC})

    @property
    def name(self) -> str:
        return "python-docx"

    def convert(self, data: bytes, fmt: DocumentFormat, file_name: str | None = None) -> HandlerResult:
        if fmt == DocumentFormat.DOC:
            return self._convert_legacy(data, file_name)

        try:
            doc = Document(io.BytesIO(data))
        except PackageNotFoundError as e:
            raise ParseError(
                "DOCX parsing error: invalid or corrupted DOCX file",
                context={"file_name": file_name},
            ) from e

        soup = BeautifulSoup("", "html.parser")
        candidates: list[AssetCandidate] = []
        blocks: list[Tag] = []
        open_list: Tag | None = None

        for element in doc.element.body.iterchildren():
            if element.tag.endswith("}tbl"):
                open_list = None
                blocks.append(self._table_to_html(soup, Table(element, doc), candidates))
                continue
            if not element.tag.endswith("}p"):
                continue

            para = Paragraph(element, doc)
            style_name = para.style.name if para.style is not None else ""
            if "List" in style_name:
                list_tag = "ol" if "Number" in style_name else "ul"
                if open_list is None or open_list.name != list_tag:
                    open_list = soup.new_tag(list_tag)
                    blocks.append(open_list)
                item = soup.new_tag("li")
                self._fill_runs(soup, item, para, candidates)
                open_list.append(item)
                continue

            open_list = None
            node = soup.new_tag(self._block_tag(style_name))
            align = _ALIGNMENTS.get(para.alignment)
            if align and align != "left":
                node["style"] = f"text-align:{align}"
            self._fill_runs(soup, node, para, candidates)
            if node.get_text(strip=True) or node.find("img"):
                blocks.append(node)

        core = doc.core_properties
        metadata: dict[str, Any] = {
            "format": "docx",
            "has_structure": True,
            "author": core.author or "",
            "title": core.title or "",
            "paragraph_count": len(doc.paragraphs),
            "table_count": len(doc.tables),
            "image_count": len(candidates),
        }
        return HandlerResult(
            html="".join(str(block) for block in blocks),
            text="\n\n".join(p.text for p in doc.paragraphs if p.text.strip()),
            assets=candidates,
            metadata=metadata,
        )

    @staticmethod
    def _block_tag(style_name: str) -> str:
        if style_name == "Title":
            return "h1"
        if style_name == "Subtitle":
            return "h2"
        if style_name.startswith("Heading"):
            try:
                level = int(style_name.replace("Heading", "").strip() or 1)
            except ValueError:
                level = 1
            return f"h{min(max(level, 1), 6)}"
        return "p"

    def _fill_runs(
        self,
        soup: BeautifulSoup,
        parent: Tag,
        para: Paragraph,
        candidates: list[AssetCandidate],
    ) -> None:
        """Append the paragraph's runs, with bold/italic and inline images."""
        align = _ALIGNMENTS.get(para.alignment)
        for run in para.runs:
            for img in self._run_images(soup, run, para, align, candidates):
                parent.append(img)
            if not run.text:
                continue
            node: Tag | str = run.text
            if run.italic:
                em = soup.new_tag("em")
                em.append(node)
                node = em
            if run.bold:
                strong = soup.new_tag("strong")
                strong.append(node)
                node = strong
            parent.append(node)

    def _run_images(
        self,
        soup: BeautifulSoup,
        run,
        para: Paragraph,
        align: str | None,
        candidates: list[AssetCandidate],
    ) -> list[Tag]:
        images = []
        for drawing in run._element.xpath(".//w:drawing"):
            embeds = drawing.xpath(".//a:blip/@r:embed")
            if not embeds:
                continue
            part = para.part.related_parts.get(embeds[0])
            blob = getattr(part, "blob", None)
            if not blob:
                continue
            extents = drawing.xpath(".//wp:extent")
            width = height = None
            if extents:
                width = emu_to_px(int(extents[0].get("cx") or 0))
                height = emu_to_px(int(extents[0].get("cy") or 0))
            descr = drawing.xpath(".//wp:docPr/@descr")
            alt_text = (descr[0] if descr else "").strip() or None

            media_type = getattr(part, "content_type", None) or "application/octet-stream"
            token = deterministic_id("docx-image", [compute_asset_id(blob), len(candidates)])
            candidates.append(
                AssetCandidate(
                    token=token,
                    data=blob,
                    media_type=media_type,
                    file_name=f"{token}.{guess_extension(media_type)}",
                    alt_text=alt_text,
                    width=width,
                    height=height,
                    align=align if align in ("left", "right", "center") else None,
                )
            )
            attrs = {"data-asset-token": token, "alt": alt_text or ""}
            if width:
                attrs["width"] = str(width)
            if height:
                attrs["height"] = str(height)
            images.append(soup.new_tag("img", attrs=attrs))
        return images

    def _table_to_html(
        self,
        soup: BeautifulSoup,
        table: Table,
        candidates: list[AssetCandidate],
    ) -> Tag:
        node = soup.new_tag("table")
        for row_index, row in enumerate(table.rows):
            tr = soup.new_tag("tr")
            for cell in row.cells:
                cell_tag = soup.new_tag("th" if row_index == 0 else "td")
                for i, para in enumerate(cell.paragraphs):
                    if i:
                        cell_tag.append(soup.new_tag("br"))
                    self._fill_runs(soup, cell_tag, para, candidates)
                tr.append(cell_tag)
            node.append(tr)
        return node

    def _convert_legacy(self, data: bytes, file_name: str | None) -> HandlerResult:
        runs = [m.group().decode("utf-16-le", errors="ignore") for m in _UTF16_RUN.finditer(data)]
        if not runs:
            runs = [m.group().decode("cp1252", errors="ignore") for m in _ANSI_RUN.finditer(data)]
        text = "\n\n".join(r.strip() for r in runs if r.strip())
        if not text:
            raise ParseError(
                "Legacy DOC format parsing not available. Please convert to DOCX format.",
                context={"file_name": file_name},
            )
        return HandlerResult(
            text=text,
            metadata={
                "format": "doc",
                "has_structure": False,
                "warnings": ["Legacy DOC format - structure preservation is limited"],
            },
        )
