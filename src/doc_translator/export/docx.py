"""
DOCX exporter for approved translations.

Walks the assembled HTML with BeautifulSoup and writes the matching
python-docx elements. Right-to-left target languages get right-aligned
paragraphs and tables.
"""

from __future__ import annotations

import io
import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup, NavigableString, Tag
from docx import Document as DocxDocument
from docx.enum.table import WD_TABLE_ALIGNMENT
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.image.exceptions import UnrecognizedImageError
from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls
from docx.shared import Inches, Pt, RGBColor

from doc_translator.parsing.base import decode_data_uri

if TYPE_CHECKING:
    from docx.text.paragraph import Paragraph

logger = logging.getLogger(__name__)

RTL_LANGUAGES = {"ar", "fa", "he", "ur"}

HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}
BLOCK_CONTAINERS = {"div", "section", "article", "main", "header", "footer", "aside", "nav", "body"}
PIXELS_PER_INCH = 96
MAX_IMAGE_WIDTH_INCHES = 6.0

_WIDTH_RE = re.compile(r"width\s*:\s*(\d+(?:\.\d+)?)px", re.IGNORECASE)

AssetResolver = Callable[[str], bytes | None]


class HtmlDocxExporter:
    """Renders assembled translation HTML into a Word document."""

    COLORS = {
        "primary": RGBColor(0x1A, 0x1A, 0x2E),
        "secondary": RGBColor(0x4A, 0x90, 0xD9),
        "text": RGBColor(0x33, 0x33, 0x33),
        "light": RGBColor(0x66, 0x66, 0x66),
    }

    def __init__(self, language: str = "en", resolve_asset: AssetResolver | None = None):
        self.language = (language or "en").lower()
        self.is_rtl = self.language.split("-")[0] in RTL_LANGUAGES
        self.resolve_asset = resolve_asset

    def render(self, html: str) -> bytes:
        """Convert an HTML document to DOCX bytes."""
        docx = DocxDocument()
        self._setup_styles(docx)

        soup = BeautifulSoup(html or "", "html.parser")
        title = soup.find("title")
        if title and title.get_text(strip=True):
            docx.core_properties.title = title.get_text(strip=True)
        body = soup.find("body") or soup
        self._render_blocks(docx, body)

        buffer = io.BytesIO()
        docx.save(buffer)
        return buffer.getvalue()

    # Block-level elements

    def _render_blocks(self, docx: DocxDocument, parent: Tag) -> None:
        for node in parent.children:
            if isinstance(node, NavigableString):
                text = str(node).strip()
                if text and node.__class__ is NavigableString:
                    self._add_paragraph(docx).add_run(text)
                continue
            if not isinstance(node, Tag):
                continue

            name = node.name
            if name in ("script", "style", "head", "title", "meta"):
                continue
            if name in HEADING_TAGS:
                heading = docx.add_heading(node.get_text(" ", strip=True), level=HEADING_TAGS[name])
                self._align(heading)
            elif name == "p":
                self._render_paragraph(docx, node)
            elif name in ("ul", "ol"):
                self._render_list(docx, node, ordered=name == "ol", level=0)
            elif name == "table":
                self._render_table(docx, node)
            elif name == "figure":
                self._render_figure(docx, node)
            elif name == "img":
                self._add_image(docx, node)
            elif name == "blockquote":
                self._render_quote(docx, node)
            elif name == "pre":
                self._add_code_block(docx, node.get_text())
            elif name == "hr":
                para = docx.add_paragraph()
                para.alignment = WD_ALIGN_PARAGRAPH.CENTER
                run = para.add_run("─" * 40)
                run.font.color.rgb = RGBColor(0xDD, 0xDD, 0xDD)
            elif name in BLOCK_CONTAINERS or node.find(["p", "table", "figure", "ul", "ol", *HEADING_TAGS]):
                self._render_blocks(docx, node)
            else:
                self._render_paragraph(docx, node)

    def _add_paragraph(self, docx: DocxDocument) -> Paragraph:
        para = docx.add_paragraph()
        self._align(para)
        return para

    def _align(self, para: Paragraph) -> None:
        if self.is_rtl:
            para.alignment = WD_ALIGN_PARAGRAPH.RIGHT

    def _render_paragraph(self, docx: DocxDocument, node: Tag) -> None:
        if not node.get_text(strip=True) and not node.find("img"):
            return
        para = self._add_paragraph(docx)
        self._render_inline(para, node)
        for img in node.find_all("img"):
            self._add_image(docx, img)

    def _render_quote(self, docx: DocxDocument, node: Tag) -> None:
        para = docx.add_paragraph()
        if self.is_rtl:
            para.paragraph_format.right_indent = Inches(0.5)
        else:
            para.paragraph_format.left_indent = Inches(0.5)
        run = para.add_run(node.get_text(" ", strip=True))
        run.font.italic = True
        run.font.color.rgb = self.COLORS["light"]
        self._align(para)

    def _render_list(self, docx: DocxDocument, node: Tag, ordered: bool, level: int) -> None:
        style = "List Number" if ordered else "List Bullet"
        if level > 0:
            style = f"{style} {min(level + 1, 3)}"
        for item in node.find_all("li", recursive=False):
            para = docx.add_paragraph(style=style)
            self._render_inline(para, item, skip=("ul", "ol"))
            self._align(para)
            for nested in item.find_all(["ul", "ol"], recursive=False):
                self._render_list(docx, nested, ordered=nested.name == "ol", level=level + 1)

    def _render_table(self, docx: DocxDocument, node: Tag) -> None:
        rows_data: list[list[str]] = []
        for row in node.find_all("tr"):
            if row.find_parent("table") is not node:
                continue
            cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["th", "td"], recursive=False)]
            if cells:
                rows_data.append(cells)
        if not rows_data:
            return

        num_cols = max(len(row) for row in rows_data)
        table = docx.add_table(rows=len(rows_data), cols=num_cols)
        table.style = "Table Grid"
        table.alignment = WD_TABLE_ALIGNMENT.RIGHT if self.is_rtl else WD_TABLE_ALIGNMENT.LEFT
        has_header = node.find("th") is not None

        for i, row_data in enumerate(rows_data):
            # RTL tables read right to left
            if self.is_rtl:
                row_data = list(reversed(row_data))
            for j, cell_text in enumerate(row_data):
                cell = table.rows[i].cells[j]
                cell.text = ""
                para = cell.paragraphs[0]
                run = para.add_run(cell_text)
                run.font.size = Pt(9)
                para.paragraph_format.space_before = Pt(2)
                para.paragraph_format.space_after = Pt(2)
                self._align(para)
                if i == 0 and has_header:
                    run.font.bold = True
                    run.font.color.rgb = RGBColor(0xFF, 0xFF, 0xFF)
                    shading = parse_xml(f'<w:shd {nsdecls("w")} w:fill="4A90D9"/>')
                    cell._tc.get_or_add_tcPr().append(shading)

        docx.add_paragraph()

    def _render_figure(self, docx: DocxDocument, node: Tag) -> None:
        img = node.find("img")
        if img is not None:
            self._add_image(docx, img, asset_id=node.get("data-asset"))
        caption = node.find("figcaption")
        if caption and caption.get_text(strip=True):
            para = docx.add_paragraph()
            para.alignment = WD_ALIGN_PARAGRAPH.CENTER
            run = para.add_run(caption.get_text(" ", strip=True))
            run.font.italic = True
            run.font.size = Pt(9)
            run.font.color.rgb = self.COLORS["light"]

    # Images

    def _image_bytes(self, img: Tag, asset_id: str | None) -> bytes | None:
        decoded = decode_data_uri(img.get("src", ""))
        data = decoded[0] if decoded else None
        if data is None and asset_id and self.resolve_asset is not None:
            data = self.resolve_asset(asset_id)
        return data

    def _image_width(self, img: Tag) -> Inches:
        for attr in (img.get("style", ""), img.parent.get("style", "") if img.parent else ""):
            match = _WIDTH_RE.search(attr or "")
            if match:
                inches = float(match.group(1)) / PIXELS_PER_INCH
                return Inches(min(inches, MAX_IMAGE_WIDTH_INCHES))
        return Inches(MAX_IMAGE_WIDTH_INCHES / 2)

    def _add_image(self, docx: DocxDocument, img: Tag, asset_id: str | None = None) -> None:
        data = self._image_bytes(img, asset_id)
        if not data:
            alt = img.get("alt") or img.get("src", "")
            if alt and not alt.startswith("data:"):
                para = docx.add_paragraph()
                run = para.add_run(f"[{alt}]")
                run.font.color.rgb = self.COLORS["light"]
            return
        try:
            docx.add_picture(io.BytesIO(data), width=self._image_width(img))
        except (UnrecognizedImageError, ValueError, KeyError) as e:
            logger.warning("Skipping image %s in DOCX export: %s", asset_id or "(inline)", e)
            return
        docx.paragraphs[-1].alignment = WD_ALIGN_PARAGRAPH.CENTER

    # Inline content

    def _render_inline(self, para: Paragraph, node: Tag, skip: tuple[str, ...] = ()) -> None:
        for child in node.children:
            if isinstance(child, NavigableString):
                text = re.sub(r"\s+", " ", str(child))
                if text.strip() or (text and para.runs):
                    para.add_run(text)
                continue
            if not isinstance(child, Tag) or child.name in skip or child.name == "img":
                continue
            if child.name == "br":
                para.add_run("\n")
                continue
            if child.name in ("strong", "b", "em", "i", "u", "code", "span", "a", "sup", "sub"):
                run = para.add_run(re.sub(r"\s+", " ", child.get_text()))
                run.font.bold = child.name in ("strong", "b") or None
                run.font.italic = child.name in ("em", "i") or None
                run.font.underline = child.name == "u" or None
                run.font.superscript = child.name == "sup" or None
                run.font.subscript = child.name == "sub" or None
                if child.name == "code":
                    run.font.name = "Consolas"
                    run.font.size = Pt(9)
                continue
            self._render_inline(para, child, skip)

    def _add_code_block(self, docx: DocxDocument, code: str) -> None:
        para = docx.add_paragraph()
        para.paragraph_format.left_indent = Inches(0.15)
        para.paragraph_format.right_indent = Inches(0.15)
        shading = parse_xml(f'<w:shd {nsdecls("w")} w:fill="2D2D2D"/>')
        para._p.get_or_add_pPr().append(shading)
        run = para.add_run(code)
        run.font.name = "Consolas"
        run.font.size = Pt(8)
        run.font.color.rgb = RGBColor(0xF8, 0xF8, 0xF2)

    def _setup_styles(self, docx: DocxDocument) -> None:
        styles = docx.styles

        heading_sizes = {1: 14, 2: 12, 3: 11, 4: 10.5, 5: 10, 6: 10}
        for level in range(1, 7):
            h_style = styles[f"Heading {level}"]
            h_style.font.size = Pt(heading_sizes[level])
            h_style.font.bold = True
            if level == 1:
                h_style.font.color.rgb = self.COLORS["primary"]
            elif level == 2:
                h_style.font.color.rgb = self.COLORS["secondary"]
            else:
                h_style.font.color.rgb = self.COLORS["text"]

        normal_style = styles["Normal"]
        normal_style.font.size = Pt(10)
        normal_style.font.color.rgb = self.COLORS["text"]
        normal_style.paragraph_format.space_after = Pt(4)
        normal_style.paragraph_format.line_spacing = 1.15
        if self.is_rtl:
            normal_style.paragraph_format.alignment = WD_ALIGN_PARAGRAPH.RIGHT


def html_to_docx(html: str, language: str = "en", resolve_asset: AssetResolver | None = None) -> bytes:
    """Convenience wrapper around ``HtmlDocxExporter.render``."""
    return HtmlDocxExporter(language, resolve_asset).render(html)
