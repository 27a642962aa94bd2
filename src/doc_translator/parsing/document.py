"""
Document preparation: raw upload -> normalized HTML, assets, anchors, chunks.

Also holds the reverse path used at assembly time, where anchor placeholders
are turned back into figures.
"""

from __future__ import annotations

import base64
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag

from doc_translator.assets import (
    compute_asset_id,
    deterministic_id,
    guess_extension,
    normalize_text_for_hash,
    sanitize_filename,
    text_window_hash,
    width_from_style,
)
from doc_translator.database import Anchor, Asset
from doc_translator.errors import EmptyContentError, ParseError, ParsePhaseError
from doc_translator.parsing.base import (
    AssetCandidate,
    DocumentFormat,
    FormatFamily,
    FormatHandler,
    HandlerResult,
    decode_data_uri,
    detect_document_format,
)

logger = logging.getLogger(__name__)

BLOCK_TAGS = frozenset(
    {
        "p", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre", "code",
        "ul", "ol", "li", "table", "thead", "tbody", "tr", "td", "th",
        "section", "article", "aside", "header", "footer", "figure",
        "figcaption", "div",
    }
)

DEFAULT_HEAD = '<head><meta charset="utf-8"/></head>'

_SKIPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)
_ALIGN_VALUES = ("left", "right", "center", "justify")
_HTML_TAG = re.compile(r"<html[\s>]", re.IGNORECASE)
_BODY_TAG = re.compile(r"<body[\s>]", re.IGNORECASE)


@dataclass
class ParsedChunk:
    """One structural block of the source document."""

    chunk_id: str
    block_id: str
    order: int
    source_html: str
    source_text: str
    anchor_ids: list[str] = field(default_factory=list)


@dataclass
class PreparedDocument:
    """Everything the orchestrator needs from a parsed upload."""

    head_html: str
    body_html: str
    full_html: str
    chunks: list[ParsedChunk]
    assets: list[Asset]
    anchors: list[Anchor]
    metadata: dict[str, Any] = field(default_factory=dict)
    asset_data: dict[str, bytes] = field(default_factory=dict)


# ==================== HTML helpers ====================


def normalize_html(html: str | None) -> str:
    """Wrap fragments in a full ``<html><head/><body/></html>`` document."""
    trimmed = (html or "").strip()
    if not trimmed:
        return f"<html>{DEFAULT_HEAD}<body></body></html>"
    if _HTML_TAG.search(trimmed):
        return trimmed
    if not _BODY_TAG.search(trimmed):
        trimmed = f"<body>{trimmed}</body>"
    return f"<html>{DEFAULT_HEAD}{trimmed}</html>"


def text_to_html(text: str | None) -> str:
    """Paragraph per blank-line separated block; single newlines become ``<br/>``."""
    soup = BeautifulSoup("", "html.parser")
    parts = []
    for block in (text or "").replace("\r\n", "\n").split("\n\n"):
        block = block.strip()
        if not block:
            continue
        p = soup.new_tag("p")
        for i, line in enumerate(block.split("\n")):
            if i:
                p.append(soup.new_tag("br"))
            p.append(line)
        parts.append(str(p))
    return "\n".join(parts) or "<p></p>"


def _style_match(style: str | None, prop: str, values: Iterable[str]) -> str | None:
    if not style:
        return None
    for declaration in style.split(";"):
        name, _, value = declaration.partition(":")
        if name.strip().lower() == prop:
            value = value.strip().lower()
            if value in values:
                return value
    return None


def infer_alignment(node: Tag) -> str | None:
    """Alignment from explicit attributes, inline style, then the parent's style."""
    explicit = node.get("data-asset-align") or node.get("align")
    if explicit:
        return str(explicit).lower()
    style = node.get("style")
    align = _style_match(style, "text-align", _ALIGN_VALUES) or _style_match(
        style, "float", ("left", "right")
    )
    if align:
        return align
    if isinstance(node.parent, Tag):
        return _style_match(node.parent.get("style"), "text-align", _ALIGN_VALUES)
    return None


def _numeric_attribute(node: Tag, attr: str) -> int | None:
    raw = node.get(attr)
    if not raw:
        return None
    try:
        return round(float(str(raw).strip().removesuffix("px")))
    except ValueError:
        return None


# ==================== Assets and anchors ====================


def _candidate_to_asset(candidate: AssetCandidate, fallback_token: str) -> Asset:
    if candidate.data:
        asset_id = compute_asset_id(candidate.data)
    else:
        seed = candidate.source_url or candidate.token or fallback_token or "asset"
        asset_id = compute_asset_id(seed.encode("utf-8"))
    media_type = candidate.media_type or "application/octet-stream"
    ext = guess_extension(media_type)
    default_name = f"{asset_id.split(':', 1)[-1][:12]}.{ext}"
    return Asset(
        asset_id=asset_id,
        media_type=media_type,
        byte_size=len(candidate.data) if candidate.data else 0,
        width=candidate.width,
        height=candidate.height,
        alt_text=(candidate.alt_text or "").strip() or None,
        caption=candidate.caption,
        keep_original_language=candidate.keep_original_language,
        source_url=candidate.source_url,
        file_name=sanitize_filename(candidate.file_name or default_name, fallback=default_name),
    )


def _merge_asset(existing: Asset | None, new: Asset) -> Asset:
    """Fill gaps in an already-seen asset from a later occurrence."""
    if existing is None:
        return new
    if not existing.byte_size and new.byte_size:
        existing.byte_size = new.byte_size
    if existing.media_type == "application/octet-stream" and new.media_type:
        existing.media_type = new.media_type
    for attr in ("file_name", "alt_text", "width", "height", "source_url", "caption"):
        if not getattr(existing, attr) and getattr(new, attr):
            setattr(existing, attr, getattr(new, attr))
    existing.keep_original_language = existing.keep_original_language or new.keep_original_language
    return existing


def collect_assets_and_anchors(
    soup: BeautifulSoup,
    candidates: Iterable[AssetCandidate] = (),
) -> tuple[list[Asset], list[Anchor], dict[str, bytes]]:
    """
    Replace every ``<img>`` in the body with an anchor placeholder.

    Returns the deduplicated assets, one anchor per image in document order,
    and the raw bytes of every asset that has them.
    """
    by_token = {c.token: c for c in candidates if c.token}
    assets: dict[str, Asset] = {}
    asset_data: dict[str, bytes] = {}
    anchors: list[Anchor] = []
    root = soup.body or soup

    for sequence, img in enumerate(root.find_all("img")):
        src = str(img.get("src") or "")
        token = str(img.get("data-asset-token") or deterministic_id("asset-token", [src, sequence]))
        candidate = by_token.get(token) or AssetCandidate(token=token)

        if not candidate.data and not candidate.source_url and src:
            if src.startswith("data:"):
                decoded = decode_data_uri(src)
                if decoded:
                    candidate.data, candidate.media_type = decoded
            else:
                candidate.source_url = src

        width = (
            candidate.width
            or width_from_style(img.get("style"))
            or _numeric_attribute(img, "width")
        )
        candidate.width = width
        candidate.height = candidate.height or _numeric_attribute(img, "height")
        candidate.alt_text = str(img.get("alt") or candidate.alt_text or "").strip()
        if str(img.get("translate") or "").lower() == "no":
            candidate.keep_original_language = True
        align = candidate.align or infer_alignment(img)

        asset = _candidate_to_asset(candidate, token)
        asset = _merge_asset(assets.get(asset.asset_id), asset)
        assets[asset.asset_id] = asset
        if candidate.data:
            asset_data.setdefault(asset.asset_id, candidate.data)

        anchor_id = deterministic_id("anchor", [asset.asset_id, sequence])
        attrs = {
            "class": "asset-anchor",
            "data-asset": asset.asset_id,
            "data-anchor-id": anchor_id,
        }
        if align:
            attrs["data-align"] = align
        if width:
            attrs["data-width"] = str(width)
        attrs["translate"] = "no"
        img.replace_with(soup.new_tag("span", attrs=attrs))

        anchors.append(
            Anchor(
                anchor_id=anchor_id,
                asset_id=asset.asset_id,
                sequence=sequence,
                align=align,
                width_px=width,
            )
        )

    return list(assets.values()), anchors, asset_data


def compute_anchor_contexts(
    blocks: Iterable[tuple[str, str, int, str]],
    anchors: Iterable[Anchor],
) -> dict[str, list[str]]:
    """
    Locate anchors within ``(chunk_id, block_id, order, html)`` blocks.

    Walks the blocks in order, naming each text run with a span id. Every
    anchor gets the nearest span before and after it, which may sit in a
    neighbouring block, plus a fingerprint of those two texts. Anchors are
    updated in place; the return value maps chunk id to the anchor ids it
    contains.
    """
    by_id = {anchor.anchor_id: anchor for anchor in anchors}
    span_texts: dict[str, str] = {}
    chunk_anchors: dict[str, list[str]] = {}
    pending_after: list[Anchor] = []
    seen: list[Anchor] = []
    last_span: str | None = None

    for chunk_id, block_id, order, html in sorted(blocks, key=lambda b: b[2]):
        found: list[str] = []
        span_index = 0
        fragment = BeautifulSoup(html or "", "html.parser")
        for node in fragment.descendants:
            if isinstance(node, Tag):
                if "asset-anchor" not in (node.get("class") or []):
                    continue
                anchor_id = node.get("data-anchor-id") or node.get("data-asset")
                if not anchor_id:
                    continue
                found.append(anchor_id)
                anchor = by_id.get(anchor_id)
                if anchor is not None:
                    anchor.chunk_id = chunk_id
                    anchor.block_id = block_id
                    anchor.chunk_order = order
                    anchor.before_span_id = last_span
                    anchor.after_span_id = None
                    pending_after.append(anchor)
                    seen.append(anchor)
            elif isinstance(node, NavigableString) and not isinstance(node, _SKIPPED_STRINGS):
                if node.find_parent(class_="asset-anchor"):
                    continue
                normalized = normalize_text_for_hash(str(node))
                if not normalized:
                    continue
                span_id = deterministic_id("span", [chunk_id, span_index, normalized])
                span_index += 1
                span_texts[span_id] = normalized
                last_span = span_id
                for anchor in pending_after:
                    anchor.after_span_id = span_id
                pending_after.clear()
        chunk_anchors[chunk_id] = found

    for anchor in seen:
        anchor.text_window_hash = text_window_hash(
            span_texts.get(anchor.before_span_id or "", ""),
            span_texts.get(anchor.after_span_id or "", ""),
        )
    return chunk_anchors


# ==================== Chunking ====================


def _text_of(node: Tag | NavigableString) -> str:
    if isinstance(node, Tag):
        return normalize_text_for_hash(node.get_text(" "))
    return normalize_text_for_hash(str(node))


def extract_blocks(soup: BeautifulSoup) -> list[ParsedChunk]:
    """
    Split the body into chunks.

    Top-level block elements and childless nodes become one chunk each; any
    other element is flattened into its children. Bare text runs are wrapped
    in ``<p>``. Orders are dense and start at 0.
    """
    root = soup.body or soup.html or soup
    chunks: list[ParsedChunk] = []

    def push(html: str, text: str) -> None:
        html = html.strip()
        if not html:
            return
        order = len(chunks)
        chunk_id = deterministic_id("chunk", [order, html])
        chunks.append(ParsedChunk(chunk_id, chunk_id, order, html, normalize_text_for_hash(text)))

    def wrap_text(text: str) -> str:
        p = soup.new_tag("p")
        p.string = text
        return str(p)

    for node in list(root.children):
        if isinstance(node, _SKIPPED_STRINGS):
            continue
        if isinstance(node, NavigableString):
            text = str(node).strip()
            if text:
                push(wrap_text(text), text)
            continue
        if not isinstance(node, Tag):
            continue
        if node.name.lower() in BLOCK_TAGS or not node.contents:
            push(str(node), _text_of(node))
            continue
        for child in node.children:
            if isinstance(child, _SKIPPED_STRINGS):
                continue
            if isinstance(child, NavigableString):
                text = str(child).strip()
                if text:
                    push(wrap_text(text), text)
                continue
            push(str(child), _text_of(child))

    if not chunks:
        fallback = normalize_text_for_hash(root.get_text(" "))
        if fallback:
            push(wrap_text(fallback), fallback)
    return chunks


# ==================== Re-assembly ====================


def inject_assets_into_html(
    body_html: str,
    assets: Iterable[Asset],
    anchors: Iterable[Anchor] = (),
    *,
    embed_assets: bool = True,
    resolve_bytes: Callable[[Asset], bytes | None] | None = None,
) -> str:
    """
    Turn anchor placeholders back into ``<figure>`` elements.

    The asset's source URL is used when known; otherwise the bytes are inlined
    as a data URI if ``embed_assets`` is set. Anchors that cannot be resolved
    are left as they are.
    """
    if not body_html:
        return ""
    asset_map = {asset.asset_id: asset for asset in assets}
    anchor_map = {anchor.anchor_id: anchor for anchor in anchors}
    fragment = BeautifulSoup(body_html, "html.parser")

    for node in fragment.select("span.asset-anchor"):
        asset = asset_map.get(node.get("data-asset"))
        if asset is None:
            continue
        anchor = anchor_map.get(node.get("data-anchor-id"))

        src = asset.source_url
        if not src and embed_assets and resolve_bytes is not None:
            data = resolve_bytes(asset)
            if data:
                encoded = base64.b64encode(data).decode("ascii")
                src = f"data:{asset.media_type or 'application/octet-stream'};base64,{encoded}"
        if not src:
            continue

        width = (anchor.width_px if anchor else None) or asset.width
        align = anchor.align if anchor else None
        figure_attrs = {
            "class": f"asset-figure asset-align-{align}" if align else "asset-figure",
            "translate": "no",
            "data-asset": asset.asset_id,
        }
        img_attrs = {"src": src, "translate": "no", "alt": asset.alt_text or ""}
        if width:
            figure_attrs["style"] = f"width:{width}px"
            img_attrs["style"] = f"max-width:{width}px"

        figure = fragment.new_tag("figure", attrs=figure_attrs)
        figure.append(fragment.new_tag("img", attrs=img_attrs))
        caption = (anchor.caption_ref if anchor else None) or asset.caption
        if caption:
            figcaption = fragment.new_tag("figcaption")
            figcaption.string = caption
            figure.append(figcaption)
        node.replace_with(figure)

    return str(fragment)


def assemble_html_document(
    head_html: str | None,
    chunks: Iterable[Any],
    assets: Iterable[Asset] = (),
    anchors: Iterable[Anchor] = (),
    *,
    prefer_reviewer: bool = False,
    embed_assets: bool = True,
    resolve_bytes: Callable[[Asset], bytes | None] | None = None,
) -> str:
    """
    Stitch chunks back into one document in order.

    Machine assembly uses machine output, falling back to source. Reviewer
    assembly prefers the reviewer's edit first.
    """
    parts = []
    for chunk in sorted(chunks, key=lambda c: c.order):
        machine = getattr(chunk, "machine_html", None)
        source = getattr(chunk, "source_html", None)
        if prefer_reviewer:
            html = getattr(chunk, "reviewer_html", None) or machine or source
        else:
            html = machine or source
        parts.append(html or "")
    body = inject_assets_into_html(
        "\n".join(parts),
        assets,
        anchors,
        embed_assets=embed_assets,
        resolve_bytes=resolve_bytes,
    )
    return f"<html>{head_html or DEFAULT_HEAD}<body>{body}</body></html>"


# ==================== Parser ====================


class DocumentParser:
    """
    Converts uploads to chunked HTML using one handler per format family.

    Example:
        parser = DocumentParser()
        prepared = parser.prepare(data, "text/html", "report.html")
        for chunk in prepared.chunks:
            print(chunk.order, chunk.source_text)
    """

    def __init__(self, handlers: dict[FormatFamily, FormatHandler] | None = None):
        self.handlers = handlers if handlers is not None else default_handlers()

    def convert(
        self,
        data: bytes,
        content_type: str | None = None,
        file_name: str | None = None,
    ) -> tuple[str, HandlerResult, DocumentFormat]:
        """
        Run the matching handler and normalize its output to a full document.

        Raises:
            UnsupportedFormatError: Unknown media type.
            ParseError: The handler failed.
            EmptyContentError: The handler produced nothing.
        """
        fmt = detect_document_format(file_name, content_type)
        handler = self.handlers.get(fmt.family)
        if handler is None:
            raise ParseError(
                f"No handler found for format: {fmt.value}",
                context={"format": fmt.value, "file_name": file_name},
            )

        try:
            result = handler.convert(data, fmt, file_name)
        except ParsePhaseError:
            raise
        except Exception as e:
            logger.error("Document parsing error for %s (%s): %s", file_name, fmt.value, e)
            raise ParseError(
                f"Document conversion error: {e}",
                context={"format": fmt.value, "file_name": file_name, "handler": handler.name},
            ) from e

        if result.is_empty and not result.assets:
            raise EmptyContentError(
                "No text or HTML content extracted from document",
                context={"format": fmt.value, "file_name": file_name},
            )

        if result.html and result.html.strip():
            html = normalize_html(result.html)
        else:
            html = normalize_html(f"<body>{text_to_html(result.text)}</body>")
        result.metadata.setdefault("format", fmt.value)
        result.metadata.setdefault("handler", handler.name)
        return html, result, fmt

    def prepare(
        self,
        data: bytes,
        content_type: str | None = None,
        file_name: str | None = None,
    ) -> PreparedDocument:
        """Parse an upload into chunks, assets and anchors."""
        html, result, fmt = self.convert(data, content_type, file_name)
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup.find_all(["script", "style", "noscript"]):
            tag.decompose()

        assets, anchors, asset_data = collect_assets_and_anchors(soup, result.assets)
        chunks = extract_blocks(soup)
        if not chunks:
            raise EmptyContentError(
                "Document contains no translatable content",
                context={"format": fmt.value, "file_name": file_name},
            )

        chunk_anchors = compute_anchor_contexts(
            ((c.chunk_id, c.block_id, c.order, c.source_html) for c in chunks), anchors
        )
        for chunk in chunks:
            chunk.anchor_ids = chunk_anchors.get(chunk.chunk_id, [])

        head = soup.head
        head_html = str(head) if head is not None else DEFAULT_HEAD
        body = soup.body
        body_html = body.decode_contents() if body is not None else str(soup)
        metadata = dict(result.metadata)
        metadata.update(chunk_count=len(chunks), asset_count=len(assets), anchor_count=len(anchors))

        logger.info(
            "Prepared %s (%s): %d chunks, %d assets, %d anchors",
            file_name or "document",
            fmt.value,
            len(chunks),
            len(assets),
            len(anchors),
        )
        return PreparedDocument(
            head_html=head_html,
            body_html=body_html,
            full_html=f"<html>{head_html}<body>{body_html}</body></html>",
            chunks=chunks,
            assets=assets,
            anchors=anchors,
            metadata=metadata,
            asset_data=asset_data,
        )


def default_handlers() -> dict[FormatFamily, FormatHandler]:
    """One handler instance per format family."""
    from doc_translator.parsing.docx import WordHandler
    from doc_translator.parsing.html import HtmlHandler
    from doc_translator.parsing.office import OfficeHandler
    from doc_translator.parsing.pdf import PdfHandler
    from doc_translator.parsing.text import TextHandler

    return {
        FormatFamily.PDF: PdfHandler(),
        FormatFamily.WORD: WordHandler(),
        FormatFamily.HTML: HtmlHandler(),
        FormatFamily.TEXT: TextHandler(),
        FormatFamily.OFFICE: OfficeHandler(),
    }
