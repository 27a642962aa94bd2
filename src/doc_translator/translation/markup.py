"""
HTML helpers for checking and repairing translated chunk markup.
"""

from __future__ import annotations

import copy
import json
import re

from bs4 import BeautifulSoup, Tag

ANCHOR_SELECTOR = "span.asset-anchor"
SPAN_ID_ATTR = "data-span-id"

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)
_SNIPPET_RE = re.compile(r"^<snippet[^>]*>(.*)</snippet>$", re.DOTALL | re.IGNORECASE)
_DOCUMENT_RE = re.compile(
    r"^(?:<!doctype[^>]*>\s*)?<html[\s\S]*?<body[^>]*>(.*)</body>[\s\S]*</html>$",
    re.DOTALL | re.IGNORECASE,
)
_BODY_RE = re.compile(r"^<body[^>]*>(.*)</body>$", re.DOTALL | re.IGNORECASE)


def _fragment(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def tag_sequence(html: str) -> list[str]:
    """Element names in document order."""
    return [tag.name for tag in _fragment(html).find_all(True)]


def describe_tag_path(html: str) -> str:
    """Human readable element path used in corrective prompts."""
    return " > ".join(tag_sequence(html)) or "(text only)"


def same_structure(source_html: str, translated_html: str) -> bool:
    return tag_sequence(source_html) == tag_sequence(translated_html)


def has_translatable_text(html: str) -> bool:
    """False when the fragment holds only markup such as asset anchors."""
    soup = _fragment(html)
    for anchor in soup.select(ANCHOR_SELECTOR):
        anchor.decompose()
    return bool(soup.get_text(strip=True))


def strip_wrappers(text: str) -> str:
    """Remove code fences, ``<snippet>`` and document wrappers added by a model."""
    out = (text or "").strip()
    previous = None
    while out != previous:
        previous = out
        for pattern in (_FENCE_RE, _SNIPPET_RE, _DOCUMENT_RE, _BODY_RE):
            match = pattern.match(out)
            if match:
                out = match.group(1).strip()
    return out


def _top_level_elements(soup: BeautifulSoup) -> list[Tag]:
    return [node for node in soup.contents if isinstance(node, Tag)]


def _has_stray_text(soup: BeautifulSoup) -> bool:
    return any(not isinstance(node, Tag) and str(node).strip() for node in soup.contents)


def single_root(html: str) -> Tag | None:
    """The only top-level element of ``html``, if there is exactly one."""
    soup = _fragment(html)
    roots = _top_level_elements(soup)
    if len(roots) == 1 and not _has_stray_text(soup):
        return roots[0]
    return None


def rewrap_single_root(source_html: str, translated_html: str) -> str:
    """
    Restore a dropped root element.

    When the source chunk is a single element and the model answered with
    only its inner content, wrap the output in a copy of the source root.
    """
    root = single_root(source_html)
    if root is None:
        return translated_html
    output_root = single_root(translated_html)
    if output_root is not None and output_root.name == root.name:
        return translated_html

    shell = copy.copy(root)
    shell.clear()
    for node in list(_fragment(translated_html).contents):
        shell.append(node.extract())
    return str(shell)


def count_anchors(html: str) -> int:
    return len(_fragment(html).select(ANCHOR_SELECTOR))


def is_leaf(tag: Tag) -> bool:
    """True when ``tag`` holds text only, no child elements."""
    return tag.find(True) is None


def restore_anchors(source_html: str, translated_html: str) -> str:
    """
    Put the source's anchor placeholders back into the translation unchanged.

    Only applied when both sides carry the same number of anchors; anchors are
    matched in document order.
    """
    source_anchors = _fragment(source_html).select(ANCHOR_SELECTOR)
    if not source_anchors:
        return translated_html
    soup = _fragment(translated_html)
    output_anchors = soup.select(ANCHOR_SELECTOR)
    if len(output_anchors) != len(source_anchors):
        return translated_html
    for original, produced in zip(source_anchors, output_anchors):
        produced.replace_with(copy.copy(original))
    return str(soup)


def labeled_spans(html: str) -> tuple[BeautifulSoup, list[Tag]]:
    """Parsed fragment plus its ``data-span-id`` elements that contain text."""
    soup = _fragment(html)
    spans = [
        tag
        for tag in soup.find_all(attrs={SPAN_ID_ATTR: True})
        if tag.get_text(strip=True)
    ]
    return soup, spans


def parse_json_object(text: str) -> dict | None:
    """Decode a JSON object from model output, tolerating code fences."""
    cleaned = strip_wrappers(text)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        value = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None
