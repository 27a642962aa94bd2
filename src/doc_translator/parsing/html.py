"""
HTML format handler.

Scripts and styles are dropped; every image is tagged with a token so the
parser can pair it with the asset candidate built here.
"""

from __future__ import annotations

from bs4 import BeautifulSoup

from doc_translator.assets import deterministic_id, guess_extension, sanitize_filename
from doc_translator.parsing.base import (
    AssetCandidate,
    DocumentFormat,
    FormatHandler,
    HandlerResult,
    decode_data_uri,
    decode_text,
)


class HtmlHandler(FormatHandler):
    """Parse HTML and HTM files with structure preserved."""

    formats = frozenset({DocumentFormat.HTML})

    @property
    def name(self) -> str:
        return "html"

    def convert(self, data: bytes, fmt: DocumentFormat, file_name: str | None = None) -> HandlerResult:
        content, encoding = decode_text(data)
        soup = BeautifulSoup(content, "html.parser")
        for tag in soup.find_all(["script", "style", "noscript"]):
            tag.decompose()

        candidates = []
        for index, img in enumerate(soup.find_all("img")):
            src = str(img.get("src") or "")
            if not src:
                continue
            token = deterministic_id("html-image", [file_name or "document.html", index])
            img["data-asset-token"] = token

            payload = None
            media_type = None
            source_url = None
            if src.startswith("data:"):
                decoded = decode_data_uri(src)
                if decoded:
                    payload, media_type = decoded
            else:
                # Remote and relative references are resolved at render time
                source_url = src

            hint = img.get("data-filename") or f"{token}.{guess_extension(media_type)}"
            candidates.append(
                AssetCandidate(
                    token=token,
                    data=payload,
                    media_type=media_type,
                    file_name=sanitize_filename(str(hint), fallback=token),
                    source_url=source_url,
                    alt_text=str(img.get("alt") or "").strip() or None,
                    keep_original_language=str(img.get("translate") or "").lower() == "no",
                )
            )

        title = soup.find("title")
        return HandlerResult(
            html=str(soup),
            text=soup.get_text(" ").strip(),
            assets=candidates,
            metadata={
                "format": "html",
                "encoding": encoding,
                "has_structure": True,
                "title": title.get_text(strip=True) if title else "",
                "has_images": bool(candidates),
                "has_links": soup.find("a") is not None,
            },
        )
