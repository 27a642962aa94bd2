"""
Content hashing and sizing helpers for assets and anchors.

Assets are addressed by the SHA-256 of their bytes; chunks, anchors and text
spans get deterministic ids derived from their content and position.
"""

from __future__ import annotations

import hashlib
import re

EMU_PER_INCH = 914400
PX_PER_INCH = 96
PT_TO_PX = 1.3333
TEXT_WINDOW = 120

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/x-emf": "emf",
    "image/x-wmf": "wmf",
}


def compute_asset_id(data: bytes) -> str:
    """Return the content address for raw asset bytes."""
    return "sha256:" + hashlib.sha256(data).hexdigest()


def guess_extension(media_type: str | None) -> str:
    """Map a media type to a file extension, ``bin`` when unknown."""
    if not media_type:
        return "bin"
    media_type = media_type.split(";")[0].strip().lower()
    if media_type in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[media_type]
    if "/" in media_type:
        subtype = media_type.split("/", 1)[1]
        subtype = re.sub(r"[^a-z0-9]+", "", subtype.split("+")[0])
        if subtype:
            return subtype
    return "bin"


def sanitize_filename(name: str | None, fallback: str = "asset") -> str:
    """Reduce a filename to a safe storage-key component."""
    base = (name or "").strip().replace("\\", "/").split("/")[-1]
    base = re.sub(r"[^A-Za-z0-9._-]+", "-", base).strip("-.")
    return base[:120] or fallback


def asset_storage_key(asset_id: str, file_name: str | None, media_type: str | None) -> str:
    """Storage key derived from the content hash, shared by identical bytes."""
    digest = asset_id.split(":", 1)[-1]
    safe_name = sanitize_filename(file_name, fallback=f"asset.{guess_extension(media_type)}")
    if "." not in safe_name:
        safe_name = f"{safe_name}.{guess_extension(media_type)}"
    return f"assets/{digest[:2]}/{digest}/{safe_name}"


def deterministic_id(prefix: str, parts: list[object]) -> str:
    """Stable id from the non-empty parts, e.g. ``chunk_3f2a...``."""
    material = "|".join(str(p) for p in parts if p is not None and p != "")
    return f"{prefix}_{hashlib.sha256(material.encode('utf-8')).hexdigest()[:24]}"


def normalize_text_for_hash(text: str | None) -> str:
    """Collapse whitespace so fingerprints ignore formatting changes."""
    return re.sub(r"\s+", " ", text or "").strip()


def text_window_hash(before: str | None, after: str | None, window: int = TEXT_WINDOW) -> str:
    """Fingerprint the text immediately around an anchor."""
    left = normalize_text_for_hash(before)[-window:]
    right = normalize_text_for_hash(after)[:window]
    return "sha256:" + hashlib.sha256(f"{left}|{right}".encode()).hexdigest()


def width_from_style(style: str | None) -> int | None:
    """Extract a pixel width from an inline style (px or pt)."""
    if not style:
        return None
    match = re.search(r"(?:^|;)\s*width\s*:\s*([\d.]+)\s*(px|pt)?", style, re.IGNORECASE)
    if not match:
        return None
    value = float(match.group(1))
    if (match.group(2) or "px").lower() == "pt":
        value *= PT_TO_PX
    return round(value) if value > 0 else None


def emu_to_px(emu: int | float | None) -> int | None:
    """Convert office EMU units to CSS pixels."""
    if not emu:
        return None
    return round(float(emu) / EMU_PER_INCH * PX_PER_INCH)
