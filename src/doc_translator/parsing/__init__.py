"""Document parsing: format handlers, chunking and asset anchors."""

from doc_translator.parsing.base import (
    AssetCandidate,
    DocumentFormat,
    FormatFamily,
    FormatHandler,
    HandlerResult,
    detect_document_format,
)
from doc_translator.parsing.document import (
    BLOCK_TAGS,
    DocumentParser,
    ParsedChunk,
    PreparedDocument,
    assemble_html_document,
    compute_anchor_contexts,
    inject_assets_into_html,
    normalize_html,
    text_to_html,
)

__all__ = [
    "AssetCandidate",
    "BLOCK_TAGS",
    "DocumentFormat",
    "DocumentParser",
    "FormatFamily",
    "FormatHandler",
    "HandlerResult",
    "ParsedChunk",
    "PreparedDocument",
    "assemble_html_document",
    "compute_anchor_contexts",
    "detect_document_format",
    "inject_assets_into_html",
    "normalize_html",
    "text_to_html",
]
