"""Chunk translation engines and markup validation."""

from doc_translator.translation.engine import (
    EngineHandle,
    EngineResult,
    LLMTranslationEngine,
    TranslationEngine,
    create_translation_engine,
)
from doc_translator.translation.markup import (
    describe_tag_path,
    restore_anchors,
    rewrap_single_root,
    strip_wrappers,
    tag_sequence,
)

__all__ = [
    # Engines
    "TranslationEngine",
    "LLMTranslationEngine",
    "EngineResult",
    "EngineHandle",
    "create_translation_engine",
    # Markup
    "tag_sequence",
    "describe_tag_path",
    "strip_wrappers",
    "rewrap_single_root",
    "restore_anchors",
]
