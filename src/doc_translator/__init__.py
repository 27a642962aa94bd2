"""
doc-translator: structure-preserving document translation pipeline.

This package provides tools for:
- Parsing PDF, Word, HTML, text and office documents into block-level HTML chunks
- Content-addressed asset storage with text-fingerprinted anchors
- Chunk-by-chunk LLM translation with structural validation
- A resumable job state machine with pause, cancel and health monitoring
- Human review and approval with HTML and DOCX output
"""

__version__ = "0.1.0"

from doc_translator.app import Application, create_app
from doc_translator.config import Settings, load_config
from doc_translator.database import (
    Anchor,
    Asset,
    Chunk,
    ChunkStatus,
    Database,
    Job,
    JobStatus,
)
from doc_translator.errors import (
    ChunkTranslationError,
    ParsePhaseError,
    StructuralMismatchError,
    TranslatorError,
)
from doc_translator.parsing import DocumentParser, PreparedDocument
from doc_translator.pipeline import HealthMonitor, HealthReport, Orchestrator, Worker
from doc_translator.service import TranslationService
from doc_translator.signals import Signal, SignalKind
from doc_translator.stores import AssetAnchorStore, ChunkStore, JobLog
from doc_translator.translation import EngineHandle, LLMTranslationEngine, TranslationEngine

__all__ = [
    # Config
    "Settings",
    "load_config",
    # Database
    "Database",
    "Job",
    "JobStatus",
    "Chunk",
    "ChunkStatus",
    "Asset",
    "Anchor",
    # Errors
    "TranslatorError",
    "ParsePhaseError",
    "ChunkTranslationError",
    "StructuralMismatchError",
    # Parsing
    "DocumentParser",
    "PreparedDocument",
    # Stores
    "ChunkStore",
    "AssetAnchorStore",
    "JobLog",
    # Translation
    "TranslationEngine",
    "LLMTranslationEngine",
    "EngineHandle",
    # Pipeline
    "Orchestrator",
    "Worker",
    "HealthMonitor",
    "HealthReport",
    "Signal",
    "SignalKind",
    # Service
    "TranslationService",
    "Application",
    "create_app",
]
