"""Persistence for chunks, assets/anchors and the job log."""

from doc_translator.stores.assets import AssetAnchorStore, PersistResult
from doc_translator.stores.chunks import ChunkStore, ChunkSummary
from doc_translator.stores.job_log import JobLog

__all__ = [
    "AssetAnchorStore",
    "PersistResult",
    "ChunkStore",
    "ChunkSummary",
    "JobLog",
]
