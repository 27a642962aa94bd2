"""
Chunk persistence.

Chunk metadata lives in DuckDB. Large HTML/text payloads are offloaded to the
blob store once they cross ``offload_threshold``; reads merge them back so
callers always see complete ``Chunk`` records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from doc_translator.database import Chunk, ChunkStatus, Database, Job, utcnow
from doc_translator.errors import BlobNotFoundError
from doc_translator.parsing.document import ParsedChunk
from doc_translator.storage import BlobStore, chunk_data_key

logger = logging.getLogger(__name__)

PAYLOAD_FIELDS = ("source_html", "source_text", "machine_html", "reviewer_html")


@dataclass
class ChunkSummary:
    """Aggregate chunk progress for one job."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    latest_update: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.completed == self.total

    @property
    def pending(self) -> int:
        return self.total - self.completed

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "latest_update": self.latest_update.isoformat() if self.latest_update else None,
        }


class ChunkStore:
    """Create, patch and read chunk records with transparent payload offload."""

    def __init__(self, db: Database, blobs: BlobStore, offload_threshold: int = 16000):
        self.db = db
        self.blobs = blobs
        self.offload_threshold = offload_threshold

    def _load_payload(self, chunk: Chunk) -> dict[str, Any]:
        if not chunk.data_key:
            return {}
        try:
            return self.blobs.get_json(chunk.data_key)
        except BlobNotFoundError:
            logger.warning("Chunk payload %s missing for job %s", chunk.data_key, chunk.job_id)
            return {}

    def _hydrate(self, chunk: Chunk) -> Chunk:
        payload = self._load_payload(chunk)
        for name in PAYLOAD_FIELDS:
            if getattr(chunk, name) is None and payload.get(name) is not None:
                setattr(chunk, name, payload[name])
        return chunk

    def _split_payload(
        self,
        job: Job,
        chunk_id: str,
        data_key: str | None,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Decide where payload fields go.

        Returns the column changes to apply. When the payload is offloaded the
        columns are cleared and the blob holds the merged payload.
        """
        if not payload:
            return {}
        size = sum(len(v) for v in payload.values() if isinstance(v, str))
        if data_key is None and size <= self.offload_threshold:
            return dict(payload)

        key = data_key or chunk_data_key(job.owner_id, job.job_id, chunk_id)
        merged: dict[str, Any] = {}
        if data_key is not None:
            try:
                merged = self.blobs.get_json(key)
            except BlobNotFoundError:
                merged = {}
        merged.update(chunk_id=chunk_id, job_id=job.job_id, owner_id=job.owner_id)
        merged.update(payload)
        self.blobs.put_json(key, merged)

        changes: dict[str, Any] = {name: None for name in payload}
        changes["data_key"] = key
        return changes

    # ==================== Operations ====================

    def ensure_chunk_source(self, job: Job, parsed: ParsedChunk) -> Chunk:
        """
        Create the chunk for ``parsed.order`` or refresh its source.

        Status, attempts and machine/reviewer output of an existing chunk are
        kept, so re-running the parse step never loses finished work.
        """
        existing = self.db.get_chunk(job.job_id, parsed.order)
        payload = {"source_html": parsed.source_html, "source_text": parsed.source_text}

        if existing is None:
            now = utcnow()
            changes = self._split_payload(job, parsed.chunk_id, None, payload)
            chunk = Chunk(
                job_id=job.job_id,
                order=parsed.order,
                chunk_id=parsed.chunk_id,
                block_id=parsed.block_id,
                status=ChunkStatus.PENDING,
                anchor_ids=list(parsed.anchor_ids),
                created_at=now,
                updated_at=now,
            )
            for name, value in changes.items():
                setattr(chunk, name, value)
            self.db.insert_chunk(chunk)
            return self._hydrate(chunk)

        changes = self._split_payload(job, existing.chunk_id, existing.data_key, payload)
        changes.update(chunk_id=parsed.chunk_id, block_id=parsed.block_id, anchor_ids=list(parsed.anchor_ids))
        self.db.update_chunk(job.job_id, parsed.order, **changes)
        return self.get_chunk(job.job_id, parsed.order)

    def update_chunk_state(self, job: Job, order: int, **patch: Any) -> Chunk | None:
        """Patch fields on the chunk at ``order``; payload fields honour offload."""
        chunk = self.db.get_chunk(job.job_id, order)
        if chunk is None:
            return None
        payload = {k: patch.pop(k) for k in PAYLOAD_FIELDS if k in patch}
        changes = self._split_payload(job, chunk.chunk_id, chunk.data_key, payload)
        changes.update(patch)
        self.db.update_chunk(job.job_id, order, **changes)
        return self.get_chunk(job.job_id, order)

    def get_chunk(self, job_id: str, order: int) -> Chunk | None:
        chunk = self.db.get_chunk(job_id, order)
        return self._hydrate(chunk) if chunk else None

    def list_chunks(self, job_id: str) -> list[Chunk]:
        """All chunks of a job in document order, payloads merged."""
        return [self._hydrate(chunk) for chunk in self.db.list_chunks(job_id)]

    def summarise_chunks(self, job_id: str) -> ChunkSummary:
        counts = self.db.chunk_counts(job_id)
        return ChunkSummary(
            total=counts["total"],
            completed=counts["completed"],
            failed=counts["failed"],
            latest_update=counts["latest_update"],
        )

    def delete_all_chunks(self, job_id: str) -> int:
        """Delete chunk rows and their offloaded payloads."""
        for chunk in self.db.list_chunks(job_id):
            if chunk.data_key:
                self.blobs.delete(chunk.data_key)
        deleted = self.db.delete_chunks(job_id)
        if deleted:
            logger.info("Deleted %d chunks for job %s", deleted, job_id)
        return deleted
