"""
Asset and anchor persistence.

Asset bytes are stored once per content hash; asset rows are insert-if-absent
and anchor rows are upserted, so persisting the same document twice is a
no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from doc_translator.assets import asset_storage_key
from doc_translator.database import Anchor, Asset, Chunk, Database, Job
from doc_translator.errors import AssetPersistError, BlobNotFoundError
from doc_translator.parsing.document import compute_anchor_contexts
from doc_translator.storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class PersistResult:
    """Counts from one ``persist`` call."""

    assets_inserted: int = 0
    assets_uploaded: int = 0
    anchors_written: int = 0


class AssetAnchorStore:
    """Stores extracted assets and their anchors for a job."""

    def __init__(self, db: Database, blobs: BlobStore):
        self.db = db
        self.blobs = blobs

    def persist(
        self,
        job: Job,
        assets: Iterable[Asset],
        anchors: Iterable[Anchor],
        asset_data: dict[str, bytes] | None = None,
    ) -> PersistResult:
        """
        Write asset bytes, asset rows and anchor rows for ``job``.

        Raises:
            AssetPersistError: If storage or the database rejects a write.
        """
        asset_data = asset_data or {}
        result = PersistResult()
        try:
            for asset in assets:
                asset.job_id = job.job_id
                data = asset_data.get(asset.asset_id)
                if data:
                    key = asset_storage_key(asset.asset_id, asset.file_name, asset.media_type)
                    asset.storage_key = key
                    asset.byte_size = asset.byte_size or len(data)
                    if not self.blobs.exists(key):
                        self.blobs.put(key, data, asset.media_type)
                        result.assets_uploaded += 1
                if self.db.insert_asset_if_absent(asset):
                    result.assets_inserted += 1

            for anchor in anchors:
                anchor.job_id = job.job_id
                self.db.upsert_anchor(anchor)
                result.anchors_written += 1
        except (OSError, ValueError, RuntimeError) as e:
            raise AssetPersistError(
                f"Failed to persist assets: {e}",
                context={"job_id": job.job_id},
            ) from e

        logger.debug(
            "Job %s: %d new assets (%d uploaded), %d anchors",
            job.job_id,
            result.assets_inserted,
            result.assets_uploaded,
            result.anchors_written,
        )
        return result

    def refresh_anchor_context(self, job: Job, chunks: Iterable[Chunk]) -> int:
        """
        Recompute anchor positions and text fingerprints from current chunk HTML.

        Uses each chunk's best available content (reviewer, machine, source).
        Anchors are patched in place; returns how many changed.
        """
        anchors = self.db.list_anchors(job.job_id)
        if not anchors:
            return 0
        before = {
            a.anchor_id: (a.chunk_id, a.before_span_id, a.after_span_id, a.text_window_hash)
            for a in anchors
        }
        compute_anchor_contexts(
            ((c.chunk_id, c.block_id, c.order, c.best_html) for c in chunks), anchors
        )

        changed = 0
        for anchor in anchors:
            current = (anchor.chunk_id, anchor.before_span_id, anchor.after_span_id, anchor.text_window_hash)
            if current == before[anchor.anchor_id]:
                continue
            self.db.update_anchor(
                job.job_id,
                anchor.anchor_id,
                chunk_id=anchor.chunk_id,
                block_id=anchor.block_id,
                chunk_order=anchor.chunk_order,
                before_span_id=anchor.before_span_id,
                after_span_id=anchor.after_span_id,
                text_window_hash=anchor.text_window_hash,
            )
            changed += 1
        return changed

    def list_assets(self, job_id: str) -> list[Asset]:
        return self.db.list_assets(job_id)

    def list_anchors(self, job_id: str) -> list[Anchor]:
        return self.db.list_anchors(job_id)

    def load_bytes(self, asset: Asset) -> bytes | None:
        """Stored bytes of an asset, or None when only a remote URL is known."""
        if not asset.storage_key:
            return None
        try:
            return self.blobs.get(asset.storage_key)
        except BlobNotFoundError:
            logger.warning("Asset %s missing from storage at %s", asset.asset_id, asset.storage_key)
            return None

    def delete_job_records(self, job_id: str) -> None:
        """Drop asset and anchor rows; shared content-addressed blobs stay."""
        self.db.delete_anchors(job_id)
        self.db.delete_assets(job_id)
