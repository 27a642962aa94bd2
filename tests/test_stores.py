"""Tests for the chunk, asset/anchor and job log stores."""

from datetime import timedelta

import pytest
from conftest import PNG_BYTES, SAMPLE_HTML, make_job

from doc_translator.database import ChunkStatus, utcnow
from doc_translator.parsing import DocumentParser
from doc_translator.parsing.document import ParsedChunk
from doc_translator.stores import AssetAnchorStore, ChunkStore, JobLog


@pytest.fixture
def job(db):
    return make_job(db)


@pytest.fixture
def prepared():
    return DocumentParser().prepare(SAMPLE_HTML.encode(), "text/html", "rapport.html")


def parsed(order: int, html: str) -> ParsedChunk:
    return ParsedChunk(f"chunk-{order}", f"chunk-{order}", order, html, html)


class TestChunkStore:
    """Tests for ChunkStore."""

    def test_ensure_creates_pending_chunk(self, db, blobs, job):
        store = ChunkStore(db, blobs)
        chunk = store.ensure_chunk_source(job, parsed(0, "<p>a</p>"))
        assert chunk.status == ChunkStatus.PENDING
        assert chunk.source_html == "<p>a</p>"
        assert chunk.machine_attempts == 0

    def test_ensure_is_idempotent_and_keeps_progress(self, db, blobs, job):
        store = ChunkStore(db, blobs)
        store.ensure_chunk_source(job, parsed(0, "<p>a</p>"))
        store.update_chunk_state(
            job, 0, status=ChunkStatus.COMPLETED, machine_html="<p>A</p>", machine_attempts=1
        )

        again = store.ensure_chunk_source(job, parsed(0, "<p>a</p>"))

        assert len(store.list_chunks(job.job_id)) == 1
        assert again.status == ChunkStatus.COMPLETED
        assert again.machine_html == "<p>A</p>"
        assert again.machine_attempts == 1

    def test_large_payload_is_offloaded(self, db, blobs, job):
        store = ChunkStore(db, blobs, offload_threshold=20)
        html = "<p>" + "x" * 100 + "</p>"
        chunk = store.ensure_chunk_source(job, parsed(0, html))

        row = db.get_chunk(job.job_id, 0)
        assert row.data_key is not None
        assert row.source_html is None
        assert blobs.exists(row.data_key)
        assert chunk.source_html == html

    def test_offloaded_patch_merges_with_existing_payload(self, db, blobs, job):
        store = ChunkStore(db, blobs, offload_threshold=20)
        html = "<p>" + "x" * 100 + "</p>"
        store.ensure_chunk_source(job, parsed(0, html))
        store.update_chunk_state(job, 0, machine_html="<p>y</p>", status=ChunkStatus.COMPLETED)

        chunk = store.get_chunk(job.job_id, 0)
        assert chunk.source_html == html
        assert chunk.machine_html == "<p>y</p>"
        assert chunk.status == ChunkStatus.COMPLETED

    def test_update_missing_chunk(self, db, blobs, job):
        assert ChunkStore(db, blobs).update_chunk_state(job, 7, status=ChunkStatus.FAILED) is None

    def test_summary(self, db, blobs, job):
        store = ChunkStore(db, blobs)
        for order in range(3):
            store.ensure_chunk_source(job, parsed(order, f"<p>{order}</p>"))
        store.update_chunk_state(job, 0, status=ChunkStatus.COMPLETED)
        store.update_chunk_state(job, 1, status=ChunkStatus.FAILED)

        summary = store.summarise_chunks(job.job_id)
        assert (summary.total, summary.completed, summary.failed) == (3, 1, 1)
        assert not summary.is_complete
        assert summary.latest_update is not None

        store.update_chunk_state(job, 1, status=ChunkStatus.COMPLETED)
        store.update_chunk_state(job, 2, status=ChunkStatus.COMPLETED)
        assert store.summarise_chunks(job.job_id).is_complete

    def test_empty_job_is_not_complete(self, db, blobs, job):
        assert not ChunkStore(db, blobs).summarise_chunks(job.job_id).is_complete

    def test_delete_all_removes_payloads(self, db, blobs, job):
        store = ChunkStore(db, blobs, offload_threshold=5)
        store.ensure_chunk_source(job, parsed(0, "<p>long enough</p>"))
        key = db.get_chunk(job.job_id, 0).data_key

        assert store.delete_all_chunks(job.job_id) == 1
        assert store.list_chunks(job.job_id) == []
        assert not blobs.exists(key)


class TestAssetAnchorStore:
    """Tests for AssetAnchorStore."""

    def test_persist_uploads_once(self, db, blobs, job, prepared):
        store = AssetAnchorStore(db, blobs)
        first = store.persist(job, prepared.assets, prepared.anchors, prepared.asset_data)
        second = store.persist(job, prepared.assets, prepared.anchors, prepared.asset_data)

        assert first.assets_inserted == 1
        assert first.assets_uploaded == 1
        assert first.anchors_written == 1
        assert second.assets_inserted == 0
        assert second.assets_uploaded == 0
        assert len(store.list_assets(job.job_id)) == 1
        assert len(store.list_anchors(job.job_id)) == 1

    def test_identical_bytes_share_storage(self, db, blobs, prepared):
        store = AssetAnchorStore(db, blobs)
        job_a = make_job(db, "job-a")
        job_b = make_job(db, "job-b")
        store.persist(job_a, prepared.assets, prepared.anchors, prepared.asset_data)
        result = store.persist(job_b, prepared.assets, prepared.anchors, prepared.asset_data)

        assert result.assets_uploaded == 0
        key_a = store.list_assets("job-a")[0].storage_key
        key_b = store.list_assets("job-b")[0].storage_key
        assert key_a == key_b

    def test_load_bytes(self, db, blobs, job, prepared):
        store = AssetAnchorStore(db, blobs)
        store.persist(job, prepared.assets, prepared.anchors, prepared.asset_data)
        asset = store.list_assets(job.job_id)[0]
        assert store.load_bytes(asset) == PNG_BYTES

    def test_refresh_follows_translated_text(self, db, blobs, job, prepared):
        chunks = ChunkStore(db, blobs)
        store = AssetAnchorStore(db, blobs)
        store.persist(job, prepared.assets, prepared.anchors, prepared.asset_data)
        records = [chunks.ensure_chunk_source(job, p) for p in prepared.chunks]
        store.refresh_anchor_context(job, records)
        before = store.list_anchors(job.job_id)[0]

        chunks.update_chunk_state(job, 1, machine_html="<p>Second paragraph.</p>")
        changed = store.refresh_anchor_context(job, chunks.list_chunks(job.job_id))
        after = store.list_anchors(job.job_id)[0]

        assert changed == 1
        assert after.asset_id == before.asset_id
        assert after.chunk_id == before.chunk_id
        assert after.text_window_hash != before.text_window_hash

    def test_delete_job_records(self, db, blobs, job, prepared):
        store = AssetAnchorStore(db, blobs)
        store.persist(job, prepared.assets, prepared.anchors, prepared.asset_data)
        store.delete_job_records(job.job_id)
        assert store.list_assets(job.job_id) == []
        assert store.list_anchors(job.job_id) == []


class TestJobLog:
    """Tests for JobLog."""

    def test_record_and_list_newest_first(self, db):
        log = JobLog(db)
        log.record("job-1", "submitted", "first")
        log.record("job-1", "processing-started", "second", stage="start", attempt=1)

        entries = log.list("job-1")
        assert [e.event_type for e in entries] == ["processing-started", "submitted"]
        assert entries[0].attempt == 1
        assert entries[0].actor["type"] == "system"

    def test_limit_is_clamped(self, db):
        log = JobLog(db)
        for i in range(3):
            log.record("job-1", "event", f"entry {i}")
        assert len(log.list("job-1", limit=0)) == 3
        assert len(log.list("job-1", limit=2)) == 2

    def test_purge_expired(self, db):
        log = JobLog(db, retention_days=1)
        log.record("job-1", "event", "old")
        assert log.purge(utcnow() + timedelta(days=2)) == 1
        assert log.list("job-1") == []
