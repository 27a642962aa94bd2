"""Tests for the health monitor."""

import asyncio
from datetime import timedelta

import pytest
from conftest import make_job

from doc_translator.database import Chunk, ChunkStatus, IngestionJob, IngestionStatus, JobStatus, utcnow
from doc_translator.pipeline import HealthReport
from doc_translator.signals import Signal, SignalKind


def minutes_ago(minutes: float):
    return utcnow() - timedelta(minutes=minutes)


def add_chunk(db, job_id="job-1", order=0, status=ChunkStatus.PENDING, attempts=0, updated_at=None):
    db.insert_chunk(
        Chunk(
            job_id=job_id,
            order=order,
            chunk_id=f"chunk-{order}",
            block_id=f"chunk-{order}",
            status=status,
            source_html=f"<p>bloc {order}</p>",
            source_text=f"bloc {order}",
            machine_attempts=attempts,
            created_at=updated_at,
            updated_at=updated_at,
        )
    )


@pytest.fixture
def monitor(application):
    return application.health


class TestStalledJobs:
    """PROCESSING jobs without chunks or recent activity."""

    def test_stale_job_without_chunks_is_restarted(self, db, bus, monitor):
        old = minutes_ago(20)
        make_job(db, created_at=old, updated_at=old, health_check_retries=1)

        report = monitor.run_once()

        assert db.get_job("job-1").health_check_retries == 2
        assert bus.receive(10) == [Signal.start("job-1", "owner-1")]
        assert report.translations_checked == 1
        assert report.translations_restarted == 1
        entries = monitor.job_log.list("job-1")
        assert entries[0].event_type == "restart-requested"
        assert entries[0].retry_count == 2

    def test_retry_budget_exhausted(self, db, bus, monitor, notifier):
        old = minutes_ago(20)
        make_job(db, created_at=old, updated_at=old, health_check_retries=3)

        report = monitor.run_once()

        job = db.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.health_check_retries == 4
        assert job.error_context["reason"] == "no-chunks"
        assert bus.pending() == 0
        assert report.translations_failed == 1
        assert notifier.statuses("job-1") == ["failed"]
        assert "health-check-failed" in [e.event_type for e in monitor.job_log.list("job-1")]

    def test_stale_progress(self, db, bus, monitor):
        old = minutes_ago(30)
        make_job(db, created_at=old, updated_at=old)
        add_chunk(db, status=ChunkStatus.PENDING, updated_at=old)

        monitor.run_once()

        assert db.get_job("job-1").health_check_retries == 1
        assert [s.kind for s in bus.receive(10)] == [SignalKind.START]

    def test_recent_chunk_activity_counts(self, db, bus, monitor):
        make_job(db, created_at=minutes_ago(60), updated_at=minutes_ago(60))
        add_chunk(db, status=ChunkStatus.PROCESSING, updated_at=minutes_ago(2))

        report = monitor.run_once()

        assert report.translations_restarted == 0
        assert db.get_job("job-1").health_check_retries == 0
        assert bus.pending() == 0

    def test_other_statuses_are_ignored(self, db, bus, monitor):
        old = minutes_ago(120)
        make_job(db, "job-paused", status=JobStatus.PAUSED, created_at=old, updated_at=old)
        make_job(db, "job-review", status=JobStatus.READY_FOR_REVIEW, created_at=old, updated_at=old)

        report = monitor.run_once()

        assert report.translations_checked == 0
        assert db.get_job("job-paused").status == JobStatus.PAUSED
        assert bus.pending() == 0


class TestFailedChunks:
    """FAILED chunks are requeued until they run out of attempts."""

    def test_failed_chunk_is_requeued(self, db, bus, monitor):
        make_job(db)
        add_chunk(db, order=0, status=ChunkStatus.COMPLETED, attempts=1, updated_at=utcnow())
        add_chunk(db, order=1, status=ChunkStatus.FAILED, attempts=1, updated_at=utcnow())

        report = monitor.run_once()

        assert db.get_chunk("job-1", 1).status == ChunkStatus.PENDING
        assert db.get_chunk("job-1", 1).machine_attempts == 1
        assert bus.receive(10) == [Signal.process_chunk("job-1", 1, "owner-1")]
        assert report.translation_chunks_requeued == 1
        assert db.get_job("job-1").health_check_retries == 1
        assert db.get_job("job-1").status == JobStatus.PROCESSING

    def test_exhausted_chunk_fails_job(self, db, bus, monitor, notifier):
        make_job(db)
        add_chunk(db, status=ChunkStatus.FAILED, attempts=3, updated_at=utcnow())

        report = monitor.run_once()

        job = db.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.error_context["reason"] == "chunk-max-retries"
        assert job.error_context["failed_chunks"] == [{"order": 0, "machine_attempts": 3}]
        assert report.translations_failed == 1
        assert bus.pending() == 0
        assert notifier.statuses("job-1") == ["failed"]

    def test_repeated_failures_exceed_job_budget(self, db, bus, monitor):
        make_job(db, health_check_retries=3)
        add_chunk(db, status=ChunkStatus.FAILED, attempts=1, updated_at=utcnow())

        monitor.run_once()

        job = db.get_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.error_context["reason"] == "chunk-failed"

    async def test_requeued_chunk_recovers(self, application, submit, engine, monitor):
        engine.fail_markers.add("Deuxième")
        job = submit()
        await application.worker.drain()
        assert application.db.get_job(job.job_id).status == JobStatus.PROCESSING

        engine.fail_markers.clear()
        monitor.run_once()
        await application.worker.drain()

        done = application.db.get_job(job.job_id)
        assert done.status == JobStatus.READY_FOR_REVIEW
        assert done.health_check_retries == 0
        assert application.chunk_store.get_chunk(job.job_id, 1).machine_attempts == 2

    async def test_chunk_that_keeps_failing_fails_job(self, application, submit, engine, monitor):
        engine.fail_markers.add("Deuxième")
        job = submit()
        await application.worker.drain()
        for _ in range(2):
            monitor.run_once()
            await application.worker.drain()

        assert application.chunk_store.get_chunk(job.job_id, 1).machine_attempts == 3
        monitor.run_once()

        failed = application.db.get_job(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert application.chunk_store.get_chunk(job.job_id, 0).status == ChunkStatus.COMPLETED


class TestCancelledCleanup:
    """CANCELLED jobs that never had cleanup."""

    def test_cleanup_runs_once(self, db, monitor):
        make_job(db, status=JobStatus.CANCELLED)
        add_chunk(db)

        first = monitor.run_once()
        second = monitor.run_once()

        assert first.translations_cancelled_cleaned == 1
        assert second.translations_cancelled_cleaned == 0
        assert db.get_job("job-1").cancel_cleanup_at is not None
        assert db.list_chunks("job-1") == []


class TestIngestion:
    """Stale documentation ingestion jobs."""

    def add_doc(self, db, retries=0, minutes=30):
        old = minutes_ago(minutes)
        db.add_ingestion_job(
            IngestionJob(
                doc_id="doc-1",
                owner_id="owner-1",
                file_key="raw/owner-1/doc-1/guide.pdf",
                health_check_retries=retries,
                created_at=old,
                updated_at=old,
            )
        )

    def test_stale_ingestion_restarted(self, db, bus, monitor):
        self.add_doc(db)

        report = monitor.run_once()

        assert report.docs_checked == 1
        assert report.docs_restarted == 1
        assert bus.receive(10) == [Signal(SignalKind.INGEST, "doc-1", "owner-1")]
        assert db.get_ingestion_job("doc-1").health_check_retries == 1

    def test_stale_ingestion_failed(self, db, bus, monitor, notifier):
        self.add_doc(db, retries=3)

        report = monitor.run_once()

        doc = db.get_ingestion_job("doc-1")
        assert doc.status == IngestionStatus.FAILED
        assert report.docs_failed == 1
        assert bus.pending() == 0
        assert ("documentation", "failed", "doc-1") in notifier.events

    def test_recent_ingestion_left_alone(self, db, bus, monitor):
        self.add_doc(db, minutes=1)
        report = monitor.run_once()
        assert report.docs_restarted == 0
        assert bus.pending() == 0


class TestRunForever:
    async def test_stops_when_asked(self, monitor, monkeypatch):
        stop = asyncio.Event()
        calls = []

        def once(now=None):
            calls.append(now)
            stop.set()
            return HealthReport()

        monkeypatch.setattr(monitor, "run_once", once)
        await monitor.run_forever(interval=1, stop=stop)
        assert len(calls) == 1

    def test_report_dict(self):
        assert HealthReport(docs_failed=2).to_dict()["docs_failed"] == 2
