"""
Periodic audit of in-flight work.

One ``run_once`` pass:

- requeues FAILED chunks of PROCESSING jobs, failing the job once a chunk
  has used up its attempts
- restarts PROCESSING jobs with no chunks or no recent activity, failing
  them beyond the retry budget
- runs cancellation cleanup for CANCELLED jobs that never had it
- restarts or fails stale documentation ingestion jobs
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from doc_translator.config import HealthConfig
from doc_translator.database import (
    Chunk,
    ChunkStatus,
    IngestionJob,
    IngestionStatus,
    Job,
    JobStatus,
    utcnow,
)
from doc_translator.errors import StaleJobError
from doc_translator.pipeline.orchestrator import Orchestrator
from doc_translator.signals import Signal, SignalKind

logger = logging.getLogger(__name__)

HEALTH_ACTOR = {"type": "system", "source": "health-check", "role": "system"}


@dataclass
class HealthReport:
    """Counters for one health-check pass."""

    translations_checked: int = 0
    translations_restarted: int = 0
    translations_failed: int = 0
    translation_chunks_requeued: int = 0
    translations_cancelled_cleaned: int = 0
    docs_checked: int = 0
    docs_restarted: int = 0
    docs_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class JobAssessment:
    """What the monitor found for one PROCESSING job."""

    job: Job
    chunks: list[Chunk]
    last_activity: datetime | None
    stale: bool

    @property
    def missing_chunks(self) -> bool:
        return not self.chunks

    @property
    def failed_chunks(self) -> list[Chunk]:
        return [c for c in self.chunks if c.status == ChunkStatus.FAILED]


def _latest(*stamps: datetime | None) -> datetime | None:
    present = [s for s in stamps if s is not None]
    return max(present) if present else None


class HealthMonitor:
    """Detects stalled or failed jobs and drives retry or terminal failure."""

    def __init__(self, orchestrator: Orchestrator, config: HealthConfig | None = None):
        self.orchestrator = orchestrator
        self.config = config or orchestrator.settings.health
        self.db = orchestrator.db
        self.bus = orchestrator.bus
        self.job_log = orchestrator.job_log

    def _stale_before(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.config.stale_minutes)

    def assess(self, job: Job, now: datetime | None = None) -> JobAssessment:
        now = now or utcnow()
        chunks = self.db.list_chunks(job.job_id)
        last_activity = _latest(
            job.created_at,
            job.started_at,
            job.updated_at,
            *(c.updated_at for c in chunks),
        )
        stale = last_activity is None or last_activity < self._stale_before(now)
        return JobAssessment(job=job, chunks=chunks, last_activity=last_activity, stale=stale)

    def _record(self, job: Job, event_type: str, message: str, **fields: Any) -> None:
        self.job_log.record(
            job.job_id,
            event_type,
            message,
            owner_id=job.owner_id,
            category="health-monitoring",
            actor=HEALTH_ACTOR,
            **fields,
        )

    def _fail(self, job: Job, reason: str, message: str, retries: int, **metadata: Any) -> bool:
        failed = self.orchestrator.fail_job(
            job,
            message,
            {"reason": reason, "retries": retries, **metadata},
            reason=reason,
            actor=HEALTH_ACTOR,
        )
        if failed is None:
            return False
        self._record(
            failed,
            "health-check-failed",
            message,
            stage="auto-fail",
            status="FAILED",
            retry_count=retries,
            metadata={"reason": reason, "retries": retries, **metadata},
        )
        return True

    # ==================== Translation jobs ====================

    def _handle_failed_chunks(self, assessment: JobAssessment, report: HealthReport) -> None:
        job = assessment.job
        failed = assessment.failed_chunks
        retries = self.db.increment_job_retries(job.job_id)
        max_attempts = self.config.max_chunk_retries

        exhausted = [c for c in failed if c.machine_attempts >= max_attempts]
        if exhausted or retries > self.config.retry_limit:
            reason = "chunk-max-retries" if exhausted else "chunk-failed"
            message = (
                "Translation marked failed after chunk exceeded max retries"
                if exhausted
                else "Translation marked failed after repeated chunk failures"
            )
            summary = [{"order": c.order, "machine_attempts": c.machine_attempts} for c in failed]
            if self._fail(job, reason, message, retries, failed_chunks=summary):
                report.translations_failed += 1
            return

        signals = []
        for chunk in failed:
            self.db.update_chunk(job.job_id, chunk.order, status=ChunkStatus.PENDING, updated_at=utcnow())
            signals.append(Signal.process_chunk(job.job_id, chunk.order, job.owner_id))
            self._record(
                job,
                "chunk-retry-scheduled",
                f"Health check requeued chunk {chunk.order} (machine_attempts={chunk.machine_attempts})",
                stage="chunk-retry",
                status=JobStatus.PROCESSING.value,
                retry_count=retries,
                metadata={
                    "chunk_order": chunk.order,
                    "machine_attempts": chunk.machine_attempts,
                    "max_chunk_retries": max_attempts,
                    "health_retries": retries,
                },
            )
        self.bus.publish_batch(signals)
        report.translation_chunks_requeued += len(signals)

    def _handle_stalled(self, assessment: JobAssessment, report: HealthReport) -> None:
        job = assessment.job
        reason = "no-chunks" if assessment.missing_chunks else "stale-progress"
        stale = StaleJobError(
            f"Job {job.job_id} stalled ({reason})",
            context={
                "reason": reason,
                "last_activity": assessment.last_activity.isoformat() if assessment.last_activity else None,
            },
        )
        logger.warning("%s", stale)

        retries = self.db.increment_job_retries(job.job_id)
        if retries > self.config.retry_limit:
            if self._fail(
                job,
                reason,
                "Translation marked failed after exceeding health check retries",
                retries,
                last_activity=stale.context["last_activity"],
            ):
                report.translations_failed += 1
            return

        self.bus.publish(Signal.start(job.job_id, job.owner_id))
        self._record(
            job,
            "restart-requested",
            "Translation restart triggered by health check",
            stage="auto-restart",
            status=JobStatus.PROCESSING.value,
            retry_count=retries,
            metadata={"reason": reason, "retries": retries},
        )
        report.translations_restarted += 1

    def check_translation(self, job: Job, report: HealthReport, now: datetime | None = None) -> None:
        assessment = self.assess(job, now)
        if assessment.failed_chunks:
            self._handle_failed_chunks(assessment, report)
        elif assessment.missing_chunks or assessment.stale:
            self._handle_stalled(assessment, report)

    # ==================== Ingestion jobs ====================

    def check_ingestion(self, doc: IngestionJob, report: HealthReport, now: datetime | None = None) -> None:
        now = now or utcnow()
        last_activity = _latest(doc.created_at, doc.started_at, doc.updated_at)
        if last_activity is not None and last_activity >= self._stale_before(now):
            return

        retries = (doc.health_check_retries or 0) + 1
        self.db.update_ingestion_job(doc.doc_id, health_check_retries=retries)
        log_fields = {
            "job_type": "documentation",
            "owner_id": doc.owner_id,
            "category": "health-monitoring",
            "actor": HEALTH_ACTOR,
            "retry_count": retries,
        }

        if retries > self.config.retry_limit:
            self.db.update_ingestion_job(
                doc.doc_id,
                status=IngestionStatus.FAILED,
                error_message="Stale ingestion detected by health check",
            )
            self.job_log.record(
                doc.doc_id,
                "health-check-failed",
                "Documentation ingestion marked failed after exceeding health check retries",
                stage="auto-fail",
                status="FAILED",
                metadata={"reason": "stale", "retries": retries},
                **log_fields,
            )
            notifier = self.orchestrator.notifier
            if notifier is not None:
                notifier.notify(
                    "documentation",
                    "failed",
                    job_id=doc.doc_id,
                    owner_id=doc.owner_id,
                    file_name=doc.file_key.rsplit("/", 1)[-1] if doc.file_key else doc.doc_id,
                )
            report.docs_failed += 1
            return

        self.bus.publish(Signal(SignalKind.INGEST, doc.doc_id, doc.owner_id))
        self.job_log.record(
            doc.doc_id,
            "restart-requested",
            "Documentation ingestion restart triggered by health check",
            stage="auto-restart",
            status=IngestionStatus.PROCESSING.value,
            metadata={"retries": retries},
            **log_fields,
        )
        report.docs_restarted += 1

    # ==================== Passes ====================

    def run_once(self, now: datetime | None = None) -> HealthReport:
        """Run one full audit and return its counters."""
        now = now or utcnow()
        report = HealthReport()

        processing = self.db.list_jobs(status=JobStatus.PROCESSING)
        report.translations_checked = len(processing)
        for job in processing:
            self.check_translation(job, report, now)

        for job in self.db.list_jobs(status=JobStatus.CANCELLED):
            if job.cancel_cleanup_at is None and self.orchestrator.cleanup_cancelled(job, actor=HEALTH_ACTOR):
                report.translations_cancelled_cleaned += 1

        docs = self.db.list_ingestion_jobs(IngestionStatus.PROCESSING)
        report.docs_checked = len(docs)
        for doc in docs:
            self.check_ingestion(doc, report, now)

        purged = self.job_log.purge(now)
        logger.info("Health check summary: %s (purged %d log entries)", report.to_dict(), purged)
        return report

    async def run_forever(self, interval: float | None = None, stop: asyncio.Event | None = None) -> None:
        """Run ``run_once`` every ``interval`` seconds until ``stop`` is set."""
        interval = interval or self.config.interval_seconds
        stop = stop or asyncio.Event()
        while not stop.is_set():
            self.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
