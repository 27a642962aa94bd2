"""
Translation job state machine.

Each handler runs one step for one job and leaves every bit of coordination
state in the database, so a step can be re-run after a crash or a duplicate
signal without repeating finished work:

    start          parse, persist assets/anchors, upsert chunks, fan out
    process_chunk  translate one chunk
    assemble       build the chunk bundle and machine HTML, READY_FOR_REVIEW

Pause and cancel requests are honoured at the checkpoint before each step.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any

from doc_translator.config import DispatchMode, Settings
from doc_translator.database import Chunk, ChunkStatus, Database, Job, JobStatus, utcnow
from doc_translator.errors import (
    AssetPersistError,
    BlobNotFoundError,
    ChunkTranslationError,
    EngineInitError,
    ParsePhaseError,
    UnsupportedFormatError,
)
from doc_translator.notify import Notifier
from doc_translator.parsing.document import DocumentParser, assemble_html_document
from doc_translator.signals import Signal, SignalBus, SignalKind
from doc_translator.storage import (
    BlobStore,
    bundle_key,
    context_key,
    machine_html_key,
    output_docx_key,
    output_html_key,
)
from doc_translator.stores.assets import AssetAnchorStore
from doc_translator.stores.chunks import ChunkStore, ChunkSummary
from doc_translator.stores.job_log import JobLog
from doc_translator.translation.engine import EngineHandle

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE = 2000
MAX_ERROR_CONTEXT = 4000

ACTIVE_STATUSES = (
    JobStatus.PROCESSING,
    JobStatus.PAUSE_REQUESTED,
    JobStatus.PAUSED,
    JobStatus.CANCEL_REQUESTED,
)


def truncate_message(message: str | None, limit: int = MAX_ERROR_MESSAGE) -> str:
    text = str(message or "")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def truncate_context(context: dict[str, Any] | None, limit: int = MAX_ERROR_CONTEXT) -> dict[str, Any] | None:
    """Keep structured context when it fits, else a truncated JSON preview."""
    if not context:
        return None
    encoded = json.dumps(context, ensure_ascii=False, default=str)
    if len(encoded) <= limit:
        return json.loads(encoded)
    return {"truncated": True, "preview": encoded[:limit]}


def chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    """Chunk entry of a bundle."""
    return {
        "id": chunk.chunk_id,
        "order": chunk.order,
        "block_id": chunk.block_id,
        "anchor_ids": list(chunk.anchor_ids),
        "status": chunk.status.value,
        "source_html": chunk.source_html,
        "source_text": chunk.source_text,
        "machine_html": chunk.machine_html,
        "reviewer_html": chunk.reviewer_html,
        "provider": chunk.provider,
        "model": chunk.model,
        "machine_attempts": chunk.machine_attempts,
        "last_updated_by": chunk.last_updated_by or "machine",
        "updated_at": chunk.updated_at.isoformat() if chunk.updated_at else None,
    }


def build_chunk_bundle(
    job: Job,
    chunks: list[Chunk],
    head_html: str | None,
    assets: list[Any],
    anchors: list[Any],
) -> dict[str, Any]:
    """Single JSON document holding every chunk, asset and anchor of a job."""
    first = chunks[0] if chunks else None
    return {
        "job_id": job.job_id,
        "generated_at": utcnow().isoformat(),
        "source_language": job.source_language,
        "target_language": job.target_language,
        "provider": (first.provider if first else None) or job.provider,
        "model": (first.model if first else None) or job.model,
        "head_html": head_html or "",
        "chunks": [chunk_to_dict(c) for c in sorted(chunks, key=lambda c: c.order)],
        "assets": [asdict(a) for a in assets],
        "anchors": [asdict(a) for a in anchors],
    }


def artifact_keys(job: Job) -> list[str]:
    """Every output key a job may have produced, recorded or conventional."""
    keys = [
        job.chunk_file_key,
        job.machine_file_key,
        job.translated_file_key,
        job.translated_html_key,
        job.context_key,
        bundle_key(job.owner_id, job.job_id),
        machine_html_key(job.owner_id, job.job_id),
        output_html_key(job.owner_id, job.job_id),
        output_docx_key(job.owner_id, job.job_id),
        context_key(job.owner_id, job.job_id),
    ]
    return list(dict.fromkeys(k for k in keys if k))


class Orchestrator:
    """Runs the pipeline steps for translation jobs."""

    def __init__(
        self,
        db: Database,
        blobs: BlobStore,
        bus: SignalBus,
        engine: EngineHandle,
        *,
        settings: Settings | None = None,
        parser: DocumentParser | None = None,
        chunk_store: ChunkStore | None = None,
        asset_store: AssetAnchorStore | None = None,
        job_log: JobLog | None = None,
        notifier: Notifier | None = None,
    ):
        self.settings = settings or Settings()
        self.db = db
        self.blobs = blobs
        self.bus = bus
        self.engine = engine
        self.parser = parser or DocumentParser()
        self.chunks = chunk_store or ChunkStore(
            db, blobs, offload_threshold=self.settings.storage.offload_threshold
        )
        self.assets = asset_store or AssetAnchorStore(db, blobs)
        self.job_log = job_log or JobLog(db, retention_days=self.settings.job_log.retention_days)
        self.notifier = notifier

    # ==================== Helpers ====================

    def _notify(self, job: Job, status: str) -> None:
        if self.notifier is None:
            return
        self.notifier.notify(
            "translation",
            status,
            job_id=job.job_id,
            owner_id=job.owner_id,
            file_name=job.file_name or job.job_id,
        )

    def _log(self, job: Job, event_type: str, message: str, **fields: Any) -> None:
        fields.setdefault("status", job.status.value)
        self.job_log.record(job.job_id, event_type, message, owner_id=job.owner_id, **fields)

    @staticmethod
    def _progress(summary: ChunkSummary) -> dict[str, int]:
        return {"completed": summary.completed, "failed": summary.failed, "total": summary.total}

    def _refresh_counters(self, job: Job) -> ChunkSummary:
        summary = self.chunks.summarise_chunks(job.job_id)
        self.db.update_job(
            job.job_id,
            processed_chunks=summary.completed,
            failed_chunks=summary.failed,
        )
        return summary

    def _checkpoint(self, job_id: str, stage: str) -> Job | None:
        """
        Re-read the job and honour control requests.

        Returns the job when the pipeline may continue, None otherwise.
        """
        job = self.db.get_job(job_id)
        if job is None:
            logger.warning("Job %s not found at %s", job_id, stage)
            return None
        if job.status == JobStatus.PAUSE_REQUESTED:
            self._pause(job, stage)
            return None
        if job.status == JobStatus.CANCEL_REQUESTED or (
            job.status == JobStatus.CANCELLED and job.cancel_cleanup_at is None
        ):
            self.cleanup_cancelled(job)
            return None
        if job.status != JobStatus.PROCESSING:
            logger.info("Job %s is %s, skipping %s", job_id, job.status.value, stage)
            return None
        return job

    def _pause(self, job: Job, stage: str) -> None:
        summary = self.chunks.summarise_chunks(job.job_id)
        snapshot = {**summary.to_dict(), "stage": stage, "captured_at": utcnow().isoformat()}
        paused = self.db.update_job(
            job.job_id,
            expected_status=JobStatus.PAUSE_REQUESTED,
            status=JobStatus.PAUSED,
            paused_at=utcnow(),
            pause_snapshot=snapshot,
            processed_chunks=summary.completed,
            failed_chunks=summary.failed,
        )
        if paused is None:
            return
        logger.info("Job %s paused at %s", job.job_id, stage)
        self._log(
            paused,
            "paused",
            f"Translation paused before {stage}",
            category="processing-control",
            stage=stage,
            metadata={"requested_by": job.pause_requested_by},
            chunk_progress=self._progress(summary),
        )
        self._notify(paused, "paused")

    def _dispatch(self, job: Job, chunks: list[Chunk]) -> int:
        """Queue chunk-processing signals; serial mode queues only the first."""
        if not chunks:
            return 0
        if self.settings.processing.dispatch_mode == DispatchMode.SERIAL:
            chunks = chunks[:1]
        return self.bus.publish_batch(
            [Signal.process_chunk(job.job_id, c.order, job.owner_id) for c in chunks]
        )

    def _dispatch_next(self, job: Job, after_order: int) -> None:
        if self.settings.processing.dispatch_mode != DispatchMode.SERIAL:
            return
        remaining = [
            c
            for c in self.db.list_chunks(job.job_id)
            if c.order > after_order and c.status != ChunkStatus.COMPLETED
        ]
        self._dispatch(job, remaining)

    # ==================== Failure / cleanup ====================

    def fail_job(
        self,
        job: Job,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        attempt: int | None = None,
        reason: str | None = None,
        actor: dict[str, Any] | None = None,
    ) -> Job | None:
        """
        Move a non-terminal job to FAILED and notify.

        Completed chunks are left in place.
        """
        failed = self.db.update_job(
            job.job_id,
            expected_status=ACTIVE_STATUSES + (JobStatus.READY_FOR_REVIEW,),
            status=JobStatus.FAILED,
            error_message=truncate_message(message),
            error_context=truncate_context(context),
            failed_at=utcnow(),
        )
        if failed is None:
            logger.info("Job %s already terminal, not marking failed", job.job_id)
            return None
        logger.error("Job %s failed: %s", job.job_id, message)
        self._log(
            failed,
            "processing-failed",
            truncate_message(message),
            category="processing",
            stage="failure",
            context=truncate_context(context),
            attempt=attempt,
            failure_reason=reason or message,
            actor=actor,
        )
        self._notify(failed, "failed")
        return failed

    def cleanup_cancelled(self, job: Job, actor: dict[str, Any] | None = None) -> bool:
        """
        Delete chunks, asset records and produced artifacts, then mark CANCELLED.

        No-op when cleanup already ran for this job.
        """
        if job.cancel_cleanup_at is not None:
            return False

        for key in artifact_keys(job):
            self.blobs.delete(key)
        self.chunks.delete_all_chunks(job.job_id)
        self.assets.delete_job_records(job.job_id)

        now = utcnow()
        cancelled = self.db.update_job(
            job.job_id,
            status=JobStatus.CANCELLED,
            cancelled_at=job.cancelled_at or now,
            cancel_cleanup_at=now,
            chunk_file_key=None,
            machine_file_key=None,
            translated_file_key=None,
            translated_html_key=None,
            context_key=None,
        )
        if cancelled is None:
            return False
        logger.info("Job %s cancelled and cleaned up", job.job_id)
        self._log(
            cancelled,
            "cancelled-cleanup",
            f"Translation cancelled: {job.cancel_reason}" if job.cancel_reason else "Translation cancelled",
            category="processing-control",
            stage="cancel-cleanup",
            actor=actor,
            metadata={"reason": job.cancel_reason, "requested_by": job.cancel_requested_by},
        )
        if job.status == JobStatus.CANCEL_REQUESTED:
            self._notify(cancelled, "cancelled")
        return True

    # ==================== Steps ====================

    async def start(self, job_id: str) -> Job | None:
        """Parse the source and fan out chunk work; safe to repeat."""
        job = self._checkpoint(job_id, "kickoff")
        if job is None:
            return None

        attempt = job.health_check_retries + 1
        if job.started_at is None:
            job = self.db.update_job(job_id, started_at=utcnow()) or job
        self._log(
            job,
            "processing-started",
            "Translation processing started",
            category="processing-kickoff",
            stage="start",
            attempt=attempt,
        )

        try:
            data = self.blobs.get(job.file_key)
        except BlobNotFoundError as e:
            self.fail_job(
                job,
                "Failed to read source document from storage",
                {"file_key": job.file_key, "error": e.message},
                attempt=attempt,
            )
            return None

        try:
            document = self.parser.prepare(data, job.content_type, job.file_name)
        except ParsePhaseError as e:
            self._log(
                job,
                "parsing-error",
                f"Document parsing failed: {e.message}",
                status="FAILED",
                category="processing-kickoff",
                stage="document-parse",
                metadata={"file_name": job.file_name, "content_type": job.content_type, "code": e.code},
                context=truncate_context({"error": e.message, **e.context}),
                attempt=attempt,
            )
            if isinstance(e, UnsupportedFormatError):
                message = "File format not supported for translation"
            else:
                message = f"Failed to prepare translation document: {e.message}"
            self.fail_job(job, message, {"error": e.message, "code": e.code, **e.context}, attempt=attempt)
            return None

        self._log(
            job,
            "document-parsed",
            "Source document parsed for translation",
            category="processing-kickoff",
            stage="document-parse",
            metadata={
                "chunk_estimate": len(document.chunks),
                "asset_count": len(document.assets),
                **document.metadata,
            },
            attempt=attempt,
        )

        try:
            persisted = self.assets.persist(job, document.assets, document.anchors, document.asset_data)
        except AssetPersistError as e:
            self.fail_job(job, "Failed to persist asset metadata", {"error": e.message}, attempt=attempt)
            return None

        records = [self.chunks.ensure_chunk_source(job, parsed) for parsed in document.chunks]
        self.assets.refresh_anchor_context(job, records)

        ctx_key = context_key(job.owner_id, job.job_id)
        self.blobs.put_json(
            ctx_key,
            {
                "head_html": document.head_html,
                "assets": [asdict(a) for a in self.assets.list_assets(job.job_id)],
                "anchors": [asdict(a) for a in self.assets.list_anchors(job.job_id)],
            },
        )

        summary = self.chunks.summarise_chunks(job.job_id)
        job = self.db.update_job(
            job_id,
            total_chunks=len(document.chunks),
            processed_chunks=summary.completed,
            failed_chunks=summary.failed,
            head_html=document.head_html,
            asset_count=len(document.assets),
            context_key=ctx_key,
        ) or job
        self._log(
            job,
            "assets-indexed",
            "Assets and anchors prepared for translation",
            category="processing",
            stage="asset-preparation",
            metadata={
                "assets_stored": persisted.assets_inserted,
                "assets_uploaded": persisted.assets_uploaded,
                "anchors_stored": persisted.anchors_written,
            },
            attempt=attempt,
        )

        job = self._checkpoint(job_id, "machine-translation")
        if job is None:
            return None

        pending = [c for c in records if c.status != ChunkStatus.COMPLETED]
        self._log(
            job,
            "chunks-queued",
            f"{len(pending)} chunk(s) queued for machine translation",
            category="chunk-processing",
            stage="queue",
            metadata={
                "total_chunks": summary.total,
                "pending_chunks": len(pending),
                "dispatch_mode": self.settings.processing.dispatch_mode.value,
            },
            chunk_progress=self._progress(summary),
            attempt=attempt,
        )

        if pending:
            self._dispatch(job, pending)
        elif summary.is_complete:
            self.bus.publish(Signal.assemble(job.job_id, job.owner_id))
        return job

    async def process_chunk(self, job_id: str, order: int) -> Chunk | None:
        """Translate the chunk at ``order``; failures stay on the chunk."""
        job = self._checkpoint(job_id, "machine-translation")
        if job is None:
            return None

        chunk = self.chunks.get_chunk(job_id, order)
        if chunk is None:
            logger.warning("Job %s has no chunk %d", job_id, order)
            return None

        if chunk.status == ChunkStatus.COMPLETED:
            if self.chunks.summarise_chunks(job_id).is_complete:
                self.bus.publish(Signal.assemble(job_id, job.owner_id))
            return chunk

        try:
            engine = await self.engine.get()
        except EngineInitError as e:
            self.fail_job(job, "Failed to initialise translation engine", {"error": e.message})
            return None

        attempt = chunk.machine_attempts + 1
        self.chunks.update_chunk_state(
            job, order, status=ChunkStatus.PROCESSING, machine_attempts=attempt
        )
        self._log(
            job,
            "chunk-processing-started",
            f"Chunk {order} machine translation started",
            category="chunk-processing",
            stage="machine-translation",
            attempt=attempt,
            metadata={"chunk_order": order},
        )

        try:
            result = await engine.translate_html(
                chunk.source_html or "", job.source_language, job.target_language
            )
        except ChunkTranslationError as e:
            updated = self.chunks.update_chunk_state(
                job,
                order,
                status=ChunkStatus.FAILED,
                error_message=truncate_message(e.message),
                last_updated_by="machine",
            )
            summary = self._refresh_counters(job)
            logger.warning("Job %s chunk %d failed (attempt %d): %s", job_id, order, attempt, e)
            self._log(
                job,
                "chunk-translation-failed",
                f"Chunk {order} translation failed: {truncate_message(e.message, 500)}",
                status="FAILED",
                category="chunk-processing",
                stage="machine-translation",
                attempt=attempt,
                failure_reason=truncate_message(e.message),
                metadata={"chunk_order": order, "code": e.code},
                context=truncate_context(e.context),
                chunk_progress=self._progress(summary),
            )
            self._dispatch_next(job, order)
            return updated

        now = utcnow()
        updated = self.chunks.update_chunk_state(
            job,
            order,
            status=ChunkStatus.COMPLETED,
            machine_html=result.html,
            provider=result.provider,
            model=result.model,
            last_updated_by="machine",
            completed_at=now,
            error_message=None,
        )
        summary = self._refresh_counters(job)
        self._log(
            job,
            "chunk-processed",
            f"Chunk {order} machine-translated",
            category="chunk-processing",
            stage="machine-translation",
            attempt=attempt,
            metadata={
                "chunk_order": order,
                "provider": result.provider,
                "model": result.model,
                "mode": result.mode,
                "structure_attempts": result.attempts,
            },
            chunk_progress=self._progress(summary),
        )

        if summary.is_complete:
            self.bus.publish(Signal.assemble(job_id, job.owner_id))
        else:
            self._dispatch_next(job, order)
        return updated

    def _load_head_html(self, job: Job) -> str | None:
        if job.context_key:
            try:
                context = self.blobs.get_json(job.context_key)
                return context.get("head_html") or job.head_html
            except BlobNotFoundError:
                logger.warning("Context %s missing for job %s", job.context_key, job.job_id)
        return job.head_html

    async def assemble(self, job_id: str) -> Job | None:
        """Write the chunk bundle and machine HTML once every chunk is done."""
        job = self.db.get_job(job_id)
        if job is None:
            return None
        if job.status in (JobStatus.READY_FOR_REVIEW, JobStatus.APPROVED):
            logger.info("Job %s already assembled", job_id)
            return job

        job = self._checkpoint(job_id, "finalization")
        if job is None:
            return None

        chunks = self.chunks.list_chunks(job_id)
        summary = self.chunks.summarise_chunks(job_id)
        if not summary.is_complete:
            logger.warning("Assemble for job %s before completion: %s", job_id, summary.to_dict())
            return job

        head_html = self._load_head_html(job)
        self.assets.refresh_anchor_context(job, chunks)
        assets = self.assets.list_assets(job_id)
        anchors = self.assets.list_anchors(job_id)

        chunk_key = bundle_key(job.owner_id, job_id)
        machine_key = machine_html_key(job.owner_id, job_id)
        bundle = build_chunk_bundle(job, chunks, head_html, assets, anchors)
        html = assemble_html_document(
            head_html,
            chunks,
            assets,
            anchors,
            embed_assets=self.settings.processing.embed_assets_inline,
            resolve_bytes=self.assets.load_bytes,
        )
        try:
            self.blobs.put_json(chunk_key, bundle)
            self.blobs.put_text(machine_key, html, "text/html; charset=utf-8")
        except OSError as e:
            self.fail_job(job, "Failed to persist translation output", {"error": str(e)})
            return None
        self._log(
            job,
            "machine-html-stored",
            "Chunk bundle and machine translated HTML stored",
            category="reassembly",
            stage="machine-output",
            metadata={"chunk_key": chunk_key, "machine_key": machine_key, "html_length": len(html)},
        )

        ready = self.db.update_job(
            job_id,
            expected_status=JobStatus.PROCESSING,
            status=JobStatus.READY_FOR_REVIEW,
            chunk_file_key=chunk_key,
            machine_file_key=machine_key,
            total_chunks=summary.total,
            processed_chunks=summary.total,
            failed_chunks=0,
            asset_count=len(assets),
            provider=bundle["provider"],
            model=bundle["model"],
            translated_at=utcnow(),
            health_check_retries=0,
        )
        if ready is None:
            # Status changed while writing; a control request wins
            self._checkpoint(job_id, "finalization")
            return self.db.get_job(job_id)

        logger.info("Job %s ready for review (%d chunks)", job_id, summary.total)
        self._log(
            ready,
            "processing-completed",
            "Translation processing completed",
            category="processing",
            stage="complete",
            metadata={
                "chunk_file_key": chunk_key,
                "machine_file_key": machine_key,
                "asset_count": len(assets),
                "provider": ready.provider,
                "model": ready.model,
            },
            chunk_progress=self._progress(summary),
        )
        self._notify(ready, "completed")
        return ready

    async def handle(self, signal: Signal) -> Any:
        """Route a bus signal to its step."""
        if signal.kind == SignalKind.START:
            return await self.start(signal.job_id)
        if signal.kind == SignalKind.PROCESS_CHUNK:
            if signal.chunk_order is None:
                logger.warning("process-chunk for job %s without order", signal.job_id)
                return None
            return await self.process_chunk(signal.job_id, signal.chunk_order)
        if signal.kind == SignalKind.ASSEMBLE:
            return await self.assemble(signal.job_id)
        raise ValueError(f"Orchestrator cannot handle {signal.kind.value} signals")
