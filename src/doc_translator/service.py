"""
Synchronous job API.

Everything an admin surface needs: upload targets, job intake, listing,
reviewer edits, approval, downloads and the pause/resume/cancel/restart
controls. Long-running work is never done here; operations that need the
pipeline publish a signal and return.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from doc_translator.config import Settings
from doc_translator.database import ChunkStatus, Database, Job, JobLogEntry, JobStatus, utcnow
from doc_translator.errors import (
    BlobNotFoundError,
    InvalidStateError,
    JobNotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from doc_translator.export.docx import html_to_docx
from doc_translator.notify import Notifier
from doc_translator.parsing.base import detect_document_format
from doc_translator.parsing.document import assemble_html_document, text_to_html
from doc_translator.pipeline.orchestrator import (
    ACTIVE_STATUSES,
    artifact_keys,
    build_chunk_bundle,
)
from doc_translator.signals import Signal, SignalBus
from doc_translator.storage import (
    BlobStore,
    SignedUrl,
    bundle_key,
    output_docx_key,
    output_html_key,
    raw_prefix,
    raw_upload_key,
)
from doc_translator.stores.assets import AssetAnchorStore
from doc_translator.stores.chunks import ChunkStore
from doc_translator.stores.job_log import JobLog

logger = logging.getLogger(__name__)

DOWNLOAD_KINDS = ("original", "machine", "translated", "translatedHtml")
DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def actor_label(actor: dict[str, Any] | None, default: str = "reviewer") -> str:
    """Short identity recorded as a chunk's ``last_updated_by``."""
    if not actor:
        return default
    return str(actor.get("email") or actor.get("name") or actor.get("sub") or default)


@dataclass
class UploadTarget:
    """Where a client should upload a new document."""

    job_id: str
    file_key: str
    upload: SignedUrl


@dataclass
class ControlResult:
    """Outcome of a pause/resume/cancel/restart request."""

    job: Job
    status_code: int
    message: str


@dataclass
class ApprovalResult:
    job: Job
    already_approved: bool = False
    docx_generated: bool = False


class TranslationService:
    """Job operations used by the CLI and any admin surface."""

    def __init__(
        self,
        db: Database,
        blobs: BlobStore,
        bus: SignalBus,
        *,
        settings: Settings | None = None,
        chunk_store: ChunkStore | None = None,
        asset_store: AssetAnchorStore | None = None,
        job_log: JobLog | None = None,
        notifier: Notifier | None = None,
    ):
        self.settings = settings or Settings()
        self.db = db
        self.blobs = blobs
        self.bus = bus
        self.chunks = chunk_store or ChunkStore(
            db, blobs, offload_threshold=self.settings.storage.offload_threshold
        )
        self.assets = asset_store or AssetAnchorStore(db, blobs)
        self.job_log = job_log or JobLog(db, retention_days=self.settings.job_log.retention_days)
        self.notifier = notifier

    # ==================== Helpers ====================

    def _get_owned_job(self, owner_id: str, job_id: str) -> Job:
        job = self.db.get_job(job_id)
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(f"Translation job not found: {job_id}", context={"job_id": job_id})
        return job

    def _notify(self, job: Job, status: str) -> None:
        if self.notifier is not None:
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

    def _ttl(self) -> int:
        return self.settings.storage.signed_url_ttl_seconds

    def _head_html(self, job: Job) -> str | None:
        if job.context_key:
            try:
                return self.blobs.get_json(job.context_key).get("head_html") or job.head_html
            except BlobNotFoundError:
                logger.warning("Context %s missing for job %s", job.context_key, job.job_id)
        return job.head_html

    def _bundle(self, job: Job) -> dict[str, Any]:
        return build_chunk_bundle(
            job,
            self.chunks.list_chunks(job.job_id),
            self._head_html(job),
            self.assets.list_assets(job.job_id),
            self.assets.list_anchors(job.job_id),
        )

    # ==================== Intake ====================

    def create_upload_url(self, owner_id: str, file_name: str, content_type: str | None = None) -> UploadTarget:
        """
        Reserve a job id and return a signed upload target for the raw file.

        Raises:
            ValidationError: If the name is missing or the type unsupported.
        """
        if not file_name or not file_name.strip():
            raise ValidationError("file_name is required")
        media_type = (content_type or "").split(";")[0].strip().lower()
        try:
            detect_document_format(file_name, media_type)
        except UnsupportedFormatError as e:
            raise ValidationError(e.message, context=e.context) from None

        job_id = str(uuid.uuid4())
        key = raw_upload_key(owner_id, job_id, file_name)
        upload = self.blobs.signed_url(key, ttl_seconds=self._ttl(), method="PUT", content_type=media_type or None)
        return UploadTarget(job_id=job_id, file_key=key, upload=upload)

    def create_job(
        self,
        owner_id: str,
        file_key: str,
        *,
        target_language: str | None = None,
        source_language: str | None = None,
        file_name: str | None = None,
        content_type: str | None = None,
        actor: dict[str, Any] | None = None,
    ) -> Job:
        """
        Register an uploaded file as a translation job and emit "start".

        Raises:
            ValidationError: If the key is outside the owner's upload area or
                the upload is missing.
        """
        prefix = raw_prefix(owner_id)
        if not file_key or not file_key.startswith(prefix):
            raise ValidationError("file_key must reference an upload for this owner", context={"file_key": file_key})
        job_id, _, name = file_key[len(prefix):].partition("/")
        if not job_id or not name:
            raise ValidationError("file_key does not contain a job id", context={"file_key": file_key})
        if not self.blobs.exists(file_key):
            raise ValidationError("Uploaded file not found", context={"file_key": file_key})

        existing = self.db.get_job(job_id)
        if existing is not None:
            if existing.owner_id != owner_id:
                raise ValidationError("Job id already in use", context={"job_id": job_id})
            return existing

        translation = self.settings.translation
        target = (target_language or translation.target_language or "").strip()
        if not target:
            raise ValidationError("target_language is required")
        now = utcnow()
        job = self.db.create_job(
            Job(
                job_id=job_id,
                owner_id=owner_id,
                file_key=file_key,
                file_name=file_name or name,
                content_type=content_type,
                source_language=(source_language or translation.source_language or "auto").strip(),
                target_language=target,
                status=JobStatus.PROCESSING,
                provider=translation.provider.value,
                model=translation.model,
                created_at=now,
                updated_at=now,
            )
        )
        self.bus.publish(Signal.start(job.job_id, owner_id))
        self._log(
            job,
            "submitted",
            "Translation job submitted",
            category="submission",
            stage="intake",
            actor=actor,
            metadata={
                "file_name": job.file_name,
                "source_language": job.source_language,
                "target_language": job.target_language,
            },
        )
        self._notify(job, "started")
        logger.info("Created job %s for %s", job.job_id, job.file_name)
        return job

    def submit_file(
        self,
        owner_id: str,
        path: Path | str,
        *,
        target_language: str | None = None,
        source_language: str | None = None,
        content_type: str | None = None,
    ) -> Job:
        """Upload a local file and create its job in one step."""
        path = Path(path)
        target = self.create_upload_url(owner_id, path.name, content_type)
        self.blobs.put(target.file_key, path.read_bytes(), content_type)
        return self.create_job(
            owner_id,
            target.file_key,
            target_language=target_language,
            source_language=source_language,
            file_name=path.name,
            content_type=content_type,
        )

    # ==================== Queries ====================

    def list_jobs(self, owner_id: str, status: JobStatus | None = None) -> list[Job]:
        return self.db.list_jobs(owner_id=owner_id, status=status)

    def get_job(self, owner_id: str, job_id: str) -> Job:
        return self._get_owned_job(owner_id, job_id)

    def get_chunks(self, owner_id: str, job_id: str) -> dict[str, Any]:
        """Chunk bundle for review; approved jobs are locked and return no chunks."""
        job = self._get_owned_job(owner_id, job_id)
        if job.status == JobStatus.APPROVED:
            return {"job_id": job_id, "status": job.status.value, "chunks": [], "review_locked": True}
        bundle = self._bundle(job)
        bundle.update(status=job.status.value, review_locked=False)
        return bundle

    def get_job_logs(self, owner_id: str, job_id: str, limit: int = 50) -> list[JobLogEntry]:
        self._get_owned_job(owner_id, job_id)
        return self.job_log.list(job_id, limit=limit)

    # ==================== Review ====================

    def put_chunks(
        self,
        owner_id: str,
        job_id: str,
        edits: list[dict[str, Any]],
        actor: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Merge reviewer edits into the job's chunks and rewrite the bundle.

        Each edit names a chunk by ``order`` (or ``id``) and carries
        ``reviewer_html``, ``html`` or ``text``; an edit with none of them
        resets the chunk to its machine output.
        """
        job = self._get_owned_job(owner_id, job_id)
        chunks = self.chunks.list_chunks(job_id)
        if not chunks:
            raise InvalidStateError("Translation has no chunks", status_code=404)
        if job.status == JobStatus.APPROVED:
            raise InvalidStateError("Translation already approved", status_code=403)
        if job.status != JobStatus.READY_FOR_REVIEW:
            raise InvalidStateError(
                f"Translation is not ready for review (status {job.status.value})",
                context={"status": job.status.value},
            )
        if not edits:
            raise ValidationError("No chunk edits supplied")

        by_order = {c.order: c for c in chunks}
        by_id = {c.chunk_id: c for c in chunks}
        reviewer = actor_label(actor)
        updated_orders = []
        for edit in edits:
            chunk = by_order.get(edit.get("order")) if edit.get("order") is not None else by_id.get(edit.get("id"))
            if chunk is None:
                raise ValidationError("Unknown chunk in edit", context={"edit": {k: edit.get(k) for k in ("order", "id")}})
            html = edit.get("reviewer_html") or edit.get("html")
            if not html and edit.get("text"):
                html = text_to_html(edit["text"])
            self.chunks.update_chunk_state(
                job,
                chunk.order,
                reviewer_html=html or chunk.machine_html,
                last_updated_by=reviewer,
            )
            updated_orders.append(chunk.order)

        self.assets.refresh_anchor_context(job, self.chunks.list_chunks(job_id))
        bundle = self._bundle(job)
        key = job.chunk_file_key or bundle_key(owner_id, job_id)
        self.blobs.put_json(key, bundle)
        self.db.update_job(job_id, chunk_file_key=key)
        self._log(
            job,
            "chunks-updated",
            f"Reviewer updated {len(updated_orders)} chunk(s)",
            category="review",
            stage="chunk-edit",
            actor=actor,
            metadata={"orders": updated_orders},
        )
        bundle.update(status=job.status.value, review_locked=False)
        return bundle

    def approve(self, owner_id: str, job_id: str, actor: dict[str, Any] | None = None) -> ApprovalResult:
        """Assemble reviewer-preferred output (HTML plus DOCX) and approve."""
        job = self._get_owned_job(owner_id, job_id)
        if job.status == JobStatus.APPROVED:
            return ApprovalResult(job=job, already_approved=True)
        if job.status != JobStatus.READY_FOR_REVIEW:
            raise InvalidStateError(
                f"Translation cannot be approved from status {job.status.value}",
                context={"status": job.status.value},
            )

        chunks = self.chunks.list_chunks(job_id)
        assets = self.assets.list_assets(job_id)
        asset_map = {a.asset_id: a for a in assets}
        html = assemble_html_document(
            self._head_html(job),
            chunks,
            assets,
            self.assets.list_anchors(job_id),
            prefer_reviewer=True,
            embed_assets=self.settings.processing.embed_assets_inline,
            resolve_bytes=self.assets.load_bytes,
        )
        html_key = output_html_key(owner_id, job_id)
        self.blobs.put_text(html_key, html, "text/html; charset=utf-8")

        docx_key: str | None = output_docx_key(owner_id, job_id)
        try:
            data = html_to_docx(
                html,
                job.target_language,
                resolve_asset=lambda asset_id: (
                    self.assets.load_bytes(asset_map[asset_id]) if asset_id in asset_map else None
                ),
            )
            self.blobs.put(docx_key, data, DOCX_MEDIA_TYPE)
        except Exception as e:
            # Approval still succeeds with HTML output only
            logger.warning("DOCX generation failed for job %s: %s", job_id, e)
            docx_key = None

        approved = self.db.update_job(
            job_id,
            expected_status=JobStatus.READY_FOR_REVIEW,
            status=JobStatus.APPROVED,
            approved_at=utcnow(),
            approved_by=actor_label(actor, default="system"),
            translated_file_key=docx_key or html_key,
            translated_format="docx" if docx_key else "html",
            translated_html_key=html_key,
        )
        if approved is None:
            raise InvalidStateError("Translation status changed during approval")
        self._log(
            approved,
            "approved",
            "Translation approved",
            category="review",
            stage="approval",
            actor=actor,
            metadata={"translated_file_key": approved.translated_file_key, "format": approved.translated_format},
        )
        return ApprovalResult(job=approved, docx_generated=docx_key is not None)

    # ==================== Distribution ====================

    def download(
        self,
        owner_id: str,
        job_id: str,
        kind: str = "translated",
        actor: dict[str, Any] | None = None,
    ) -> SignedUrl:
        """
        Short-lived retrieval URL for one of the job's files.

        Raises:
            ValidationError: If ``kind`` is unknown.
            BlobNotFoundError: If the requested artifact does not exist yet.
        """
        job = self._get_owned_job(owner_id, job_id)
        if kind not in DOWNLOAD_KINDS:
            raise ValidationError(f"Unknown download type: {kind}", context={"allowed": list(DOWNLOAD_KINDS)})
        key = {
            "original": job.file_key,
            "machine": job.machine_file_key,
            "translated": job.translated_file_key or job.machine_file_key,
            "translatedHtml": job.translated_html_key or job.machine_file_key,
        }[kind]
        if not key:
            raise BlobNotFoundError(f"No {kind} file available for this job", context={"kind": kind})
        url = self.blobs.signed_url(key, ttl_seconds=self._ttl())
        self._log(
            job,
            "download-request",
            f"Download link issued for {kind}",
            category="distribution",
            stage="download",
            actor=actor,
            metadata={"kind": kind, "key": key, "expires_at": url.expires_at.isoformat()},
        )
        return url

    def delete_job(self, owner_id: str, job_id: str, actor: dict[str, Any] | None = None) -> None:
        """Remove a finished job with its records and files."""
        job = self._get_owned_job(owner_id, job_id)
        if job.status in ACTIVE_STATUSES:
            raise InvalidStateError(
                f"Cannot delete a job in status {job.status.value}",
                context={"status": job.status.value},
            )
        self._log(
            job,
            "deleted",
            "Translation job deleted",
            category="distribution",
            stage="cleanup",
            actor=actor,
        )
        for key in [job.file_key, *artifact_keys(job)]:
            self.blobs.delete(key)
        self.chunks.delete_all_chunks(job_id)
        self.assets.delete_job_records(job_id)
        self.db.delete_job(job_id)
        logger.info("Deleted job %s", job_id)

    # ==================== Controls ====================

    def pause_job(self, owner_id: str, job_id: str, actor: dict[str, Any] | None = None) -> ControlResult:
        job = self._get_owned_job(owner_id, job_id)
        if job.status == JobStatus.PAUSED:
            return ControlResult(job, 200, "Translation already paused")
        if job.status == JobStatus.PAUSE_REQUESTED:
            return ControlResult(job, 202, "Pause already requested")
        if job.status != JobStatus.PROCESSING:
            raise InvalidStateError(
                f"Only processing translations can be paused (status {job.status.value})",
                context={"status": job.status.value},
            )
        updated = self.db.update_job(
            job_id,
            expected_status=JobStatus.PROCESSING,
            status=JobStatus.PAUSE_REQUESTED,
            pause_requested_at=utcnow(),
            pause_requested_by=actor_label(actor, default="system"),
        )
        if updated is None:
            raise InvalidStateError("Translation status changed, retry the request")
        # The next checkpoint completes the pause, even for an idle job
        self.bus.publish(Signal.start(job_id, owner_id))
        self._log(
            updated,
            "pause-requested",
            "Pause requested",
            category="processing-control",
            stage="pause",
            actor=actor,
        )
        return ControlResult(updated, 202, "Pause requested")

    def resume_job(self, owner_id: str, job_id: str, actor: dict[str, Any] | None = None) -> ControlResult:
        job = self._get_owned_job(owner_id, job_id)
        if job.status not in (JobStatus.PAUSED, JobStatus.PAUSE_REQUESTED):
            raise InvalidStateError(
                f"Only paused translations can be resumed (status {job.status.value})",
                context={"status": job.status.value},
            )
        updated = self.db.update_job(
            job_id,
            expected_status=(JobStatus.PAUSED, JobStatus.PAUSE_REQUESTED),
            status=JobStatus.PROCESSING,
            resumed_at=utcnow(),
            pause_requested_at=None,
            pause_requested_by=None,
            pause_snapshot=None,
            health_check_retries=0,
        )
        if updated is None:
            raise InvalidStateError("Translation status changed, retry the request")
        self.bus.publish(Signal.start(job_id, owner_id))
        self._log(
            updated,
            "resume-requested",
            "Translation resumed",
            category="processing-control",
            stage="resume",
            actor=actor,
            metadata={"snapshot": job.pause_snapshot},
        )
        self._notify(updated, "resumed")
        return ControlResult(updated, 202, "Translation resumed")

    def cancel_job(
        self,
        owner_id: str,
        job_id: str,
        actor: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> ControlResult:
        job = self._get_owned_job(owner_id, job_id)
        if job.status == JobStatus.CANCELLED:
            return ControlResult(job, 200, "Translation already cancelled")
        if job.status == JobStatus.CANCEL_REQUESTED:
            return ControlResult(job, 202, "Cancellation already requested")
        cancellable = (JobStatus.PROCESSING, JobStatus.PAUSE_REQUESTED, JobStatus.PAUSED)
        if job.status not in cancellable:
            raise InvalidStateError(
                f"Translation cannot be cancelled from status {job.status.value}",
                context={"status": job.status.value},
            )
        updated = self.db.update_job(
            job_id,
            expected_status=cancellable,
            status=JobStatus.CANCEL_REQUESTED,
            cancel_requested_at=utcnow(),
            cancel_requested_by=actor_label(actor, default="system"),
            cancel_reason=(reason or "").strip()[:500] or None,
        )
        if updated is None:
            raise InvalidStateError("Translation status changed, retry the request")
        self.bus.publish(Signal.start(job_id, owner_id))
        self._log(
            updated,
            "cancel-requested",
            "Cancellation requested",
            category="processing-control",
            stage="cancel",
            actor=actor,
            metadata={"reason": updated.cancel_reason},
        )
        return ControlResult(updated, 202, "Cancellation requested")

    def restart_job(self, owner_id: str, job_id: str, actor: dict[str, Any] | None = None) -> ControlResult:
        job = self._get_owned_job(owner_id, job_id)
        restartable = (JobStatus.FAILED, JobStatus.PROCESSING, JobStatus.CANCELLED)
        if job.status not in restartable:
            raise InvalidStateError(
                f"Translation cannot be restarted from status {job.status.value}",
                context={"status": job.status.value},
            )
        updated = self.db.update_job(
            job_id,
            expected_status=restartable,
            status=JobStatus.PROCESSING,
            error_message=None,
            error_context=None,
            failed_at=None,
            health_check_retries=0,
            cancel_requested_at=None,
            cancel_requested_by=None,
            cancel_reason=None,
            cancelled_at=None,
            cancel_cleanup_at=None,
        )
        if updated is None:
            raise InvalidStateError("Translation status changed, retry the request")
        for chunk in self.db.list_chunks(job_id):
            if chunk.status == ChunkStatus.FAILED:
                self.db.update_chunk(
                    job_id, chunk.order, status=ChunkStatus.PENDING, machine_attempts=0, error_message=None
                )
        self.bus.publish(Signal.start(job_id, owner_id))
        self._log(
            updated,
            "restart-requested",
            "Translation restart requested",
            category="processing-control",
            stage="restart",
            actor=actor,
            metadata={"previous_status": job.status.value},
        )
        return ControlResult(updated, 202, "Translation restarted")
