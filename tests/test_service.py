"""Tests for the job service: intake, review, approval and controls."""

import io

import pytest
from bs4 import BeautifulSoup
from conftest import make_job

from doc_translator.database import ChunkStatus, JobStatus
from doc_translator.errors import (
    BlobNotFoundError,
    InvalidStateError,
    JobNotFoundError,
    ValidationError,
)
from doc_translator.service import actor_label
from doc_translator.storage import raw_upload_key

REVIEWER = {"sub": "u-42", "email": "reviewer@example.com"}


@pytest.fixture
def service(application):
    return application.service


@pytest.fixture
async def ready(application, submit):
    """A job that went through the pipeline and awaits review."""
    job = submit()
    await application.worker.drain()
    return application.db.get_job(job.job_id)


class TestIntake:
    """Tests for upload targets and job creation."""

    def test_upload_url(self, service):
        target = service.create_upload_url("owner-1", "rapport.docx")
        assert target.file_key == raw_upload_key("owner-1", target.job_id, "rapport.docx")
        assert target.upload.method == "PUT"

    def test_upload_url_rejects_unknown_type(self, service):
        with pytest.raises(ValidationError):
            service.create_upload_url("owner-1", "archive.zip", "application/zip")

    def test_upload_url_requires_name(self, service):
        with pytest.raises(ValidationError):
            service.create_upload_url("owner-1", " ")

    def test_create_job_emits_start(self, submit, bus, notifier):
        job = submit()
        assert job.status == JobStatus.PROCESSING
        assert job.source_language == "fr"
        assert job.target_language == "en"
        assert [s.kind.value for s in bus.receive(10)] == ["start"]
        assert notifier.statuses(job.job_id) == ["started"]

    def test_create_job_is_idempotent(self, service, submit, bus):
        job = submit()
        again = service.create_job("owner-1", job.file_key)
        assert again.job_id == job.job_id
        assert bus.pending() == 1

    def test_foreign_key_rejected(self, service, application):
        key = raw_upload_key("someone-else", "job-x", "a.html")
        application.blobs.put(key, b"<p>x</p>")
        with pytest.raises(ValidationError):
            service.create_job("owner-1", key)

    def test_missing_upload_rejected(self, service):
        with pytest.raises(ValidationError, match="not found"):
            service.create_job("owner-1", raw_upload_key("owner-1", "job-x", "a.html"))

    def test_submit_file(self, service, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("Bonjour", encoding="utf-8")
        job = service.submit_file("owner-1", path, target_language="de")
        assert job.file_name == "notes.txt"
        assert job.target_language == "de"

    def test_owner_isolation(self, service, submit):
        job = submit()
        with pytest.raises(JobNotFoundError):
            service.get_job("owner-2", job.job_id)
        assert service.list_jobs("owner-2") == []
        assert [j.job_id for j in service.list_jobs("owner-1")] == [job.job_id]


class TestReview:
    """Tests for get_chunks and put_chunks."""

    async def test_get_chunks(self, service, ready):
        bundle = service.get_chunks("owner-1", ready.job_id)
        assert bundle["review_locked"] is False
        assert len(bundle["chunks"]) == 4
        assert bundle["head_html"].startswith("<head>")

    async def test_edit_by_order(self, service, application, ready):
        bundle = service.put_chunks(
            "owner-1", ready.job_id, [{"order": 0, "reviewer_html": "<p>First paragraph.</p>"}], REVIEWER
        )

        chunk = application.chunk_store.get_chunk(ready.job_id, 0)
        assert chunk.reviewer_html == "<p>First paragraph.</p>"
        assert chunk.last_updated_by == "reviewer@example.com"
        assert chunk.machine_html == "<p>EN:Premier paragraphe.</p>"
        assert bundle["chunks"][0]["reviewer_html"] == "<p>First paragraph.</p>"
        stored = application.blobs.get_json(ready.chunk_file_key)
        assert stored["chunks"][0]["reviewer_html"] == "<p>First paragraph.</p>"

    async def test_edit_by_id_with_text(self, service, application, ready):
        chunk_id = application.chunk_store.get_chunk(ready.job_id, 1).chunk_id
        service.put_chunks("owner-1", ready.job_id, [{"id": chunk_id, "text": "Line one\nline two"}])
        chunk = application.chunk_store.get_chunk(ready.job_id, 1)
        assert chunk.reviewer_html == "<p>Line one<br/>line two</p>"

    async def test_empty_edit_resets_to_machine(self, service, application, ready):
        service.put_chunks("owner-1", ready.job_id, [{"order": 0, "html": "<p>x</p>"}])
        service.put_chunks("owner-1", ready.job_id, [{"order": 0}])
        chunk = application.chunk_store.get_chunk(ready.job_id, 0)
        assert chunk.reviewer_html == chunk.machine_html

    async def test_unknown_chunk(self, service, ready):
        with pytest.raises(ValidationError):
            service.put_chunks("owner-1", ready.job_id, [{"order": 99, "html": "<p>x</p>"}])

    async def test_no_edits(self, service, ready):
        with pytest.raises(ValidationError):
            service.put_chunks("owner-1", ready.job_id, [])

    def test_no_chunks_is_404(self, service, db):
        make_job(db, status=JobStatus.READY_FOR_REVIEW)
        with pytest.raises(InvalidStateError) as excinfo:
            service.put_chunks("owner-1", "job-1", [{"order": 0, "html": "<p>x</p>"}])
        assert excinfo.value.status_code == 404

    async def test_not_ready_is_409(self, service, application, submit, bus):
        job = submit()
        bus.receive(10)
        await application.orchestrator.start(job.job_id)
        with pytest.raises(InvalidStateError) as excinfo:
            service.put_chunks("owner-1", job.job_id, [{"order": 0, "html": "<p>x</p>"}])
        assert excinfo.value.status_code == 409

    async def test_approved_is_locked(self, service, ready):
        service.approve("owner-1", ready.job_id)
        with pytest.raises(InvalidStateError) as excinfo:
            service.put_chunks("owner-1", ready.job_id, [{"order": 0, "html": "<p>x</p>"}])
        assert excinfo.value.status_code == 403
        bundle = service.get_chunks("owner-1", ready.job_id)
        assert bundle["review_locked"] is True
        assert bundle["chunks"] == []


class TestApproval:
    """Tests for approve and download."""

    async def test_approve_writes_html_and_docx(self, service, application, ready):
        service.put_chunks("owner-1", ready.job_id, [{"order": 0, "html": "<p>Reviewed first.</p>"}])
        result = service.approve("owner-1", ready.job_id, REVIEWER)

        job = result.job
        assert job.status == JobStatus.APPROVED
        assert job.approved_by == "reviewer@example.com"
        assert job.translated_format == "docx"
        assert result.docx_generated

        html = application.blobs.get_text(job.translated_html_key)
        soup = BeautifulSoup(html, "html.parser")
        assert soup.find("p").get_text() == "Reviewed first."
        assert soup.find("figure") is not None

        from docx import Document

        document = Document(io.BytesIO(application.blobs.get(job.translated_file_key)))
        texts = [p.text for p in document.paragraphs]
        assert "Reviewed first." in texts
        assert len(document.inline_shapes) == 1

    async def test_approve_twice(self, service, ready):
        service.approve("owner-1", ready.job_id)
        again = service.approve("owner-1", ready.job_id)
        assert again.already_approved

    async def test_approve_keeps_chunks(self, service, application, ready):
        service.approve("owner-1", ready.job_id)
        assert len(application.chunk_store.list_chunks(ready.job_id)) == 4

    async def test_docx_failure_falls_back_to_html(self, service, ready, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("renderer crashed")

        monkeypatch.setattr("doc_translator.service.html_to_docx", broken)
        result = service.approve("owner-1", ready.job_id)

        assert result.job.status == JobStatus.APPROVED
        assert result.job.translated_format == "html"
        assert result.job.translated_file_key == result.job.translated_html_key
        assert not result.docx_generated

    async def test_approve_requires_review_state(self, service, submit):
        job = submit()
        with pytest.raises(InvalidStateError):
            service.approve("owner-1", job.job_id)

    async def test_download_before_and_after_approval(self, service, ready):
        machine = service.download("owner-1", ready.job_id, "translated")
        assert machine.key == ready.machine_file_key

        approved = service.approve("owner-1", ready.job_id).job
        translated = service.download("owner-1", ready.job_id, "translated")
        html = service.download("owner-1", ready.job_id, "translatedHtml")
        original = service.download("owner-1", ready.job_id, "original")

        assert translated.key == approved.translated_file_key
        assert html.key == approved.translated_html_key
        assert original.key == ready.file_key

    async def test_download_unknown_kind(self, service, ready):
        with pytest.raises(ValidationError):
            service.download("owner-1", ready.job_id, "pdf")

    def test_download_missing_artifact(self, service, submit):
        job = submit()
        with pytest.raises(BlobNotFoundError):
            service.download("owner-1", job.job_id, "machine")


class TestControls:
    """Tests for pause/resume/cancel/restart status handling."""

    def test_pause_codes(self, service, submit):
        job = submit()
        assert service.pause_job("owner-1", job.job_id).status_code == 202
        assert service.pause_job("owner-1", job.job_id).status_code == 202
        assert service.get_job("owner-1", job.job_id).status == JobStatus.PAUSE_REQUESTED

    async def test_pause_when_paused(self, service, application, submit):
        job = submit()
        service.pause_job("owner-1", job.job_id)
        await application.worker.drain()
        result = service.pause_job("owner-1", job.job_id)
        assert result.status_code == 200
        assert result.job.status == JobStatus.PAUSED

    async def test_pause_rejected_after_review(self, service, ready):
        with pytest.raises(InvalidStateError):
            service.pause_job("owner-1", ready.job_id)

    def test_resume_requires_pause(self, service, submit):
        job = submit()
        with pytest.raises(InvalidStateError):
            service.resume_job("owner-1", job.job_id)

    def test_resume_pause_requested(self, service, submit, bus):
        job = submit()
        service.pause_job("owner-1", job.job_id)
        bus.receive(10)
        result = service.resume_job("owner-1", job.job_id)
        assert result.job.status == JobStatus.PROCESSING
        assert [s.kind.value for s in bus.receive(10)] == ["start"]

    def test_cancel_codes(self, service, submit):
        job = submit()
        first = service.cancel_job("owner-1", job.job_id, reason="  duplicate  ")
        second = service.cancel_job("owner-1", job.job_id)
        assert first.status_code == 202
        assert first.job.cancel_reason == "duplicate"
        assert second.status_code == 202
        assert second.message == "Cancellation already requested"

    async def test_cancel_after_cleanup(self, service, application, submit):
        job = submit()
        service.cancel_job("owner-1", job.job_id)
        await application.worker.drain()
        assert service.cancel_job("owner-1", job.job_id).status_code == 200

    async def test_cancel_rejected_after_review(self, service, ready):
        with pytest.raises(InvalidStateError):
            service.cancel_job("owner-1", ready.job_id)

    async def test_restart_failed_job(self, service, application, submit, engine):
        engine.fail_markers.add("Deuxième")
        job = submit()
        await application.worker.drain()
        application.orchestrator.fail_job(application.db.get_job(job.job_id), "gave up")

        engine.fail_markers.clear()
        result = service.restart_job("owner-1", job.job_id)
        assert result.job.status == JobStatus.PROCESSING
        assert result.job.error_message is None
        chunk = application.chunk_store.get_chunk(job.job_id, 1)
        assert chunk.status == ChunkStatus.PENDING
        assert chunk.machine_attempts == 0

        await application.worker.drain()
        assert application.db.get_job(job.job_id).status == JobStatus.READY_FOR_REVIEW

    async def test_restart_rejected_after_review(self, service, ready):
        with pytest.raises(InvalidStateError):
            service.restart_job("owner-1", ready.job_id)


class TestDeleteAndLogs:
    """Tests for delete_job and get_job_logs."""

    async def test_delete_removes_everything(self, service, application, ready):
        service.approve("owner-1", ready.job_id)
        approved = application.db.get_job(ready.job_id)

        service.delete_job("owner-1", ready.job_id)

        assert application.db.get_job(ready.job_id) is None
        assert application.chunk_store.list_chunks(ready.job_id) == []
        for key in (approved.file_key, approved.machine_file_key, approved.translated_file_key):
            assert not application.blobs.exists(key)

    def test_delete_active_job_rejected(self, service, submit):
        job = submit()
        with pytest.raises(InvalidStateError):
            service.delete_job("owner-1", job.job_id)

    async def test_logs(self, service, ready):
        entries = service.get_job_logs("owner-1", ready.job_id, limit=5)
        assert len(entries) == 5
        assert entries[0].event_type == "notification"


def test_actor_label():
    assert actor_label(None) == "reviewer"
    assert actor_label({"sub": "u-1"}) == "u-1"
    assert actor_label({"name": "Ada", "email": "ada@example.com"}) == "ada@example.com"
    assert actor_label({}, default="system") == "system"
