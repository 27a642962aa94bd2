"""Shared fixtures: in-memory database, temp blob store and a fake engine."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any

import pytest
from bs4 import BeautifulSoup, NavigableString

from doc_translator.app import Application, create_app
from doc_translator.config import NotificationConfig, Settings, TranslationNotifications
from doc_translator.database import Database, Job
from doc_translator.errors import ChunkTranslationError
from doc_translator.llm.base import Completion, LLMProvider
from doc_translator.notify import NotificationOutcome, Notifier
from doc_translator.signals import InMemorySignalBus
from doc_translator.storage import LocalBlobStore, raw_upload_key
from doc_translator.translation.engine import EngineResult, TranslationEngine

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
PNG_DATA_URI = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")

SAMPLE_HTML = (
    "<html><head><title>Rapport</title></head><body>"
    "<p>Premier paragraphe.</p>"
    "<p>Deuxième paragraphe.</p>"
    f'<img src="{PNG_DATA_URI}" alt="logo" style="width: 120px">'
    "<p>Troisième paragraphe.</p>"
    "</body></html>"
)


class FakeEngine(TranslationEngine):
    """
    Prefixes every text node with ``EN:`` and leaves markup untouched.

    Chunks whose source contains one of ``fail_markers`` raise
    ``ChunkTranslationError``.
    """

    def __init__(self, fail_markers: tuple[str, ...] = ()):
        self.fail_markers = set(fail_markers)
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model(self) -> str:
        return "fake-1"

    async def translate_html(self, html: str, source_language: str, target_language: str) -> EngineResult:
        self.calls.append(html)
        if any(marker in html for marker in self.fail_markers):
            raise ChunkTranslationError("Fake provider refused the chunk")
        soup = BeautifulSoup(html, "html.parser")
        for node in list(soup.find_all(string=True)):
            if isinstance(node, NavigableString) and node.strip() and not node.find_parent(class_="asset-anchor"):
                node.replace_with(f"EN:{node}")
        return EngineResult(html=str(soup), provider=self.name, model=self.model)

    async def translate_segments(self, segments: list[str], source_language: str, target_language: str) -> list[str]:
        return [f"EN:{s}" for s in segments]


class ScriptedProvider(LLMProvider):
    """Returns queued responses in order and records every prompt."""

    def __init__(self, responses: list[str | Exception]):
        self.responses = list(responses)
        self.requests: list[list[dict[str, str]]] = []

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def model(self) -> str:
        return "scripted-1"

    async def complete(self, messages, *, temperature=0.2, max_tokens=2048, **kwargs: Any) -> Completion:
        self.requests.append(messages)
        if not self.responses:
            raise RuntimeError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return Completion(text=response, provider=self.name, model=self.model)


class RecordingNotifier(Notifier):
    """Keeps every notify call and delivered message in memory."""

    def __init__(self, job_log=None):
        prefs = TranslationNotifications(
            started=True, completed=True, failed=True, paused=True, resumed=True, cancelled=True
        )
        super().__init__(NotificationConfig(recipients=["ops@example.com"], translation=prefs), job_log)
        self.events: list[tuple[str, str, str | None]] = []
        self.delivered: list[str] = []

    @property
    def name(self) -> str:
        return "recording"

    def deliver(self, subject: str, body: str, recipients: list[str]) -> None:
        self.delivered.append(subject)

    def notify(self, job_type: str, status: str, *, job_id=None, owner_id=None, file_name=None) -> NotificationOutcome:
        self.events.append((job_type, status, job_id))
        return super().notify(job_type, status, job_id=job_id, owner_id=owner_id, file_name=file_name)

    def statuses(self, job_id: str) -> list[str]:
        return [status for _, status, jid in self.events if jid == job_id]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        paths={"storage_dir": tmp_path / "blobs", "logs": tmp_path / "logs"},
        logging={"file": None},
    )


@pytest.fixture
def db() -> Database:
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def bus() -> InMemorySignalBus:
    return InMemorySignalBus()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def application(settings, db, blobs, bus, engine, notifier) -> Application:
    app = create_app(settings, db=db, blobs=blobs, bus=bus, engine=engine, notifier=notifier)
    notifier.job_log = app.job_log
    return app


@pytest.fixture
def submit(application: Application):
    """Store an upload and create its job; returns the new ``Job``."""

    def _submit(
        content: str | bytes = SAMPLE_HTML,
        file_name: str = "rapport.html",
        owner_id: str = "owner-1",
        content_type: str | None = "text/html",
    ) -> Job:
        target = application.service.create_upload_url(owner_id, file_name, content_type)
        data = content.encode("utf-8") if isinstance(content, str) else content
        application.blobs.put(target.file_key, data, content_type)
        return application.service.create_job(
            owner_id,
            target.file_key,
            source_language="fr",
            target_language="en",
            content_type=content_type,
        )

    return _submit


def make_job(db: Database, job_id: str = "job-1", owner_id: str = "owner-1", **fields: Any) -> Job:
    """Insert a bare job record directly."""
    job = Job(
        job_id=job_id,
        owner_id=owner_id,
        file_key=raw_upload_key(owner_id, job_id, "doc.html"),
        file_name="doc.html",
        content_type="text/html",
        **fields,
    )
    return db.create_job(job)
