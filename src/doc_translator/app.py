"""
Component wiring.

``create_app`` builds the full object graph from settings; any component can
be swapped out, which is how tests run the pipeline against in-memory
storage and a fake engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from doc_translator.config import Settings
from doc_translator.database import Database
from doc_translator.notify import LoggingNotifier, Notifier
from doc_translator.parsing.document import DocumentParser
from doc_translator.pipeline.health import HealthMonitor
from doc_translator.pipeline.orchestrator import Orchestrator
from doc_translator.pipeline.worker import IngestHandler, Worker
from doc_translator.service import TranslationService
from doc_translator.signals import DatabaseSignalBus, SignalBus
from doc_translator.storage import BlobStore, LocalBlobStore
from doc_translator.stores.assets import AssetAnchorStore
from doc_translator.stores.chunks import ChunkStore
from doc_translator.stores.job_log import JobLog
from doc_translator.translation.engine import EngineHandle, TranslationEngine

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Every long-lived component of one process."""

    settings: Settings
    db: Database
    blobs: BlobStore
    bus: SignalBus
    engine: EngineHandle
    job_log: JobLog
    notifier: Notifier
    chunk_store: ChunkStore
    asset_store: AssetAnchorStore
    orchestrator: Orchestrator
    health: HealthMonitor
    worker: Worker
    service: TranslationService

    async def aclose(self) -> None:
        await self.engine.aclose()
        self.db.close()

    def close(self) -> None:
        self.db.close()


def create_app(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    blobs: BlobStore | None = None,
    bus: SignalBus | None = None,
    engine: TranslationEngine | EngineHandle | None = None,
    notifier: Notifier | None = None,
    ingest_handler: IngestHandler | None = None,
) -> Application:
    """Build the application from settings, using supplied components where given."""
    settings = settings or Settings()
    db = db or Database(settings.paths.database_path)
    blobs = blobs or LocalBlobStore(settings.paths.storage_dir)
    bus = bus or DatabaseSignalBus(db)
    if engine is None:
        handle = EngineHandle.from_config(settings.translation)
    elif isinstance(engine, EngineHandle):
        handle = engine
    else:
        handle = EngineHandle.of(engine)

    job_log = JobLog(db, retention_days=settings.job_log.retention_days)
    notifier = notifier or LoggingNotifier(settings.notifications, job_log)
    chunk_store = ChunkStore(db, blobs, offload_threshold=settings.storage.offload_threshold)
    asset_store = AssetAnchorStore(db, blobs)

    orchestrator = Orchestrator(
        db,
        blobs,
        bus,
        handle,
        settings=settings,
        parser=DocumentParser(),
        chunk_store=chunk_store,
        asset_store=asset_store,
        job_log=job_log,
        notifier=notifier,
    )
    service = TranslationService(
        db,
        blobs,
        bus,
        settings=settings,
        chunk_store=chunk_store,
        asset_store=asset_store,
        job_log=job_log,
        notifier=notifier,
    )
    logger.debug("Application wired (dispatch %s)", settings.processing.dispatch_mode.value)
    return Application(
        settings=settings,
        db=db,
        blobs=blobs,
        bus=bus,
        engine=handle,
        job_log=job_log,
        notifier=notifier,
        chunk_store=chunk_store,
        asset_store=asset_store,
        orchestrator=orchestrator,
        health=HealthMonitor(orchestrator, settings.health),
        worker=Worker(orchestrator, bus, ingest_handler=ingest_handler),
        service=service,
    )
