"""
DuckDB database operations for doc-translator.

Handles translation jobs, chunks, assets, anchors, the job audit log,
ingestion jobs and the durable signal queue.
"""

from __future__ import annotations

import json
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import duckdb


def utcnow() -> datetime:
    """Naive UTC timestamp, matching DuckDB's TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    """Translation job lifecycle."""

    PROCESSING = "PROCESSING"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    APPROVED = "APPROVED"
    PAUSE_REQUESTED = "PAUSE_REQUESTED"
    PAUSED = "PAUSED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class ChunkStatus(str, Enum):
    """Per-chunk translation status."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IngestionStatus(str, Enum):
    """Status of a retrieval ingestion job."""

    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass
class Job:
    """Translation job record."""

    job_id: str = ""
    owner_id: str = ""
    file_key: str = ""
    file_name: str = ""
    content_type: str = ""
    source_language: str = "fr"
    target_language: str = "en"
    status: JobStatus = JobStatus.PROCESSING
    total_chunks: int = 0
    processed_chunks: int = 0
    failed_chunks: int = 0
    health_check_retries: int = 0
    asset_count: int = 0
    head_html: str | None = None
    context_key: str | None = None
    chunk_file_key: str | None = None
    machine_file_key: str | None = None
    translated_file_key: str | None = None
    translated_html_key: str | None = None
    translated_format: str | None = None
    provider: str | None = None
    model: str | None = None
    error_message: str | None = None
    error_context: dict[str, Any] | None = None
    pause_snapshot: dict[str, Any] | None = None
    pause_requested_by: str | None = None
    cancel_requested_by: str | None = None
    cancel_reason: str | None = None
    approved_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    translated_at: datetime | None = None
    approved_at: datetime | None = None
    pause_requested_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    cancel_requested_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_cleanup_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.APPROVED, JobStatus.CANCELLED, JobStatus.FAILED)


@dataclass
class Chunk:
    """Chunk record. ``order`` is the dense 0-based document position."""

    job_id: str = ""
    order: int = 0
    chunk_id: str = ""
    block_id: str = ""
    status: ChunkStatus = ChunkStatus.PENDING
    source_html: str | None = None
    source_text: str | None = None
    machine_html: str | None = None
    reviewer_html: str | None = None
    anchor_ids: list[str] = field(default_factory=list)
    machine_attempts: int = 0
    provider: str | None = None
    model: str | None = None
    last_updated_by: str | None = None
    error_message: str | None = None
    data_key: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def best_html(self) -> str:
        """Reviewer output, then machine output, then source."""
        return self.reviewer_html or self.machine_html or self.source_html or ""


@dataclass
class Asset:
    """Content-addressed asset record."""

    asset_id: str = ""
    job_id: str = ""
    media_type: str = "application/octet-stream"
    byte_size: int = 0
    width: int | None = None
    height: int | None = None
    alt_text: str | None = None
    caption: str | None = None
    keep_original_language: bool = False
    storage_key: str | None = None
    source_url: str | None = None
    file_name: str | None = None
    created_at: datetime | None = None


@dataclass
class Anchor:
    """Placement of one asset in the flowing text."""

    anchor_id: str = ""
    asset_id: str = ""
    job_id: str = ""
    chunk_id: str | None = None
    block_id: str | None = None
    chunk_order: int | None = None
    sequence: int = 0
    align: str | None = None
    width_px: int | None = None
    caption_ref: str | None = None
    before_span_id: str | None = None
    after_span_id: str | None = None
    text_window_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class JobLogEntry:
    """Append-only audit entry for a job."""

    job_id: str = ""
    job_type: str = "translation"
    owner_id: str | None = None
    category: str = "pipeline"
    stage: str | None = None
    event_type: str = ""
    status: str | None = None
    status_code: int | None = None
    message: str = ""
    actor: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    context: dict[str, Any] | None = None
    attempt: int | None = None
    retry_count: int | None = None
    failure_reason: str | None = None
    chunk_progress: dict[str, Any] | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    id: int | None = None


@dataclass
class IngestionJob:
    """Single-step retrieval ingestion job."""

    doc_id: str = ""
    owner_id: str = ""
    file_key: str = ""
    status: IngestionStatus = IngestionStatus.PROCESSING
    health_check_retries: int = 0
    num_chunks: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None


@dataclass
class SignalRecord:
    """Queued signal row."""

    id: int = 0
    kind: str = ""
    job_id: str = ""
    owner_id: str | None = None
    chunk_order: int | None = None
    created_at: datetime | None = None


_JSON_COLUMNS = {
    "error_context",
    "pause_snapshot",
    "anchor_ids",
    "actor",
    "metadata",
    "context",
    "chunk_progress",
}

_JOB_COLUMNS = [f.name for f in fields(Job)]
_CHUNK_FIELDS = [f.name for f in fields(Chunk)]
# "order" is reserved in SQL
_CHUNK_COLUMNS = ["chunk_order" if name == "order" else name for name in _CHUNK_FIELDS]
_ASSET_COLUMNS = [f.name for f in fields(Asset)]
_ANCHOR_COLUMNS = [f.name for f in fields(Anchor)]
_LOG_COLUMNS = [f.name for f in fields(JobLogEntry)]
_INGESTION_COLUMNS = [f.name for f in fields(IngestionJob)]


def _encode(column: str, value: Any) -> Any:
    """Convert a Python value for a DuckDB parameter."""
    if isinstance(value, Enum):
        return value.value
    if column in _JSON_COLUMNS and value is not None:
        return json.dumps(value)
    return value


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class Database:
    """DuckDB database wrapper for doc-translator."""

    # SQL for creating tables
    _SCHEMA = """
    -- Translation jobs
    CREATE TABLE IF NOT EXISTS jobs (
        job_id VARCHAR PRIMARY KEY,
        owner_id VARCHAR NOT NULL,
        file_key VARCHAR NOT NULL,
        file_name VARCHAR,
        content_type VARCHAR,
        source_language VARCHAR,
        target_language VARCHAR,
        status VARCHAR NOT NULL DEFAULT 'PROCESSING',
        total_chunks INTEGER DEFAULT 0,
        processed_chunks INTEGER DEFAULT 0,
        failed_chunks INTEGER DEFAULT 0,
        health_check_retries INTEGER DEFAULT 0,
        asset_count INTEGER DEFAULT 0,
        head_html TEXT,
        context_key VARCHAR,
        chunk_file_key VARCHAR,
        machine_file_key VARCHAR,
        translated_file_key VARCHAR,
        translated_html_key VARCHAR,
        translated_format VARCHAR,
        provider VARCHAR,
        model VARCHAR,
        error_message TEXT,
        error_context JSON,
        pause_snapshot JSON,
        pause_requested_by VARCHAR,
        cancel_requested_by VARCHAR,
        cancel_reason TEXT,
        approved_by VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP,
        started_at TIMESTAMP,
        translated_at TIMESTAMP,
        approved_at TIMESTAMP,
        pause_requested_at TIMESTAMP,
        paused_at TIMESTAMP,
        resumed_at TIMESTAMP,
        cancel_requested_at TIMESTAMP,
        cancelled_at TIMESTAMP,
        cancel_cleanup_at TIMESTAMP,
        failed_at TIMESTAMP
    );

    -- One record per chunk, keyed by document order
    CREATE TABLE IF NOT EXISTS chunks (
        job_id VARCHAR NOT NULL,
        chunk_order INTEGER NOT NULL,
        chunk_id VARCHAR NOT NULL,
        block_id VARCHAR,
        status VARCHAR NOT NULL DEFAULT 'PENDING',
        source_html TEXT,
        source_text TEXT,
        machine_html TEXT,
        reviewer_html TEXT,
        anchor_ids JSON,
        machine_attempts INTEGER DEFAULT 0,
        provider VARCHAR,
        model VARCHAR,
        last_updated_by VARCHAR,
        error_message TEXT,
        data_key VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP,
        completed_at TIMESTAMP,
        PRIMARY KEY (job_id, chunk_order)
    );

    -- Content-addressed assets
    CREATE TABLE IF NOT EXISTS assets (
        asset_id VARCHAR NOT NULL,
        job_id VARCHAR NOT NULL,
        media_type VARCHAR,
        byte_size BIGINT DEFAULT 0,
        width INTEGER,
        height INTEGER,
        alt_text TEXT,
        caption TEXT,
        keep_original_language BOOLEAN DEFAULT FALSE,
        storage_key VARCHAR,
        source_url VARCHAR,
        file_name VARCHAR,
        created_at TIMESTAMP,
        PRIMARY KEY (job_id, asset_id)
    );

    -- Asset placements
    CREATE TABLE IF NOT EXISTS anchors (
        anchor_id VARCHAR NOT NULL,
        asset_id VARCHAR NOT NULL,
        job_id VARCHAR NOT NULL,
        chunk_id VARCHAR,
        block_id VARCHAR,
        chunk_order INTEGER,
        sequence INTEGER DEFAULT 0,
        align VARCHAR,
        width_px INTEGER,
        caption_ref VARCHAR,
        before_span_id VARCHAR,
        after_span_id VARCHAR,
        text_window_hash VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP,
        PRIMARY KEY (job_id, anchor_id)
    );

    -- Append-only job audit log
    CREATE SEQUENCE IF NOT EXISTS job_log_id_seq START 1;

    CREATE TABLE IF NOT EXISTS job_log (
        id INTEGER PRIMARY KEY,
        job_id VARCHAR NOT NULL,
        job_type VARCHAR NOT NULL,
        owner_id VARCHAR,
        category VARCHAR,
        stage VARCHAR,
        event_type VARCHAR,
        status VARCHAR,
        status_code INTEGER,
        message TEXT,
        actor JSON,
        metadata JSON,
        context JSON,
        attempt INTEGER,
        retry_count INTEGER,
        failure_reason TEXT,
        chunk_progress JSON,
        created_at TIMESTAMP,
        expires_at TIMESTAMP
    );

    -- Retrieval ingestion jobs (health-checked only)
    CREATE TABLE IF NOT EXISTS ingestion_jobs (
        doc_id VARCHAR PRIMARY KEY,
        owner_id VARCHAR,
        file_key VARCHAR,
        status VARCHAR NOT NULL DEFAULT 'PROCESSING',
        health_check_retries INTEGER DEFAULT 0,
        num_chunks INTEGER DEFAULT 0,
        error_message TEXT,
        created_at TIMESTAMP,
        updated_at TIMESTAMP,
        started_at TIMESTAMP
    );

    -- Durable signal queue
    CREATE SEQUENCE IF NOT EXISTS signals_id_seq START 1;

    CREATE TABLE IF NOT EXISTS signals (
        id INTEGER PRIMARY KEY,
        kind VARCHAR NOT NULL,
        job_id VARCHAR NOT NULL,
        owner_id VARCHAR,
        chunk_order INTEGER,
        created_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
    CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_id);
    CREATE INDEX IF NOT EXISTS idx_job_log_job ON job_log(job_id);
    CREATE INDEX IF NOT EXISTS idx_ingestion_status ON ingestion_jobs(status);
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection. ``:memory:`` keeps everything in RAM."""
        self._in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path) if not self._in_memory else None
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: duckdb.DuckDBPyConnection | None = None

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection."""
        if self._conn is None:
            target = ":memory:" if self._in_memory else str(self.db_path)
            self._conn = duckdb.connect(target)
            self._init_schema()
        return self._conn

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self.conn.execute(self._SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """Context manager for transactions."""
        try:
            self.conn.begin()
            yield self.conn
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def _update(
        self,
        table: str,
        columns: list[str],
        where: str,
        where_params: list[Any],
        changes: dict[str, Any],
    ) -> int:
        """Patch whitelisted columns; returns affected row count."""
        unknown = set(changes) - set(columns)
        if unknown:
            raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")
        if not changes:
            return 0
        assignments = ", ".join(f"{col} = ?" for col in changes)
        params = [_encode(col, val) for col, val in changes.items()]
        rows = self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {where} RETURNING 1",
            [*params, *where_params],
        ).fetchall()
        return len(rows)

    # ==================== Jobs ====================

    def create_job(self, job: Job) -> Job:
        """Insert a new job."""
        now = utcnow()
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        self.conn.execute(
            f"INSERT INTO jobs ({', '.join(_JOB_COLUMNS)}) VALUES ({placeholders})",
            [_encode(col, getattr(job, col)) for col in _JOB_COLUMNS],
        )
        return job

    def get_job(self, job_id: str) -> Job | None:
        """Get a job by ID."""
        row = self.conn.execute(
            f"SELECT {', '.join(_JOB_COLUMNS)} FROM jobs WHERE job_id = ?", [job_id]
        ).fetchone()
        if row:
            return self._row_to_job(row)
        return None

    def list_jobs(
        self,
        owner_id: str | None = None,
        status: JobStatus | Iterable[JobStatus] | None = None,
    ) -> list[Job]:
        """List jobs, newest first, optionally filtered by owner and status."""
        conditions = []
        params: list[Any] = []
        if owner_id:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            statuses = [status] if isinstance(status, JobStatus) else list(status)
            conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.conn.execute(
            f"SELECT {', '.join(_JOB_COLUMNS)} FROM jobs {where_clause} "
            "ORDER BY created_at DESC, job_id",
            params,
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def update_job(
        self,
        job_id: str,
        *,
        expected_status: JobStatus | Iterable[JobStatus] | None = None,
        **changes: Any,
    ) -> Job | None:
        """
        Patch a job.

        With ``expected_status`` the write only happens while the job is in one
        of those statuses; ``None`` is returned when the guard does not match.
        ``updated_at`` is stamped unless supplied.
        """
        changes.setdefault("updated_at", utcnow())
        where = "job_id = ?"
        where_params: list[Any] = [job_id]
        if expected_status is not None:
            statuses = (
                [expected_status]
                if isinstance(expected_status, JobStatus)
                else list(expected_status)
            )
            where += f" AND status IN ({', '.join('?' for _ in statuses)})"
            where_params.extend(s.value for s in statuses)
        if not self._update("jobs", _JOB_COLUMNS, where, where_params, changes):
            return None
        return self.get_job(job_id)

    def increment_job_retries(self, job_id: str) -> int:
        """Bump the health-check retry counter and return the new value."""
        row = self.conn.execute(
            """
            UPDATE jobs
            SET health_check_retries = COALESCE(health_check_retries, 0) + 1,
                updated_at = ?
            WHERE job_id = ?
            RETURNING health_check_retries
            """,
            [utcnow(), job_id],
        ).fetchone()
        return row[0] if row else 0

    def delete_job(self, job_id: str) -> None:
        """Remove a job and everything keyed by it."""
        with self.transaction() as conn:
            for table in ("chunks", "assets", "anchors", "signals", "jobs"):
                conn.execute(f"DELETE FROM {table} WHERE job_id = ?", [job_id])

    def _row_to_job(self, row: tuple) -> Job:
        """Convert database row to Job."""
        data = dict(zip(_JOB_COLUMNS, row, strict=True))
        data["status"] = JobStatus(data["status"])
        data["error_context"] = _decode_json(data["error_context"])
        data["pause_snapshot"] = _decode_json(data["pause_snapshot"])
        return Job(**data)

    # ==================== Chunks ====================

    def insert_chunk(self, chunk: Chunk) -> None:
        """Insert a new chunk row."""
        placeholders = ", ".join("?" for _ in _CHUNK_COLUMNS)
        self.conn.execute(
            f"INSERT INTO chunks ({', '.join(_CHUNK_COLUMNS)}) VALUES ({placeholders})",
            [_encode(col, getattr(chunk, name)) for col, name in zip(_CHUNK_COLUMNS, _CHUNK_FIELDS)],
        )

    def get_chunk(self, job_id: str, order: int) -> Chunk | None:
        """Get the chunk at a document position."""
        row = self.conn.execute(
            f"SELECT {', '.join(_CHUNK_COLUMNS)} FROM chunks WHERE job_id = ? AND chunk_order = ?",
            [job_id, order],
        ).fetchone()
        if row:
            return self._row_to_chunk(row)
        return None

    def list_chunks(self, job_id: str) -> list[Chunk]:
        """All chunks of a job in document order."""
        rows = self.conn.execute(
            f"SELECT {', '.join(_CHUNK_COLUMNS)} FROM chunks WHERE job_id = ? ORDER BY chunk_order",
            [job_id],
        ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def update_chunk(self, job_id: str, order: int, **changes: Any) -> bool:
        """Patch chunk fields by order index."""
        changes.setdefault("updated_at", utcnow())
        if "order" in changes:
            raise ValueError("Chunk order is immutable")
        return bool(
            self._update(
                "chunks",
                _CHUNK_COLUMNS,
                "job_id = ? AND chunk_order = ?",
                [job_id, order],
                changes,
            )
        )

    def delete_chunks(self, job_id: str) -> int:
        """Delete every chunk of a job."""
        rows = self.conn.execute(
            "DELETE FROM chunks WHERE job_id = ? RETURNING chunk_order", [job_id]
        ).fetchall()
        return len(rows)

    def chunk_counts(self, job_id: str) -> dict[str, Any]:
        """Totals by status plus the most recent chunk activity."""
        row = self.conn.execute(
            """
            SELECT COUNT(*),
                   COUNT(*) FILTER (WHERE status = 'COMPLETED'),
                   COUNT(*) FILTER (WHERE status = 'FAILED'),
                   MAX(GREATEST(
                       COALESCE(updated_at, created_at),
                       COALESCE(completed_at, updated_at, created_at)
                   ))
            FROM chunks
            WHERE job_id = ?
            """,
            [job_id],
        ).fetchone()
        total, completed, failed, latest = row if row else (0, 0, 0, None)
        return {
            "total": total or 0,
            "completed": completed or 0,
            "failed": failed or 0,
            "latest_update": latest,
        }

    def _row_to_chunk(self, row: tuple) -> Chunk:
        """Convert database row to Chunk."""
        data = dict(zip(_CHUNK_FIELDS, row, strict=True))
        data["status"] = ChunkStatus(data["status"])
        data["anchor_ids"] = _decode_json(data["anchor_ids"]) or []
        return Chunk(**data)

    # ==================== Assets ====================

    def insert_asset_if_absent(self, asset: Asset) -> bool:
        """Insert an asset row; returns False if it already existed."""
        asset.created_at = asset.created_at or utcnow()
        placeholders = ", ".join("?" for _ in _ASSET_COLUMNS)
        rows = self.conn.execute(
            f"""
            INSERT INTO assets ({', '.join(_ASSET_COLUMNS)}) VALUES ({placeholders})
            ON CONFLICT (job_id, asset_id) DO NOTHING
            RETURNING asset_id
            """,
            [_encode(col, getattr(asset, col)) for col in _ASSET_COLUMNS],
        ).fetchall()
        return bool(rows)

    def list_assets(self, job_id: str) -> list[Asset]:
        """Assets stored for a job."""
        rows = self.conn.execute(
            f"SELECT {', '.join(_ASSET_COLUMNS)} FROM assets WHERE job_id = ? ORDER BY created_at, asset_id",
            [job_id],
        ).fetchall()
        return [Asset(**dict(zip(_ASSET_COLUMNS, row, strict=True))) for row in rows]

    def delete_assets(self, job_id: str) -> int:
        rows = self.conn.execute(
            "DELETE FROM assets WHERE job_id = ? RETURNING asset_id", [job_id]
        ).fetchall()
        return len(rows)

    # ==================== Anchors ====================

    def upsert_anchor(self, anchor: Anchor) -> None:
        """Insert or refresh an anchor, keeping its original ``created_at``."""
        now = utcnow()
        anchor.created_at = anchor.created_at or now
        anchor.updated_at = now
        placeholders = ", ".join("?" for _ in _ANCHOR_COLUMNS)
        mutable = [
            col
            for col in _ANCHOR_COLUMNS
            if col not in ("anchor_id", "job_id", "created_at")
        ]
        self.conn.execute(
            f"""
            INSERT INTO anchors ({', '.join(_ANCHOR_COLUMNS)}) VALUES ({placeholders})
            ON CONFLICT (job_id, anchor_id) DO UPDATE
            SET {', '.join(f'{col} = EXCLUDED.{col}' for col in mutable)}
            """,
            [_encode(col, getattr(anchor, col)) for col in _ANCHOR_COLUMNS],
        )

    def update_anchor(self, job_id: str, anchor_id: str, **changes: Any) -> bool:
        """Patch anchor fields in place."""
        changes.setdefault("updated_at", utcnow())
        return bool(
            self._update(
                "anchors",
                _ANCHOR_COLUMNS,
                "job_id = ? AND anchor_id = ?",
                [job_id, anchor_id],
                changes,
            )
        )

    def list_anchors(self, job_id: str) -> list[Anchor]:
        """Anchors of a job in document order."""
        rows = self.conn.execute(
            f"SELECT {', '.join(_ANCHOR_COLUMNS)} FROM anchors WHERE job_id = ? "
            "ORDER BY chunk_order NULLS LAST, sequence",
            [job_id],
        ).fetchall()
        return [Anchor(**dict(zip(_ANCHOR_COLUMNS, row, strict=True))) for row in rows]

    def delete_anchors(self, job_id: str) -> int:
        rows = self.conn.execute(
            "DELETE FROM anchors WHERE job_id = ? RETURNING anchor_id", [job_id]
        ).fetchall()
        return len(rows)

    # ==================== Job log ====================

    def add_log_entry(self, entry: JobLogEntry, retention_days: int = 10) -> int:
        """Append a log entry; returns its id."""
        entry.created_at = entry.created_at or utcnow()
        entry.expires_at = entry.expires_at or entry.created_at + timedelta(days=retention_days)
        columns = [col for col in _LOG_COLUMNS if col != "id"]
        placeholders = ", ".join("?" for _ in columns)
        row = self.conn.execute(
            f"""
            INSERT INTO job_log (id, {', '.join(columns)})
            VALUES (nextval('job_log_id_seq'), {placeholders})
            RETURNING id
            """,
            [_encode(col, getattr(entry, col)) for col in columns],
        ).fetchone()
        entry.id = row[0] if row else None
        return entry.id or 0

    def list_log_entries(
        self,
        job_id: str,
        limit: int = 50,
        job_type: str | None = None,
    ) -> list[JobLogEntry]:
        """Entries for a job, newest first."""
        params: list[Any] = [job_id]
        type_clause = ""
        if job_type:
            type_clause = "AND job_type = ?"
            params.append(job_type)
        rows = self.conn.execute(
            f"""
            SELECT {', '.join(_LOG_COLUMNS)} FROM job_log
            WHERE job_id = ? {type_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            [*params, limit],
        ).fetchall()
        entries = []
        for row in rows:
            data = dict(zip(_LOG_COLUMNS, row, strict=True))
            for key in ("actor", "metadata", "context", "chunk_progress"):
                data[key] = _decode_json(data[key])
            entries.append(JobLogEntry(**data))
        return entries

    def purge_expired_logs(self, now: datetime | None = None) -> int:
        """Drop log entries past their retention."""
        rows = self.conn.execute(
            "DELETE FROM job_log WHERE expires_at < ? RETURNING id", [now or utcnow()]
        ).fetchall()
        return len(rows)

    # ==================== Ingestion jobs ====================

    def add_ingestion_job(self, job: IngestionJob) -> IngestionJob:
        now = utcnow()
        job.created_at = job.created_at or now
        job.updated_at = job.updated_at or now
        placeholders = ", ".join("?" for _ in _INGESTION_COLUMNS)
        self.conn.execute(
            f"INSERT INTO ingestion_jobs ({', '.join(_INGESTION_COLUMNS)}) VALUES ({placeholders})",
            [_encode(col, getattr(job, col)) for col in _INGESTION_COLUMNS],
        )
        return job

    def get_ingestion_job(self, doc_id: str) -> IngestionJob | None:
        row = self.conn.execute(
            f"SELECT {', '.join(_INGESTION_COLUMNS)} FROM ingestion_jobs WHERE doc_id = ?",
            [doc_id],
        ).fetchone()
        if row:
            return self._row_to_ingestion(row)
        return None

    def list_ingestion_jobs(self, status: IngestionStatus | None = None) -> list[IngestionJob]:
        if status:
            rows = self.conn.execute(
                f"SELECT {', '.join(_INGESTION_COLUMNS)} FROM ingestion_jobs WHERE status = ? ORDER BY created_at",
                [status.value],
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"SELECT {', '.join(_INGESTION_COLUMNS)} FROM ingestion_jobs ORDER BY created_at"
            ).fetchall()
        return [self._row_to_ingestion(row) for row in rows]

    def update_ingestion_job(self, doc_id: str, **changes: Any) -> IngestionJob | None:
        changes.setdefault("updated_at", utcnow())
        if not self._update("ingestion_jobs", _INGESTION_COLUMNS, "doc_id = ?", [doc_id], changes):
            return None
        return self.get_ingestion_job(doc_id)

    def _row_to_ingestion(self, row: tuple) -> IngestionJob:
        data = dict(zip(_INGESTION_COLUMNS, row, strict=True))
        data["status"] = IngestionStatus(data["status"])
        return IngestionJob(**data)

    # ==================== Signals ====================

    def enqueue_signals(self, signals: Iterable[tuple[str, str, str | None, int | None]]) -> int:
        """Queue ``(kind, job_id, owner_id, chunk_order)`` tuples."""
        now = utcnow()
        count = 0
        with self.transaction() as conn:
            for kind, job_id, owner_id, chunk_order in signals:
                conn.execute(
                    """
                    INSERT INTO signals (id, kind, job_id, owner_id, chunk_order, created_at)
                    VALUES (nextval('signals_id_seq'), ?, ?, ?, ?, ?)
                    """,
                    [kind, job_id, owner_id, chunk_order, now],
                )
                count += 1
        return count

    def claim_signals(self, limit: int = 10) -> list[SignalRecord]:
        """Remove and return the oldest queued signals."""
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, kind, job_id, owner_id, chunk_order, created_at
                FROM signals ORDER BY id LIMIT ?
                """,
                [limit],
            ).fetchall()
            if rows:
                ids = [row[0] for row in rows]
                conn.execute(
                    f"DELETE FROM signals WHERE id IN ({', '.join('?' for _ in ids)})", ids
                )
        return [SignalRecord(*row) for row in rows]

    def pending_signal_count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM signals").fetchone()
        return row[0] if row else 0

    # ==================== Statistics ====================

    def get_statistics(self) -> dict[str, Any]:
        """Job counts by status for the CLI."""
        rows = self.conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        by_status = {row[0]: row[1] for row in rows}
        chunk_rows = self.conn.execute(
            "SELECT status, COUNT(*) FROM chunks GROUP BY status"
        ).fetchall()
        return {
            "total_jobs": sum(by_status.values()),
            "jobs_by_status": by_status,
            "chunks_by_status": {row[0]: row[1] for row in chunk_rows},
            "queued_signals": self.pending_signal_count(),
        }
