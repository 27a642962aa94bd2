"""
Append-only operator log per job, kept in DuckDB with a retention window.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from doc_translator.database import Database, JobLogEntry

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = {"type": "system", "source": "pipeline", "role": "system"}


def normalize_actor(actor: dict[str, Any] | None) -> dict[str, Any] | None:
    """Keep the known actor fields; None when nothing identifies the actor."""
    if not actor:
        return None
    keys = ("type", "email", "name", "sub", "source", "role")
    if not any(actor.get(k) for k in keys):
        return None
    out = {k: actor.get(k) for k in keys}
    out["type"] = out["type"] or "system"
    return out


class JobLog:
    """Records and lists job log entries."""

    def __init__(self, db: Database, retention_days: int = 10):
        self.db = db
        self.retention_days = retention_days

    def record(
        self,
        job_id: str,
        event_type: str,
        message: str,
        *,
        job_type: str = "translation",
        owner_id: str | None = None,
        category: str = "pipeline",
        stage: str | None = None,
        status: str | None = None,
        actor: dict[str, Any] | None = None,
        **fields: Any,
    ) -> JobLogEntry:
        """
        Append an entry.

        Extra keyword arguments map onto ``JobLogEntry`` fields such as
        ``metadata``, ``context``, ``attempt``, ``retry_count``,
        ``failure_reason``, ``chunk_progress`` and ``status_code``.
        """
        entry = JobLogEntry(
            job_id=job_id,
            job_type=job_type,
            owner_id=owner_id,
            category=category,
            stage=stage,
            event_type=event_type,
            status=status,
            message=message,
            actor=normalize_actor(actor) or SYSTEM_ACTOR,
            **fields,
        )
        self.db.add_log_entry(entry, retention_days=self.retention_days)
        logger.debug("[%s] %s/%s: %s", job_id, category, event_type, message)
        return entry

    def list(self, job_id: str, limit: int = 50, job_type: str | None = None) -> list[JobLogEntry]:
        """Newest entries first; ``limit`` is clamped to 1..100."""
        safe_limit = min(max(int(limit or 50), 1), 100)
        return self.db.list_log_entries(job_id, limit=safe_limit, job_type=job_type)

    def purge(self, now: datetime | None = None) -> int:
        removed = self.db.purge_expired_logs(now)
        if removed:
            logger.info("Purged %d expired job log entries", removed)
        return removed
