"""
Job notifications.

Delivery itself is an external concern; ``Notifier`` handles the preference
checks, message formatting and the job-log audit trail, and subclasses only
implement ``deliver``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from doc_translator.config import NotificationConfig
from doc_translator.database import utcnow
from doc_translator.stores.job_log import JobLog

logger = logging.getLogger(__name__)

NOTIFIER_ACTOR = {"type": "system", "source": "notifications-service", "role": "system"}


@dataclass
class NotificationOutcome:
    """Result of one notification attempt."""

    sent: bool
    reason: str | None = None
    recipients: int = 0
    error: str | None = None


class Notifier(ABC):
    """Base class for notification channels."""

    def __init__(self, config: NotificationConfig | None = None, job_log: JobLog | None = None):
        self.config = config or NotificationConfig()
        self.job_log = job_log

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def deliver(self, subject: str, body: str, recipients: list[str]) -> None:
        """Send one message. Raise on delivery failure."""
        ...

    def wants(self, job_type: str, status: str) -> bool:
        """Whether preferences enable ``status`` events for ``job_type``."""
        prefs = self.config.translation if job_type == "translation" else self.config.documentation
        return bool(getattr(prefs, status.lower(), False))

    def build_message(
        self,
        job_type: str,
        status: str,
        job_id: str | None,
        file_name: str | None,
    ) -> tuple[str, str]:
        label = "Documentation ingestion" if job_type == "documentation" else "Translation"
        subject = f"{self.config.subject_prefix} {label} {status}"
        lines = [
            f"Job type: {'documentation' if job_type == 'documentation' else 'translation'}",
            f"Status: {status}",
            f"File: {file_name}" if file_name else None,
            f"Job ID: {job_id}" if job_id else None,
            f"Timestamp: {utcnow().isoformat()}Z",
        ]
        return subject, "\n".join(line for line in lines if line)

    def notify(
        self,
        job_type: str,
        status: str,
        *,
        job_id: str | None = None,
        owner_id: str | None = None,
        file_name: str | None = None,
    ) -> NotificationOutcome:
        """
        Send a job status notification if preferences allow it.

        Never raises; delivery errors are reported in the outcome and logged.
        """
        if not self.config.enabled:
            outcome = NotificationOutcome(sent=False, reason="disabled")
        elif not self.wants(job_type, status):
            outcome = NotificationOutcome(sent=False, reason="preference-disabled")
        elif not self.config.recipients:
            outcome = NotificationOutcome(sent=False, reason="no-recipients")
        else:
            subject, body = self.build_message(job_type, status, job_id, file_name)
            recipients = list(self.config.recipients)
            try:
                self.deliver(subject, body, recipients)
                outcome = NotificationOutcome(sent=True, recipients=len(recipients))
            except Exception as e:
                logger.error("Notification via %s failed: %s", self.name, e)
                outcome = NotificationOutcome(sent=False, reason="delivery-failed", error=str(e))

        self._log_outcome(job_type, status, job_id, owner_id, file_name, outcome)
        return outcome

    def _log_outcome(
        self,
        job_type: str,
        status: str,
        job_id: str | None,
        owner_id: str | None,
        file_name: str | None,
        outcome: NotificationOutcome,
    ) -> None:
        if self.job_log is None or not job_id:
            return
        self.job_log.record(
            job_id,
            "notification",
            "Notification dispatched" if outcome.sent else "Notification skipped",
            job_type=job_type,
            owner_id=owner_id,
            category="notifications",
            stage=self.name,
            status=status.upper(),
            actor=NOTIFIER_ACTOR,
            metadata={
                "file_name": file_name,
                "status": status,
                "recipients": outcome.recipients,
                "reason": outcome.reason,
                "error": outcome.error,
            },
        )


class LoggingNotifier(Notifier):
    """Writes notifications to the application log."""

    @property
    def name(self) -> str:
        return "log"

    def deliver(self, subject: str, body: str, recipients: list[str]) -> None:
        logger.info("Notify %s: %s\n%s", ", ".join(recipients), subject, body)
