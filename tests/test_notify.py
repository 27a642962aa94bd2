"""Tests for job notifications."""

from doc_translator.config import NotificationConfig, TranslationNotifications
from doc_translator.notify import LoggingNotifier, Notifier
from doc_translator.stores import JobLog


class FlakyNotifier(Notifier):
    @property
    def name(self) -> str:
        return "flaky"

    def deliver(self, subject, body, recipients):
        raise ConnectionError("smtp down")


def config(**prefs) -> NotificationConfig:
    return NotificationConfig(
        recipients=["ops@example.com"],
        translation=TranslationNotifications(**prefs),
    )


class TestNotifier:
    """Tests for preference handling and outcome logging."""

    def test_sent_when_enabled(self, notifier):
        outcome = notifier.notify("translation", "completed", job_id="job-1", file_name="a.pdf")
        assert outcome.sent
        assert outcome.recipients == 1
        assert notifier.delivered == ["[Doc Translator] Translation completed"]

    def test_preference_disabled(self):
        notifier = LoggingNotifier(config(started=False))
        outcome = notifier.notify("translation", "started", job_id="job-1")
        assert not outcome.sent
        assert outcome.reason == "preference-disabled"

    def test_globally_disabled(self):
        notifier = LoggingNotifier(NotificationConfig(enabled=False, recipients=["ops@example.com"]))
        assert notifier.notify("translation", "failed").reason == "disabled"

    def test_no_recipients(self):
        notifier = LoggingNotifier(NotificationConfig())
        assert notifier.notify("translation", "failed").reason == "no-recipients"

    def test_documentation_preferences(self):
        notifier = LoggingNotifier(config())
        assert notifier.wants("documentation", "failed")
        assert not notifier.wants("documentation", "started")

    def test_delivery_failure_is_reported(self, db):
        log = JobLog(db)
        notifier = FlakyNotifier(config(failed=True), log)

        outcome = notifier.notify("translation", "failed", job_id="job-1", owner_id="owner-1")

        assert not outcome.sent
        assert outcome.reason == "delivery-failed"
        assert "smtp down" in outcome.error
        entry = log.list("job-1")[0]
        assert entry.event_type == "notification"
        assert entry.category == "notifications"
        assert entry.status == "FAILED"
        assert entry.metadata["reason"] == "delivery-failed"

    def test_message_body(self):
        notifier = LoggingNotifier(config())
        subject, body = notifier.build_message("documentation", "failed", "doc-1", "guide.pdf")
        assert subject == "[Doc Translator] Documentation ingestion failed"
        assert "File: guide.pdf" in body
        assert "Job ID: doc-1" in body
