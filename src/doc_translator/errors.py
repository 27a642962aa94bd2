"""
Error taxonomy for doc-translator.

Parse-phase and asset-phase errors are fatal for a job. Chunk-phase errors are
recorded on the chunk and only escalate through the health monitor.
"""

from __future__ import annotations

from typing import Any


class TranslatorError(Exception):
    """Base class for all doc-translator errors."""

    code = "translator_error"
    retryable = False

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for job records and log entries."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


# ==================== Parse phase ====================


class ParsePhaseError(TranslatorError):
    """Fatal error raised while turning an upload into chunks."""

    code = "parse_error"


class UnsupportedFormatError(ParsePhaseError):
    """The upload's media type is not one we can parse."""

    code = "unsupported_format"


class ParseError(ParsePhaseError):
    """A parsing library failed; the underlying message is preserved."""

    code = "parse_error"


class EmptyContentError(ParsePhaseError):
    """The document parsed but produced no text."""

    code = "empty_content"


# ==================== Pipeline ====================


class AssetPersistError(TranslatorError):
    """Assets or anchors could not be written."""

    code = "asset_persist_error"


class EngineInitError(TranslatorError):
    """The translation engine could not be configured."""

    code = "engine_init_error"


class ChunkTranslationError(TranslatorError):
    """A single chunk failed to translate."""

    code = "chunk_translation_error"
    retryable = True


class StructuralMismatchError(ChunkTranslationError):
    """Translated markup does not match the source tag structure."""

    code = "structural_mismatch"

    def __init__(
        self,
        message: str,
        *,
        expected: list[str] | None = None,
        actual: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.expected = expected or []
        self.actual = actual or []


class StaleJobError(TranslatorError):
    """A job made no progress within the staleness threshold."""

    code = "stale_job"
    retryable = True


# ==================== Service / storage ====================


class BlobNotFoundError(TranslatorError):
    """Requested object does not exist in blob storage."""

    code = "blob_not_found"


class JobNotFoundError(TranslatorError):
    """No job with the requested id (or owner)."""

    code = "job_not_found"


class ValidationError(TranslatorError):
    """Request payload failed validation."""

    code = "validation_error"


class InvalidStateError(TranslatorError):
    """Operation not allowed in the job's current status."""

    code = "invalid_state"

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 409,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.status_code = status_code
