"""
Object storage for uploads, assets, chunk payloads and job artifacts.

Keys are slash-separated paths. Every key layout used by the pipeline is built
by the helpers at the bottom of this module.
"""

from __future__ import annotations

import json
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from doc_translator.assets import sanitize_filename
from doc_translator.database import utcnow
from doc_translator.errors import BlobNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class SignedUrl:
    """Short-lived retrieval or upload target."""

    url: str
    key: str
    expires_at: datetime
    method: str = "GET"
    content_type: str | None = None


class BlobStore(ABC):
    """Abstract object store."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Write an object, replacing any existing one."""
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read an object or raise BlobNotFoundError."""
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object; returns False if it was not there."""
        ...

    @abstractmethod
    def signed_url(
        self,
        key: str,
        ttl_seconds: int = 900,
        method: str = "GET",
        content_type: str | None = None,
    ) -> SignedUrl:
        ...

    def put_json(self, key: str, payload: Any) -> None:
        self.put(key, json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8"), "application/json")

    def get_json(self, key: str) -> Any:
        return json.loads(self.get(key).decode("utf-8"))

    def put_text(self, key: str, text: str, content_type: str = "text/plain; charset=utf-8") -> None:
        self.put(key, text.encode("utf-8"), content_type)

    def get_text(self, key: str) -> str:
        return self.get(key).decode("utf-8")


class LocalBlobStore(BlobStore):
    """Filesystem-backed store rooted at a directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        logger.debug("Stored %s (%d bytes)", key, len(data))

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFoundError(f"Object not found: {key}", context={"key": key})
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def signed_url(
        self,
        key: str,
        ttl_seconds: int = 900,
        method: str = "GET",
        content_type: str | None = None,
    ) -> SignedUrl:
        path = self._path(key)
        if method == "GET" and not path.is_file():
            raise BlobNotFoundError(f"Object not found: {key}", context={"key": key})
        return SignedUrl(
            url=path.as_uri(),
            key=key,
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
            method=method,
            content_type=content_type or mimetypes.guess_type(path.name)[0],
        )


# ==================== Key layout ====================


def raw_prefix(owner_id: str) -> str:
    return f"translations/raw/{owner_id}/"


def raw_upload_key(owner_id: str, job_id: str, file_name: str) -> str:
    return f"{raw_prefix(owner_id)}{job_id}/{sanitize_filename(file_name, fallback='document')}"


def chunk_data_key(owner_id: str, job_id: str, chunk_id: str) -> str:
    return f"translations/chunk-data/{owner_id}/{job_id}/{chunk_id}.json"


def context_key(owner_id: str, job_id: str) -> str:
    return f"translations/work/{owner_id}/{job_id}/context.json"


def bundle_key(owner_id: str, job_id: str) -> str:
    return f"translations/chunks/{owner_id}/{job_id}.json"


def machine_html_key(owner_id: str, job_id: str) -> str:
    return f"translations/machine/{owner_id}/{job_id}.html"


def output_html_key(owner_id: str, job_id: str) -> str:
    return f"translations/output/{owner_id}/{job_id}.html"


def output_docx_key(owner_id: str, job_id: str) -> str:
    return f"translations/output/{owner_id}/{job_id}.docx"
