"""
Signal bus connecting intake, the orchestrator and the health monitor.

Delivery is at-least-once; every handler is written to be idempotent.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum

from doc_translator.database import Database

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    """Messages understood by the worker."""

    START = "start"
    PROCESS_CHUNK = "process-chunk"
    ASSEMBLE = "assemble"
    INGEST = "ingest"


@dataclass(frozen=True)
class Signal:
    """One bus message."""

    kind: SignalKind
    job_id: str
    owner_id: str | None = None
    chunk_order: int | None = None

    @classmethod
    def start(cls, job_id: str, owner_id: str | None = None) -> Signal:
        return cls(SignalKind.START, job_id, owner_id)

    @classmethod
    def process_chunk(cls, job_id: str, order: int, owner_id: str | None = None) -> Signal:
        return cls(SignalKind.PROCESS_CHUNK, job_id, owner_id, order)

    @classmethod
    def assemble(cls, job_id: str, owner_id: str | None = None) -> Signal:
        return cls(SignalKind.ASSEMBLE, job_id, owner_id)


class SignalBus(ABC):
    """Abstract signal transport."""

    @abstractmethod
    def publish_batch(self, signals: list[Signal]) -> int:
        """Queue several signals at once; returns how many were queued."""
        ...

    @abstractmethod
    def receive(self, max_messages: int = 10) -> list[Signal]:
        """Take up to ``max_messages`` signals off the bus."""
        ...

    @abstractmethod
    def pending(self) -> int:
        ...

    def publish(self, signal: Signal) -> None:
        self.publish_batch([signal])


class InMemorySignalBus(SignalBus):
    """Process-local FIFO bus."""

    def __init__(self) -> None:
        self._queue: deque[Signal] = deque()
        self.published: list[Signal] = []

    def publish_batch(self, signals: list[Signal]) -> int:
        self._queue.extend(signals)
        self.published.extend(signals)
        for signal in signals:
            logger.debug("Queued %s for job %s", signal.kind.value, signal.job_id)
        return len(signals)

    def receive(self, max_messages: int = 10) -> list[Signal]:
        batch = []
        while self._queue and len(batch) < max_messages:
            batch.append(self._queue.popleft())
        return batch

    def pending(self) -> int:
        return len(self._queue)


class DatabaseSignalBus(SignalBus):
    """Durable bus stored in the DuckDB ``signals`` table."""

    def __init__(self, db: Database):
        self.db = db

    def publish_batch(self, signals: list[Signal]) -> int:
        if not signals:
            return 0
        return self.db.enqueue_signals(
            (s.kind.value, s.job_id, s.owner_id, s.chunk_order) for s in signals
        )

    def receive(self, max_messages: int = 10) -> list[Signal]:
        records = self.db.claim_signals(max_messages)
        return [
            Signal(SignalKind(r.kind), r.job_id, r.owner_id, r.chunk_order) for r in records
        ]

    def pending(self) -> int:
        return self.db.pending_signal_count()
