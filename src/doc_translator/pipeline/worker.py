"""
Signal consumer.

Pulls batches off the bus and routes them to the orchestrator. Chunk work in
a batch runs concurrently under a semaphore; other signals run in order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from doc_translator.pipeline.orchestrator import Orchestrator
from doc_translator.signals import Signal, SignalBus, SignalKind

logger = logging.getLogger(__name__)

IngestHandler = Callable[[Signal], Awaitable[None]]


@dataclass
class DrainStats:
    """Counters for one ``drain`` call."""

    handled: int = 0
    errors: int = 0
    batches: int = 0


class Worker:
    """Runs orchestrator steps for signals taken from a bus."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        bus: SignalBus | None = None,
        *,
        concurrent_chunks: int | None = None,
        batch_size: int = 10,
        ingest_handler: IngestHandler | None = None,
    ):
        self.orchestrator = orchestrator
        self.bus = bus or orchestrator.bus
        processing = orchestrator.settings.processing
        self.concurrent_chunks = concurrent_chunks or processing.concurrent_chunks
        self.poll_interval = processing.poll_interval_seconds
        self.batch_size = batch_size
        self.ingest_handler = ingest_handler

    async def _handle(self, signal: Signal) -> bool:
        try:
            if signal.kind == SignalKind.INGEST:
                if self.ingest_handler is None:
                    logger.warning("No ingestion handler; dropping ingest signal for %s", signal.job_id)
                    return True
                await self.ingest_handler(signal)
            else:
                await self.orchestrator.handle(signal)
            return True
        except Exception:
            # A failing signal must not stop the worker; the health monitor
            # picks up whatever it left behind
            logger.exception("Error handling %s for job %s", signal.kind.value, signal.job_id)
            return False

    async def process_batch(self, signals: list[Signal]) -> DrainStats:
        """Handle one batch: chunk signals concurrently, the rest in order."""
        stats = DrainStats(batches=1)
        chunk_signals = [s for s in signals if s.kind == SignalKind.PROCESS_CHUNK]
        other_signals = [s for s in signals if s.kind != SignalKind.PROCESS_CHUNK]

        for signal in other_signals:
            ok = await self._handle(signal)
            stats.handled += 1
            stats.errors += 0 if ok else 1

        if chunk_signals:
            semaphore = asyncio.Semaphore(self.concurrent_chunks)

            async def run(signal: Signal) -> bool:
                async with semaphore:
                    return await self._handle(signal)

            results = await asyncio.gather(*(run(s) for s in chunk_signals))
            stats.handled += len(results)
            stats.errors += sum(1 for ok in results if not ok)
        return stats

    async def drain(self, max_batches: int | None = None) -> DrainStats:
        """Process signals until the bus is empty or ``max_batches`` is hit."""
        total = DrainStats()
        while max_batches is None or total.batches < max_batches:
            signals = self.bus.receive(self.batch_size)
            if not signals:
                break
            stats = await self.process_batch(signals)
            total.handled += stats.handled
            total.errors += stats.errors
            total.batches += 1
        if total.handled:
            logger.info(
                "Drained %d signal(s) in %d batch(es), %d error(s)",
                total.handled,
                total.batches,
                total.errors,
            )
        return total

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Poll the bus until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info("Worker started (concurrency %d)", self.concurrent_chunks)
        while not stop.is_set():
            await self.drain()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Worker stopped")
