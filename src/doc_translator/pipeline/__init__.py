"""Translation pipeline: orchestrator state machine, worker and health monitor."""

from doc_translator.pipeline.health import HEALTH_ACTOR, HealthMonitor, HealthReport, JobAssessment
from doc_translator.pipeline.orchestrator import (
    Orchestrator,
    artifact_keys,
    build_chunk_bundle,
    chunk_to_dict,
    truncate_context,
    truncate_message,
)
from doc_translator.pipeline.worker import DrainStats, Worker

__all__ = [
    # Orchestrator
    "Orchestrator",
    "artifact_keys",
    "build_chunk_bundle",
    "chunk_to_dict",
    "truncate_context",
    "truncate_message",
    # Worker
    "DrainStats",
    "Worker",
    # Health
    "HEALTH_ACTOR",
    "HealthMonitor",
    "HealthReport",
    "JobAssessment",
]
