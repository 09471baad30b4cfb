"""
Typed progress events.

Every event carries *message* (technical) and *user_message* (user-facing).
``to_dict()`` gives the wire form used by the SSE stream: ``{"event": <type>,
"data": {...}}``. Events are a convenience for UIs; nothing in the pipeline
depends on whether anyone listens.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class PipelineEvent:
    message: str = ""
    user_message: str = ""

    event_type = "event"

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event_type, "data": asdict(self)}


@dataclass(frozen=True)
class AnalysisStarted(PipelineEvent):
    event_type = "analysis_started"


@dataclass(frozen=True)
class AnalysisCompleted(PipelineEvent):
    suggestion_count: int = 0
    query_count: int = 0

    event_type = "analysis_completed"


@dataclass(frozen=True)
class DiscoveryStarted(PipelineEvent):
    candidate_count: int = 0
    sources: tuple[str, ...] = ()

    event_type = "discovery_started"


@dataclass(frozen=True)
class SourceDegraded(PipelineEvent):
    source: str = ""
    error: str = ""
    candidate_name: str | None = None

    event_type = "source_degraded"


@dataclass(frozen=True)
class CandidateVerified(PipelineEvent):
    candidate_name: str = ""
    confidence: float | None = None
    band: str | None = None
    publication_count: int = 0
    has_coi: bool = False

    event_type = "candidate_verified"


@dataclass(frozen=True)
class CandidateFailed(PipelineEvent):
    candidate_name: str = ""
    stage: str = ""
    severity: str = ""
    error_type: str = ""

    event_type = "candidate_failed"


@dataclass(frozen=True)
class TopicSearchCompleted(PipelineEvent):
    source: str = ""
    query: str = ""
    record_count: int = 0

    event_type = "topic_search_completed"


@dataclass(frozen=True)
class DiscoveryCompleted(PipelineEvent):
    verified_count: int = 0
    discovered_count: int = 0
    unverified_count: int = 0
    failed_count: int = 0

    event_type = "discovery_completed"


@dataclass(frozen=True)
class EnrichmentTierCompleted(PipelineEvent):
    candidate_name: str = ""
    tier: str = ""
    found: bool = False

    event_type = "enrichment_tier_completed"


@dataclass(frozen=True)
class EnrichmentProgress(PipelineEvent):
    completed: int = 0
    total: int = 0
    candidate_name: str = ""

    event_type = "enrichment_progress"


@dataclass(frozen=True)
class RunCancelled(PipelineEvent):
    stage: str = ""

    event_type = "run_cancelled"
