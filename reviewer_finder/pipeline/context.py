"""
Discovery run context.

Run-scoped state shared by the coordinator, the enrichment batch and the
error helpers: the configuration for this invocation, an optional event
callback, the cancellation flag and the per-candidate failure list.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import uuid4

from reviewer_finder.pipeline.config import Credentials, PipelineConfig
from reviewer_finder.pipeline.events import PipelineEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], "Awaitable[None] | None"]


class RunCancelledError(Exception):
    """The run's cancel event was set; partial results are discarded."""


@dataclass(frozen=True)
class CandidateFailure:
    candidate_name: str
    stage: str
    severity: str
    error_type: str
    error: str


@dataclass
class DiscoveryRunContext:
    """Holds run-scoped state for one discovery or enrichment pass."""

    config: PipelineConfig = field(default_factory=PipelineConfig)
    credentials: Credentials = field(default_factory=Credentials)
    on_event: EventCallback | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    run_id: str = field(default_factory=lambda: uuid4().hex[:12])

    failures: list[CandidateFailure] = field(default_factory=list)
    degraded_sources: dict[str, str] = field(default_factory=dict)
    events_emitted: int = 0

    # ------------------------------------------------------------------ emit
    async def emit(self, event: PipelineEvent) -> None:
        """Hand *event* to the callback. Callback errors are logged, never raised."""
        self.events_emitted += 1
        logger.debug("[%s] emit %s: %s", self.run_id, event.event_type, event.message[:120])
        if self.on_event is None:
            return
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("[%s] event callback failed for %s: %s", self.run_id, event.event_type, exc, exc_info=True)

    # --------------------------------------------------------- cancellation
    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelledError(f"run {self.run_id} cancelled")

    # ------------------------------------------------------ failure bookkeeping
    def record_failure(self, failure: CandidateFailure) -> None:
        self.failures.append(failure)

    def record_degraded_source(self, source: str, error: str) -> bool:
        """Remember a degraded source; True the first time it is seen in this run."""
        first = source not in self.degraded_sources
        self.degraded_sources.setdefault(source, error)
        return first

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "failed_candidates": [f.candidate_name for f in self.failures],
            "degraded_sources": dict(self.degraded_sources),
            "cancelled": self.cancelled,
        }
