"""
Discovery error helpers.

Centralises the "classify -> log -> record failure -> emit CandidateFailed"
pattern so verification, COI and enrichment all report per-candidate
failures the same way. Never raises.
"""
from __future__ import annotations

import asyncio
import json
import logging

from reviewer_finder.pipeline.context import CandidateFailure, DiscoveryRunContext
from reviewer_finder.pipeline.events import CandidateFailed
from reviewer_finder.services.error_tracker import StageError, classify_error
from reviewer_finder.services.sources.base import SourceUnavailableError

logger = logging.getLogger(__name__)


def _error_type(error: Exception | str, context_label: str) -> str:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(error, json.JSONDecodeError):
        return "json_parse_error"
    if isinstance(error, SourceUnavailableError):
        return "source_error"
    if context_label == "verification":
        return "verification_error"
    if context_label == "coi":
        return "coi_error"
    if context_label == "enrichment":
        return "enrichment_error"
    if context_label == "persistence":
        return "persistence_error"
    if context_label == "analysis":
        return "llm_failure"
    return "other"


async def record_candidate_error(
    ctx: DiscoveryRunContext,
    candidate_name: str,
    error: Exception | str,
    *,
    context_label: str = "other",
) -> CandidateFailure:
    """Classify, log and record a candidate-level failure, then emit ``CandidateFailed``."""
    err_str = str(error) or type(error).__name__

    # --- Classify ---
    error_type = _error_type(error, context_label)
    exc = error if isinstance(error, Exception) else StageError("discovery", err_str)
    severity, stage = classify_error(error_type, exc)

    # --- Log ---
    log = logger.error if severity == "critical" else logger.warning
    log("[%s] %s failed at %s (%s): %s", ctx.run_id, candidate_name, stage, error_type, err_str[:300])

    # --- Record in context ---
    failure = CandidateFailure(
        candidate_name=candidate_name,
        stage=stage,
        severity=severity,
        error_type=error_type,
        error=err_str[:500],
    )
    ctx.record_failure(failure)

    # --- Emit event ---
    try:
        await ctx.emit(
            CandidateFailed(
                message=f"{candidate_name} failed at {stage}: {err_str[:80]}",
                user_message=f"{candidate_name} could not be checked; continuing with the others.",
                candidate_name=candidate_name,
                stage=stage,
                severity=severity,
                error_type=error_type,
            )
        )
    except Exception as emit_exc:
        logger.error("[errors] emit candidate_failed: %s", emit_exc, exc_info=True)
    return failure
