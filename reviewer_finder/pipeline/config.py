"""
Discovery pipeline configuration.

Single source of truth for pipeline-level defaults and tunables. The core
never reads the environment itself: callers build a :class:`PipelineConfig`
(usually via :func:`load_pipeline_config`) and :class:`Credentials`, then pass
them into each run.

Verification thresholds and blend weights were set empirically; they are
tunables, not invariants. Only the three bands (low / weak / accepted) and
the independent mismatch flags are fixed behaviour.
"""
from __future__ import annotations

import os
from dataclasses import dataclass

ALL_SOURCES: tuple[str, ...] = ("pubmed", "arxiv", "biorxiv", "chemrxiv")
ALL_TIERS: tuple[str, ...] = ("pubmed", "orcid", "claude_search", "serp")


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable pipeline configuration."""

    # --- Verification bands ---
    low_confidence_threshold: float = 0.35
    accept_confidence_threshold: float = 0.65

    # --- Confidence blend weights (normalized at use) ---
    weight_name_specificity: float = 0.2
    weight_affiliation: float = 0.4
    weight_expertise: float = 0.4

    # --- Evidence ---
    min_publications: int = 3
    years_lookback: int = 5
    coi_evidence_cap: int = 3  # recent titles kept per coauthorship
    max_results_per_source: int = 20
    discovery_results_per_query: int = 50

    # --- Composite ranking weights ---
    rank_weight_no_coi: float = 0.4
    rank_weight_confidence: float = 0.3
    rank_weight_seniority: float = 0.15
    rank_weight_llm_suggestion: float = 0.1
    rank_weight_relevance: float = 0.05
    discovered_default_confidence: float = 0.5

    # --- Sources ---
    enabled_sources: tuple[str, ...] = ALL_SOURCES
    source_timeout_seconds: float = 30.0
    remote_coauthor_check: bool = True

    # --- Concurrency / production knobs ---
    candidate_concurrency: int = 4
    run_timeout_seconds: float | None = None  # None = no timeout
    llm_call_timeout_seconds: float | None = None

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - [REVIEWERS] - %(levelname)s - %(message)s"

    def band_for(self, confidence: float) -> str:
        if confidence < self.low_confidence_threshold:
            return "low"
        if confidence < self.accept_confidence_threshold:
            return "weak"
        return "accepted"


@dataclass(frozen=True)
class Credentials:
    """API keys for one invocation. Missing keys disable (or slow) the matching feature."""

    ncbi_api_key: str | None = None
    ncbi_email: str | None = None  # NCBI asks heavy users to identify themselves
    orcid_client_id: str | None = None
    orcid_client_secret: str | None = None
    serp_api_key: str | None = None

    @property
    def has_orcid(self) -> bool:
        return bool(self.orcid_client_id and self.orcid_client_secret)


@dataclass(frozen=True)
class EnrichmentOptions:
    enabled_tiers: tuple[str, ...] = ("pubmed", "orcid")
    max_email_age_years: int = 2
    persist: bool = True


def load_pipeline_config() -> PipelineConfig:
    """Build PipelineConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    def _bool(key: str, default: bool) -> bool:
        raw = os.getenv(key)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes")

    def _opt_float(key: str) -> float | None:
        raw = os.getenv(key)
        if not raw:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    def _sources(key: str) -> tuple[str, ...]:
        raw = os.getenv(key)
        if not raw:
            return ALL_SOURCES
        picked = tuple(s.strip().lower() for s in raw.split(",") if s.strip().lower() in ALL_SOURCES)
        return picked or ALL_SOURCES

    return PipelineConfig(
        low_confidence_threshold=_float("RF_LOW_CONFIDENCE_THRESHOLD", 0.35),
        accept_confidence_threshold=_float("RF_ACCEPT_CONFIDENCE_THRESHOLD", 0.65),
        weight_name_specificity=_float("RF_WEIGHT_NAME", 0.2),
        weight_affiliation=_float("RF_WEIGHT_AFFILIATION", 0.4),
        weight_expertise=_float("RF_WEIGHT_EXPERTISE", 0.4),
        min_publications=_int("RF_MIN_PUBLICATIONS", 3),
        years_lookback=_int("RF_YEARS_LOOKBACK", 5),
        coi_evidence_cap=_int("RF_COI_EVIDENCE_CAP", 3),
        max_results_per_source=_int("RF_MAX_RESULTS_PER_SOURCE", 20),
        discovery_results_per_query=_int("RF_DISCOVERY_RESULTS_PER_QUERY", 50),
        rank_weight_no_coi=_float("RF_RANK_WEIGHT_NO_COI", 0.4),
        rank_weight_confidence=_float("RF_RANK_WEIGHT_CONFIDENCE", 0.3),
        rank_weight_seniority=_float("RF_RANK_WEIGHT_SENIORITY", 0.15),
        rank_weight_llm_suggestion=_float("RF_RANK_WEIGHT_LLM", 0.1),
        rank_weight_relevance=_float("RF_RANK_WEIGHT_RELEVANCE", 0.05),
        discovered_default_confidence=_float("RF_DISCOVERED_DEFAULT_CONFIDENCE", 0.5),
        enabled_sources=_sources("RF_ENABLED_SOURCES"),
        source_timeout_seconds=_float("RF_SOURCE_TIMEOUT", 30.0),
        remote_coauthor_check=_bool("RF_REMOTE_COAUTHOR_CHECK", True),
        candidate_concurrency=_int("RF_CANDIDATE_CONCURRENCY", 4),
        run_timeout_seconds=_opt_float("RF_RUN_TIMEOUT"),
        llm_call_timeout_seconds=_opt_float("RF_LLM_CALL_TIMEOUT"),
        log_level=os.getenv("RF_LOG_LEVEL", "INFO"),
        log_format=os.getenv(
            "RF_LOG_FORMAT",
            "%(asctime)s - [REVIEWERS] - %(levelname)s - %(message)s",
        ),
    )


def credentials_from_env() -> Credentials:
    """Credentials from reviewer_finder.config (which loads .env). Edge-of-system helper."""
    from reviewer_finder.config import (
        NCBI_API_KEY,
        NCBI_EMAIL,
        ORCID_CLIENT_ID,
        ORCID_CLIENT_SECRET,
        SERP_API_KEY,
    )
    return Credentials(
        ncbi_api_key=NCBI_API_KEY,
        ncbi_email=NCBI_EMAIL,
        orcid_client_id=ORCID_CLIENT_ID,
        orcid_client_secret=ORCID_CLIENT_SECRET,
        serp_api_key=SERP_API_KEY,
    )
