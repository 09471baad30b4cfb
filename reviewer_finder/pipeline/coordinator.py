"""
Discovery coordinator.

The orchestration functions that:
1. Run the LLM analysis of a proposal (:func:`run_analysis`).
2. Build the enabled source adapters for this run.
3. Track A: verify every LLM suggestion against the sources (adapters queried
   concurrently per candidate, candidates bounded by a semaphore), then check
   conflicts of interest.
4. Track B: topic searches per source; senior authors become discovered
   candidates, COI-checked locally and given LLM reasoning.
5. Rank and deduplicate both tracks into one result.

Per-candidate failures are recorded in the run context and the run returns
everything else. The whole run honours ``config.run_timeout_seconds`` and the
context's cancel event.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

import httpx

from reviewer_finder.candidates import (
    Candidate,
    CandidateSource,
    ProposalAnalysis,
    PublicationRecord,
    RankResult,
    ReviewerSuggestion,
    SearchHints,
    SourceSearchResult,
)
from reviewer_finder.pipeline.context import CandidateFailure, DiscoveryRunContext, RunCancelledError
from reviewer_finder.pipeline.errors import record_candidate_error
from reviewer_finder.pipeline.events import (
    AnalysisCompleted,
    AnalysisStarted,
    CandidateVerified,
    DiscoveryCompleted,
    DiscoveryStarted,
    RunCancelled,
    SourceDegraded,
    TopicSearchCompleted,
)
from reviewer_finder.services.affiliation import most_common_affiliation
from reviewer_finder.services.analysis import analyze_proposal, generate_discovered_reasoning
from reviewer_finder.services.coi import detect_coi, detect_coi_with_remote
from reviewer_finder.services.error_tracker import StageError
from reviewer_finder.services.identity import is_excluded, normalize_name, strip_honorifics
from reviewer_finder.services.llm_provider import LLMProvider
from reviewer_finder.services.ranking import rank
from reviewer_finder.services.sources.base import SourceAdapter
from reviewer_finder.services.sources.pubmed import PubMedAdapter
from reviewer_finder.services.sources.registry import build_adapters, close_adapters
from reviewer_finder.services.verifier import verify_candidate

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    analysis: ProposalAnalysis
    ranking: RankResult = field(default_factory=RankResult)
    failures: list[CandidateFailure] = field(default_factory=list)
    degraded_sources: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal": {
                "title": self.analysis.title,
                "proposal_authors": list(self.analysis.proposal_authors),
                "institution": self.analysis.institution,
                "primary_research_area": self.analysis.primary_research_area,
                "keywords": list(self.analysis.keywords),
            },
            "verified": [candidate_to_dict(c) for c in self.ranking.verified],
            "discovered": [candidate_to_dict(c) for c in self.ranking.discovered],
            "unverified": [candidate_to_dict(c) for c in self.ranking.unverified],
            "ranked": [candidate_to_dict(c) for c in self.ranking.ranked],
            "failures": [
                {"name": f.candidate_name, "stage": f.stage, "severity": f.severity, "error": f.error}
                for f in self.failures
            ],
            "degraded_sources": dict(self.degraded_sources),
        }


def candidate_to_dict(c: Candidate) -> dict[str, Any]:
    v = c.verification
    coi = c.coi
    return {
        "name": c.name,
        "affiliation": c.affiliation,
        "source": c.source.value,
        "discovery_sources": list(c.discovery_sources),
        "expertise_areas": list(c.expertise_areas),
        "reasoning": c.reasoning,
        "seniority_estimate": c.seniority_estimate,
        "publication_count": len(c.publications),
        "publications": [
            {"title": p.title, "year": p.year, "source": p.source, "source_id": p.source_id, "url": p.url}
            for p in c.publications[:5]
        ],
        "confidence": c.confidence,
        "band": v.band if v else None,
        "warning": v.warning if v else None,
        "institution_mismatch": bool(v and v.institution_mismatch),
        "expertise_mismatch": bool(v and v.expertise_mismatch),
        "unverified_reason": c.unverified_reason,
        "has_institution_coi": bool(coi and coi.has_institution_coi),
        "has_coauthor_coi": bool(coi and coi.has_coauthor_coi),
        "coauthorships": [x.to_dict() for x in coi.coauthorships] if coi else [],
        "relevance_score": c.relevance_score,
        "composite_score": c.composite_score,
        "email": c.email,
        "website": c.website,
        "orcid": c.orcid,
    }


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

async def run_analysis(
    llm: LLMProvider,
    proposal_text: str,
    ctx: DiscoveryRunContext,
    *,
    additional_notes: str = "",
    excluded_names: Iterable[str] = (),
    reviewer_count: int = 12,
) -> ProposalAnalysis:
    """LLM analysis with start/complete events. Raises StageError("analysis") on failure."""
    await ctx.emit(AnalysisStarted(message="Analyzing proposal", user_message="Reading the proposal..."))
    analysis = await analyze_proposal(
        llm,
        proposal_text,
        additional_notes=additional_notes,
        excluded_names=excluded_names,
        reviewer_count=reviewer_count,
        timeout=ctx.config.llm_call_timeout_seconds,
    )
    query_count = sum(len(q) for q in analysis.search_queries.values())
    await ctx.emit(
        AnalysisCompleted(
            message=f"Analysis complete: {len(analysis.suggestions)} suggestions, {query_count} queries",
            user_message=f"Found {len(analysis.suggestions)} suggested reviewers to check.",
            suggestion_count=len(analysis.suggestions),
            query_count=query_count,
        )
    )
    return analysis


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

async def run_discovery(
    analysis: ProposalAnalysis,
    ctx: DiscoveryRunContext,
    *,
    llm: LLMProvider | None = None,
    adapters: dict[str, SourceAdapter] | None = None,
    client: httpx.AsyncClient | None = None,
    excluded_names: Iterable[str] = (),
) -> DiscoveryResult:
    """Top-level discovery coordinator.

    Raises RunCancelledError when the context is cancelled and
    StageError("discovery") when the run times out.
    """
    config = ctx.config
    owns_adapters = adapters is None
    if adapters is None:
        adapters = build_adapters(
            config.enabled_sources,
            ctx.credentials,
            client=client,
            timeout=config.source_timeout_seconds,
            years_lookback=config.years_lookback,
        )
    excluded = [*analysis.excluded_names, *excluded_names]

    logger.info(
        "[coordinator] run %s: %s suggestions, sources=%s",
        ctx.run_id, len(analysis.suggestions), ",".join(adapters),
    )
    await ctx.emit(
        DiscoveryStarted(
            message=f"Discovery started ({len(analysis.suggestions)} suggestions, {len(adapters)} sources)",
            user_message=f"Checking {len(analysis.suggestions)} suggested reviewers against {len(adapters)} databases.",
            candidate_count=len(analysis.suggestions),
            sources=tuple(adapters),
        )
    )

    timeout = config.run_timeout_seconds
    try:
        coro = _run_cancellable(ctx, _discover(ctx, analysis, adapters, llm, excluded))
        if timeout:
            ranking = await asyncio.wait_for(coro, timeout=timeout)
        else:
            ranking = await coro
    except asyncio.TimeoutError as exc:
        logger.error("[coordinator] run %s timed out after %ss", ctx.run_id, timeout)
        raise StageError("discovery", f"Discovery timed out after {timeout}s") from exc
    except RunCancelledError:
        logger.info("[coordinator] run %s cancelled", ctx.run_id)
        await ctx.emit(RunCancelled(message="Discovery cancelled", user_message="Search stopped.", stage="discovery"))
        raise
    finally:
        if owns_adapters:
            await close_adapters(adapters)

    result = DiscoveryResult(
        analysis=analysis,
        ranking=ranking,
        failures=list(ctx.failures),
        degraded_sources=dict(ctx.degraded_sources),
    )
    await ctx.emit(
        DiscoveryCompleted(
            message=(
                f"Discovery complete: {len(ranking.verified)} verified, {len(ranking.discovered)} discovered, "
                f"{len(ranking.unverified)} unverified, {len(ctx.failures)} failed"
            ),
            user_message=f"Done. {len(ranking.ranked)} reviewer candidates ranked.",
            verified_count=len(ranking.verified),
            discovered_count=len(ranking.discovered),
            unverified_count=len(ranking.unverified),
            failed_count=len(ctx.failures),
        )
    )
    logger.info("[coordinator] run %s complete: %s ranked", ctx.run_id, len(ranking.ranked))
    return result


async def _run_cancellable(ctx: DiscoveryRunContext, coro):
    """Await *coro*, cancelling it as soon as the context's cancel event is set."""
    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(ctx.cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise RunCancelledError(f"run {ctx.run_id} cancelled")
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()


async def _discover(
    ctx: DiscoveryRunContext,
    analysis: ProposalAnalysis,
    adapters: dict[str, SourceAdapter],
    llm: LLMProvider | None,
    excluded: list[str],
) -> RankResult:
    suggestions, discovered = await asyncio.gather(
        _verify_suggestions(ctx, analysis, adapters),
        _discover_independent(ctx, analysis, adapters, llm, excluded),
    )
    ctx.raise_if_cancelled()
    return rank(
        suggestions,
        discovered,
        excluded,
        proposal_authors=analysis.proposal_authors,
        proposal_keywords=analysis.keywords,
        config=ctx.config,
    )


async def _note_degraded(ctx: DiscoveryRunContext, result: SourceSearchResult, candidate_name: str | None) -> None:
    first = ctx.record_degraded_source(result.source, result.error or "")
    if first:
        logger.warning("[coordinator] source %s degraded: %s", result.source, result.error)
    await ctx.emit(
        SourceDegraded(
            message=f"{result.source} unavailable: {result.error}",
            user_message=f"{result.source} did not respond; continuing without it.",
            source=result.source,
            error=result.error or "",
            candidate_name=candidate_name,
        )
    )


def _dedupe_records(records: Iterable[PublicationRecord]) -> list[PublicationRecord]:
    seen: dict[str, PublicationRecord] = {}
    for record in records:
        seen.setdefault(record.record_key, record)
    return list(seen.values())


# ---------------------------------------------------------------------------
# Track A: LLM suggestions
# ---------------------------------------------------------------------------

async def _verify_suggestions(
    ctx: DiscoveryRunContext,
    analysis: ProposalAnalysis,
    adapters: dict[str, SourceAdapter],
) -> list[Candidate]:
    sem = asyncio.Semaphore(max(1, ctx.config.candidate_concurrency))
    results = await asyncio.gather(
        *(_process_suggestion(ctx, analysis, adapters, s, sem) for s in analysis.suggestions)
    )
    return [c for c in results if c is not None]


async def _process_suggestion(
    ctx: DiscoveryRunContext,
    analysis: ProposalAnalysis,
    adapters: dict[str, SourceAdapter],
    suggestion: ReviewerSuggestion,
    sem: asyncio.Semaphore,
) -> Candidate | None:
    config = ctx.config
    candidate = Candidate.from_suggestion(suggestion)
    async with sem:
        ctx.raise_if_cancelled()
        hints = SearchHints(affiliation=candidate.affiliation, expertise_keywords=candidate.expertise_areas)
        results = await asyncio.gather(
            *(a.search(candidate.name, hints, config.max_results_per_source) for a in adapters.values())
        )
        records: list[PublicationRecord] = []
        for result in results:
            if result.degraded:
                await _note_degraded(ctx, result, candidate.name)
            records.extend(result.records)

        try:
            candidate = verify_candidate(candidate, _dedupe_records(records), config)
        except Exception as exc:
            await record_candidate_error(ctx, candidate.name, exc, context_label="verification")
            return None

        pubmed = adapters.get("pubmed") if config.remote_coauthor_check else None
        try:
            coi = await detect_coi_with_remote(
                candidate,
                analysis.proposal_authors,
                analysis.institution,
                pubmed if isinstance(pubmed, PubMedAdapter) and candidate.verification else None,
                evidence_cap=config.coi_evidence_cap,
            )
        except Exception as exc:
            await record_candidate_error(ctx, candidate.name, exc, context_label="coi")
            return None

    candidate = replace(candidate, coi=coi)
    v = candidate.verification
    await ctx.emit(
        CandidateVerified(
            message=(
                f"{candidate.name}: {len(candidate.publications)} pubs, "
                f"confidence={v.confidence if v else None}, band={v.band if v else 'unverified'}"
            ),
            user_message=f"Checked {candidate.name}.",
            candidate_name=candidate.name,
            confidence=v.confidence if v else None,
            band=v.band if v else None,
            publication_count=len(candidate.publications),
            has_coi=coi.has_coi,
        )
    )
    return candidate


# ---------------------------------------------------------------------------
# Track B: independent discovery
# ---------------------------------------------------------------------------

def _queries_for(adapter: SourceAdapter, analysis: ProposalAnalysis) -> list[str]:
    queries = list(analysis.search_queries.get(adapter.name) or ())
    if queries:
        return queries
    if not adapter.is_relevant(analysis.primary_research_area, analysis.keywords):
        logger.info("[coordinator] %s not relevant to %r, skipping topic search", adapter.name, analysis.primary_research_area)
        return []
    generated = adapter.generate_query(analysis.primary_research_area)
    return [generated] if generated else []


async def _topic_search(
    ctx: DiscoveryRunContext,
    adapter: SourceAdapter,
    queries: list[str],
) -> list[PublicationRecord]:
    records: list[PublicationRecord] = []
    for query in queries:
        ctx.raise_if_cancelled()
        result = await adapter.search_topic_safe(query, ctx.config.discovery_results_per_query)
        if result.degraded:
            await _note_degraded(ctx, result, None)
            continue
        records.extend(result.records)
        await ctx.emit(
            TopicSearchCompleted(
                message=f"{adapter.name} {query[:60]!r}: {len(result.records)} records",
                user_message=f"Searched {adapter.name} for related work.",
                source=adapter.name,
                query=query,
                record_count=len(result.records),
            )
        )
    return records


def candidates_from_records(
    records: Iterable[PublicationRecord],
    blocked_names: Iterable[str] = (),
) -> list[Candidate]:
    """Senior (last) authors of topic-search results, one candidate per normalized name."""
    blocked = [n for n in blocked_names if n]
    by_name: dict[str, dict[str, Any]] = {}
    for record in _dedupe_records(records):
        for author in record.authors:
            if not author.is_senior:
                continue
            name = strip_honorifics(author.name)
            key = normalize_name(name)
            if not key or len(key.split()) < 2 or is_excluded(name, blocked):
                continue
            entry = by_name.setdefault(key, {"names": Counter(), "pubs": [], "affiliations": [], "sources": []})
            entry["names"][name] += 1
            entry["pubs"].append(record)
            entry["affiliations"].extend(author.affiliations)
            if record.source not in entry["sources"]:
                entry["sources"].append(record.source)

    candidates = []
    for entry in by_name.values():
        name = max(entry["names"], key=lambda n: (entry["names"][n], len(n)))
        candidates.append(
            Candidate(
                name=name,
                affiliation=most_common_affiliation(entry["affiliations"]),
                source=CandidateSource.DATABASE_DISCOVERY,
                discovery_sources=tuple(entry["sources"]),
                publications=tuple(entry["pubs"]),
            )
        )
    candidates.sort(key=lambda c: (-len(c.publications), c.name))
    return candidates


async def _discover_independent(
    ctx: DiscoveryRunContext,
    analysis: ProposalAnalysis,
    adapters: dict[str, SourceAdapter],
    llm: LLMProvider | None,
    excluded: list[str],
) -> list[Candidate]:
    config = ctx.config
    searches = [(a, _queries_for(a, analysis)) for a in adapters.values()]
    batches = await asyncio.gather(*(_topic_search(ctx, a, q) for a, q in searches if q))
    records = [r for batch in batches for r in batch]

    blocked = [*excluded, *analysis.proposal_authors]
    found = candidates_from_records(records, blocked)

    checked: list[Candidate] = []
    for candidate in found:
        try:
            coi = detect_coi(
                candidate, analysis.proposal_authors, analysis.institution, evidence_cap=config.coi_evidence_cap
            )
        except Exception as exc:
            await record_candidate_error(ctx, candidate.name, exc, context_label="coi")
            continue
        checked.append(replace(candidate, coi=coi))

    eligible = [c for c in checked if len(c.publications) >= config.min_publications]
    rest = [c for c in checked if len(c.publications) < config.min_publications]
    if llm is not None and eligible:
        ctx.raise_if_cancelled()
        eligible = await generate_discovered_reasoning(
            llm, analysis, eligible, timeout=config.llm_call_timeout_seconds
        )
    logger.info(
        "[coordinator] independent discovery: %s records, %s senior authors, %s eligible",
        len(records), len(found), len(eligible),
    )
    return [*eligible, *rest]
