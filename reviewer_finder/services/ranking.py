"""Merge LLM suggestions with independently discovered candidates, dedupe and rank."""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Iterable

from reviewer_finder.candidates import (
    Candidate,
    CandidateSource,
    COIResult,
    Coauthorship,
    PublicationRecord,
    RankResult,
)
from reviewer_finder.pipeline.config import PipelineConfig
from reviewer_finder.services.identity import are_names_similar, is_excluded

logger = logging.getLogger(__name__)

SENIORITY_SCORES: tuple[tuple[str, float], ...] = (
    # Checked in order; rank qualifiers before the bare title
    ("assistant", 0.3),
    ("postdoc", 0.3),
    ("early", 0.3),
    ("associate", 0.6),
    ("mid", 0.6),
    ("senior", 1.0),
    ("full", 1.0),
    ("professor", 1.0),
)


def seniority_score(estimate: str | None) -> float:
    """Map a free-text seniority estimate to 0..1 (0.5 when unknown)."""
    if not estimate:
        return 0.5
    lower = estimate.lower()
    for key, score in SENIORITY_SCORES:
        if key in lower:
            return score
    return 0.5


def count_keyword_matches(candidate: Candidate, proposal_keywords: Iterable[str]) -> int:
    text = " ".join(
        [*(p.title for p in candidate.publications), *candidate.expertise_areas, candidate.reasoning]
    ).lower()
    return sum(1 for kw in proposal_keywords if kw and kw.lower() in text)


def relevance_points(candidate: Candidate) -> float:
    """Point score (0..100) used for display and as a small composite term."""
    score = 0.0
    if candidate.is_llm_suggestion:
        score += 25
    score += min(20, len(candidate.publications) * 5)
    if candidate.h_index:
        score += min(20, candidate.h_index)
    if candidate.total_citations:
        score += min(15, math.log10(candidate.total_citations + 1) * 5)
    if candidate.affiliation:
        score += 10
    score += min(10, len(candidate.discovery_sources) * 5)
    score += min(10, candidate.keyword_matches * 3)
    return round(score, 1)


def composite_score(candidate: Candidate, config: PipelineConfig) -> float:
    has_coi = bool(candidate.coi and candidate.coi.has_coi)
    confidence = candidate.confidence
    if confidence is None:
        confidence = config.discovered_default_confidence
    terms = (
        (config.rank_weight_no_coi, 0.0 if has_coi else 1.0),
        (config.rank_weight_confidence, confidence),
        (config.rank_weight_seniority, seniority_score(candidate.seniority_estimate)),
        (config.rank_weight_llm_suggestion, 1.0 if candidate.is_llm_suggestion else 0.0),
        (config.rank_weight_relevance, (candidate.relevance_score or 0.0) / 100),
    )
    total = sum(w for w, _ in terms) or 1.0
    return round(sum(w * v for w, v in terms) / total, 4)


# ---------------------------------------------------------------------------
# Grouping / merging
# ---------------------------------------------------------------------------

def group_by_name_similarity(candidates: Iterable[Candidate]) -> list[list[Candidate]]:
    """Greedy grouping: each candidate joins the first group whose lead it resembles."""
    groups: list[list[Candidate]] = []
    for candidate in candidates:
        for group in groups:
            if are_names_similar(group[0].name, candidate.name):
                group.append(candidate)
                break
        else:
            groups.append([candidate])
    return groups


def _union_publications(*lists: Iterable[PublicationRecord]) -> tuple[PublicationRecord, ...]:
    seen: dict[str, PublicationRecord] = {}
    for pubs in lists:
        for pub in pubs:
            seen.setdefault(pub.record_key, pub)
    return tuple(seen.values())


def _union(*values: Iterable[str]) -> tuple[str, ...]:
    out: list[str] = []
    for seq in values:
        for v in seq:
            if v and v not in out:
                out.append(v)
    return tuple(out)


def merge_coi(a: COIResult | None, b: COIResult | None) -> COIResult | None:
    """Union of two COI results; a flag set on either side stays set."""
    if a is None or b is None:
        return a or b
    by_author: dict[str, Coauthorship] = {c.proposal_author: c for c in a.coauthorships}
    for c in b.coauthorships:
        existing = by_author.get(c.proposal_author)
        if existing is None:
            by_author[c.proposal_author] = c
            continue
        keys = _union(existing.paper_keys, c.paper_keys)
        cap = max(len(existing.recent_papers), len(c.recent_papers))
        by_author[c.proposal_author] = Coauthorship(
            proposal_author=c.proposal_author,
            paper_count=max(len(keys), existing.paper_count, c.paper_count),
            recent_papers=_union(existing.recent_papers, c.recent_papers)[:cap],
            paper_keys=keys,
        )
    return COIResult(
        has_institution_coi=a.has_institution_coi or b.has_institution_coi,
        has_coauthor_coi=a.has_coauthor_coi or b.has_coauthor_coi,
        coauthorships=tuple(by_author.values()),
    )


def merge_group(group: list[Candidate]) -> Candidate:
    """Collapse candidates that are probably one person into a single record."""
    if len(group) == 1:
        return group[0]
    by_evidence = sorted(group, key=lambda c: len(c.publications), reverse=True)
    best = by_evidence[0]
    coi = None
    for c in group:
        coi = merge_coi(coi, c.coi)
    return replace(
        best,
        name=max((c.name for c in group), key=len),
        affiliation=next((c.affiliation for c in by_evidence if c.affiliation), None),
        department=next((c.department for c in by_evidence if c.department), None),
        discovery_sources=_union(*(c.discovery_sources for c in group)),
        expertise_areas=_union(*(c.expertise_areas for c in group)),
        reasoning=max((c.reasoning for c in group), key=len),
        seniority_estimate=next((c.seniority_estimate for c in group if c.seniority_estimate), None),
        publications=_union_publications(*(c.publications for c in group)),
        coi=coi,
        keyword_matches=max(c.keyword_matches for c in group),
        h_index=max((c.h_index for c in group if c.h_index is not None), default=None),
        total_citations=max((c.total_citations for c in group if c.total_citations is not None), default=None),
    )


def fold_into(primary: Candidate, other: Candidate) -> Candidate:
    """Attach a discovered duplicate's evidence to a verified suggestion."""
    return replace(
        primary,
        discovery_sources=_union(primary.discovery_sources, other.discovery_sources),
        publications=_union_publications(primary.publications, other.publications),
        coi=merge_coi(primary.coi, other.coi),
        affiliation=primary.affiliation or other.affiliation,
    )


# ---------------------------------------------------------------------------
# Rank
# ---------------------------------------------------------------------------

def _sort_key(candidate: Candidate) -> tuple:
    return (-(candidate.composite_score or 0.0), 0 if candidate.is_llm_suggestion else 1, candidate.name.lower())


def rank(
    claude_suggestions: Iterable[Candidate],
    discovered: Iterable[Candidate],
    excluded_names: Iterable[str] = (),
    *,
    proposal_authors: Iterable[str] = (),
    proposal_keywords: Iterable[str] = (),
    config: PipelineConfig | None = None,
) -> RankResult:
    """Split and rank candidates.

    1. Excluded names and proposal authors are removed.
    2. LLM suggestions without publication evidence go to ``unverified``.
    3. Discovered candidates are grouped by name similarity and merged; those
       resembling a verified suggestion are folded into it; the rest need at
       least ``min_publications`` publications.
    4. ``ranked`` (verified + discovered) is ordered by composite score, ties
       going to LLM suggestions.
    """
    config = config or PipelineConfig()
    blocked = [*excluded_names, *proposal_authors]
    proposal_keywords = [k for k in proposal_keywords if k]

    def _keep(c: Candidate) -> bool:
        if is_excluded(c.name, blocked):
            logger.info("[rank] dropping excluded/proposal author %s", c.name)
            return False
        return True

    suggestions = [c for c in claude_suggestions if _keep(c)]
    verified: list[Candidate] = []
    unverified: list[Candidate] = []
    for c in suggestions:
        if c.verification is None:
            unverified.append(
                replace(c, unverified_reason=c.unverified_reason or "No publication evidence found")
            )
        else:
            verified.append(c)

    found = [
        replace(c, source=CandidateSource.DATABASE_DISCOVERY)
        for c in discovered
        if _keep(c)
    ]
    merged_discovered: list[Candidate] = []
    for group in group_by_name_similarity(found):
        candidate = merge_group(group)
        for i, v in enumerate(verified):
            if are_names_similar(v.name, candidate.name):
                verified[i] = fold_into(v, candidate)
                break
        else:
            if len(candidate.publications) >= config.min_publications:
                merged_discovered.append(candidate)

    def _score(c: Candidate) -> Candidate:
        c = replace(c, keyword_matches=count_keyword_matches(c, proposal_keywords))
        c = replace(c, relevance_score=relevance_points(c))
        return replace(c, composite_score=composite_score(c, config))

    verified = sorted((_score(c) for c in verified), key=_sort_key)
    merged_discovered = sorted((_score(c) for c in merged_discovered), key=_sort_key)
    ranked = sorted([*verified, *merged_discovered], key=_sort_key)
    logger.info(
        "[rank] verified=%s discovered=%s unverified=%s",
        len(verified), len(merged_discovered), len(unverified),
    )
    return RankResult(verified=verified, discovered=merged_discovered, unverified=unverified, ranked=ranked)
