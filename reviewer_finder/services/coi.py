"""Conflict-of-interest detection: shared institution and co-authorship with proposal authors."""
from __future__ import annotations

import logging
from typing import Iterable

from reviewer_finder.candidates import Candidate, COIResult, Coauthorship, PublicationRecord
from reviewer_finder.services.affiliation import institutions_match
from reviewer_finder.services.identity import generate_name_variants, matches_any_variant, names_match
from reviewer_finder.services.sources.pubmed import PubMedAdapter

logger = logging.getLogger(__name__)

_PLACEHOLDER_NAMES = {"", "not specified", "unknown", "n/a", "none"}


def filter_proposal_authors(names: Iterable[str | None]) -> list[str]:
    """Drop blanks and placeholders the LLM emits when it could not find an author list."""
    cleaned = []
    for name in names:
        value = (name or "").strip()
        if value.lower() in _PLACEHOLDER_NAMES or value in cleaned:
            continue
        cleaned.append(value)
    return cleaned


def _coauthored_records(
    publications: Iterable[PublicationRecord],
    candidate_name: str,
    proposal_authors: list[str],
) -> dict[str, dict[str, PublicationRecord]]:
    """proposal author -> {record_key: record} for every paper shared with the candidate."""
    candidate_variants = generate_name_variants(candidate_name)
    found: dict[str, dict[str, PublicationRecord]] = {a: {} for a in proposal_authors}
    for pub in publications:
        if not any(matches_any_variant(a.name, candidate_variants) for a in pub.authors):
            continue
        for proposal_author in proposal_authors:
            if any(names_match(proposal_author, a.name) for a in pub.authors):
                found[proposal_author].setdefault(pub.record_key, pub)
    return found


def _build_coauthorships(
    found: dict[str, dict[str, PublicationRecord]], evidence_cap: int
) -> tuple[Coauthorship, ...]:
    result = []
    for proposal_author, records in found.items():
        if not records:
            continue
        by_recency = sorted(records.values(), key=lambda r: r.year or 0, reverse=True)
        result.append(
            Coauthorship(
                proposal_author=proposal_author,
                paper_count=len(records),
                recent_papers=tuple(r.title for r in by_recency[:evidence_cap]),
                paper_keys=tuple(records),
            )
        )
    return tuple(result)


def detect_coi(
    candidate: Candidate,
    proposal_authors: Iterable[str | None],
    proposal_institution: str | None,
    *,
    evidence_cap: int = 3,
) -> COIResult:
    """Local COI check over every publication already attached to *candidate*.

    Paper counts are exact; only the evidence titles are capped.
    """
    authors = [a for a in filter_proposal_authors(proposal_authors) if not names_match(a, candidate.name)]

    has_institution_coi = bool(
        proposal_institution
        and candidate.affiliation
        and institutions_match(candidate.affiliation, proposal_institution)
    )

    found = _coauthored_records(candidate.publications, candidate.name, authors)
    coauthorships = _build_coauthorships(found, evidence_cap)
    if has_institution_coi or coauthorships:
        logger.info(
            "[coi] %s: institution=%s coauthors=%s",
            candidate.name, has_institution_coi, [c.proposal_author for c in coauthorships],
        )
    return COIResult(
        has_institution_coi=has_institution_coi,
        has_coauthor_coi=bool(coauthorships),
        coauthorships=coauthorships,
    )


async def check_remote_coauthorship(
    pubmed: PubMedAdapter,
    candidate: Candidate,
    proposal_authors: Iterable[str | None],
    *,
    max_results: int = 10,
) -> dict[str, dict[str, PublicationRecord]]:
    """Ask PubMed for papers co-authored with each proposal author.

    Failures are logged and skipped; an empty mapping means nothing was found
    (or PubMed was unavailable).
    """
    authors = [a for a in filter_proposal_authors(proposal_authors) if not names_match(a, candidate.name)]
    records: list[PublicationRecord] = []
    for proposal_author in authors:
        try:
            records.extend(await pubmed.search_coauthored(candidate.name, proposal_author, max_results))
        except Exception as exc:
            logger.warning("[coi] remote co-author check failed for %s / %s: %s", candidate.name, proposal_author, exc)
    if not records:
        return {}
    return _coauthored_records(records, candidate.name, authors)


async def detect_coi_with_remote(
    candidate: Candidate,
    proposal_authors: Iterable[str | None],
    proposal_institution: str | None,
    pubmed: PubMedAdapter | None,
    *,
    evidence_cap: int = 3,
) -> COIResult:
    """Local detection, then union PubMed co-authored papers (by record key) into the evidence."""
    proposal_authors = filter_proposal_authors(proposal_authors)
    local = detect_coi(candidate, proposal_authors, proposal_institution, evidence_cap=evidence_cap)
    if pubmed is None or not proposal_authors:
        return local

    remote = await check_remote_coauthorship(pubmed, candidate, proposal_authors)
    if not any(remote.values()):
        return local

    authors = [a for a in proposal_authors if not names_match(a, candidate.name)]
    merged = _coauthored_records(candidate.publications, candidate.name, authors)
    for proposal_author, records in remote.items():
        for key, record in records.items():
            merged.setdefault(proposal_author, {}).setdefault(key, record)
    coauthorships = _build_coauthorships(merged, evidence_cap)
    return COIResult(
        has_institution_coi=local.has_institution_coi,
        has_coauthor_coi=bool(coauthorships),
        coauthorships=coauthorships,
    )
