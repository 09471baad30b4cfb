"""Identity verification: does the publication record support the claimed person?

Confidence blends three scores in [0, 1]:

* name specificity - 1 / number of distinct institutions among authors
  matching the name (a common name shared by many people scores low);
* affiliation agreement - 1 if any matching author's affiliation agrees with
  the claim, 0 if affiliations exist and none agree, 0.5 if unknown;
* expertise agreement - share of publications mentioning a claimed keyword
  (synonyms expanded) plus a small density bonus.

Institution and expertise mismatch are reported as independent flags, never
folded into the band.
"""
from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Iterable

from reviewer_finder.candidates import AuthorRecord, Candidate, PublicationRecord, VerificationResult
from reviewer_finder.pipeline.config import PipelineConfig
from reviewer_finder.services.affiliation import (
    affiliation_matches_claim,
    count_affiliation_clusters,
    most_common_affiliation,
)
from reviewer_finder.services.identity import generate_name_variants, matches_any_variant

logger = logging.getLogger(__name__)

EXPERTISE_SYNONYMS: dict[str, tuple[str, ...]] = {
    "viral": ("virus", "virology", "viruses", "phage", "bacteriophage"),
    "virus": ("viral", "virology", "viruses", "phage"),
    "virology": ("viral", "virus", "viruses"),
    "ecology": ("ecological", "ecosystem"),
    "ecological": ("ecology", "ecosystem"),
    "marine": ("ocean", "oceanic", "aquatic", "sea"),
    "ocean": ("marine", "oceanic", "aquatic", "sea"),
    "microbial": ("microbe", "microbiome", "bacterial", "bacteria"),
    "microbe": ("microbial", "microbiome", "bacterial"),
    "bacteria": ("bacterial", "microbial", "microbe"),
    "bacterial": ("bacteria", "microbial", "microbe"),
    "evolution": ("evolutionary", "evolve", "evolved"),
    "evolutionary": ("evolution", "evolve"),
    "phage": ("bacteriophage", "viral", "virus"),
    "bacteriophage": ("phage", "viral", "virus"),
    "population": ("populations", "community", "communities"),
    "community": ("communities", "population", "populations"),
    "dynamics": ("dynamic", "interactions", "interaction"),
    "modeling": ("model", "models", "mathematical", "computational"),
    "model": ("modeling", "models", "mathematical"),
    "quantitative": ("mathematical", "computational", "modeling"),
}

# Too generic to count as evidence that a specific expertise claim holds
GENERIC_EXPERTISE_WORDS = frozenset({
    "biology", "research", "science", "study", "analysis", "methods",
    "molecular", "cellular", "genetic", "genomic", "protein", "proteins",
    "mechanism", "mechanisms", "function", "regulation", "development",
    "evolution", "evolutionary", "structure", "structural", "model", "models",
})


def _search_text(pub: PublicationRecord) -> str:
    return f"{pub.title or ''} {pub.abstract or ''}".lower()


# ---------------------------------------------------------------------------
# Author matching
# ---------------------------------------------------------------------------

def matching_authors(pub: PublicationRecord, variants: Iterable[str]) -> list[AuthorRecord]:
    variants = list(variants)
    return [a for a in pub.authors if matches_any_variant(a.name, variants)]


def filter_to_matching_author(publications: Iterable[PublicationRecord], name: str) -> list[PublicationRecord]:
    """Keep publications that list an author matching any variant of *name*."""
    variants = generate_name_variants(name)
    return [p for p in publications if matching_authors(p, variants)]


# ---------------------------------------------------------------------------
# Expertise
# ---------------------------------------------------------------------------

def _expertise_keywords(expertise_areas: Iterable[str]) -> list[str]:
    keywords: list[str] = []
    for area in expertise_areas:
        for word in re.split(r"[\s,]+", area.lower()):
            if len(word) <= 3:
                continue
            for kw in (word, *EXPERTISE_SYNONYMS.get(word, ())):
                if kw not in keywords:
                    keywords.append(kw)
    return keywords


def calculate_expertise_match(publications: list[PublicationRecord], expertise_areas: Iterable[str]) -> float:
    """0..1; 0.5 when no expertise was claimed (nothing to contradict)."""
    areas = [a for a in expertise_areas if a]
    if not areas:
        return 0.5
    if not publications:
        return 0.0
    keywords = _expertise_keywords(areas)
    if not keywords:
        return 0.5

    matching = 0
    total_hits = 0
    for pub in publications:
        text = _search_text(pub)
        hits = sum(1 for kw in keywords if kw in text)
        if hits:
            matching += 1
            total_hits += hits

    base = matching / len(publications)
    bonus = min(0.2, (total_hits / len(publications)) * 0.05)
    return round(min(1.0, base + bonus), 2)


def claimed_expertise_terms(claimed: Iterable[str]) -> list[str]:
    """Specific terms (and 2-3 word phrases) from the claim, generic words dropped."""
    terms: list[str] = []
    for area in claimed:
        for part in re.split(r"[,;/]+", area.lower()):
            words = [w for w in part.strip().split() if len(w) > 3]
            candidates = list(words)
            if 2 <= len(words) <= 3:
                candidates.append(" ".join(words))
            for term in candidates:
                if len(term) > 4 and term not in GENERIC_EXPERTISE_WORDS and term not in terms:
                    terms.append(term)
    return terms


def check_expertise_mismatch(
    publications: list[PublicationRecord], claimed: Iterable[str]
) -> tuple[bool, list[str], list[str]]:
    """(has_mismatch, claimed_terms, matched_terms)."""
    claimed = [c for c in claimed if c]
    if not claimed:
        return False, [], []
    if not publications:
        return True, list(claimed), []
    terms = claimed_expertise_terms(claimed)
    if not terms:
        return False, [], []
    corpus = " ".join(_search_text(p) for p in publications)
    matched = [t for t in terms if t in corpus]
    return not matched, terms, matched


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------

def verify(
    candidate: Candidate,
    publications: Iterable[PublicationRecord],
    config: PipelineConfig | None = None,
) -> VerificationResult | None:
    """Score how well *publications* support *candidate*'s claimed identity.

    Returns None when no publication lists a matching author (zero evidence).
    """
    config = config or PipelineConfig()
    variants = generate_name_variants(candidate.name)
    matched = [p for p in publications if matching_authors(p, variants)]
    if not matched:
        return None

    affiliations = [
        aff
        for pub in matched
        for author in matching_authors(pub, variants)
        for aff in author.affiliations
        if aff
    ]

    clusters = count_affiliation_clusters(affiliations)
    name_specificity = 1.0 / clusters if clusters else 0.5

    if not candidate.affiliation or not affiliations:
        affiliation_score = 0.5
        institution_mismatch = False
    elif any(affiliation_matches_claim(aff, candidate.affiliation) for aff in affiliations):
        affiliation_score = 1.0
        institution_mismatch = False
    else:
        affiliation_score = 0.0
        institution_mismatch = True

    expertise_score = calculate_expertise_match(matched, candidate.expertise_areas)
    expertise_mismatch, claimed_terms, matched_terms = check_expertise_mismatch(matched, candidate.expertise_areas)

    weights = (config.weight_name_specificity, config.weight_affiliation, config.weight_expertise)
    total_weight = sum(weights) or 1.0
    confidence = (
        weights[0] * name_specificity
        + weights[1] * affiliation_score
        + weights[2] * expertise_score
    ) / total_weight
    if config.min_publications > 0 and len(matched) < config.min_publications:
        confidence *= len(matched) / config.min_publications
    confidence = round(max(0.0, min(1.0, confidence)), 3)

    result = VerificationResult(
        confidence=confidence,
        band=config.band_for(confidence),
        institution_mismatch=institution_mismatch,
        expertise_mismatch=expertise_mismatch,
        name_specificity=round(name_specificity, 3),
        affiliation_score=affiliation_score,
        expertise_score=expertise_score,
        matched_publication_count=len(matched),
        verified_affiliation=most_common_affiliation(affiliations),
        claimed_terms=tuple(claimed_terms),
        matched_terms=tuple(matched_terms),
    )
    logger.debug(
        "[verify] %s: confidence=%.3f band=%s inst_mismatch=%s exp_mismatch=%s (%s pubs)",
        candidate.name, confidence, result.band, institution_mismatch, expertise_mismatch, len(matched),
    )
    return result


def verify_candidate(
    candidate: Candidate,
    publications: Iterable[PublicationRecord],
    config: PipelineConfig | None = None,
) -> Candidate:
    """Return *candidate* with publications, verification and affiliation populated.

    Zero matching publications leaves ``verification`` None and sets
    ``unverified_reason``; no numeric confidence is assigned.
    """
    publications = list(publications)
    matched = filter_to_matching_author(publications, candidate.name)
    result = verify(candidate, matched, config)
    if result is None:
        reason = (
            "No publications found in any enabled source"
            if not publications
            else "No publications list an author matching this name"
        )
        return replace(candidate, publications=(), verification=None, unverified_reason=reason)
    return replace(
        candidate,
        publications=tuple(matched),
        verification=result,
        unverified_reason=None,
        affiliation=candidate.affiliation or result.verified_affiliation,
    )
