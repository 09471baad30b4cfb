"""
Typed records that flow through a discovery run.

Every stage takes a :class:`Candidate` and returns a new one (via
``dataclasses.replace``) with only its own fields populated:

* sources / verifier -> ``publications``, ``verification``, ``affiliation``
* COI detector       -> ``coi``
* ranking            -> ``relevance_score``, ``composite_score``
* enrichment         -> ``contact``
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID


class CandidateSource(str, Enum):
    CLAUDE_SUGGESTION = "claude_suggestion"
    DATABASE_DISCOVERY = "database_discovery"


# ---------------------------------------------------------------------------
# Bibliographic records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthorRecord:
    name: str
    affiliations: tuple[str, ...] = ()
    is_senior: bool = False

    @property
    def affiliation(self) -> str | None:
        return self.affiliations[0] if self.affiliations else None


@dataclass(frozen=True)
class PublicationRecord:
    title: str
    source: str  # pubmed, arxiv, biorxiv, chemrxiv
    source_id: str | None = None  # PMID, arXiv id, DOI or ChemRxiv item id
    authors: tuple[AuthorRecord, ...] = ()
    year: int | None = None
    url: str | None = None
    journal: str | None = None
    doi: str | None = None
    abstract: str | None = None
    categories: tuple[str, ...] = ()
    publication_date: str | None = None

    @property
    def author_names(self) -> list[str]:
        return [a.name for a in self.authors]

    @property
    def record_key(self) -> str:
        """Stable identity used to union publication lists from several queries."""
        if self.doi:
            return f"doi:{self.doi.lower()}"
        if self.source_id:
            return f"{self.source}:{self.source_id}"
        return f"title:{self.title.strip().lower()}"


@dataclass(frozen=True)
class SearchHints:
    affiliation: str | None = None
    expertise_keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class SourceSearchResult:
    """Outcome of one adapter call. ``error`` set means the source degraded to zero results."""

    source: str
    records: tuple[PublicationRecord, ...] = ()
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


# ---------------------------------------------------------------------------
# LLM analysis (untrusted input)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReviewerSuggestion:
    name: str
    affiliation: str | None = None
    expertise_areas: tuple[str, ...] = ()
    reasoning: str = ""
    seniority_estimate: str | None = None


@dataclass(frozen=True)
class ProposalAnalysis:
    title: str = ""
    abstract: str = ""
    proposal_authors: tuple[str, ...] = ()
    institution: str | None = None
    primary_research_area: str = ""
    keywords: tuple[str, ...] = ()
    suggestions: tuple[ReviewerSuggestion, ...] = ()
    search_queries: dict[str, tuple[str, ...]] = field(default_factory=dict)  # source -> queries
    excluded_names: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationResult:
    confidence: float
    band: str  # low, weak, accepted
    institution_mismatch: bool = False
    expertise_mismatch: bool = False
    name_specificity: float = 0.0
    affiliation_score: float = 0.0
    expertise_score: float = 0.0
    matched_publication_count: int = 0
    verified_affiliation: str | None = None
    claimed_terms: tuple[str, ...] = ()
    matched_terms: tuple[str, ...] = ()

    @property
    def warning(self) -> str | None:
        if self.band == "low":
            return "Low match, possibly wrong person"
        if self.band == "weak":
            return "Weak match, verify manually"
        return None


@dataclass(frozen=True)
class Coauthorship:
    proposal_author: str
    paper_count: int
    recent_papers: tuple[str, ...] = ()
    paper_keys: tuple[str, ...] = field(default=(), repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_author": self.proposal_author,
            "paper_count": self.paper_count,
            "recent_papers": list(self.recent_papers),
        }


@dataclass(frozen=True)
class COIResult:
    has_institution_coi: bool = False
    has_coauthor_coi: bool = False
    coauthorships: tuple[Coauthorship, ...] = ()

    @property
    def has_coi(self) -> bool:
        return self.has_institution_coi or self.has_coauthor_coi


@dataclass(frozen=True)
class ContactInfo:
    """Result of contact enrichment; all fields None means no contact found."""

    email: str | None = None
    email_source: str | None = None
    email_year: int | None = None
    website: str | None = None
    faculty_page_url: str | None = None
    orcid: str | None = None
    orcid_url: str | None = None
    google_scholar_url: str | None = None
    source: str | None = None  # tier that produced the contact: pubmed, orcid, claude_search, serp
    confidence: str | None = None
    tiers_attempted: tuple[str, ...] = ()

    @property
    def found(self) -> bool:
        return bool(self.email or self.website or self.faculty_page_url)

    @property
    def status(self) -> str:
        return "found" if self.found else "not_found"


@dataclass(frozen=True)
class Candidate:
    name: str
    affiliation: str | None = None
    source: CandidateSource = CandidateSource.CLAUDE_SUGGESTION
    discovery_sources: tuple[str, ...] = ()  # claude, pubmed, arxiv, biorxiv, chemrxiv
    expertise_areas: tuple[str, ...] = ()
    reasoning: str = ""
    seniority_estimate: str | None = None
    department: str | None = None

    publications: tuple[PublicationRecord, ...] = ()
    verification: VerificationResult | None = None
    unverified_reason: str | None = None
    coi: COIResult | None = None

    relevance_score: float | None = None
    composite_score: float | None = None
    keyword_matches: int = 0

    # Known identity / contact (from store or enrichment)
    researcher_id: UUID | None = None
    email: str | None = None
    website: str | None = None
    orcid: str | None = None
    google_scholar_id: str | None = None
    h_index: int | None = None
    total_citations: int | None = None
    contact: ContactInfo | None = None

    @property
    def confidence(self) -> float | None:
        return self.verification.confidence if self.verification else None

    @property
    def is_llm_suggestion(self) -> bool:
        return self.source == CandidateSource.CLAUDE_SUGGESTION

    @classmethod
    def from_suggestion(cls, suggestion: ReviewerSuggestion) -> "Candidate":
        return cls(
            name=suggestion.name,
            affiliation=suggestion.affiliation,
            source=CandidateSource.CLAUDE_SUGGESTION,
            discovery_sources=("claude",),
            expertise_areas=tuple(suggestion.expertise_areas),
            reasoning=suggestion.reasoning,
            seniority_estimate=suggestion.seniority_estimate,
        )


@dataclass(frozen=True)
class RankResult:
    verified: list[Candidate] = field(default_factory=list)
    discovered: list[Candidate] = field(default_factory=list)
    unverified: list[Candidate] = field(default_factory=list)
    ranked: list[Candidate] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    match_type: str  # email, orcid, google_scholar, name
    match_value: str
    researchers: list[Any] = field(default_factory=list)  # Researcher rows, oldest first

    @property
    def researcher_ids(self) -> list[UUID]:
        return [r.id for r in self.researchers]


@dataclass
class MergeResult:
    researcher: Any  # surviving Researcher row
    keywords_moved: int = 0
    keywords_coalesced: int = 0
    suggestions_moved: int = 0
    conflicts_resolved: int = 0
    secondaries_deleted: int = 0
    already_merged: list[UUID] = field(default_factory=list)


@dataclass
class SaveBatchResult:
    total_requested: int = 0
    saved: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)  # [{name, error}]

    @property
    def saved_count(self) -> int:
        return len(self.saved)


@dataclass
class ResearcherPage:
    researchers: list[Any] = field(default_factory=list)  # Researcher rows, sorted
    keywords: dict[UUID, list[Any]] = field(default_factory=dict)  # researcher id -> ResearcherKeyword rows
    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.researchers) < self.total


@dataclass
class ResearcherDetail:
    researcher: Any
    keywords: list[Any] = field(default_factory=list)
    publications: list[Any] = field(default_factory=list)
    suggestions: list[Any] = field(default_factory=list)  # ReviewerSuggestion rows, newest first


@dataclass
class ResearcherDeleteResult:
    deleted_ids: list[UUID] = field(default_factory=list)
    suggestions_removed: int = 0  # saved candidates removed with them

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_ids)
