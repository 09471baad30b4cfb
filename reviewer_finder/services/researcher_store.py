"""
Researcher persistence store.

All reviewer-finder persistence goes through this module: researcher upsert,
duplicate detection and merge, browsing and manual edits, saved candidates
per proposal, keyword tags, publications, contact info and grant cycles.

The pipeline and the API never call ``db.add()`` or raw SQL directly.
Functions that change several rows commit once (or once per candidate for
save batches) and roll back on failure.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reviewer_finder.candidates import (
    Candidate,
    ContactInfo,
    DuplicateGroup,
    MergeResult,
    ResearcherDeleteResult,
    ResearcherDetail,
    ResearcherPage,
    SaveBatchResult,
)
from reviewer_finder.models import (
    GrantCycle,
    Publication,
    Researcher,
    ResearcherKeyword,
    ReviewerSuggestion,
)
from reviewer_finder.services.identity import group_duplicates, identity_keys, normalize_name, normalize_orcid

logger = logging.getLogger(__name__)

CLAUDE_KEYWORD_RELEVANCE = 0.9
SOURCE_KEYWORD_RELEVANCE = 1.0
MAX_SAVED_PUBLICATIONS = 20
RESPONSE_TYPES = ("accepted", "declined", "bounced")

INSTITUTION_COI_NOTE = " [Institution COI: Same institution as proposal PI]"
COAUTHOR_COI_NOTE = " [Coauthor COI: Has co-authored with proposal authors]"

# Fields merge copies from a secondary when the primary lacks them
_FILL_FIELDS = (
    "primary_affiliation",
    "department",
    "email",
    "email_source",
    "email_year",
    "website",
    "orcid",
    "orcid_url",
    "google_scholar_id",
    "google_scholar_url",
    "faculty_page_url",
)
_MAX_FIELDS = ("h_index", "i10_index", "total_citations")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_KEYWORD_LIST = 200
RESEARCHER_SORT_COLUMNS = {
    "name": Researcher.name,
    "affiliation": Researcher.primary_affiliation,
    "h_index": Researcher.h_index,
    "last_updated": Researcher.last_updated,
}
# google_scholar_url before google_scholar_id: an ID rebuilds the URL
EDITABLE_RESEARCHER_FIELDS = (
    "name",
    "affiliation",
    "department",
    "email",
    "website",
    "orcid",
    "google_scholar_url",
    "google_scholar_id",
    "h_index",
    "i10_index",
    "total_citations",
)


class ResearcherNotFoundError(Exception):
    def __init__(self, researcher_id: Any):
        super().__init__(f"Researcher {researcher_id} not found")
        self.researcher_id = researcher_id


class SuggestionNotFoundError(Exception):
    def __init__(self, suggestion_id: Any):
        super().__init__(f"Saved candidate {suggestion_id} not found")
        self.suggestion_id = suggestion_id


@dataclass(frozen=True)
class ProposalRef:
    """The proposal a batch of candidates is saved against."""

    proposal_id: str
    title: str | None = None
    abstract: str | None = None
    authors: tuple[str, ...] = ()
    institution: str | None = None
    grant_cycle_id: UUID | None = None

    @property
    def authors_text(self) -> str | None:
        names = [a for a in self.authors if a]
        return ", ".join(names) if names else None


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Commit helpers
# ---------------------------------------------------------------------------

async def safe_commit(db: AsyncSession) -> bool:
    """Commit; on failure rollback and return False."""
    try:
        await db.commit()
        return True
    except Exception as exc:
        logger.error("[store] commit failed, rolling back: %s", exc, exc_info=True)
        await db.rollback()
        return False


async def safe_rollback(db: AsyncSession) -> None:
    """Rollback; never raises."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[store] rollback failed: %s", exc, exc_info=True)


# ---------------------------------------------------------------------------
# Researcher upsert
# ---------------------------------------------------------------------------

def _identity_clause(match_type: str, value: str):
    if match_type == "email":
        return func.lower(Researcher.email) == value
    if match_type == "orcid":
        return Researcher.orcid == value
    if match_type == "google_scholar":
        return Researcher.google_scholar_id == value
    return Researcher.normalized_name == value


async def find_researcher(
    db: AsyncSession,
    *,
    email: str | None = None,
    orcid: str | None = None,
    google_scholar_id: str | None = None,
    name: str | None = None,
) -> Researcher | None:
    """First researcher matching the identity keys in priority order (email, ORCID, Scholar, name)."""
    for match_type, value in identity_keys(email=email, orcid=orcid, google_scholar_id=google_scholar_id, name=name):
        result = await db.execute(
            select(Researcher)
            .where(_identity_clause(match_type, value))
            .order_by(Researcher.created_at)
            .limit(1)
        )
        row = result.scalars().first()
        if row is not None:
            logger.debug("[store] researcher match by %s for %r", match_type, name)
            return row
    return None


def _candidate_contact(candidate: Candidate) -> dict[str, Any]:
    contact = candidate.contact or ContactInfo()
    orcid = normalize_orcid(candidate.orcid or contact.orcid) or None
    return {
        "email": (candidate.email or contact.email or "").strip().lower() or None,
        "email_source": contact.email_source if contact.email else None,
        "email_year": contact.email_year if contact.email else None,
        "website": candidate.website or contact.website,
        "faculty_page_url": contact.faculty_page_url,
        "orcid": orcid,
        "orcid_url": contact.orcid_url or (f"https://orcid.org/{orcid}" if orcid else None),
        "google_scholar_id": candidate.google_scholar_id,
        "google_scholar_url": (
            f"https://scholar.google.com/citations?user={candidate.google_scholar_id}"
            if candidate.google_scholar_id else None
        ),
    }


async def upsert(db: AsyncSession, candidate: Candidate) -> Researcher:
    """Find the candidate's researcher row (email, ORCID, Scholar ID, name) or insert one.

    Non-empty contact values refresh the row, bibliometrics keep the maximum,
    affiliation/department are only filled when missing. Flushes, does not commit.
    """
    contact = _candidate_contact(candidate)
    researcher = await find_researcher(
        db,
        email=contact["email"],
        orcid=contact["orcid"],
        google_scholar_id=contact["google_scholar_id"],
        name=candidate.name,
    )
    now = _utc_now_naive()

    if researcher is None:
        researcher = Researcher(
            id=uuid.uuid4(),
            name=candidate.name,
            normalized_name=normalize_name(candidate.name),
            primary_affiliation=candidate.affiliation,
            department=candidate.department,
            h_index=candidate.h_index,
            total_citations=candidate.total_citations,
            created_at=now,
            last_updated=now,
            **contact,
        )
        db.add(researcher)
        await db.flush()
        logger.info("[store] created researcher %s (%s)", researcher.id, candidate.name)
        return researcher

    for key, value in contact.items():
        if value:
            setattr(researcher, key, value)
    if candidate.affiliation and not researcher.primary_affiliation:
        researcher.primary_affiliation = candidate.affiliation
    if candidate.department and not researcher.department:
        researcher.department = candidate.department
    if not researcher.normalized_name:
        researcher.normalized_name = normalize_name(researcher.name)
    for key, value in (("h_index", candidate.h_index), ("total_citations", candidate.total_citations)):
        current = getattr(researcher, key)
        if value is not None and (current is None or value > current):
            setattr(researcher, key, value)
    researcher.last_updated = now
    await db.flush()
    logger.debug("[store] updated researcher %s (%s)", researcher.id, candidate.name)
    return researcher


# ---------------------------------------------------------------------------
# Duplicate detection and merge
# ---------------------------------------------------------------------------

async def find_duplicates(db: AsyncSession) -> list[DuplicateGroup]:
    """Groups of >= 2 researchers sharing email, ORCID, Scholar ID or normalized name."""
    result = await db.execute(select(Researcher).order_by(Researcher.created_at))
    rows = list(result.scalars().all())
    groups = [
        DuplicateGroup(match_type=match_type, match_value=value, researchers=members)
        for match_type, value, members in group_duplicates(rows)
    ]
    logger.info("[store] %s duplicate groups among %s researchers", len(groups), len(rows))
    return groups


def _fold_suggestion(target: ReviewerSuggestion, other: ReviewerSuggestion) -> None:
    """Fold a secondary's saved candidate into the primary's row for the same proposal."""
    target.has_institution_coi = bool(target.has_institution_coi or other.has_institution_coi)
    target.has_coauthor_coi = bool(target.has_coauthor_coi or other.has_coauthor_coi)
    target.institution_mismatch = bool(target.institution_mismatch or other.institution_mismatch)
    target.expertise_mismatch = bool(target.expertise_mismatch or other.expertise_mismatch)
    if other.coauthorships and not target.coauthorships:
        target.coauthorships = other.coauthorships
    if other.relevance_score is not None and (target.relevance_score is None or other.relevance_score > target.relevance_score):
        target.relevance_score = other.relevance_score
    if other.verification_confidence is not None and (
        target.verification_confidence is None or other.verification_confidence > target.verification_confidence
    ):
        target.verification_confidence = other.verification_confidence
    target.selected = bool(target.selected or other.selected)
    target.invited = bool(target.invited or other.invited)
    for key in ("accepted", "declined", "email_sent_at", "response_type", "notes", "match_reason", "grant_cycle_id"):
        if getattr(target, key) is None and getattr(other, key) is not None:
            setattr(target, key, getattr(other, key))
    target.updated_at = _utc_now_naive()


async def merge(db: AsyncSession, primary_id: UUID, secondary_ids: Iterable[UUID]) -> MergeResult:
    """Merge secondaries into the primary researcher and delete them. One commit; any failure rolls back.

    Raises ResearcherNotFoundError if the primary does not exist. Secondaries
    that no longer exist are reported in ``already_merged``.
    """
    secondary_ids = [sid for sid in dict.fromkeys(secondary_ids) if sid != primary_id]
    try:
        primary = (
            await db.execute(select(Researcher).where(Researcher.id == primary_id).with_for_update())
        ).scalar_one_or_none()
        if primary is None:
            raise ResearcherNotFoundError(primary_id)

        stats = MergeResult(researcher=primary)
        if not secondary_ids:
            return stats

        secondaries = list(
            (await db.execute(select(Researcher).where(Researcher.id.in_(secondary_ids)))).scalars().all()
        )
        found_ids = {s.id for s in secondaries}
        stats.already_merged = [sid for sid in secondary_ids if sid not in found_ids]

        primary_keywords = {
            (kw.keyword or "").strip().lower(): kw
            for kw in (
                await db.execute(select(ResearcherKeyword).where(ResearcherKeyword.researcher_id == primary_id))
            ).scalars().all()
        }
        primary_suggestions = {
            s.proposal_id: s
            for s in (
                await db.execute(select(ReviewerSuggestion).where(ReviewerSuggestion.researcher_id == primary_id))
            ).scalars().all()
        }

        for secondary in secondaries:
            # --- Fields the primary lacks ---
            for key in _FILL_FIELDS:
                if not getattr(primary, key) and getattr(secondary, key):
                    setattr(primary, key, getattr(secondary, key))
                    if key == "email" and not secondary.email_source:
                        primary.email_source = "merged"
            for key in _MAX_FIELDS:
                value = getattr(secondary, key)
                if value is not None and (getattr(primary, key) is None or value > getattr(primary, key)):
                    setattr(primary, key, value)

            # --- Keywords (coalesce identical strings, keep higher relevance) ---
            sec_keywords = (
                await db.execute(select(ResearcherKeyword).where(ResearcherKeyword.researcher_id == secondary.id))
            ).scalars().all()
            for kw in sec_keywords:
                key = (kw.keyword or "").strip().lower()
                existing = primary_keywords.get(key)
                if existing is not None:
                    if (kw.relevance_score or 0) > (existing.relevance_score or 0):
                        existing.relevance_score = kw.relevance_score
                    await db.delete(kw)
                    stats.keywords_coalesced += 1
                else:
                    kw.researcher_id = primary.id
                    primary_keywords[key] = kw
                    stats.keywords_moved += 1

            # --- Saved candidates ---
            sec_suggestions = (
                await db.execute(select(ReviewerSuggestion).where(ReviewerSuggestion.researcher_id == secondary.id))
            ).scalars().all()
            for suggestion in sec_suggestions:
                existing = primary_suggestions.get(suggestion.proposal_id)
                if existing is not None:
                    _fold_suggestion(existing, suggestion)
                    await db.delete(suggestion)
                    stats.conflicts_resolved += 1
                else:
                    suggestion.researcher_id = primary.id
                    primary_suggestions[suggestion.proposal_id] = suggestion
                    stats.suggestions_moved += 1

            # --- Publications ---
            await db.execute(
                update(Publication)
                .where(Publication.researcher_id == secondary.id)
                .values(researcher_id=primary.id)
            )

            await db.flush()
            await db.delete(secondary)
            stats.secondaries_deleted += 1

        primary.last_updated = _utc_now_naive()
        await db.commit()
    except Exception:
        await safe_rollback(db)
        raise

    logger.info(
        "[store] merged %s researcher(s) into %s: %s keywords moved, %s coalesced, %s suggestions moved, %s conflicts",
        stats.secondaries_deleted, primary_id, stats.keywords_moved, stats.keywords_coalesced,
        stats.suggestions_moved, stats.conflicts_resolved,
    )
    return stats


# ---------------------------------------------------------------------------
# Researcher database (browse, edit, delete)
# ---------------------------------------------------------------------------

def _researcher_filters(
    search: str | None,
    has_email: bool,
    has_website: bool,
    keywords: Iterable[str],
) -> list:
    conditions = []
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        conditions.append(
            or_(
                Researcher.name.ilike(pattern),
                Researcher.primary_affiliation.ilike(pattern),
                Researcher.email.ilike(pattern),
            )
        )
    if has_email:
        conditions.append(and_(Researcher.email.is_not(None), Researcher.email != ""))
    if has_website:
        conditions.append(and_(Researcher.website.is_not(None), Researcher.website != ""))
    wanted = [k.strip().lower() for k in keywords if k and k.strip()]
    if wanted:
        # any of the keywords
        conditions.append(
            Researcher.id.in_(
                select(ResearcherKeyword.researcher_id).where(func.lower(ResearcherKeyword.keyword).in_(wanted))
            )
        )
    return conditions


async def list_researchers(
    db: AsyncSession,
    *,
    search: str | None = None,
    sort_by: str = "last_updated",
    sort_order: str = "desc",
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
    has_email: bool = False,
    has_website: bool = False,
    keywords: Iterable[str] = (),
) -> ResearcherPage:
    """One page of researchers with their keyword tags.

    Unknown sort keys fall back to ``last_updated`` / ``desc``; missing values
    sort last when descending and first when ascending.
    """
    limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    offset = max(int(offset or 0), 0)
    column = RESEARCHER_SORT_COLUMNS.get(sort_by, Researcher.last_updated)
    order = column.asc().nulls_first() if sort_order == "asc" else column.desc().nulls_last()
    conditions = _researcher_filters(search, has_email, has_website, keywords)

    total = (
        await db.execute(select(func.count()).select_from(Researcher).where(*conditions))
    ).scalar() or 0
    rows = list(
        (
            await db.execute(
                select(Researcher).where(*conditions).order_by(order, Researcher.id).limit(limit).offset(offset)
            )
        ).scalars().all()
    )

    page = ResearcherPage(researchers=rows, total=total, limit=limit, offset=offset)
    if rows:
        tags = (
            await db.execute(
                select(ResearcherKeyword)
                .where(ResearcherKeyword.researcher_id.in_([r.id for r in rows]))
                .order_by(ResearcherKeyword.relevance_score.desc())
            )
        ).scalars().all()
        for tag in tags:
            page.keywords.setdefault(tag.researcher_id, []).append(tag)
    logger.debug("[store] researchers page offset=%s limit=%s: %s of %s", offset, limit, len(rows), total)
    return page


async def list_keywords(db: AsyncSession, limit: int = MAX_KEYWORD_LIST) -> list[tuple[str, int]]:
    """(keyword, researcher count) pairs, most used first."""
    researchers = func.count(func.distinct(ResearcherKeyword.researcher_id)).label("researchers")
    result = await db.execute(
        select(ResearcherKeyword.keyword, researchers)
        .group_by(ResearcherKeyword.keyword)
        .order_by(researchers.desc(), ResearcherKeyword.keyword)
        .limit(limit)
    )
    return [(keyword, int(count)) for keyword, count in result.all()]


async def get_researcher(db: AsyncSession, researcher_id: UUID) -> ResearcherDetail:
    researcher = (
        await db.execute(select(Researcher).where(Researcher.id == researcher_id))
    ).scalar_one_or_none()
    if researcher is None:
        raise ResearcherNotFoundError(researcher_id)
    keywords = (
        await db.execute(
            select(ResearcherKeyword)
            .where(ResearcherKeyword.researcher_id == researcher_id)
            .order_by(ResearcherKeyword.relevance_score.desc(), ResearcherKeyword.keyword)
        )
    ).scalars().all()
    publications = (
        await db.execute(
            select(Publication)
            .where(Publication.researcher_id == researcher_id)
            .order_by(Publication.year.desc().nulls_last(), Publication.title)
        )
    ).scalars().all()
    suggestions = (
        await db.execute(
            select(ReviewerSuggestion)
            .where(ReviewerSuggestion.researcher_id == researcher_id)
            .order_by(ReviewerSuggestion.suggested_at.desc())
        )
    ).scalars().all()
    return ResearcherDetail(
        researcher=researcher,
        keywords=list(keywords),
        publications=list(publications),
        suggestions=list(suggestions),
    )


def _optional_int(value: Any) -> int | None:
    return None if value is None or value == "" else int(value)


async def update_researcher(
    db: AsyncSession,
    researcher_id: UUID,
    changes: dict[str, Any],
) -> tuple[Researcher, list[str]]:
    """Manual edit. Returns the row and the names of the fields that were set.

    Raises ValueError for unknown or missing fields, ResearcherNotFoundError
    when the row does not exist. An email set here is marked ``manual``.
    """
    unknown = sorted(set(changes) - set(EDITABLE_RESEARCHER_FIELDS))
    if unknown:
        raise ValueError(f"Cannot edit researcher field(s): {', '.join(unknown)}")
    fields = [f for f in EDITABLE_RESEARCHER_FIELDS if f in changes]
    if not fields:
        raise ValueError("No fields to update")

    researcher = (
        await db.execute(select(Researcher).where(Researcher.id == researcher_id))
    ).scalar_one_or_none()
    if researcher is None:
        raise ResearcherNotFoundError(researcher_id)

    now = _utc_now_naive()
    for key in fields:
        value = changes[key]
        if key == "name":
            if not (value or "").strip():
                raise ValueError("name must not be empty")
            researcher.name = value.strip()
            researcher.normalized_name = normalize_name(value)
        elif key == "affiliation":
            researcher.primary_affiliation = value or None
        elif key == "email":
            researcher.email = (value or "").strip().lower() or None
            researcher.email_source = "manual" if researcher.email else None
            researcher.email_year = None
        elif key == "orcid":
            orcid = normalize_orcid(value) or None
            researcher.orcid = orcid
            researcher.orcid_url = f"https://orcid.org/{orcid}" if orcid else None
        elif key == "google_scholar_id":
            researcher.google_scholar_id = value or None
            researcher.google_scholar_url = (
                f"https://scholar.google.com/citations?user={value}" if value else changes.get("google_scholar_url")
            )
        elif key in _MAX_FIELDS:
            setattr(researcher, key, _optional_int(value))
            researcher.metrics_updated_at = now
        else:
            setattr(researcher, key, value or None)
    researcher.last_updated = now

    if not await safe_commit(db):
        raise RuntimeError(f"Could not update researcher {researcher_id}")
    logger.info("[store] researcher %s edited: %s", researcher_id, ", ".join(fields))
    return researcher, fields


async def delete_researchers(db: AsyncSession, researcher_ids: Iterable[UUID]) -> ResearcherDeleteResult:
    """Hard delete. Keywords, publications and saved candidates go with the rows."""
    ids = list(dict.fromkeys(researcher_ids))
    if not ids:
        return ResearcherDeleteResult()
    try:
        suggestions = (
            await db.execute(
                select(func.count()).select_from(ReviewerSuggestion).where(ReviewerSuggestion.researcher_id.in_(ids))
            )
        ).scalar() or 0
        result = await db.execute(delete(Researcher).where(Researcher.id.in_(ids)).returning(Researcher.id))
        deleted = list(result.scalars().all())
        await db.commit()
    except Exception:
        await safe_rollback(db)
        raise
    logger.info("[store] deleted %s/%s researcher(s), %s saved candidates with them", len(deleted), len(ids), suggestions)
    return ResearcherDeleteResult(deleted_ids=deleted, suggestions_removed=suggestions)


# ---------------------------------------------------------------------------
# Keywords and publications
# ---------------------------------------------------------------------------

async def add_keyword(
    db: AsyncSession,
    researcher_id: UUID,
    keyword: str,
    relevance_score: float = 1.0,
    source: str = "publications",
) -> ResearcherKeyword | None:
    """Get-or-create a keyword tag; an existing tag keeps the higher relevance."""
    keyword = (keyword or "").strip()
    if not keyword:
        return None
    result = await db.execute(
        select(ResearcherKeyword).where(
            ResearcherKeyword.researcher_id == researcher_id,
            func.lower(ResearcherKeyword.keyword) == keyword.lower(),
            ResearcherKeyword.source == source,
        )
    )
    existing = result.scalars().first()
    if existing is not None:
        if relevance_score > (existing.relevance_score or 0):
            existing.relevance_score = relevance_score
        return existing
    row = ResearcherKeyword(
        id=uuid.uuid4(),
        researcher_id=researcher_id,
        keyword=keyword[:255],
        relevance_score=relevance_score,
        source=source,
        created_at=_utc_now_naive(),
    )
    db.add(row)
    return row


def _candidate_sources(candidate: Candidate) -> list[str]:
    sources = list(dict.fromkeys(candidate.discovery_sources))
    for pub in candidate.publications:
        if pub.source and pub.source not in sources:
            sources.append(pub.source)
    if not sources:
        sources.append("claude" if candidate.is_llm_suggestion else "unknown")
    return sources


async def save_publications(db: AsyncSession, researcher_id: UUID, candidate: Candidate) -> int:
    """Store the candidate's most recent publications not already on the researcher. Returns count added."""
    if not candidate.publications:
        return 0
    result = await db.execute(
        select(Publication.doi, Publication.title).where(Publication.researcher_id == researcher_id)
    )
    seen = set()
    for doi, title in result.all():
        if doi:
            seen.add(f"doi:{doi.lower()}")
        if title:
            seen.add(f"title:{title.strip().lower()}")

    added = 0
    ordered = sorted(candidate.publications, key=lambda p: p.year or 0, reverse=True)
    for pub in ordered[:MAX_SAVED_PUBLICATIONS]:
        keys = {f"title:{pub.title.strip().lower()}"}
        if pub.doi:
            keys.add(f"doi:{pub.doi.lower()}")
        if keys & seen:
            continue
        seen |= keys
        names = pub.author_names
        position = next((i + 1 for i, n in enumerate(names) if normalize_name(n) == normalize_name(candidate.name)), None)
        db.add(
            Publication(
                id=uuid.uuid4(),
                researcher_id=researcher_id,
                title=pub.title,
                authors=names,
                author_position=position,
                year=pub.year,
                journal=pub.journal,
                doi=pub.doi,
                pmid=pub.source_id if pub.source == "pubmed" else None,
                arxiv_id=pub.source_id if pub.source == "arxiv" else None,
                url=pub.url,
                abstract=pub.abstract,
                source=pub.source,
                created_at=_utc_now_naive(),
            )
        )
        added += 1
    return added


# ---------------------------------------------------------------------------
# Saved candidates
# ---------------------------------------------------------------------------

def build_match_reason(candidate: Candidate) -> str:
    reason = candidate.reasoning or ""
    if candidate.coi and candidate.coi.has_institution_coi:
        reason += INSTITUTION_COI_NOTE
    if candidate.coi and candidate.coi.has_coauthor_coi:
        reason += COAUTHOR_COI_NOTE
    return reason


async def _upsert_suggestion(
    db: AsyncSession,
    proposal: ProposalRef,
    researcher: Researcher,
    candidate: Candidate,
) -> ReviewerSuggestion:
    coi = candidate.coi
    verification = candidate.verification
    now = _utc_now_naive()
    values = {
        "relevance_score": candidate.relevance_score,
        "match_reason": build_match_reason(candidate),
        "sources": _candidate_sources(candidate),
        "candidate_source": candidate.source.value,
        "verification_confidence": candidate.confidence,
        "seniority_estimate": candidate.seniority_estimate,
        "has_institution_coi": bool(coi and coi.has_institution_coi),
        "has_coauthor_coi": bool(coi and coi.has_coauthor_coi),
        "coauthorships": [c.to_dict() for c in coi.coauthorships] if coi and coi.coauthorships else None,
        "institution_mismatch": bool(verification and verification.institution_mismatch),
        "expertise_mismatch": bool(verification and verification.expertise_mismatch),
        "selected": True,
    }

    result = await db.execute(
        select(ReviewerSuggestion).where(
            ReviewerSuggestion.proposal_id == proposal.proposal_id,
            ReviewerSuggestion.researcher_id == researcher.id,
        )
    )
    suggestion = result.scalars().first()
    if suggestion is None:
        suggestion = ReviewerSuggestion(
            id=uuid.uuid4(),
            proposal_id=proposal.proposal_id,
            proposal_title=proposal.title or "Untitled Proposal",
            proposal_abstract=proposal.abstract,
            proposal_authors=proposal.authors_text,
            proposal_institution=proposal.institution,
            grant_cycle_id=proposal.grant_cycle_id,
            researcher_id=researcher.id,
            invited=False,
            suggested_at=now,
            updated_at=now,
            **values,
        )
        db.add(suggestion)
        return suggestion

    for key, value in values.items():
        setattr(suggestion, key, value)
    for key, value in (
        ("proposal_abstract", proposal.abstract),
        ("proposal_authors", proposal.authors_text),
        ("proposal_institution", proposal.institution),
        ("grant_cycle_id", proposal.grant_cycle_id),
    ):
        if value:
            setattr(suggestion, key, value)
    suggestion.suggested_at = now
    suggestion.updated_at = now
    return suggestion


async def save_candidate(db: AsyncSession, proposal: ProposalRef, candidate: Candidate) -> ReviewerSuggestion:
    """Upsert researcher, saved candidate, keyword tags and publications. Caller commits."""
    researcher = await upsert(db, candidate)
    suggestion = await _upsert_suggestion(db, proposal, researcher, candidate)

    for area in candidate.expertise_areas:
        await add_keyword(db, researcher.id, area, CLAUDE_KEYWORD_RELEVANCE, "claude")
    for source in _candidate_sources(candidate):
        if source in ("claude", "unknown"):
            continue
        await add_keyword(db, researcher.id, f"source:{source}", SOURCE_KEYWORD_RELEVANCE, f"source:{source}")

    await save_publications(db, researcher.id, candidate)
    return suggestion


async def save_candidates(
    db: AsyncSession,
    proposal: ProposalRef,
    candidates: Iterable[Candidate],
) -> SaveBatchResult:
    """Save each candidate in its own transaction; failures are rolled back and reported by name."""
    candidates = list(candidates)
    batch = SaveBatchResult(total_requested=len(candidates))
    for candidate in candidates:
        try:
            await save_candidate(db, proposal, candidate)
            await db.commit()
            batch.saved.append(candidate.name)
        except Exception as exc:
            await safe_rollback(db)
            logger.error("[store] saving candidate %s failed: %s", candidate.name, exc, exc_info=True)
            batch.errors.append({"name": candidate.name, "error": str(exc)[:300]})
    logger.info(
        "[store] proposal %s: saved %s/%s candidates",
        proposal.proposal_id, batch.saved_count, batch.total_requested,
    )
    return batch


def suggestion_to_dict(suggestion: ReviewerSuggestion, researcher: Researcher) -> dict[str, Any]:
    return {
        "suggestion_id": str(suggestion.id),
        "researcher_id": str(researcher.id),
        "proposal_id": suggestion.proposal_id,
        "name": researcher.name,
        "affiliation": researcher.primary_affiliation,
        "email": researcher.email,
        "website": researcher.website,
        "orcid": researcher.orcid,
        "h_index": researcher.h_index,
        "total_citations": researcher.total_citations,
        "relevance_score": suggestion.relevance_score,
        "reasoning": suggestion.match_reason,
        "sources": suggestion.sources or [],
        "candidate_source": suggestion.candidate_source,
        "verification_confidence": suggestion.verification_confidence,
        "seniority_estimate": suggestion.seniority_estimate,
        "has_institution_coi": bool(suggestion.has_institution_coi),
        "has_coauthor_coi": bool(suggestion.has_coauthor_coi),
        "coauthorships": suggestion.coauthorships or [],
        "institution_mismatch": bool(suggestion.institution_mismatch),
        "expertise_mismatch": bool(suggestion.expertise_mismatch),
        "selected": bool(suggestion.selected),
        "invited": bool(suggestion.invited),
        "accepted": suggestion.accepted,
        "declined": suggestion.declined,
        "email_sent_at": suggestion.email_sent_at.isoformat() if suggestion.email_sent_at else None,
        "response_type": suggestion.response_type,
        "notes": suggestion.notes,
        "saved_at": suggestion.suggested_at.isoformat() if suggestion.suggested_at else None,
    }


async def get_candidates_for_proposal(db: AsyncSession, proposal_id: str) -> list[dict[str, Any]]:
    result = await db.execute(
        select(ReviewerSuggestion, Researcher)
        .join(Researcher, ReviewerSuggestion.researcher_id == Researcher.id)
        .where(ReviewerSuggestion.proposal_id == proposal_id, ReviewerSuggestion.selected.is_(True))
        .order_by(ReviewerSuggestion.relevance_score.desc().nulls_last(), Researcher.name)
    )
    return [suggestion_to_dict(s, r) for s, r in result.all()]


async def list_candidates_grouped(db: AsyncSession, grant_cycle_id: UUID | None = None) -> list[dict[str, Any]]:
    """Selected candidates grouped by proposal, most recently saved first."""
    stmt = (
        select(ReviewerSuggestion, Researcher)
        .join(Researcher, ReviewerSuggestion.researcher_id == Researcher.id)
        .where(ReviewerSuggestion.selected.is_(True))
    )
    if grant_cycle_id is not None:
        stmt = stmt.where(ReviewerSuggestion.grant_cycle_id == grant_cycle_id)
    result = await db.execute(stmt.order_by(ReviewerSuggestion.suggested_at.desc()))

    proposals: dict[str, dict[str, Any]] = {}
    for suggestion, researcher in result.all():
        group = proposals.get(suggestion.proposal_id)
        if group is None:
            group = {
                "proposal_id": suggestion.proposal_id,
                "proposal_title": suggestion.proposal_title,
                "proposal_abstract": suggestion.proposal_abstract,
                "proposal_authors": suggestion.proposal_authors,
                "proposal_institution": suggestion.proposal_institution,
                "grant_cycle_id": str(suggestion.grant_cycle_id) if suggestion.grant_cycle_id else None,
                "candidates": [],
            }
            proposals[suggestion.proposal_id] = group
        group["candidates"].append(suggestion_to_dict(suggestion, researcher))
    return list(proposals.values())


async def update_candidate_status(
    db: AsyncSession,
    suggestion_id: UUID,
    *,
    invited: bool | None = None,
    accepted: bool | None = None,
    declined: bool | None = None,
    notes: str | None = None,
    email_sent_at: datetime | None = None,
    response_type: str | None = None,
) -> ReviewerSuggestion:
    if response_type is not None and response_type not in RESPONSE_TYPES:
        raise ValueError(f"response_type must be one of {RESPONSE_TYPES}")
    suggestion = (
        await db.execute(select(ReviewerSuggestion).where(ReviewerSuggestion.id == suggestion_id))
    ).scalar_one_or_none()
    if suggestion is None:
        raise SuggestionNotFoundError(suggestion_id)

    if invited is not None:
        suggestion.invited = invited
    if accepted is not None:
        suggestion.accepted = accepted
    if declined is not None:
        suggestion.declined = declined
    if notes is not None:
        suggestion.notes = notes
    if email_sent_at is not None:
        suggestion.email_sent_at = email_sent_at
        suggestion.invited = True
    if response_type is not None:
        suggestion.response_type = response_type
        if response_type == "accepted":
            suggestion.accepted, suggestion.declined = True, False
        elif response_type == "declined":
            suggestion.accepted, suggestion.declined = False, True
    suggestion.updated_at = _utc_now_naive()
    await db.commit()
    return suggestion


async def remove_candidates(db: AsyncSession, suggestion_ids: Iterable[UUID]) -> int:
    """Soft delete: mark saved candidates as not selected. Returns rows affected."""
    ids = list(suggestion_ids)
    if not ids:
        return 0
    result = await db.execute(
        update(ReviewerSuggestion)
        .where(ReviewerSuggestion.id.in_(ids))
        .values(selected=False, updated_at=_utc_now_naive())
    )
    await db.commit()
    removed = result.rowcount or 0
    logger.info("[store] removed %s/%s saved candidates", removed, len(ids))
    return removed


# ---------------------------------------------------------------------------
# Contact info
# ---------------------------------------------------------------------------

async def save_contact_info(db: AsyncSession, researcher_id: UUID, contact: ContactInfo) -> Researcher:
    """Write enrichment results onto the researcher; empty values never clear existing ones."""
    researcher = (
        await db.execute(select(Researcher).where(Researcher.id == researcher_id))
    ).scalar_one_or_none()
    if researcher is None:
        raise ResearcherNotFoundError(researcher_id)

    if contact.email:
        researcher.email = contact.email
        researcher.email_source = contact.email_source
        researcher.email_year = contact.email_year
    if contact.website:
        researcher.website = contact.website
    if contact.faculty_page_url:
        researcher.faculty_page_url = contact.faculty_page_url
    if contact.orcid and not researcher.orcid:
        researcher.orcid = normalize_orcid(contact.orcid)
        researcher.orcid_url = contact.orcid_url
    if contact.google_scholar_url and not researcher.google_scholar_url:
        researcher.google_scholar_url = contact.google_scholar_url
    now = _utc_now_naive()
    researcher.contact_enriched_at = now
    researcher.contact_enrichment_source = contact.source
    researcher.last_updated = now
    if not await safe_commit(db):
        raise RuntimeError(f"Could not save contact info for researcher {researcher_id}")
    return researcher


# ---------------------------------------------------------------------------
# Grant cycles
# ---------------------------------------------------------------------------

async def create_grant_cycle(
    db: AsyncSession,
    name: str,
    short_code: str,
    program_name: str | None = None,
    is_active: bool = True,
) -> GrantCycle:
    short_code = short_code.strip().upper()
    existing = (
        await db.execute(select(GrantCycle).where(GrantCycle.short_code == short_code))
    ).scalar_one_or_none()
    if existing is not None:
        raise ValueError(f"Grant cycle {short_code} already exists")
    cycle = GrantCycle(
        id=uuid.uuid4(),
        name=name.strip(),
        short_code=short_code,
        program_name=program_name,
        is_active=is_active,
        created_at=_utc_now_naive(),
    )
    db.add(cycle)
    await db.commit()
    return cycle


async def list_grant_cycles(db: AsyncSession, active_only: bool = False) -> list[GrantCycle]:
    stmt = select(GrantCycle)
    if active_only:
        stmt = stmt.where(GrantCycle.is_active.is_(True))
    result = await db.execute(stmt.order_by(GrantCycle.created_at.desc()))
    return list(result.scalars().all())


async def assign_grant_cycle(db: AsyncSession, proposal_id: str, grant_cycle_id: UUID | None) -> int:
    """Attach every saved candidate of a proposal to a grant cycle (None detaches)."""
    if grant_cycle_id is not None:
        cycle = (
            await db.execute(select(GrantCycle).where(GrantCycle.id == grant_cycle_id))
        ).scalar_one_or_none()
        if cycle is None:
            raise LookupError(f"Grant cycle {grant_cycle_id} not found")
    result = await db.execute(
        update(ReviewerSuggestion)
        .where(ReviewerSuggestion.proposal_id == proposal_id)
        .values(grant_cycle_id=grant_cycle_id, updated_at=_utc_now_naive())
    )
    await db.commit()
    return result.rowcount or 0
