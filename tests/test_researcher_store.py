"""Unit tests for reviewer_finder.services.researcher_store (mocked AsyncSession)."""
from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from reviewer_finder.candidates import (
    AuthorRecord,
    Candidate,
    COIResult,
    ContactInfo,
    PublicationRecord,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _result(*, scalar=None, scalars=None, first=None, rows=None, rowcount=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalars.return_value.all.return_value = scalars or []
    result.scalars.return_value.first.return_value = first
    result.all.return_value = rows or []
    result.rowcount = rowcount
    return result


def _mock_db(*, execute_side_effect=None, result=None):
    """Build a mock AsyncSession with common patterns."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.delete = AsyncMock()
    if execute_side_effect is not None:
        db.execute = AsyncMock(side_effect=execute_side_effect)
    else:
        db.execute = AsyncMock(return_value=result or _result())
    return db


def _researcher(name="Jane Smith", **overrides):
    fields = dict(
        id=uuid4(),
        name=name,
        normalized_name=name.lower(),
        primary_affiliation=None,
        department=None,
        email=None,
        email_source=None,
        email_year=None,
        website=None,
        orcid=None,
        orcid_url=None,
        google_scholar_id=None,
        google_scholar_url=None,
        faculty_page_url=None,
        h_index=None,
        i10_index=None,
        total_citations=None,
        created_at=datetime(2024, 1, 1),
        last_updated=None,
        contact_enriched_at=None,
        contact_enrichment_source=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _keyword(researcher_id, keyword, relevance):
    return SimpleNamespace(id=uuid4(), researcher_id=researcher_id, keyword=keyword, relevance_score=relevance)


def _suggestion(researcher_id, proposal_id, **overrides):
    fields = dict(
        id=uuid4(),
        researcher_id=researcher_id,
        proposal_id=proposal_id,
        has_institution_coi=False,
        has_coauthor_coi=False,
        institution_mismatch=False,
        expertise_mismatch=False,
        coauthorships=None,
        relevance_score=None,
        verification_confidence=None,
        selected=True,
        invited=False,
        accepted=None,
        declined=None,
        email_sent_at=None,
        response_type=None,
        notes=None,
        match_reason=None,
        grant_cycle_id=None,
        updated_at=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


# ---------------------------------------------------------------------------
# find_duplicates
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_find_duplicates_shared_orcid():
    from reviewer_finder.services.researcher_store import find_duplicates

    a = _researcher("Jane Smith", orcid="0000-0001-2345-6789", created_at=datetime(2023, 1, 1))
    b = _researcher("J. A. Smith", normalized_name="j a smith", orcid="0000-0001-2345-6789")
    db = _mock_db(result=_result(scalars=[a, b]))

    groups = await find_duplicates(db)
    assert len(groups) == 1
    assert groups[0].match_type == "orcid"
    assert groups[0].match_value == "0000-0001-2345-6789"
    assert groups[0].researcher_ids == [a.id, b.id]


@pytest.mark.asyncio
async def test_find_duplicates_none():
    from reviewer_finder.services.researcher_store import find_duplicates

    db = _mock_db(result=_result(scalars=[_researcher("Jane Smith"), _researcher("Alice Wong")]))
    assert await find_duplicates(db) == []


# ---------------------------------------------------------------------------
# merge
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_merge_moves_coalesces_and_deletes():
    from reviewer_finder.services.researcher_store import merge

    primary = _researcher("Jane Smith", h_index=10)
    secondary = _researcher("Jane A Smith", email="jane@uni.edu", h_index=25, orcid="0000-0001-2345-6789")
    kw_primary = _keyword(primary.id, "Ecology", 0.9)
    kw_dup = _keyword(secondary.id, "ecology", 1.0)
    kw_new = _keyword(secondary.id, "phage", 0.9)
    sug_primary = _suggestion(primary.id, "P1", relevance_score=40.0)
    sug_conflict = _suggestion(secondary.id, "P1", relevance_score=60.0, has_coauthor_coi=True, invited=True)
    sug_new = _suggestion(secondary.id, "P2")

    db = _mock_db(execute_side_effect=[
        _result(scalar=primary),
        _result(scalars=[secondary]),
        _result(scalars=[kw_primary]),
        _result(scalars=[sug_primary]),
        _result(scalars=[kw_dup, kw_new]),
        _result(scalars=[sug_conflict, sug_new]),
        _result(),  # publications re-pointed
    ])

    stats = await merge(db, primary.id, [secondary.id])

    assert stats.keywords_moved == 1
    assert stats.keywords_coalesced == 1
    assert stats.suggestions_moved == 1
    assert stats.conflicts_resolved == 1
    assert stats.secondaries_deleted == 1
    assert stats.already_merged == []

    assert kw_primary.relevance_score == 1.0
    assert kw_new.researcher_id == primary.id
    assert sug_new.researcher_id == primary.id
    assert sug_primary.has_coauthor_coi is True
    assert sug_primary.invited is True
    assert sug_primary.relevance_score == 60.0

    assert primary.email == "jane@uni.edu"
    assert primary.email_source == "merged"
    assert primary.orcid == "0000-0001-2345-6789"
    assert primary.h_index == 25

    deleted = [c.args[0] for c in db.delete.await_args_list]
    assert deleted == [kw_dup, sug_conflict, secondary]
    db.commit.assert_awaited_once()
    db.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_merge_missing_primary_raises_and_rolls_back():
    from reviewer_finder.services.researcher_store import ResearcherNotFoundError, merge

    db = _mock_db(execute_side_effect=[_result(scalar=None)])
    with pytest.raises(ResearcherNotFoundError):
        await merge(db, uuid4(), [uuid4()])
    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_merge_reports_already_merged_secondary():
    from reviewer_finder.services.researcher_store import merge

    primary = _researcher("Jane Smith")
    gone = uuid4()
    db = _mock_db(execute_side_effect=[
        _result(scalar=primary),
        _result(scalars=[]),
        _result(scalars=[]),
        _result(scalars=[]),
    ])
    stats = await merge(db, primary.id, [gone, primary.id])
    assert stats.already_merged == [gone]
    assert stats.secondaries_deleted == 0
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_merge_failure_rolls_back():
    from reviewer_finder.services.researcher_store import merge

    primary = _researcher("Jane Smith")
    db = _mock_db(execute_side_effect=[_result(scalar=primary), RuntimeError("db down")])
    with pytest.raises(RuntimeError):
        await merge(db, primary.id, [uuid4()])
    db.rollback.assert_awaited_once()


# ---------------------------------------------------------------------------
# upsert
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upsert_creates_new_researcher():
    from reviewer_finder.models import Researcher
    from reviewer_finder.services.researcher_store import upsert

    db = _mock_db()
    candidate = Candidate(name="Dr. Jane Smith", affiliation="Stanford University", email="Jane@Stanford.edu")
    row = await upsert(db, candidate)

    assert isinstance(row, Researcher)
    assert row.normalized_name == "jane smith"
    assert row.email == "jane@stanford.edu"
    assert row.primary_affiliation == "Stanford University"
    db.add.assert_called_once_with(row)
    db.flush.assert_awaited_once()
    # email, then name
    assert db.execute.await_count == 2


@pytest.mark.asyncio
async def test_upsert_existing_row_is_updated_not_duplicated():
    from reviewer_finder.services.researcher_store import upsert

    existing = _researcher("Jane Smith", primary_affiliation="Stanford University", h_index=30)
    db = _mock_db(result=_result(first=existing))
    candidate = Candidate(
        name="Jane Smith",
        affiliation="MIT",
        orcid="https://orcid.org/0000-0001-2345-6789",
        h_index=12,
    )
    row = await upsert(db, candidate)

    assert row is existing
    db.add.assert_not_called()
    assert existing.orcid == "0000-0001-2345-6789"
    assert existing.orcid_url == "https://orcid.org/0000-0001-2345-6789"
    assert existing.primary_affiliation == "Stanford University"
    assert existing.h_index == 30


# ---------------------------------------------------------------------------
# save_candidate / save_candidates
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_save_candidate_writes_researcher_suggestion_keywords_publications():
    from reviewer_finder.models import Publication, Researcher, ResearcherKeyword, ReviewerSuggestion
    from reviewer_finder.services.researcher_store import INSTITUTION_COI_NOTE, ProposalRef, save_candidate

    db = _mock_db()
    pub = PublicationRecord(
        title="Phage ecology",
        source="pubmed",
        source_id="123",
        authors=(AuthorRecord("John Doe"), AuthorRecord("Jane Smith")),
        year=2023,
        doi="10.1/abc",
    )
    candidate = Candidate(
        name="Jane Smith",
        discovery_sources=("claude", "pubmed"),
        expertise_areas=("phage ecology",),
        reasoning="Works on phage.",
        publications=(pub,),
        coi=COIResult(has_institution_coi=True),
    )
    proposal = ProposalRef(proposal_id="P1", title="Phage proposal", authors=("John Doe", "Mary Major"))

    suggestion = await save_candidate(db, proposal, candidate)

    added = [c.args[0] for c in db.add.call_args_list]
    assert [type(o) for o in added] == [Researcher, ReviewerSuggestion, ResearcherKeyword, ResearcherKeyword, Publication]
    assert suggestion is added[1]
    assert suggestion.proposal_authors == "John Doe, Mary Major"
    assert suggestion.match_reason == "Works on phage." + INSTITUTION_COI_NOTE
    assert suggestion.sources == ["claude", "pubmed"]
    assert suggestion.selected is True
    assert suggestion.verification_confidence is None

    claude_kw, source_kw = added[2], added[3]
    assert (claude_kw.keyword, claude_kw.relevance_score, claude_kw.source) == ("phage ecology", 0.9, "claude")
    assert (source_kw.keyword, source_kw.relevance_score, source_kw.source) == ("source:pubmed", 1.0, "source:pubmed")

    publication = added[4]
    assert publication.pmid == "123"
    assert publication.author_position == 2
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_save_candidates_reports_failures_by_name():
    from reviewer_finder.services.researcher_store import ProposalRef, save_candidates

    db = _mock_db()
    with patch(
        "reviewer_finder.services.researcher_store.save_candidate",
        new_callable=AsyncMock,
        side_effect=[MagicMock(), RuntimeError("constraint violated")],
    ):
        batch = await save_candidates(db, ProposalRef("P1"), [Candidate(name="A One"), Candidate(name="B Two")])

    assert batch.total_requested == 2
    assert batch.saved == ["A One"]
    assert batch.saved_count == 1
    assert batch.errors == [{"name": "B Two", "error": "constraint violated"}]
    db.commit.assert_awaited_once()
    db.rollback.assert_awaited_once()


# ---------------------------------------------------------------------------
# Status updates
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_candidate_status_rejects_unknown_response_type():
    from reviewer_finder.services.researcher_store import update_candidate_status

    db = _mock_db()
    with pytest.raises(ValueError):
        await update_candidate_status(db, uuid4(), response_type="maybe")
    db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_candidate_status_not_found():
    from reviewer_finder.services.researcher_store import SuggestionNotFoundError, update_candidate_status

    db = _mock_db(result=_result(scalar=None))
    with pytest.raises(SuggestionNotFoundError):
        await update_candidate_status(db, uuid4(), invited=True)


@pytest.mark.asyncio
async def test_update_candidate_status_response_and_email():
    from reviewer_finder.services.researcher_store import update_candidate_status

    row = _suggestion(uuid4(), "P1")
    db = _mock_db(result=_result(scalar=row))
    sent = datetime(2024, 5, 1)
    out = await update_candidate_status(db, row.id, email_sent_at=sent, response_type="declined", notes="on leave")
    assert out is row
    assert row.invited is True
    assert row.email_sent_at == sent
    assert (row.accepted, row.declined) == (False, True)
    assert row.notes == "on leave"
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_remove_candidates_soft_delete():
    from reviewer_finder.services.researcher_store import remove_candidates

    db = _mock_db(result=_result(rowcount=2))
    assert await remove_candidates(db, [uuid4(), uuid4()]) == 2
    db.commit.assert_awaited_once()
    assert await remove_candidates(db, []) == 0


# ---------------------------------------------------------------------------
# Contact info / grant cycles
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_save_contact_info_never_clears_existing():
    from reviewer_finder.services.researcher_store import save_contact_info

    row = _researcher("Jane Smith", website="https://lab.example.edu", orcid="0000-0002-0000-0000")
    db = _mock_db(result=_result(scalar=row))
    contact = ContactInfo(
        email="jane@uni.edu",
        email_source="PubMed (123)",
        email_year=2024,
        orcid="0000-0001-2345-6789",
        source="pubmed",
    )
    await save_contact_info(db, row.id, contact)
    assert row.email == "jane@uni.edu"
    assert row.email_year == 2024
    assert row.website == "https://lab.example.edu"
    assert row.orcid == "0000-0002-0000-0000"
    assert row.contact_enrichment_source == "pubmed"
    assert row.contact_enriched_at is not None
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_save_contact_info_missing_researcher():
    from reviewer_finder.services.researcher_store import ResearcherNotFoundError, save_contact_info

    db = _mock_db(result=_result(scalar=None))
    with pytest.raises(ResearcherNotFoundError):
        await save_contact_info(db, uuid4(), ContactInfo())


@pytest.mark.asyncio
async def test_create_grant_cycle_duplicate_code():
    from reviewer_finder.services.researcher_store import create_grant_cycle

    db = _mock_db(result=_result(scalar=SimpleNamespace(short_code="J26")))
    with pytest.raises(ValueError):
        await create_grant_cycle(db, "June 2026", "j26")
    db.add.assert_not_called()


@pytest.mark.asyncio
async def test_create_grant_cycle_normalizes_code():
    from reviewer_finder.services.researcher_store import create_grant_cycle

    db = _mock_db(result=_result(scalar=None))
    cycle = await create_grant_cycle(db, " June 2026 ", " j26 ")
    assert cycle.short_code == "J26"
    assert cycle.name == "June 2026"
    db.add.assert_called_once_with(cycle)
    db.commit.assert_awaited_once()


# ---------------------------------------------------------------------------
# Identity idempotence and saved-candidate round trip
# ---------------------------------------------------------------------------

def _identity_session():
    """Mock session that remembers added researchers and finds them again by identity value."""
    db = _mock_db()
    stored = []

    def _add(obj):
        stored.append(obj)

    async def _execute(stmt, *args, **kwargs):
        sql = str(stmt.compile(compile_kwargs={"literal_binds": True}))
        match = next(
            (
                row for row in stored
                if any(v and f"'{v}'" in sql for v in (row.email, row.orcid, row.normalized_name))
            ),
            None,
        )
        return _result(first=match)

    db.add = MagicMock(side_effect=_add)
    db.execute = AsyncMock(side_effect=_execute)
    return db


@pytest.mark.asyncio
async def test_upsert_same_email_twice_adds_one_row():
    from reviewer_finder.services.researcher_store import upsert

    db = _identity_session()
    first = await upsert(db, Candidate(name="Jane Smith", email="jane@uni.edu"))
    second = await upsert(db, Candidate(name="J. Smith", email="JANE@uni.edu", affiliation="University of Oslo"))

    assert second is first
    assert db.add.call_count == 1
    assert first.primary_affiliation == "University of Oslo"


@pytest.mark.asyncio
async def test_upsert_same_orcid_twice_adds_one_row():
    from reviewer_finder.services.researcher_store import upsert

    db = _identity_session()
    first = await upsert(db, Candidate(name="Jane Smith", orcid="https://orcid.org/0000-0001-2345-6789"))
    second = await upsert(db, Candidate(name="Jane A. Smith", orcid="0000-0001-2345-6789"))

    assert second is first
    assert db.add.call_count == 1
    assert first.orcid == "0000-0001-2345-6789"


@pytest.mark.asyncio
async def test_saved_candidate_reloads_with_same_name_affiliation_and_coi_flags():
    from reviewer_finder.candidates import Coauthorship
    from reviewer_finder.models import Researcher, ReviewerSuggestion
    from reviewer_finder.services.researcher_store import ProposalRef, get_candidates_for_proposal, save_candidate

    write_db = _mock_db()
    candidate = Candidate(
        name="Jane Smith",
        affiliation="University of Oslo",
        reasoning="Phage ecology.",
        coi=COIResult(
            has_institution_coi=True,
            has_coauthor_coi=True,
            coauthorships=(Coauthorship("John Doe", 2, ("Paper A",)),),
        ),
    )
    await save_candidate(write_db, ProposalRef("P1", title="Phage proposal"), candidate)
    added = [c.args[0] for c in write_db.add.call_args_list]
    researcher = next(o for o in added if isinstance(o, Researcher))
    suggestion = next(o for o in added if isinstance(o, ReviewerSuggestion))

    read_db = _mock_db(result=_result(rows=[(suggestion, researcher)]))
    [saved] = await get_candidates_for_proposal(read_db, "P1")

    assert saved["name"] == "Jane Smith"
    assert saved["affiliation"] == "University of Oslo"
    assert saved["has_institution_coi"] is True
    assert saved["has_coauthor_coi"] is True
    assert saved["coauthorships"] == [{"proposal_author": "John Doe", "paper_count": 2, "recent_papers": ["Paper A"]}]
    assert saved["proposal_id"] == "P1"


# ---------------------------------------------------------------------------
# Researcher database
# ---------------------------------------------------------------------------

def _count_result(n):
    result = _result()
    result.scalar.return_value = n
    return result


@pytest.mark.asyncio
async def test_list_researchers_page_and_keywords():
    from sqlalchemy.dialects import postgresql

    from reviewer_finder.services.researcher_store import list_researchers

    a = _researcher("Ann Lee", email="ann@uni.edu")
    b = _researcher("Bob Roe")
    tags = [_keyword(a.id, "phage ecology", 0.9), _keyword(a.id, "source:pubmed", 1.0), _keyword(b.id, "soil", 0.9)]
    for tag in tags:
        tag.source = "claude"
    db = _mock_db(execute_side_effect=[_count_result(5), _result(scalars=[a, b]), _result(scalars=tags)])

    page = await list_researchers(
        db, search=" lee ", sort_by="h_index", sort_order="asc", limit=500, has_email=True, keywords=["Phage Ecology", " "]
    )

    assert page.researchers == [a, b]
    assert page.total == 5
    assert page.limit == 100
    assert page.has_more is True
    assert [t.keyword for t in page.keywords[a.id]] == ["phage ecology", "source:pubmed"]
    assert [t.keyword for t in page.keywords[b.id]] == ["soil"]

    select_sql = str(db.execute.await_args_list[1].args[0].compile(dialect=postgresql.dialect()))
    assert "ILIKE" in select_sql
    assert "researchers.h_index ASC NULLS FIRST" in select_sql
    assert "researcher_keywords" in select_sql


@pytest.mark.asyncio
async def test_list_researchers_unknown_sort_and_empty_page():
    from sqlalchemy.dialects import postgresql

    from reviewer_finder.services.researcher_store import list_researchers

    db = _mock_db(execute_side_effect=[_count_result(0), _result(scalars=[])])
    page = await list_researchers(db, sort_by="favourite", sort_order="sideways", offset=-3)

    assert page.researchers == []
    assert page.offset == 0
    assert page.has_more is False
    # no keyword lookup for an empty page
    assert db.execute.await_count == 2
    select_sql = str(db.execute.await_args_list[1].args[0].compile(dialect=postgresql.dialect()))
    assert "researchers.last_updated DESC NULLS LAST" in select_sql


@pytest.mark.asyncio
async def test_list_keywords_counts():
    from reviewer_finder.services.researcher_store import list_keywords

    db = _mock_db(result=_result(rows=[("phage ecology", 3), ("soil", 1)]))
    assert await list_keywords(db) == [("phage ecology", 3), ("soil", 1)]


@pytest.mark.asyncio
async def test_get_researcher_detail():
    from reviewer_finder.services.researcher_store import get_researcher

    row = _researcher("Ann Lee")
    tag = _keyword(row.id, "phage ecology", 0.9)
    pub = SimpleNamespace(title="Phage ecology", year=2023)
    saved = _suggestion(row.id, "P1")
    db = _mock_db(execute_side_effect=[
        _result(scalar=row), _result(scalars=[tag]), _result(scalars=[pub]), _result(scalars=[saved]),
    ])

    detail = await get_researcher(db, row.id)
    assert detail.researcher is row
    assert detail.keywords == [tag]
    assert detail.publications == [pub]
    assert detail.suggestions == [saved]


@pytest.mark.asyncio
async def test_get_researcher_missing():
    from reviewer_finder.services.researcher_store import ResearcherNotFoundError, get_researcher

    db = _mock_db(result=_result(scalar=None))
    with pytest.raises(ResearcherNotFoundError):
        await get_researcher(db, uuid4())


@pytest.mark.asyncio
async def test_update_researcher_fields():
    from reviewer_finder.services.researcher_store import update_researcher

    row = _researcher("Ann Lee", email="old@uni.edu", email_source="PubMed (1)", email_year=2020, metrics_updated_at=None)
    db = _mock_db(result=_result(scalar=row))

    researcher, fields = await update_researcher(db, row.id, {
        "name": "Dr. Ann B. Lee",
        "email": " Ann@Lab.org ",
        "orcid": "https://orcid.org/0000-0001-2345-6789",
        "google_scholar_id": "abc123",
        "h_index": "17",
    })

    assert researcher is row
    assert fields == ["name", "email", "orcid", "google_scholar_id", "h_index"]
    assert row.normalized_name == "ann b lee"
    assert (row.email, row.email_source, row.email_year) == ("ann@lab.org", "manual", None)
    assert row.orcid_url == "https://orcid.org/0000-0001-2345-6789"
    assert row.google_scholar_url == "https://scholar.google.com/citations?user=abc123"
    assert row.h_index == 17
    assert row.metrics_updated_at is not None
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_update_researcher_clears_email():
    from reviewer_finder.services.researcher_store import update_researcher

    row = _researcher("Ann Lee", email="old@uni.edu", email_source="PubMed (1)")
    db = _mock_db(result=_result(scalar=row))
    await update_researcher(db, row.id, {"email": ""})
    assert row.email is None
    assert row.email_source is None


@pytest.mark.asyncio
@pytest.mark.parametrize("changes", [{}, {"created_at": "2020-01-01"}, {"name": "  "}])
async def test_update_researcher_rejects_bad_changes(changes):
    from reviewer_finder.services.researcher_store import update_researcher

    db = _mock_db(result=_result(scalar=_researcher("Ann Lee")))
    with pytest.raises(ValueError):
        await update_researcher(db, uuid4(), changes)
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_researcher_missing():
    from reviewer_finder.services.researcher_store import ResearcherNotFoundError, update_researcher

    db = _mock_db(result=_result(scalar=None))
    with pytest.raises(ResearcherNotFoundError):
        await update_researcher(db, uuid4(), {"department": "Biology"})


@pytest.mark.asyncio
async def test_delete_researchers_reports_removed_suggestions():
    from reviewer_finder.services.researcher_store import delete_researchers

    a, b = uuid4(), uuid4()
    db = _mock_db(execute_side_effect=[_count_result(3), _result(scalars=[a])])
    result = await delete_researchers(db, [a, b, a])

    assert result.deleted_ids == [a]
    assert result.deleted_count == 1
    assert result.suggestions_removed == 3
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_delete_researchers_empty_and_failure():
    from reviewer_finder.services.researcher_store import delete_researchers

    db = _mock_db()
    result = await delete_researchers(db, [])
    assert result.deleted_count == 0
    db.execute.assert_not_awaited()

    db = _mock_db(execute_side_effect=[_count_result(0), RuntimeError("fk violation")])
    with pytest.raises(RuntimeError):
        await delete_researchers(db, [uuid4()])
    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()
