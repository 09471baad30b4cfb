"""Unit tests for reviewer_finder.services.coi."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from reviewer_finder.candidates import AuthorRecord, Candidate, PublicationRecord


def _pub(i, title, authors, year=2023):
    return PublicationRecord(
        title=title,
        source="pubmed",
        source_id=str(i),
        authors=tuple(AuthorRecord(name=a) for a in authors),
        year=year,
    )


def _candidate(pubs, affiliation="Stanford University"):
    return Candidate(name="Alice Wong", affiliation=affiliation, publications=tuple(pubs))


# ---------------------------------------------------------------------------
# detect_coi (local)
# ---------------------------------------------------------------------------

def test_coauthor_with_proposal_pi():
    from reviewer_finder.services.coi import detect_coi

    candidate = _candidate([
        _pub(1, "Shared paper", ["Alice Wong", "John Doe"], year=2022),
        _pub(2, "Solo paper", ["Alice Wong", "Bob Stone"]),
    ])
    coi = detect_coi(candidate, ["John Doe", "Not specified"], "University of Oslo")
    assert coi.has_coauthor_coi is True
    assert coi.has_institution_coi is False
    assert [c.to_dict() for c in coi.coauthorships] == [
        {"proposal_author": "John Doe", "paper_count": 1, "recent_papers": ["Shared paper"]}
    ]


def test_paper_count_exact_evidence_capped():
    from reviewer_finder.services.coi import detect_coi

    pubs = [_pub(i, f"Paper {i}", ["Alice Wong", "J Doe"], year=2015 + i) for i in range(5)]
    coi = detect_coi(_candidate(pubs), ["John Doe"], None, evidence_cap=3)
    [c] = coi.coauthorships
    assert c.paper_count == 5
    assert c.recent_papers == ("Paper 4", "Paper 3", "Paper 2")


def test_institution_coi():
    from reviewer_finder.services.coi import detect_coi

    candidate = _candidate([], affiliation="Department of Biology, University of Oslo")
    coi = detect_coi(candidate, ["John Doe"], "University of Oslo")
    assert coi.has_institution_coi is True
    assert coi.has_coi is True


@pytest.mark.parametrize(
    "affiliation, proposal_institution",
    [
        ("Smith College", "MIT"),
        ("Pennsylvania State University", "Penn"),
        ("Ohio State University", "Ohio University"),
    ],
)
def test_institution_coi_not_raised_for_different_places(affiliation, proposal_institution):
    from reviewer_finder.services.coi import detect_coi

    coi = detect_coi(Candidate(name="Ann Lee", affiliation=affiliation), [], proposal_institution)
    assert coi.has_institution_coi is False


def test_institution_coi_whole_word_containment():
    from reviewer_finder.services.coi import detect_coi

    coi = detect_coi(Candidate(name="Ann Lee", affiliation="Stanford University School of Medicine"), [], "Stanford University")
    assert coi.has_institution_coi is True


def test_candidate_is_not_own_coauthor():
    from reviewer_finder.services.coi import detect_coi

    candidate = Candidate(
        name="John Doe",
        publications=(_pub(1, "Paper", ["John Doe", "Mary Major"]),),
    )
    coi = detect_coi(candidate, ["John Doe"], None)
    assert coi.has_coauthor_coi is False


def test_filter_proposal_authors():
    from reviewer_finder.services.coi import filter_proposal_authors

    assert filter_proposal_authors(["John Doe", "", None, "Unknown", "John Doe", "Mary Major"]) == ["John Doe", "Mary Major"]


# ---------------------------------------------------------------------------
# detect_coi_with_remote
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remote_papers_union_by_record_key():
    from reviewer_finder.services.coi import detect_coi_with_remote

    shared = _pub(1, "Shared paper", ["Alice Wong", "John Doe"], year=2022)
    remote_only = _pub(9, "Remote paper", ["Alice Wong", "John Doe"], year=2024)
    pubmed = SimpleNamespace(search_coauthored=AsyncMock(return_value=[shared, remote_only]))

    coi = await detect_coi_with_remote(_candidate([shared]), ["John Doe"], None, pubmed)
    [c] = coi.coauthorships
    assert c.paper_count == 2
    assert c.recent_papers[0] == "Remote paper"
    pubmed.search_coauthored.assert_awaited_once_with("Alice Wong", "John Doe", 10)


@pytest.mark.asyncio
async def test_remote_failure_falls_back_to_local():
    from reviewer_finder.services.coi import detect_coi_with_remote

    pubmed = SimpleNamespace(search_coauthored=AsyncMock(side_effect=RuntimeError("down")))
    coi = await detect_coi_with_remote(_candidate([]), ["John Doe"], None, pubmed)
    assert coi.has_coauthor_coi is False
    assert coi.coauthorships == ()


@pytest.mark.asyncio
async def test_remote_skipped_without_adapter():
    from reviewer_finder.services.coi import detect_coi_with_remote

    candidate = _candidate([_pub(1, "Shared paper", ["Alice Wong", "John Doe"])])
    coi = await detect_coi_with_remote(candidate, ["John Doe"], None, None)
    assert coi.has_coauthor_coi is True
