"""Unit tests for reviewer_finder.services.enrichment (tiers mocked, no network)."""
from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest

from reviewer_finder.candidates import AuthorRecord, Candidate, PublicationRecord
from reviewer_finder.pipeline.config import Credentials, EnrichmentOptions

ORCID_CREDS = Credentials(orcid_client_id="APP-1", orcid_client_secret="secret", serp_api_key="serp-key")


@pytest.fixture(autouse=True)
def _clear_orcid_token_cache():
    from reviewer_finder.services.orcid import _token_cache

    _token_cache.clear()
    yield
    _token_cache.clear()


def _pub(affiliation, year=None, pmid="1"):
    return PublicationRecord(
        title="Phage ecology",
        source="pubmed",
        source_id=pmid,
        authors=(AuthorRecord("John Doe"), AuthorRecord("Jane Smith", affiliations=(affiliation,), is_senior=True)),
        year=year or datetime.now().year,
    )


def _orcid_empty_client(calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path.endswith("/expanded-search/"):
            return httpx.Response(200, json={"expanded-result": []})
        return httpx.Response(404)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _llm(response=None, side_effect=None):
    llm = MagicMock()
    llm.supports_web_search = True
    llm.generate = AsyncMock(return_value=response, side_effect=side_effect)
    return llm


# ---------------------------------------------------------------------------
# Tier chain
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_free_tiers_only_and_nothing_found():
    from reviewer_finder.services.enrichment import enrich

    calls = []
    llm = _llm()
    candidate = Candidate(name="Jane Smith", affiliation="Stanford University", publications=(_pub("Stanford University"),))
    info = await enrich(
        candidate,
        EnrichmentOptions(enabled_tiers=("pubmed", "orcid")),
        ORCID_CREDS,
        llm=llm,
        client=_orcid_empty_client(calls),
    )

    assert info.email is None
    assert info.website is None
    assert info.status == "not_found"
    assert info.tiers_attempted == ("pubmed", "orcid")
    assert info.google_scholar_url.startswith("https://scholar.google.com/citations?view_op=search_authors&mauthors=")
    llm.generate.assert_not_called()
    assert "/v3.0/expanded-search/" in calls


@pytest.mark.asyncio
async def test_recent_pubmed_email_stops_chain():
    from reviewer_finder.services.enrichment import enrich

    calls = []
    candidate = Candidate(name="Jane Smith", publications=(_pub("Stanford University. jane@stanford.edu", pmid="42"),))
    info = await enrich(
        candidate,
        EnrichmentOptions(enabled_tiers=("pubmed", "orcid")),
        ORCID_CREDS,
        client=_orcid_empty_client(calls),
    )
    assert info.email == "jane@stanford.edu"
    assert info.email_source == "PubMed (42)"
    assert info.source == "pubmed"
    assert info.tiers_attempted == ("pubmed",)
    assert calls == []


@pytest.mark.asyncio
async def test_old_pubmed_email_is_fallback():
    from reviewer_finder.services.enrichment import enrich

    old_year = datetime.now().year - 6
    candidate = Candidate(name="Jane Smith", publications=(_pub("MIT. jsmith@mit.edu", year=old_year),))
    info = await enrich(
        candidate,
        EnrichmentOptions(enabled_tiers=("pubmed", "orcid")),
        ORCID_CREDS,
        client=_orcid_empty_client(),
    )
    assert info.tiers_attempted == ("pubmed", "orcid")
    assert info.email == "jsmith@mit.edu"
    assert info.email_year == old_year
    assert info.confidence == "low"


@pytest.mark.asyncio
async def test_orcid_search_hit_with_email():
    from reviewer_finder.services.enrichment import enrich

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json={"expanded-result": [
            {"orcid-id": "0000-0001-2345-6789", "given-names": "Jane", "family-name": "Smith", "email": ["Jane@Uni.edu"]},
        ]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    info = await enrich(Candidate(name="Jane Smith"), EnrichmentOptions(enabled_tiers=("orcid",)), ORCID_CREDS, client=client)
    assert info.email == "jane@uni.edu"
    assert info.email_source == "ORCID"
    assert info.orcid == "0000-0001-2345-6789"
    assert info.orcid_url == "https://orcid.org/0000-0001-2345-6789"
    assert info.source == "orcid"


@pytest.mark.asyncio
async def test_orcid_skipped_without_credentials():
    from reviewer_finder.services.enrichment import enrich

    info = await enrich(Candidate(name="Jane Smith"), EnrichmentOptions(enabled_tiers=("orcid",)), Credentials())
    assert info.tiers_attempted == ()
    assert info.status == "not_found"


@pytest.mark.asyncio
async def test_claude_search_tier():
    from reviewer_finder.services.enrichment import enrich

    llm = _llm(
        '{"email": "Jane@Uni.edu", "facultyPageUrl": "https://uni.edu/people/jane-smith", '
        '"website": null, "confidence": "high"}'
    )
    info = await enrich(
        Candidate(name="Jane Smith", affiliation="Uni"),
        EnrichmentOptions(enabled_tiers=("claude_search",)),
        Credentials(),
        llm=llm,
    )
    assert info.email == "jane@uni.edu"
    assert info.faculty_page_url == "https://uni.edu/people/jane-smith"
    assert info.website == "https://uni.edu/people/jane-smith"
    assert info.source == "claude_search"
    assert info.confidence == "high"
    assert llm.generate.await_args.kwargs["web_search"] is True


@pytest.mark.asyncio
async def test_failed_tier_falls_through_without_raising():
    from reviewer_finder.services.enrichment import enrich

    llm = _llm(side_effect=RuntimeError("rate limited"))
    info = await enrich(
        Candidate(name="Jane Smith"),
        EnrichmentOptions(enabled_tiers=("claude_search",)),
        Credentials(),
        llm=llm,
    )
    assert info.status == "not_found"
    assert info.tiers_attempted == ("claude_search",)


@pytest.mark.asyncio
async def test_serp_tier_faculty_page_and_scholar_profile():
    from reviewer_finder.services.enrichment import enrich

    def handler(request: httpx.Request) -> httpx.Response:
        params = request.url.params
        assert params["api_key"] == "serp-key"
        if params["engine"] == "google_scholar_profiles":
            return httpx.Response(200, json={"profiles": [{"name": "Jane Smith", "author_id": "abc123"}]})
        return httpx.Response(200, json={"organic_results": [
            {"link": "https://www.stanford.edu/people/jane-smith", "title": "Jane Smith | Biology", "snippet": "Professor"},
        ]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    info = await enrich(
        Candidate(name="Jane Smith", affiliation="Stanford University"),
        EnrichmentOptions(enabled_tiers=("serp",)),
        ORCID_CREDS,
        client=client,
    )
    assert info.faculty_page_url == "https://www.stanford.edu/people/jane-smith"
    assert info.source == "serp"
    assert info.confidence == "low"
    assert info.google_scholar_url == "https://scholar.google.com/citations?user=abc123"


# ---------------------------------------------------------------------------
# Cost estimate
# ---------------------------------------------------------------------------

def test_estimate_cost_all_tiers():
    from reviewer_finder.services.enrichment import estimate_cost

    est = estimate_cost(10, ["serp", "pubmed", "orcid", "claude_search"])
    assert est["enabled_tiers"] == ["pubmed", "orcid", "claude_search", "serp"]
    assert est["estimated_paid_calls"] == 5
    assert est["breakdown"] == {"pubmed": 0.0, "orcid": 0.0, "claude_search": 0.1, "serp": 0.05}
    assert est["estimated_cost"] == 0.15


def test_estimate_cost_free_tiers():
    from reviewer_finder.services.enrichment import estimate_cost

    est = estimate_cost(10, ["pubmed", "orcid"])
    assert est["estimated_paid_calls"] == 0
    assert est["estimated_cost"] == 0.0


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_enrich_candidates_persists_and_reports():
    from reviewer_finder.pipeline.context import DiscoveryRunContext
    from reviewer_finder.pipeline.events import EnrichmentProgress, EnrichmentTierCompleted
    from reviewer_finder.services.enrichment import enrich_candidates

    events = []
    ctx = DiscoveryRunContext(on_event=events.append)
    rid = uuid4()
    with_email = Candidate(name="Jane Smith", researcher_id=rid, publications=(_pub("Uni. jane@uni.edu"),))
    without = Candidate(name="Jane Smith", publications=(_pub("Uni"),))
    db = MagicMock()

    with patch("reviewer_finder.services.researcher_store.save_contact_info", new_callable=AsyncMock) as save:
        result = await enrich_candidates(
            [with_email, without], EnrichmentOptions(enabled_tiers=("pubmed",)), Credentials(), db=db, ctx=ctx
        )

    assert result.cancelled is False
    assert [c.email for c in result.candidates] == ["jane@uni.edu", None]
    assert result.stats["total"] == 2
    assert result.stats["with_email"] == 1
    assert result.stats["not_found"] == 1
    assert result.stats["by_source"] == {"pubmed": 1}
    assert result.stats["actual_cost"] == 0.0
    save.assert_awaited_once()
    assert save.await_args.args[:2] == (db, rid)
    assert sum(isinstance(e, EnrichmentProgress) for e in events) == 2
    assert sum(isinstance(e, EnrichmentTierCompleted) for e in events) == 2


@pytest.mark.asyncio
async def test_enrich_candidates_stops_when_cancelled():
    from reviewer_finder.pipeline.context import DiscoveryRunContext
    from reviewer_finder.pipeline.events import RunCancelled
    from reviewer_finder.services.enrichment import enrich_candidates

    events = []
    ctx = DiscoveryRunContext(on_event=events.append)
    ctx.cancel()
    result = await enrich_candidates(
        [Candidate(name="Jane Smith", publications=(_pub("Uni"),))],
        EnrichmentOptions(enabled_tiers=("pubmed",)),
        Credentials(),
        ctx=ctx,
    )
    assert result.cancelled is True
    assert result.candidates == []
    assert any(isinstance(e, RunCancelled) for e in events)


@pytest.mark.asyncio
async def test_enrich_candidates_discards_result_found_after_cancel():
    from reviewer_finder.pipeline.context import DiscoveryRunContext
    from reviewer_finder.services.enrichment import ContactEnricher, enrich_candidates

    ctx = DiscoveryRunContext()

    async def tier_finishes_after_stop(self, candidate, found):
        ctx.cancel()
        found.email = "ann@uni.edu"
        found.email_source = "PubMed (1)"
        found.source = "pubmed"

    with patch.object(ContactEnricher, "_tier_pubmed", tier_finishes_after_stop), \
         patch("reviewer_finder.services.researcher_store.save_contact_info", new_callable=AsyncMock) as save:
        result = await enrich_candidates(
            [Candidate(name="Ann Lee", researcher_id=uuid4())],
            EnrichmentOptions(enabled_tiers=("pubmed",)),
            Credentials(),
            db=MagicMock(),
            ctx=ctx,
        )

    assert result.cancelled is True
    assert result.candidates == []
    save.assert_not_awaited()
