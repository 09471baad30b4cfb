"""API tests for the reviewer finder service (store and pipeline mocked)."""
import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def db_client(client: TestClient):
    """Client with get_db overridden by a MagicMock session."""
    from reviewer_finder.database import get_db
    from reviewer_finder.main import app

    db = MagicMock()

    async def _override():
        yield db

    app.dependency_overrides[get_db] = _override
    yield client
    app.dependency_overrides.clear()


def _sse_events(text: str) -> list:
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data.get("status") == "ok"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def test_discover_requires_proposal_text(client: TestClient):
    r = client.post("/discover", json={"proposal_text": "   "})
    assert r.status_code == 400


def test_discover_rejects_unknown_sources(client: TestClient):
    r = client.post("/discover", json={"proposal_text": "Soil phages", "enabled_sources": ["scopus"]})
    assert r.status_code == 400


def test_discover_streams_events_then_result(client: TestClient):
    result = MagicMock()
    result.to_dict.return_value = {"ranked": [], "failures": []}

    async def fake_analysis(llm, text, ctx, **kwargs):
        from reviewer_finder.pipeline.events import AnalysisStarted

        await ctx.emit(AnalysisStarted(message="Analyzing proposal"))
        return SimpleNamespace(suggestions=())

    with patch("reviewer_finder.main.get_llm_provider", return_value=MagicMock()), \
         patch("reviewer_finder.main.run_analysis", side_effect=fake_analysis), \
         patch("reviewer_finder.main.run_discovery", new_callable=AsyncMock, return_value=result) as run_discovery:
        r = client.post("/discover", json={"proposal_text": "Soil phages", "enabled_sources": ["PubMed", "arxiv"]})

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(r.text)
    assert [e["event"] for e in events] == ["run_started", "analysis_started", "result"]
    assert events[-1]["data"] == {"ranked": [], "failures": []}
    ctx = run_discovery.await_args.args[1]
    assert ctx.config.enabled_sources == ("pubmed", "arxiv")


def test_discover_stage_error_becomes_error_event(client: TestClient):
    from reviewer_finder.services.error_tracker import StageError

    with patch("reviewer_finder.main.get_llm_provider", return_value=MagicMock()), \
         patch("reviewer_finder.main.run_analysis", new_callable=AsyncMock, side_effect=StageError("analysis", "LLM call failed")):
        r = client.post("/discover", json={"proposal_text": "Soil phages"})

    events = _sse_events(r.text)
    assert events[-1] == {"event": "error", "data": {"stage": "analysis", "message": "LLM call failed"}}


def test_stop_unknown_run(client: TestClient):
    r = client.post("/discover/nope/stop")
    assert r.status_code == 404


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

def test_save_candidates_reports_partial_failure(db_client: TestClient):
    from reviewer_finder.candidates import SaveBatchResult

    batch = SaveBatchResult(total_requested=2, saved=["Jane Smith"], errors=[{"name": "Bob Roe", "error": "boom"}])
    with patch("reviewer_finder.services.researcher_store.save_candidates", new_callable=AsyncMock, return_value=batch) as save:
        r = db_client.post(
            "/proposals/P-1/candidates",
            json={
                "proposal_title": "Soil phages",
                "candidates": [
                    {"name": "Jane Smith", "confidence": 0.8, "coauthorships": [{"proposal_author": "John Doe", "paper_count": 2}]},
                    {"name": "Bob Roe"},
                ],
            },
        )
    assert r.status_code == 200
    assert r.json() == {
        "success": False,
        "saved_count": 1,
        "total_requested": 2,
        "errors": [{"name": "Bob Roe", "error": "boom"}],
    }
    proposal, candidates = save.await_args.args[1], save.await_args.args[2]
    assert proposal.proposal_id == "P-1"
    assert candidates[0].verification.band == "accepted"
    assert candidates[0].coi.has_coauthor_coi is True
    assert candidates[1].verification is None


def test_save_candidates_empty_list(db_client: TestClient):
    r = db_client.post("/proposals/P-1/candidates", json={"candidates": []})
    assert r.status_code == 400


def test_update_candidate_invalid_uuid(db_client: TestClient):
    r = db_client.patch("/candidates/not-a-uuid", json={"invited": True})
    assert r.status_code == 400


def test_update_candidate_not_found(db_client: TestClient):
    from reviewer_finder.services.researcher_store import SuggestionNotFoundError

    with patch(
        "reviewer_finder.services.researcher_store.update_candidate_status",
        new_callable=AsyncMock,
        side_effect=SuggestionNotFoundError("missing"),
    ):
        r = db_client.patch(f"/candidates/{uuid.uuid4()}", json={"invited": True})
    assert r.status_code == 404


def test_delete_candidate_not_found(db_client: TestClient):
    with patch("reviewer_finder.services.researcher_store.remove_candidates", new_callable=AsyncMock, return_value=0):
        r = db_client.delete(f"/candidates/{uuid.uuid4()}")
    assert r.status_code == 404


def test_bulk_delete(db_client: TestClient):
    ids = [str(uuid.uuid4()), str(uuid.uuid4())]
    with patch("reviewer_finder.services.researcher_store.remove_candidates", new_callable=AsyncMock, return_value=2):
        r = db_client.post("/candidates/bulk-delete", json={"ids": ids})
    assert r.status_code == 200
    assert r.json() == {"removed": 2, "requested": 2}


# ---------------------------------------------------------------------------
# Researchers / grant cycles
# ---------------------------------------------------------------------------

def test_merge_requires_secondaries(db_client: TestClient):
    primary = str(uuid.uuid4())
    r = db_client.post("/researchers/merge", json={"primary_id": primary, "secondary_ids": [primary]})
    assert r.status_code == 400


def test_merge_primary_not_found(db_client: TestClient):
    from reviewer_finder.services.researcher_store import ResearcherNotFoundError

    with patch(
        "reviewer_finder.services.researcher_store.merge",
        new_callable=AsyncMock,
        side_effect=ResearcherNotFoundError("missing"),
    ):
        r = db_client.post(
            "/researchers/merge",
            json={"primary_id": str(uuid.uuid4()), "secondary_ids": [str(uuid.uuid4())]},
        )
    assert r.status_code == 404


def test_merge_returns_stats(db_client: TestClient):
    from reviewer_finder.candidates import MergeResult

    primary, secondary = uuid.uuid4(), uuid.uuid4()
    stats = MergeResult(researcher=SimpleNamespace(id=primary), keywords_moved=2, suggestions_moved=1, secondaries_deleted=1)
    with patch("reviewer_finder.services.researcher_store.merge", new_callable=AsyncMock, return_value=stats) as merge:
        r = db_client.post("/researchers/merge", json={"primary_id": str(primary), "secondary_ids": [str(secondary)]})
    assert r.status_code == 200
    data = r.json()
    assert data["primary_id"] == str(primary)
    assert data["keywords_moved"] == 2
    assert data["secondaries_deleted"] == 1
    assert merge.await_args.args[1:] == (primary, [secondary])


def test_duplicates_listing(db_client: TestClient):
    from reviewer_finder.candidates import DuplicateGroup

    researcher = SimpleNamespace(
        id=uuid.uuid4(), name="Jane Smith", primary_affiliation="MIT", email="jane@mit.edu",
        orcid=None, google_scholar_id=None, created_at=None,
    )
    group = DuplicateGroup(match_type="email", match_value="jane@mit.edu", researchers=[researcher, researcher])
    with patch("reviewer_finder.services.researcher_store.find_duplicates", new_callable=AsyncMock, return_value=[group]):
        r = db_client.get("/researchers/duplicates")
    assert r.status_code == 200
    data = r.json()
    assert data["total_groups"] == 1
    assert data["groups"][0]["match_type"] == "email"
    assert len(data["groups"][0]["researchers"]) == 2


def _researcher_row(**overrides):
    fields = dict(
        id=uuid.uuid4(), name="Ann Lee", primary_affiliation="University of Oslo", department=None,
        email="ann@uni.edu", email_source="manual", email_year=None, website=None, faculty_page_url=None,
        orcid=None, orcid_url=None, google_scholar_id=None, google_scholar_url=None,
        h_index=12, i10_index=None, total_citations=None, contact_enriched_at=None,
        contact_enrichment_source=None, created_at=None, last_updated=None, last_checked=None,
        metrics_updated_at=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_list_researchers_passes_filters(db_client: TestClient):
    from reviewer_finder.candidates import ResearcherPage

    row = _researcher_row()
    tag = SimpleNamespace(keyword="phage ecology", relevance_score=0.9, source="claude")
    page = ResearcherPage(researchers=[row], keywords={row.id: [tag]}, total=3, limit=1, offset=0)
    with patch("reviewer_finder.services.researcher_store.list_researchers", new_callable=AsyncMock, return_value=page) as lister:
        r = db_client.get("/researchers", params={
            "search": "lee", "sort_by": "name", "sort_order": "asc", "limit": 1,
            "has_email": "true", "keywords": "phage ecology,soil",
        })
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 3
    assert data["has_more"] is True
    assert data["researchers"][0]["name"] == "Ann Lee"
    assert data["researchers"][0]["keywords"] == [{"keyword": "phage ecology", "relevance_score": 0.9, "source": "claude"}]
    kwargs = lister.await_args.kwargs
    assert kwargs["search"] == "lee"
    assert kwargs["sort_by"] == "name"
    assert kwargs["has_email"] is True
    assert kwargs["has_website"] is False
    assert kwargs["keywords"] == ["phage ecology", "soil"]


def test_researcher_keywords(db_client: TestClient):
    with patch(
        "reviewer_finder.services.researcher_store.list_keywords",
        new_callable=AsyncMock,
        return_value=[("phage ecology", 3)],
    ):
        r = db_client.get("/researchers/keywords")
    assert r.status_code == 200
    assert r.json() == {"keywords": [{"keyword": "phage ecology", "count": 3}]}


def test_get_researcher_detail(db_client: TestClient):
    from reviewer_finder.candidates import ResearcherDetail

    row = _researcher_row()
    pub = SimpleNamespace(title="Phage ecology", authors=["Ann Lee"], year=2023, journal="ISME J", doi=None, url=None, source="pubmed")
    saved = SimpleNamespace(
        id=uuid.uuid4(), proposal_id="P-1", proposal_title="Soil phages", relevance_score=0.8, match_reason="fit",
        sources=["pubmed"], selected=True, invited=False, response_type=None, notes=None, suggested_at=None,
    )
    detail = ResearcherDetail(researcher=row, publications=[pub], suggestions=[saved])
    with patch("reviewer_finder.services.researcher_store.get_researcher", new_callable=AsyncMock, return_value=detail):
        r = db_client.get(f"/researchers/{row.id}")
    assert r.status_code == 200
    data = r.json()
    assert data["researcher"]["id"] == str(row.id)
    assert data["publications"][0]["journal"] == "ISME J"
    assert data["proposals"][0]["proposal_id"] == "P-1"
    assert data["keywords"] == []


def test_get_researcher_invalid_and_missing(db_client: TestClient):
    from reviewer_finder.services.researcher_store import ResearcherNotFoundError

    assert db_client.get("/researchers/not-a-uuid").status_code == 400
    with patch(
        "reviewer_finder.services.researcher_store.get_researcher",
        new_callable=AsyncMock,
        side_effect=ResearcherNotFoundError("missing"),
    ):
        r = db_client.get(f"/researchers/{uuid.uuid4()}")
    assert r.status_code == 404


def test_update_researcher_sends_only_given_fields(db_client: TestClient):
    row = _researcher_row(email=None)
    with patch(
        "reviewer_finder.services.researcher_store.update_researcher",
        new_callable=AsyncMock,
        return_value=(row, ["email"]),
    ) as update:
        r = db_client.patch(f"/researchers/{row.id}", json={"email": None})
    assert r.status_code == 200
    assert r.json()["updated_fields"] == ["email"]
    assert update.await_args.args[2] == {"email": None}


def test_update_researcher_no_fields(db_client: TestClient):
    with patch(
        "reviewer_finder.services.researcher_store.update_researcher",
        new_callable=AsyncMock,
        side_effect=ValueError("No fields to update"),
    ):
        r = db_client.patch(f"/researchers/{uuid.uuid4()}", json={})
    assert r.status_code == 400


def test_delete_researcher(db_client: TestClient):
    from reviewer_finder.candidates import ResearcherDeleteResult

    rid = uuid.uuid4()
    with patch(
        "reviewer_finder.services.researcher_store.delete_researchers",
        new_callable=AsyncMock,
        return_value=ResearcherDeleteResult(deleted_ids=[rid], suggestions_removed=2),
    ):
        r = db_client.delete(f"/researchers/{rid}")
    assert r.status_code == 200
    assert r.json() == {"deleted_count": 1, "suggestions_removed": 2}

    with patch(
        "reviewer_finder.services.researcher_store.delete_researchers",
        new_callable=AsyncMock,
        return_value=ResearcherDeleteResult(),
    ):
        r = db_client.delete(f"/researchers/{rid}")
    assert r.status_code == 404


def test_bulk_delete_researchers(db_client: TestClient):
    from reviewer_finder.candidates import ResearcherDeleteResult

    ids = [uuid.uuid4(), uuid.uuid4()]
    with patch(
        "reviewer_finder.services.researcher_store.delete_researchers",
        new_callable=AsyncMock,
        return_value=ResearcherDeleteResult(deleted_ids=ids, suggestions_removed=0),
    ) as deleter:
        r = db_client.post("/researchers/delete", json={"ids": [str(i) for i in ids]})
    assert r.status_code == 200
    assert r.json()["deleted_count"] == 2
    assert deleter.await_args.args[1] == ids

    assert db_client.post("/researchers/delete", json={"ids": []}).status_code == 400


def test_create_grant_cycle_duplicate_code(db_client: TestClient):
    with patch(
        "reviewer_finder.services.researcher_store.create_grant_cycle",
        new_callable=AsyncMock,
        side_effect=ValueError("Grant cycle with short code 'J26' already exists"),
    ):
        r = db_client.post("/grant-cycles", json={"name": "June 2026", "short_code": "J26"})
    assert r.status_code == 409


def test_assign_grant_cycle_invalid_uuid(db_client: TestClient):
    r = db_client.put("/proposals/P-1/grant-cycle", json={"grant_cycle_id": "nope"})
    assert r.status_code == 400


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

def test_enrichment_estimate(client: TestClient):
    r = client.post("/enrichment/estimate", json={"candidate_count": 10, "enabled_tiers": ["pubmed", "claude_search"]})
    assert r.status_code == 200
    data = r.json()
    assert data["estimated_paid_calls"] == 5
    assert data["estimated_cost"] == 0.1


def test_enrichment_estimate_unknown_tier(client: TestClient):
    r = client.post("/enrichment/estimate", json={"candidate_count": 10, "enabled_tiers": ["linkedin"]})
    assert r.status_code == 400


def test_enrichment_run_unknown_tier(db_client: TestClient):
    r = db_client.post("/enrichment/run", json={"candidates": [{"name": "Jane Smith"}], "enabled_tiers": ["fax"]})
    assert r.status_code == 400
