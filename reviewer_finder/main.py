import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from reviewer_finder.candidates import (
    Candidate,
    CandidateSource,
    Coauthorship,
    COIResult,
    VerificationResult,
)
from reviewer_finder.config import ENV
from reviewer_finder.database import Base, get_db
from reviewer_finder.pipeline.config import (
    ALL_SOURCES,
    ALL_TIERS,
    EnrichmentOptions,
    credentials_from_env,
    load_pipeline_config,
)
from reviewer_finder.pipeline.context import DiscoveryRunContext, RunCancelledError
from reviewer_finder.pipeline.coordinator import candidate_to_dict, run_analysis, run_discovery
from reviewer_finder.services import researcher_store
from reviewer_finder.services.enrichment import enrich_candidates, estimate_cost
from reviewer_finder.services.error_tracker import StageError
from reviewer_finder.services.llm_provider import get_llm_provider

PIPELINE_CONFIG = load_pipeline_config()

# Set up logging
logging.basicConfig(level=getattr(logging, PIPELINE_CONFIG.log_level.upper(), logging.INFO), format=PIPELINE_CONFIG.log_format)
logger = logging.getLogger(__name__)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # Reduce SQLAlchemy verbosity
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("uvicorn").setLevel(logging.INFO)

# Running discovery runs: run_id -> context (for /discover/{run_id}/stop)
_running_runs: dict[str, DiscoveryRunContext] = {}

app = FastAPI(title="Reviewer Finder", version="0.1.0")


@app.on_event("startup")
async def create_tables():
    """Create tables that do not exist yet."""
    from reviewer_finder.database import engine

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ready")
    except Exception as e:
        logger.error("Could not create tables on startup: %s", e, exc_info=True)


# CORS - in dev allow any origin
cors_origins = ["*"] if ENV == "dev" else []
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,  # must be False when allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class DiscoverRequest(BaseModel):
    proposal_text: str
    additional_notes: str = ""
    excluded_names: List[str] = Field(default_factory=list)
    reviewer_count: int = 12
    enabled_sources: Optional[List[str]] = None


class CoauthorshipIn(BaseModel):
    proposal_author: str
    paper_count: int = 0
    recent_papers: List[str] = Field(default_factory=list)


class CandidateIn(BaseModel):
    name: str
    affiliation: Optional[str] = None
    source: str = CandidateSource.CLAUDE_SUGGESTION.value
    discovery_sources: List[str] = Field(default_factory=list)
    expertise_areas: List[str] = Field(default_factory=list)
    reasoning: str = ""
    seniority_estimate: Optional[str] = None
    researcher_id: Optional[UUID] = None
    email: Optional[str] = None
    website: Optional[str] = None
    orcid: Optional[str] = None
    google_scholar_id: Optional[str] = None
    h_index: Optional[int] = None
    total_citations: Optional[int] = None
    relevance_score: Optional[float] = None
    confidence: Optional[float] = None
    institution_mismatch: bool = False
    expertise_mismatch: bool = False
    has_institution_coi: bool = False
    has_coauthor_coi: bool = False
    coauthorships: List[CoauthorshipIn] = Field(default_factory=list)


class SaveCandidatesRequest(BaseModel):
    proposal_title: Optional[str] = None
    proposal_abstract: Optional[str] = None
    proposal_authors: List[str] = Field(default_factory=list)
    proposal_institution: Optional[str] = None
    grant_cycle_id: Optional[UUID] = None
    candidates: List[CandidateIn]


class CandidateStatusUpdate(BaseModel):
    invited: Optional[bool] = None
    accepted: Optional[bool] = None
    declined: Optional[bool] = None
    notes: Optional[str] = None
    email_sent_at: Optional[datetime] = None
    response_type: Optional[str] = None


class MergeRequest(BaseModel):
    primary_id: UUID
    secondary_ids: List[UUID]


class ResearcherUpdate(BaseModel):
    name: Optional[str] = None
    affiliation: Optional[str] = None
    department: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    orcid: Optional[str] = None
    google_scholar_id: Optional[str] = None
    google_scholar_url: Optional[str] = None
    h_index: Optional[int] = None
    i10_index: Optional[int] = None
    total_citations: Optional[int] = None


class ResearcherDeleteRequest(BaseModel):
    ids: List[UUID]


class GrantCycleIn(BaseModel):
    name: str
    short_code: str
    program_name: Optional[str] = None
    is_active: bool = True


class EnrichmentRequest(BaseModel):
    candidates: List[CandidateIn]
    enabled_tiers: List[str] = Field(default_factory=lambda: ["pubmed", "orcid"])
    persist: bool = True


def _to_candidate(data: CandidateIn) -> Candidate:
    """API payload -> Candidate, rebuilding verification/COI so the flags survive the round trip."""
    verification = None
    if data.confidence is not None:
        confidence = max(0.0, min(1.0, data.confidence))
        verification = VerificationResult(
            confidence=confidence,
            band=PIPELINE_CONFIG.band_for(confidence),
            institution_mismatch=data.institution_mismatch,
            expertise_mismatch=data.expertise_mismatch,
        )
    coauthorships = tuple(
        Coauthorship(c.proposal_author, c.paper_count, tuple(c.recent_papers)) for c in data.coauthorships
    )
    try:
        source = CandidateSource(data.source)
    except ValueError:
        source = CandidateSource.DATABASE_DISCOVERY
    return Candidate(
        name=data.name.strip(),
        affiliation=data.affiliation,
        source=source,
        discovery_sources=tuple(data.discovery_sources),
        expertise_areas=tuple(data.expertise_areas),
        reasoning=data.reasoning,
        seniority_estimate=data.seniority_estimate,
        verification=verification,
        coi=COIResult(
            has_institution_coi=data.has_institution_coi,
            has_coauthor_coi=data.has_coauthor_coi or bool(coauthorships),
            coauthorships=coauthorships,
        ),
        relevance_score=data.relevance_score,
        researcher_id=data.researcher_id,
        email=data.email,
        website=data.website,
        orcid=data.orcid,
        google_scholar_id=data.google_scholar_id,
        h_index=data.h_index,
        total_citations=data.total_citations,
    )


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
def health_check():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Discovery (SSE)
# ---------------------------------------------------------------------------

@app.post("/discover")
async def discover(body: DiscoverRequest):
    """Analyze a proposal and run discovery, streaming progress events then the result."""
    if not body.proposal_text.strip():
        raise HTTPException(status_code=400, detail="proposal_text is required")
    config = PIPELINE_CONFIG
    if body.enabled_sources is not None:
        sources = tuple(s for s in ALL_SOURCES if s in {x.lower() for x in body.enabled_sources})
        if not sources:
            raise HTTPException(status_code=400, detail=f"enabled_sources must include one of {list(ALL_SOURCES)}")
        config = replace(config, enabled_sources=sources)

    queue: asyncio.Queue = asyncio.Queue()
    ctx = DiscoveryRunContext(config=config, credentials=credentials_from_env(), on_event=queue.put)

    async def run():
        _running_runs[ctx.run_id] = ctx
        try:
            llm = get_llm_provider()
            analysis = await run_analysis(
                llm,
                body.proposal_text,
                ctx,
                additional_notes=body.additional_notes,
                excluded_names=body.excluded_names,
                reviewer_count=body.reviewer_count,
            )
            result = await run_discovery(analysis, ctx, llm=llm, excluded_names=body.excluded_names)
            await queue.put({"event": "result", "data": result.to_dict()})
        except StageError as e:
            await queue.put({"event": "error", "data": {"stage": e.stage, "message": e.message}})
        except RunCancelledError:
            await queue.put({"event": "cancelled", "data": {"run_id": ctx.run_id}})
        except Exception as e:
            logger.error("[discover] run %s failed: %s", ctx.run_id, e, exc_info=True)
            await queue.put({"event": "error", "data": {"stage": "discovery", "message": str(e)[:300]}})
        finally:
            _running_runs.pop(ctx.run_id, None)
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run())
        yield f"data: {json.dumps({'event': 'run_started', 'data': {'run_id': ctx.run_id}})}\n\n"
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                event = item if isinstance(item, dict) else item.to_dict()
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            if not task.done():
                ctx.cancel()
                task.cancel()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@app.post("/discover/{run_id}/stop")
async def stop_discovery(run_id: str):
    ctx = _running_runs.get(run_id)
    if ctx is None:
        raise HTTPException(status_code=404, detail="Run not found or already finished")
    ctx.cancel()
    return {"status": "stopping", "run_id": run_id}


# ---------------------------------------------------------------------------
# Saved candidates
# ---------------------------------------------------------------------------

@app.post("/proposals/{proposal_id}/candidates")
async def save_candidates(
    proposal_id: str,
    body: SaveCandidatesRequest,
    db: AsyncSession = Depends(get_db),
):
    if not body.candidates:
        raise HTTPException(status_code=400, detail="candidates must not be empty")
    proposal = researcher_store.ProposalRef(
        proposal_id=proposal_id,
        title=body.proposal_title,
        abstract=body.proposal_abstract,
        authors=tuple(body.proposal_authors),
        institution=body.proposal_institution,
        grant_cycle_id=body.grant_cycle_id,
    )
    batch = await researcher_store.save_candidates(db, proposal, [_to_candidate(c) for c in body.candidates])
    return {
        "success": not batch.errors,
        "saved_count": batch.saved_count,
        "total_requested": batch.total_requested,
        "errors": batch.errors,
    }


@app.get("/proposals/{proposal_id}/candidates")
async def get_proposal_candidates(proposal_id: str, db: AsyncSession = Depends(get_db)):
    candidates = await researcher_store.get_candidates_for_proposal(db, proposal_id)
    return {"proposal_id": proposal_id, "candidates": candidates, "total": len(candidates)}


@app.get("/candidates")
async def list_candidates(grant_cycle_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    cycle_uuid = _parse_uuid(grant_cycle_id, "grant_cycle_id") if grant_cycle_id else None
    proposals = await researcher_store.list_candidates_grouped(db, cycle_uuid)
    return {
        "proposals": proposals,
        "total_candidates": sum(len(p["candidates"]) for p in proposals),
    }


@app.patch("/candidates/{suggestion_id}")
async def update_candidate(
    suggestion_id: str,
    body: CandidateStatusUpdate,
    db: AsyncSession = Depends(get_db),
):
    suggestion_uuid = _parse_uuid(suggestion_id, "candidate ID")
    try:
        suggestion = await researcher_store.update_candidate_status(
            db, suggestion_uuid, **body.model_dump(exclude_none=True)
        )
    except researcher_store.SuggestionNotFoundError:
        raise HTTPException(status_code=404, detail="Candidate not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "id": str(suggestion.id),
        "invited": suggestion.invited,
        "accepted": suggestion.accepted,
        "declined": suggestion.declined,
        "response_type": suggestion.response_type,
        "notes": suggestion.notes,
    }


@app.delete("/candidates/{suggestion_id}")
async def delete_candidate(suggestion_id: str, db: AsyncSession = Depends(get_db)):
    suggestion_uuid = _parse_uuid(suggestion_id, "candidate ID")
    removed = await researcher_store.remove_candidates(db, [suggestion_uuid])
    if not removed:
        raise HTTPException(status_code=404, detail="Candidate not found")
    return {"removed": removed}


@app.post("/candidates/bulk-delete")
async def bulk_delete_candidates(
    ids: List[str] = Body(..., embed=True),
    db: AsyncSession = Depends(get_db),
):
    if not ids:
        raise HTTPException(status_code=400, detail="ids must not be empty")
    uuids = [_parse_uuid(i, "candidate ID") for i in ids]
    removed = await researcher_store.remove_candidates(db, uuids)
    return {"removed": removed, "requested": len(uuids)}


# ---------------------------------------------------------------------------
# Researchers
# ---------------------------------------------------------------------------

def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _keyword_to_dict(tag) -> dict:
    return {"keyword": tag.keyword, "relevance_score": tag.relevance_score, "source": tag.source}


def _researcher_to_dict(r) -> dict:
    return {
        "id": str(r.id),
        "name": r.name,
        "affiliation": r.primary_affiliation,
        "department": r.department,
        "email": r.email,
        "email_source": r.email_source,
        "email_year": r.email_year,
        "website": r.website,
        "faculty_page_url": r.faculty_page_url,
        "orcid": r.orcid,
        "orcid_url": r.orcid_url,
        "google_scholar_id": r.google_scholar_id,
        "google_scholar_url": r.google_scholar_url,
        "h_index": r.h_index,
        "i10_index": r.i10_index,
        "total_citations": r.total_citations,
        "contact_enriched_at": _isoformat(r.contact_enriched_at),
        "contact_enrichment_source": r.contact_enrichment_source,
        "created_at": _isoformat(r.created_at),
        "last_updated": _isoformat(r.last_updated),
    }


@app.get("/researchers")
async def get_researchers(
    search: Optional[str] = None,
    sort_by: str = "last_updated",
    sort_order: str = "desc",
    limit: int = 50,
    offset: int = 0,
    has_email: bool = False,
    has_website: bool = False,
    keywords: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Browse the researcher database. ``keywords`` is comma separated (any match)."""
    page = await researcher_store.list_researchers(
        db,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
        has_email=has_email,
        has_website=has_website,
        keywords=(keywords or "").split(","),
    )
    return {
        "researchers": [
            {**_researcher_to_dict(r), "keywords": [_keyword_to_dict(k) for k in page.keywords.get(r.id, [])]}
            for r in page.researchers
        ],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "has_more": page.has_more,
    }


@app.get("/researchers/keywords")
async def get_researcher_keywords(db: AsyncSession = Depends(get_db)):
    keywords = await researcher_store.list_keywords(db)
    return {"keywords": [{"keyword": k, "count": n} for k, n in keywords]}


@app.get("/researchers/duplicates")
async def get_duplicates(db: AsyncSession = Depends(get_db)):
    groups = await researcher_store.find_duplicates(db)
    return {
        "groups": [
            {
                "match_type": g.match_type,
                "match_value": g.match_value,
                "researchers": [
                    {
                        "id": str(r.id),
                        "name": r.name,
                        "affiliation": r.primary_affiliation,
                        "email": r.email,
                        "orcid": r.orcid,
                        "google_scholar_id": r.google_scholar_id,
                        "created_at": r.created_at.isoformat() if r.created_at else None,
                    }
                    for r in g.researchers
                ],
            }
            for g in groups
        ],
        "total_groups": len(groups),
    }


@app.post("/researchers/merge")
async def merge_researchers(body: MergeRequest, db: AsyncSession = Depends(get_db)):
    secondary_ids = [s for s in body.secondary_ids if s != body.primary_id]
    if not secondary_ids:
        raise HTTPException(status_code=400, detail="At least one secondary researcher ID is required")
    try:
        stats = await researcher_store.merge(db, body.primary_id, secondary_ids)
    except researcher_store.ResearcherNotFoundError:
        raise HTTPException(status_code=404, detail="Primary researcher not found")
    return {
        "primary_id": str(body.primary_id),
        "keywords_moved": stats.keywords_moved,
        "keywords_coalesced": stats.keywords_coalesced,
        "suggestions_moved": stats.suggestions_moved,
        "conflicts_resolved": stats.conflicts_resolved,
        "secondaries_deleted": stats.secondaries_deleted,
        "already_merged": [str(i) for i in stats.already_merged],
    }


@app.post("/researchers/delete")
async def delete_researchers(body: ResearcherDeleteRequest, db: AsyncSession = Depends(get_db)):
    if not body.ids:
        raise HTTPException(status_code=400, detail="At least one researcher ID is required")
    result = await researcher_store.delete_researchers(db, body.ids)
    return {
        "deleted_count": result.deleted_count,
        "deleted_ids": [str(i) for i in result.deleted_ids],
        "suggestions_removed": result.suggestions_removed,
    }


@app.get("/researchers/{researcher_id}")
async def get_researcher(researcher_id: str, db: AsyncSession = Depends(get_db)):
    researcher_uuid = _parse_uuid(researcher_id, "researcher ID")
    try:
        detail = await researcher_store.get_researcher(db, researcher_uuid)
    except researcher_store.ResearcherNotFoundError:
        raise HTTPException(status_code=404, detail="Researcher not found")
    return {
        "researcher": {
            **_researcher_to_dict(detail.researcher),
            "last_checked": _isoformat(detail.researcher.last_checked),
            "metrics_updated_at": _isoformat(detail.researcher.metrics_updated_at),
        },
        "keywords": [_keyword_to_dict(k) for k in detail.keywords],
        "publications": [
            {
                "title": p.title,
                "authors": p.authors or [],
                "year": p.year,
                "journal": p.journal,
                "doi": p.doi,
                "url": p.url,
                "source": p.source,
            }
            for p in detail.publications
        ],
        "proposals": [
            {
                "suggestion_id": str(s.id),
                "proposal_id": s.proposal_id,
                "proposal_title": s.proposal_title,
                "relevance_score": s.relevance_score,
                "match_reason": s.match_reason,
                "sources": s.sources or [],
                "selected": bool(s.selected),
                "invited": bool(s.invited),
                "response_type": s.response_type,
                "notes": s.notes,
                "saved_at": _isoformat(s.suggested_at),
            }
            for s in detail.suggestions
        ],
    }


@app.patch("/researchers/{researcher_id}")
async def update_researcher(researcher_id: str, body: ResearcherUpdate, db: AsyncSession = Depends(get_db)):
    researcher_uuid = _parse_uuid(researcher_id, "researcher ID")
    try:
        researcher, fields = await researcher_store.update_researcher(
            db, researcher_uuid, body.model_dump(exclude_unset=True)
        )
    except researcher_store.ResearcherNotFoundError:
        raise HTTPException(status_code=404, detail="Researcher not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"researcher": _researcher_to_dict(researcher), "updated_fields": fields}


@app.delete("/researchers/{researcher_id}")
async def delete_researcher(researcher_id: str, db: AsyncSession = Depends(get_db)):
    researcher_uuid = _parse_uuid(researcher_id, "researcher ID")
    result = await researcher_store.delete_researchers(db, [researcher_uuid])
    if not result.deleted_count:
        raise HTTPException(status_code=404, detail="Researcher not found")
    return {"deleted_count": 1, "suggestions_removed": result.suggestions_removed}


# ---------------------------------------------------------------------------
# Grant cycles
# ---------------------------------------------------------------------------

@app.get("/grant-cycles")
async def get_grant_cycles(active_only: bool = False, db: AsyncSession = Depends(get_db)):
    cycles = await researcher_store.list_grant_cycles(db, active_only=active_only)
    return {
        "grant_cycles": [
            {
                "id": str(c.id),
                "name": c.name,
                "short_code": c.short_code,
                "program_name": c.program_name,
                "is_active": c.is_active,
            }
            for c in cycles
        ]
    }


@app.post("/grant-cycles")
async def post_grant_cycle(body: GrantCycleIn, db: AsyncSession = Depends(get_db)):
    if not body.name.strip() or not body.short_code.strip():
        raise HTTPException(status_code=400, detail="name and short_code are required")
    try:
        cycle = await researcher_store.create_grant_cycle(
            db, body.name, body.short_code, body.program_name, body.is_active
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"id": str(cycle.id), "name": cycle.name, "short_code": cycle.short_code}


@app.put("/proposals/{proposal_id}/grant-cycle")
async def set_proposal_grant_cycle(
    proposal_id: str,
    grant_cycle_id: Optional[str] = Body(None, embed=True),
    db: AsyncSession = Depends(get_db),
):
    cycle_uuid = _parse_uuid(grant_cycle_id, "grant_cycle_id") if grant_cycle_id else None
    try:
        updated = await researcher_store.assign_grant_cycle(db, proposal_id, cycle_uuid)
    except LookupError:
        raise HTTPException(status_code=404, detail="Grant cycle not found")
    return {"proposal_id": proposal_id, "grant_cycle_id": grant_cycle_id, "updated": updated}


# ---------------------------------------------------------------------------
# Contact enrichment
# ---------------------------------------------------------------------------

def _check_tiers(tiers: List[str]) -> tuple:
    unknown = [t for t in tiers if t not in ALL_TIERS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown tiers {unknown}; expected {list(ALL_TIERS)}")
    return tuple(t for t in ALL_TIERS if t in tiers)


@app.post("/enrichment/estimate")
async def enrichment_estimate(
    candidate_count: int = Body(..., embed=True),
    enabled_tiers: List[str] = Body(default=["pubmed", "orcid"], embed=True),
):
    if candidate_count < 0:
        raise HTTPException(status_code=400, detail="candidate_count must be >= 0")
    return estimate_cost(candidate_count, _check_tiers(enabled_tiers))


@app.post("/enrichment/run")
async def enrichment_run(body: EnrichmentRequest, db: AsyncSession = Depends(get_db)):
    if not body.candidates:
        raise HTTPException(status_code=400, detail="candidates must not be empty")
    tiers = _check_tiers(body.enabled_tiers)
    options = EnrichmentOptions(enabled_tiers=tiers, persist=body.persist)
    llm = get_llm_provider() if "claude_search" in tiers else None
    result = await enrich_candidates(
        [_to_candidate(c) for c in body.candidates],
        options,
        credentials_from_env(),
        llm=llm,
        db=db,
    )
    return {
        "candidates": [
            {
                **candidate_to_dict(c),
                "contact": {
                    "status": c.contact.status,
                    "email": c.contact.email,
                    "email_source": c.contact.email_source,
                    "email_year": c.contact.email_year,
                    "website": c.contact.website,
                    "faculty_page_url": c.contact.faculty_page_url,
                    "orcid_url": c.contact.orcid_url,
                    "google_scholar_url": c.contact.google_scholar_url,
                    "source": c.contact.source,
                    "tiers_attempted": list(c.contact.tiers_attempted),
                } if c.contact else None,
            }
            for c in result.candidates
        ],
        "stats": result.stats,
        "cancelled": result.cancelled,
    }
