"""
Contact enrichment tiers.

Tiers run in a fixed order and stop at the first usable email or website:

1. ``pubmed``        email in the matching author's affiliation text (free)
2. ``orcid``         ORCID public API, needs client credentials (free)
3. ``claude_search`` LLM with the web search tool (paid)
4. ``serp``          SerpAPI Google search (paid)

A tier that is disabled, lacks credentials or fails is skipped; exhausting
every tier yields a ContactInfo with status ``not_found``, never an exception.
An email from a PubMed paper older than ``max_email_age_years`` is kept as a
fallback but does not stop the chain.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable
from urllib.parse import quote

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from reviewer_finder.candidates import Candidate, ContactInfo, SearchHints
from reviewer_finder.pipeline.config import ALL_TIERS, Credentials, EnrichmentOptions
from reviewer_finder.pipeline.context import DiscoveryRunContext, RunCancelledError
from reviewer_finder.pipeline.errors import record_candidate_error
from reviewer_finder.pipeline.events import EnrichmentProgress, EnrichmentTierCompleted, RunCancelled
from reviewer_finder.services.contact_parser import (
    EMAIL_RE,
    extract_contact_from_publications,
    is_useful_website_url,
)
from reviewer_finder.services import researcher_store
from reviewer_finder.services.llm_provider import LLMProvider
from reviewer_finder.services.orcid import ORCIDClient
from reviewer_finder.services.serp import SerpClient
from reviewer_finder.services.sources.pubmed import PubMedAdapter
from reviewer_finder.services.utils import parse_json_response

logger = logging.getLogger(__name__)

TIER_COSTS = {
    "pubmed": 0.0,
    "orcid": 0.0,
    "claude_search": 0.02,
    "serp": 0.01,
}
PAID_TIER_HIT_RATE = 0.5  # share of candidates expected to fall through to paid tiers

TIER_LABELS = {
    "pubmed": "PubMed",
    "orcid": "ORCID",
    "claude_search": "Claude Web Search",
    "serp": "SerpAPI",
}

_WEB_SEARCH_FORMAT = """{
  "email": "address or null",
  "facultyPageUrl": "official faculty/profile page URL or null",
  "website": "personal or lab website URL or null",
  "confidence": "high | medium | low"
}"""


def build_google_scholar_url(name: str, affiliation: str | None = None) -> str:
    institution = affiliation.split(",")[0].strip() if affiliation else ""
    query = f"{name} {institution}".strip()
    return f"https://scholar.google.com/citations?view_op=search_authors&mauthors={quote(query)}"


def estimate_cost(candidate_count: int, enabled_tiers: Iterable[str]) -> dict:
    """Rough cost of a batch: paid tiers are assumed to run for half the candidates."""
    tiers = [t for t in ALL_TIERS if t in set(enabled_tiers)]
    paid_calls = math.ceil(candidate_count * PAID_TIER_HIT_RATE) if candidate_count > 0 else 0
    breakdown = {}
    for tier in tiers:
        cost = TIER_COSTS[tier]
        breakdown[tier] = round(paid_calls * cost, 2) if cost else 0.0
    return {
        "candidate_count": candidate_count,
        "enabled_tiers": tiers,
        "estimated_paid_calls": paid_calls if any(TIER_COSTS[t] for t in tiers) else 0,
        "breakdown": breakdown,
        "estimated_cost": round(sum(breakdown.values()), 2),
    }


def _valid_email(value) -> str | None:
    if not isinstance(value, str):
        return None
    match = EMAIL_RE.search(value.strip())
    return match.group(0).lower() if match else None


def _valid_url(value) -> str | None:
    if not isinstance(value, str) or not value.strip().lower().startswith(("http://", "https://")):
        return None
    url = value.strip()
    return url if is_useful_website_url(url) else None


def build_web_search_prompt(candidate: Candidate) -> str:
    parts = [
        f"Find the current professional contact information for the researcher {candidate.name}.",
    ]
    if candidate.affiliation:
        parts.append(f"Affiliation: {candidate.affiliation}")
    if candidate.expertise_areas:
        parts.append(f"Research areas: {', '.join(candidate.expertise_areas[:4])}")
    parts.append(
        "Search the web for their institutional email address, their official faculty or profile page "
        "and any personal or lab website. Only report information you found for THIS person; "
        "use null when unsure."
    )
    parts.append("Return ONLY valid JSON in this format:\n" + _WEB_SEARCH_FORMAT)
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Tier chain
# ---------------------------------------------------------------------------

@dataclass
class _Found:
    email: str | None = None
    email_source: str | None = None
    email_year: int | None = None
    website: str | None = None
    faculty_page_url: str | None = None
    orcid: str | None = None
    orcid_url: str | None = None
    google_scholar_url: str | None = None
    source: str | None = None
    confidence: str | None = None
    fallback_email: tuple[str, str, int | None] | None = None
    tiers_attempted: list[str] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        return bool(self.email or self.website or self.faculty_page_url)


class ContactEnricher:
    """Runs the tier chain for one or many candidates with shared clients."""

    def __init__(
        self,
        options: EnrichmentOptions | None = None,
        credentials: Credentials | None = None,
        *,
        llm: LLMProvider | None = None,
        client: httpx.AsyncClient | None = None,
        pubmed: PubMedAdapter | None = None,
        ctx: DiscoveryRunContext | None = None,
    ):
        self.options = options or EnrichmentOptions()
        self.credentials = credentials or Credentials()
        self.llm = llm
        self.client = client
        self.ctx = ctx
        self._pubmed = pubmed
        self._orcid: ORCIDClient | None = None
        self._serp: SerpClient | None = None
        self.paid_calls: dict[str, int] = {"claude_search": 0, "serp": 0}

    async def aclose(self) -> None:
        for c in (self._orcid, self._serp, self._pubmed):
            if c is not None:
                await c.aclose()

    # ----------------------------------------------------------- availability
    def tier_available(self, tier: str) -> bool:
        if tier not in self.options.enabled_tiers:
            return False
        if tier == "orcid":
            return self.credentials.has_orcid
        if tier == "claude_search":
            return self.llm is not None and self.llm.supports_web_search
        if tier == "serp":
            return bool(self.credentials.serp_api_key)
        return tier == "pubmed"

    @property
    def pubmed(self) -> PubMedAdapter:
        if self._pubmed is None:
            self._pubmed = PubMedAdapter(
                self.client,
                api_key=self.credentials.ncbi_api_key,
                tool="reviewer-finder",
                email=self.credentials.ncbi_email,
            )
        return self._pubmed

    @property
    def orcid(self) -> ORCIDClient:
        if self._orcid is None:
            self._orcid = ORCIDClient(
                self.credentials.orcid_client_id, self.credentials.orcid_client_secret, client=self.client
            )
        return self._orcid

    @property
    def serp(self) -> SerpClient:
        if self._serp is None:
            self._serp = SerpClient(self.credentials.serp_api_key, client=self.client)
        return self._serp

    # ------------------------------------------------------------------ tiers
    async def _tier_pubmed(self, candidate: Candidate, found: _Found) -> None:
        publications = [p for p in candidate.publications if p.source == "pubmed"]
        if not publications:
            result = await self.pubmed.search(candidate.name, SearchHints(affiliation=candidate.affiliation), 10)
            publications = list(result.records)
        contact = extract_contact_from_publications(
            publications, candidate.name, max_email_age=self.options.max_email_age_years
        )
        if not contact.email:
            return
        if contact.is_recent:
            found.email = contact.email
            found.email_source = contact.email_source
            found.email_year = contact.email_year
            found.source = "pubmed"
            found.confidence = "high"
        else:
            logger.info("[enrich] %s: PubMed email from %s is older than %s years, continuing",
                        candidate.name, contact.email_year, self.options.max_email_age_years)
            found.fallback_email = (contact.email, contact.email_source, contact.email_year)

    async def _tier_orcid(self, candidate: Candidate, found: _Found) -> None:
        contact = await self.orcid.find_contact(candidate.name, candidate.affiliation)
        if contact is None:
            return
        found.orcid = found.orcid or contact.orcid_id
        found.orcid_url = found.orcid_url or contact.orcid_url
        if contact.email:
            found.email = contact.email.lower()
            found.email_source = "ORCID"
            found.email_year = datetime.now().year
        if contact.website and is_useful_website_url(contact.website):
            found.website = found.website or contact.website
        if contact.email or found.website:
            found.source = "orcid"
            found.confidence = "high"

    async def _tier_claude_search(self, candidate: Candidate, found: _Found) -> None:
        self.paid_calls["claude_search"] += 1
        response = await self.llm.generate(
            build_web_search_prompt(candidate), web_search=True, max_uses=3, max_tokens=1024, temperature=0.1
        )
        data = parse_json_response(response)
        email = _valid_email(data.get("email"))
        faculty = _valid_url(data.get("facultyPageUrl") or data.get("faculty_page_url"))
        website = _valid_url(data.get("website"))
        if email:
            found.email = email
            found.email_source = TIER_LABELS["claude_search"]
            found.email_year = datetime.now().year
        found.faculty_page_url = found.faculty_page_url or faculty
        found.website = found.website or website or faculty
        if email or faculty or website:
            found.source = "claude_search"
            confidence = str(data.get("confidence") or "").lower()
            found.confidence = confidence if confidence in ("high", "medium", "low") else "medium"

    async def _tier_serp(self, candidate: Candidate, found: _Found) -> None:
        self.paid_calls["serp"] += 1
        contact = await self.serp.find_contact(candidate.name, candidate.affiliation)
        if contact.email:
            found.email = contact.email
            found.email_source = TIER_LABELS["serp"]
            found.email_year = datetime.now().year
        found.faculty_page_url = found.faculty_page_url or contact.faculty_page_url
        found.website = found.website or contact.website or contact.faculty_page_url
        if contact.found:
            found.source = "serp"
            found.confidence = "medium" if contact.email else "low"
        if not candidate.google_scholar_id:
            self.paid_calls["serp"] += 1
            try:
                author_id = await self.serp.find_scholar_profile(candidate.name, candidate.affiliation)
            except Exception as exc:
                logger.warning("[enrich] %s: scholar profile lookup failed: %s", candidate.name, exc)
                author_id = None
            if author_id:
                found.google_scholar_url = f"https://scholar.google.com/citations?user={author_id}"

    async def enrich(self, candidate: Candidate) -> ContactInfo:
        """Run the enabled tiers in order until one yields an email or website."""
        found = _Found(
            orcid=candidate.orcid,
            google_scholar_url=(
                f"https://scholar.google.com/citations?user={candidate.google_scholar_id}"
                if candidate.google_scholar_id else None
            ),
        )
        tiers = {
            "pubmed": self._tier_pubmed,
            "orcid": self._tier_orcid,
            "claude_search": self._tier_claude_search,
            "serp": self._tier_serp,
        }
        for tier in ALL_TIERS:
            if not self.tier_available(tier):
                if tier in self.options.enabled_tiers:
                    logger.info("[enrich] %s: tier %s enabled but not configured, skipping", candidate.name, tier)
                continue
            if self.ctx is not None:
                self.ctx.raise_if_cancelled()
            found.tiers_attempted.append(tier)
            try:
                await tiers[tier](candidate, found)
            except Exception as exc:
                logger.warning("[enrich] %s: tier %s failed: %s", candidate.name, tier, exc)
            if self.ctx is not None:
                # a stop that arrived mid-call discards whatever the tier found
                self.ctx.raise_if_cancelled()
                await self.ctx.emit(
                    EnrichmentTierCompleted(
                        message=f"{candidate.name}: {tier} {'found' if found.usable else 'nothing'}",
                        user_message=f"Checked {TIER_LABELS[tier]} for {candidate.name}.",
                        candidate_name=candidate.name,
                        tier=tier,
                        found=found.usable,
                    )
                )
            if found.usable:
                break

        if not found.email and found.fallback_email:
            found.email, found.email_source, found.email_year = found.fallback_email
            found.source = found.source or "pubmed"
            found.confidence = found.confidence or "low"

        info = ContactInfo(
            email=found.email,
            email_source=found.email_source,
            email_year=found.email_year,
            website=found.website,
            faculty_page_url=found.faculty_page_url,
            orcid=found.orcid,
            orcid_url=found.orcid_url or (f"https://orcid.org/{found.orcid}" if found.orcid else None),
            google_scholar_url=found.google_scholar_url or build_google_scholar_url(candidate.name, candidate.affiliation),
            source=found.source,
            confidence=found.confidence,
            tiers_attempted=tuple(found.tiers_attempted),
        )
        logger.info("[enrich] %s: %s via %s (tiers %s)",
                    candidate.name, info.status, info.source or "-", ",".join(info.tiers_attempted) or "none")
        return info


async def enrich(
    candidate: Candidate,
    options: EnrichmentOptions | None = None,
    credentials: Credentials | None = None,
    *,
    llm: LLMProvider | None = None,
    client: httpx.AsyncClient | None = None,
    pubmed: PubMedAdapter | None = None,
) -> ContactInfo:
    """Contact info for one candidate. Never raises for tier failures."""
    enricher = ContactEnricher(options, credentials, llm=llm, client=client, pubmed=pubmed)
    try:
        return await enricher.enrich(candidate)
    finally:
        await enricher.aclose()


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

@dataclass
class EnrichmentBatchResult:
    candidates: list[Candidate] = field(default_factory=list)
    stats: dict = field(default_factory=dict)
    cancelled: bool = False


def _batch_stats(candidates: list[Candidate], paid_calls: dict[str, int]) -> dict:
    contacts = [c.contact for c in candidates if c.contact is not None]
    by_source: dict[str, int] = {}
    for info in contacts:
        if info.source:
            by_source[info.source] = by_source.get(info.source, 0) + 1
    actual_cost = sum(TIER_COSTS[t] * n for t, n in paid_calls.items())
    return {
        "total": len(candidates),
        "with_email": sum(1 for i in contacts if i.email),
        "with_website": sum(1 for i in contacts if i.website or i.faculty_page_url),
        "with_orcid": sum(1 for i in contacts if i.orcid),
        "not_found": sum(1 for i in contacts if not i.found),
        "by_source": by_source,
        "paid_calls": dict(paid_calls),
        "actual_cost": round(actual_cost, 2),
    }


async def enrich_candidates(
    candidates: list[Candidate],
    options: EnrichmentOptions | None = None,
    credentials: Credentials | None = None,
    *,
    llm: LLMProvider | None = None,
    client: httpx.AsyncClient | None = None,
    db: AsyncSession | None = None,
    ctx: DiscoveryRunContext | None = None,
) -> EnrichmentBatchResult:
    """Enrich candidates one by one, persisting contacts when a session is given.

    Setting ``ctx.cancel_event`` stops the batch; a contact found after the stop
    is discarded unsaved. Candidates already enriched are returned and the rest
    are left untouched.
    """
    options = options or EnrichmentOptions()
    ctx = ctx or DiscoveryRunContext(credentials=credentials or Credentials())
    enricher = ContactEnricher(options, credentials, llm=llm, client=client, ctx=ctx)
    result = EnrichmentBatchResult()
    try:
        for i, candidate in enumerate(candidates, start=1):
            try:
                info = await enricher.enrich(candidate)
                ctx.raise_if_cancelled()
            except RunCancelledError:
                logger.info("[enrich] batch cancelled after %s/%s candidates", i - 1, len(candidates))
                result.cancelled = True
                await ctx.emit(RunCancelled(message="enrichment cancelled", user_message="Contact search stopped.", stage="enrichment"))
                break
            except Exception as exc:
                await record_candidate_error(ctx, candidate.name, exc, context_label="enrichment")
                info = ContactInfo(google_scholar_url=build_google_scholar_url(candidate.name, candidate.affiliation))

            enriched = replace(
                candidate,
                contact=info,
                email=candidate.email or info.email,
                website=candidate.website or info.website or info.faculty_page_url,
                orcid=candidate.orcid or info.orcid,
            )
            result.candidates.append(enriched)

            if options.persist and db is not None and candidate.researcher_id is not None:
                try:
                    await researcher_store.save_contact_info(db, candidate.researcher_id, info)
                except Exception as exc:
                    await record_candidate_error(ctx, candidate.name, exc, context_label="persistence")

            await ctx.emit(
                EnrichmentProgress(
                    message=f"{i}/{len(candidates)} enriched",
                    user_message=f"Looked up contact details for {i} of {len(candidates)} reviewers.",
                    completed=i,
                    total=len(candidates),
                    candidate_name=candidate.name,
                )
            )
            await asyncio.sleep(0)
    finally:
        await enricher.aclose()

    result.stats = _batch_stats(result.candidates, enricher.paid_calls)
    logger.info("[enrich] batch done: %s", result.stats)
    return result
