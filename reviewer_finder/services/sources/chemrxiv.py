"""ChemRxiv (Cambridge Engage public API) adapter."""
from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta

import httpx

from reviewer_finder.candidates import AuthorRecord, PublicationRecord, SearchHints
from reviewer_finder.services.identity import split_name, strip_honorifics
from reviewer_finder.services.sources.base import SourceAdapter, SourceUnavailableError, split_terms

logger = logging.getLogger(__name__)

BASE_URL = "https://chemrxiv.org/engage/chemrxiv/public-api/v1"
API_MAX_LIMIT = 50
RATE_LIMIT_RETRY_SECONDS = 5.0

CHEM_KEYWORDS = (
    "chemistry", "chemical", "organic", "inorganic", "biochem",
    "polymer", "catalysis", "catalyst", "synthesis", "synthetic",
    "molecular", "molecule", "compound", "reaction", "reagent",
    "spectroscopy", "electrochemistry", "photochemistry", "nanochemistry",
    "medicinal chemistry", "pharmaceutical", "drug", "ligand",
    "crystal", "materials", "nanoparticle", "surface chemistry",
    "analytical", "chromatography", "mass spectrometry",
    "computational chemistry", "quantum chemistry", "theoretical chemistry",
    "supramolecular", "coordination", "organometallic",
    "gasotransmitter", "cyanide", "sulfide", "hydrogen",
)


def parse_items(data: dict, max_results: int) -> list[PublicationRecord]:
    hits = data.get("itemHits") or data.get("items") or []
    records = []
    for hit in hits[:max_results]:
        item = hit.get("item", hit)
        raw_authors = item.get("authors") or []
        names: list[tuple[str, tuple[str, ...]]] = []
        for author in raw_authors:
            first = (author.get("firstName") or "").strip()
            last = (author.get("lastName") or "").strip()
            name = f"{first} {last}".strip() if first and last else (author.get("name") or "").strip()
            if not name:
                continue
            affs = tuple(
                (inst.get("name") or "").strip()
                for inst in (author.get("institutions") or [])
                if (inst.get("name") or "").strip()
            )
            names.append((name, affs))
        # ChemRxiv lists the submitting author first; treat them as corresponding
        authors = tuple(
            AuthorRecord(name=n, affiliations=affs, is_senior=(i == 0))
            for i, (n, affs) in enumerate(names)
        )

        published = (item.get("publishedDate") or "")[:10]
        year = int(published[:4]) if published[:4].isdigit() else None
        categories = tuple(c.get("name") for c in (item.get("categories") or []) if c.get("name"))
        item_id = (item.get("id") or "").strip()
        doi = (item.get("doi") or "").strip()
        records.append(
            PublicationRecord(
                title=(item.get("title") or "").strip(),
                source="chemrxiv",
                source_id=item_id or doi or None,
                authors=authors,
                year=year,
                url=f"https://chemrxiv.org/engage/chemrxiv/article-details/{item_id}" if item_id else None,
                doi=doi or None,
                abstract=(item.get("abstract") or "").strip() or None,
                categories=categories,
                publication_date=published or None,
            )
        )
    return records


class ChemRxivAdapter(SourceAdapter):
    name = "chemrxiv"
    min_interval = 1.0

    async def _items(self, params: dict, max_results: int) -> list[PublicationRecord]:
        """GET /items; on HTTP 429 wait and retry once."""
        url = f"{BASE_URL}/items"
        try:
            resp = await self._get(url, params)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 429:
                raise
            logger.warning("[chemrxiv] rate limited, retrying in %ss", RATE_LIMIT_RETRY_SECONDS)
            await asyncio.sleep(RATE_LIMIT_RETRY_SECONDS)
            resp = await self._get(url, params)
        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceUnavailableError(self.name, "invalid JSON") from exc
        return parse_items(data, max_results)

    async def search_author(self, name: str, hints: SearchHints, max_results: int) -> list[PublicationRecord]:
        clean = strip_honorifics(name)
        params = {
            "term": f'"{clean}"',
            "limit": str(min(max_results, API_MAX_LIMIT)),
            "skip": "0",
            "sort": "PUBLISHED_DATE",
        }
        records = await self._items(params, max_results)
        _, last = split_name(clean)
        if not last:
            return []
        return [r for r in records if any(last in a.name.lower() for a in r.authors)]

    async def search_topic(self, query: str, max_results: int) -> list[PublicationRecord]:
        since = date.today() - timedelta(days=3 * 365)
        params = {
            "term": query,
            "limit": str(min(max_results, API_MAX_LIMIT)),
            "skip": "0",
            "sort": "RELEVANT",
            "searchDateFrom": since.isoformat(),
        }
        return await self._items(params, max_results)

    @staticmethod
    def generate_query(primary_research_area: str | None) -> str:
        return " ".join(split_terms(primary_research_area, 5))

    def is_relevant(self, primary_research_area: str | None, keywords: tuple[str, ...] = ()) -> bool:
        lower = (primary_research_area or "").lower()
        return any(k in lower for k in CHEM_KEYWORDS)
