"""BioRxiv adapter.

The public API only lists preprints by date range, so both author and topic
searches pull the recent window (last two years) and filter client-side.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta

from reviewer_finder.candidates import AuthorRecord, PublicationRecord, SearchHints
from reviewer_finder.services.identity import generate_name_variants, matches_any_variant
from reviewer_finder.services.sources.base import SourceAdapter, SourceUnavailableError, split_terms

logger = logging.getLogger(__name__)

BASE_URL = "https://api.biorxiv.org/details/biorxiv"
WINDOW_DAYS = 730

BIO_KEYWORDS = (
    "biology", "biolog", "genomic", "genetic", "cell", "molecular",
    "neuroscience", "neuro", "biochem", "bioinformatics", "computational biology",
    "cancer", "immun", "patholog", "pharmacol", "physiol", "ecology",
    "evolution", "microb", "plant", "animal", "disease", "health",
    "protein", "dna", "rna", "gene", "genom", "biomedical",
)


def _parse_author_list(raw: str | None) -> list[str]:
    """"Smith, J.; Doe, Jane A." -> ["J Smith", "Jane A Doe"]."""
    names = []
    for part in (raw or "").split(";"):
        part = part.strip()
        if not part:
            continue
        if "," in part:
            last, first = [p.strip() for p in part.split(",", 1)]
            part = f"{first.replace('.', ' ').strip()} {last}".strip()
        names.append(" ".join(part.split()))
    return names


def parse_collection(items: list[dict]) -> list[PublicationRecord]:
    records = []
    for item in items:
        doi = (item.get("doi") or "").strip()
        corresponding = (item.get("author_corresponding") or "").strip()
        institution = (item.get("author_corresponding_institution") or "").strip()

        authors: list[AuthorRecord] = []
        for name in _parse_author_list(item.get("authors")):
            authors.append(AuthorRecord(name=name))
        if corresponding:
            corr = AuthorRecord(
                name=corresponding,
                affiliations=(institution,) if institution else (),
                is_senior=True,
            )
            # Replace the list entry for the corresponding author so affiliations attach to it
            authors = [a for a in authors if not matches_any_variant(a.name, [corresponding])]
            authors.append(corr)

        published = (item.get("date") or "").strip()
        year = int(published[:4]) if published[:4].isdigit() else None
        category = (item.get("category") or "").strip()
        records.append(
            PublicationRecord(
                title=(item.get("title") or "").strip(),
                source="biorxiv",
                source_id=doi or None,
                authors=tuple(authors),
                year=year,
                url=f"https://www.biorxiv.org/content/{doi}" if doi else None,
                doi=doi or None,
                abstract=(item.get("abstract") or "").strip() or None,
                categories=(category,) if category else (),
                publication_date=published or None,
            )
        )
    return records


class BioRxivAdapter(SourceAdapter):
    name = "biorxiv"
    min_interval = 5.0

    async def fetch_recent(self) -> list[PublicationRecord]:
        end = date.today()
        start = end - timedelta(days=WINDOW_DAYS)
        resp = await self._get(f"{BASE_URL}/{start.isoformat()}/{end.isoformat()}/0/json")
        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceUnavailableError(self.name, "invalid JSON") from exc
        return parse_collection(data.get("collection") or [])

    async def search_author(self, name: str, hints: SearchHints, max_results: int) -> list[PublicationRecord]:
        variants = generate_name_variants(name)
        records = await self.fetch_recent()
        matched = [
            r for r in records
            if any(matches_any_variant(a.name, variants) for a in r.authors)
        ]
        return matched[:max_results]

    async def search_topic(self, query: str, max_results: int) -> list[PublicationRecord]:
        terms = [t for t in query.lower().split() if len(t) > 2]
        if not terms:
            return []
        needed = min(2, len(terms))
        records = await self.fetch_recent()
        matched = []
        for r in records:
            text = f"{r.title} {r.abstract or ''} {' '.join(r.categories)}".lower()
            if sum(1 for t in terms if t in text) >= needed:
                matched.append(r)
        return matched[:max_results]

    @staticmethod
    def generate_query(primary_research_area: str | None) -> str:
        return " ".join(split_terms(primary_research_area, 3))

    def is_relevant(self, primary_research_area: str | None, keywords: tuple[str, ...] = ()) -> bool:
        lower = (primary_research_area or "").lower()
        return any(k in lower for k in BIO_KEYWORDS)
