"""ArXiv adapter (Atom feed from export.arxiv.org). ArXiv asks for one request every 3 seconds."""
from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET

from reviewer_finder.candidates import AuthorRecord, PublicationRecord, SearchHints
from reviewer_finder.services.identity import generate_name_variants, without_middle_names
from reviewer_finder.services.sources.base import SourceAdapter, SourceUnavailableError, split_terms

logger = logging.getLogger(__name__)

BASE_URL = "http://export.arxiv.org/api/query"
_NS = {"atom": "http://www.w3.org/2005/Atom", "arxiv": "http://arxiv.org/schemas/atom"}


def _clean(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def parse_atom_feed(xml_text: str) -> list[PublicationRecord]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise SourceUnavailableError("arxiv", f"XML parse error: {exc}") from exc

    records: list[PublicationRecord] = []
    for entry in root.findall("atom:entry", _NS):
        raw_id = entry.findtext("atom:id", default="", namespaces=_NS)
        # http://arxiv.org/abs/2301.01234v2 -> 2301.01234
        arxiv_id = raw_id.split("/abs/")[-1]
        arxiv_id = re.sub(r"v\d+$", "", arxiv_id)
        if not arxiv_id:
            continue

        names: list[tuple[str, tuple[str, ...]]] = []
        for author in entry.findall("atom:author", _NS):
            name = _clean(author.findtext("atom:name", default="", namespaces=_NS))
            if not name:
                continue
            affs = tuple(
                _clean(a.text) for a in author.findall("arxiv:affiliation", _NS) if _clean(a.text)
            )
            names.append((name, affs))
        authors = tuple(
            AuthorRecord(name=n, affiliations=affs, is_senior=(i == len(names) - 1))
            for i, (n, affs) in enumerate(names)
        )

        published = entry.findtext("atom:published", default="", namespaces=_NS)
        year = int(published[:4]) if published[:4].isdigit() else None
        categories = tuple(c.get("term") for c in entry.findall("atom:category", _NS) if c.get("term"))
        primary = entry.find("arxiv:primary_category", _NS)
        if primary is not None and primary.get("term"):
            categories = (primary.get("term"),) + tuple(c for c in categories if c != primary.get("term"))

        records.append(
            PublicationRecord(
                title=_clean(entry.findtext("atom:title", default="", namespaces=_NS)),
                source="arxiv",
                source_id=arxiv_id,
                authors=authors,
                year=year,
                url=f"https://arxiv.org/abs/{arxiv_id}",
                journal=_clean(entry.findtext("arxiv:journal_ref", default="", namespaces=_NS)) or None,
                doi=_clean(entry.findtext("arxiv:doi", default="", namespaces=_NS)) or None,
                abstract=_clean(entry.findtext("atom:summary", default="", namespaces=_NS)) or None,
                categories=categories,
                publication_date=published[:10] or None,
            )
        )
    return records


class ArXivAdapter(SourceAdapter):
    name = "arxiv"
    min_interval = 3.0

    async def _query(self, search_query: str, max_results: int) -> list[PublicationRecord]:
        resp = await self._get(
            BASE_URL,
            {
                "search_query": search_query,
                "start": "0",
                "max_results": str(max_results),
                "sortBy": "relevance",
                "sortOrder": "descending",
            },
        )
        return parse_atom_feed(resp.text)

    async def search_author(self, name: str, hints: SearchHints, max_results: int) -> list[PublicationRecord]:
        variants = {without_middle_names(v) for v in generate_name_variants(name)}
        # Initial-only variants are too ambiguous on arXiv
        variants = sorted(v for v in variants if len(v.split(" ")[0]) > 1)
        query = " OR ".join(f'au:"{v}"' for v in variants)
        if not query:
            return []
        records = await self._query(query, max_results)
        cutoff = self.cutoff_year
        return [r for r in records if r.year is None or r.year >= cutoff]

    async def search_topic(self, query: str, max_results: int) -> list[PublicationRecord]:
        return await self._query(f"all:{query}", max_results)

    @staticmethod
    def generate_query(primary_research_area: str | None) -> str:
        return " ".join(split_terms(primary_research_area, 4))
