"""PubMed (NCBI E-utilities) adapter.

esearch (JSON, relevance sort) returns PMIDs; efetch (XML) returns the
articles in chunks of 200. NCBI allows ~3 requests/second without a key and
10 with one, hence 350 ms / 100 ms spacing.
"""
from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Iterable

import httpx

from reviewer_finder.candidates import AuthorRecord, PublicationRecord, SearchHints
from reviewer_finder.services.identity import generate_name_variants, strip_honorifics, to_pubmed_author_format
from reviewer_finder.services.sources.base import (
    RequestThrottle,
    SourceAdapter,
    SourceUnavailableError,
    split_terms,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/"
EFETCH_CHUNK_SIZE = 200


def _text(elem: ET.Element | None) -> str:
    """Full text of an element, including mixed content (<i>, <sup>, ...)."""
    if elem is None:
        return ""
    return re.sub(r"\s+", " ", "".join(elem.itertext())).strip()


def _year_from(elem: ET.Element | None) -> int | None:
    if elem is None:
        return None
    year = elem.findtext("Year")
    if not year:
        # <MedlineDate>2019 Dec-2020 Jan</MedlineDate>
        year = elem.findtext("MedlineDate") or ""
    match = re.search(r"\d{4}", year)
    return int(match.group(0)) if match else None


def parse_efetch_xml(xml_text: str) -> list[PublicationRecord]:
    """Parse a PubmedArticleSet document. Articles that fail to parse are skipped."""
    if not xml_text or not xml_text.lstrip().startswith("<"):
        raise SourceUnavailableError("pubmed", "efetch returned non-XML content")
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise SourceUnavailableError("pubmed", f"XML parse error: {exc}") from exc

    records: list[PublicationRecord] = []
    for article in root.findall("PubmedArticle"):
        try:
            record = _parse_article(article)
        except Exception as exc:
            logger.warning("[pubmed] skipping unparseable article: %s", exc)
            continue
        if record is not None:
            records.append(record)
    return records


def _parse_article(article: ET.Element) -> PublicationRecord | None:
    citation = article.find("MedlineCitation")
    if citation is None:
        return None
    data = citation.find("Article")
    if data is None:
        return None

    pmid = (citation.findtext("PMID") or "").strip()
    title = _text(data.find("ArticleTitle"))

    names: list[tuple[str, tuple[str, ...]]] = []
    for author in data.findall("AuthorList/Author"):
        fore = (author.findtext("ForeName") or "").strip()
        last = (author.findtext("LastName") or "").strip()
        name = f"{fore} {last}".strip() or (author.findtext("CollectiveName") or "").strip()
        if not name:
            continue
        affiliations = tuple(
            a for a in (_text(info) for info in author.findall("AffiliationInfo/Affiliation")) if a
        )
        names.append((name, affiliations))
    # Last author is conventionally the senior author / PI
    authors = tuple(
        AuthorRecord(name=n, affiliations=affs, is_senior=(i == len(names) - 1))
        for i, (n, affs) in enumerate(names)
    )

    journal = (data.findtext("Journal/Title") or "").strip() or None

    year = None
    for date_elem in (
        data.find("Journal/JournalIssue/PubDate"),
        data.find("ArticleDate"),
        citation.find("DateCompleted"),
        citation.find("DateRevised"),
    ):
        year = _year_from(date_elem)
        if year:
            break

    doi = None
    for article_id in article.findall("PubmedData/ArticleIdList/ArticleId"):
        if article_id.get("IdType") == "doi" and (article_id.text or "").strip():
            doi = article_id.text.strip()
            break
    if doi is None:
        for eloc in data.findall("ELocationID"):
            if eloc.get("EIdType") == "doi" and (eloc.text or "").strip():
                doi = eloc.text.strip()
                break

    abstract = " ".join(_text(t) for t in data.findall("Abstract/AbstractText")).strip() or None

    return PublicationRecord(
        title=title,
        source="pubmed",
        source_id=pmid or None,
        authors=authors,
        year=year,
        url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/" if pmid else None,
        journal=journal,
        doi=doi,
        abstract=abstract,
    )


class PubMedAdapter(SourceAdapter):
    name = "pubmed"
    min_interval = 0.35

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        api_key: str | None = None,
        tool: str | None = None,
        email: str | None = None,
        throttle: RequestThrottle | None = None,
        timeout: float = 30.0,
        years_lookback: int = 5,
    ):
        super().__init__(client, throttle=throttle, timeout=timeout, years_lookback=years_lookback)
        self.api_key = api_key
        self.tool = tool
        self.email = email

    @property
    def request_interval(self) -> float:
        return 0.1 if self.api_key else 0.35

    def _params(self, **params) -> dict:
        if self.api_key:
            params["api_key"] = self.api_key
        if self.tool:
            params["tool"] = self.tool
        if self.email:
            params["email"] = self.email
        return params

    def date_filter(self) -> str:
        return f"({self.cutoff_year}:{self.current_year}[pdat])"

    # ------------------------------------------------------------- E-utilities
    async def search_pmids(self, query: str, max_results: int) -> list[str]:
        resp = await self._get(
            BASE_URL + "esearch.fcgi",
            self._params(db="pubmed", term=query, retmax=str(max_results), retmode="json", sort="relevance"),
            interval=self.request_interval,
        )
        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceUnavailableError(self.name, "esearch returned invalid JSON") from exc
        return list(data.get("esearchresult", {}).get("idlist", []))

    async def fetch_articles(self, pmids: Iterable[str]) -> list[PublicationRecord]:
        pmids = list(pmids)
        records: list[PublicationRecord] = []
        for start in range(0, len(pmids), EFETCH_CHUNK_SIZE):
            chunk = pmids[start:start + EFETCH_CHUNK_SIZE]
            resp = await self._get(
                BASE_URL + "efetch.fcgi",
                self._params(db="pubmed", id=",".join(chunk), retmode="xml"),
                interval=self.request_interval,
            )
            records.extend(parse_efetch_xml(resp.text))
        return records

    async def query(self, term: str, max_results: int) -> list[PublicationRecord]:
        pmids = await self.search_pmids(term, max_results)
        if not pmids:
            return []
        return await self.fetch_articles(pmids)

    # --------------------------------------------------------------- queries
    def build_author_query(self, name: str) -> str:
        return f"{strip_honorifics(name)}[Author] AND {self.date_filter()}"

    def build_disambiguated_query(self, name: str, expertise_areas: Iterable[str]) -> str:
        """Author query narrowed by up to two expertise phrases (first two words of each)."""
        terms = []
        for area in list(expertise_areas)[:2]:
            phrase = " ".join(re.split(r"[\s,]+", area.strip())[:2])
            if len(phrase) > 2:
                terms.append(phrase)
        if not terms:
            return self.build_author_query(name)
        expertise = " OR ".join(f"({t}[Title/Abstract])" for t in terms)
        return f"{strip_honorifics(name)}[Author] AND ({expertise}) AND {self.date_filter()}"

    # -------------------------------------------------------- adapter contract
    async def search_author(self, name: str, hints: SearchHints, max_results: int) -> list[PublicationRecord]:
        # hints.affiliation is not a query term; the verifier scores it against results
        queries = []
        for variant in generate_name_variants(name):
            queries.append(self.build_author_query(variant))
            if hints.expertise_keywords:
                queries.append(self.build_disambiguated_query(variant, hints.expertise_keywords))
        queries = list(dict.fromkeys(queries))

        collected: dict[str, PublicationRecord] = {}
        for term in queries:
            for record in await self.query(term, max_results):
                collected.setdefault(record.record_key, record)
        logger.info("[pubmed] %s: %s unique records from %s queries", name, len(collected), len(queries))
        return list(collected.values())

    async def search_topic(self, query: str, max_results: int) -> list[PublicationRecord]:
        term = query if "[pdat]" in query else f"{query} AND {self.date_filter()}"
        return await self.query(term, max_results)

    async def search_coauthored(self, name1: str, name2: str, max_results: int = 10) -> list[PublicationRecord]:
        """Papers listing both people as authors ("Smith J[Author] AND Doe J[Author]")."""
        a1 = to_pubmed_author_format(name1)
        a2 = to_pubmed_author_format(name2)
        if not a1 or not a2:
            return []
        return await self.query(f"{a1}[Author] AND {a2}[Author]", max_results)

    @staticmethod
    def generate_query(primary_research_area: str | None) -> str:
        terms = split_terms(primary_research_area, 3)
        if not terms:
            return ""
        year = datetime.now().year
        return f"{' '.join(terms)}[Title/Abstract] AND ({year - 5}:{year}[pdat])"
