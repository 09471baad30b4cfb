"""SerpAPI (Google engine) contact search: snippets for emails, results for faculty pages."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from reviewer_finder.services.contact_parser import (
    ACADEMIC_SUFFIXES,
    extract_personal_email,
    is_useful_website_url,
)

logger = logging.getLogger(__name__)

SERP_URL = "https://serpapi.com/search.json"

_FACULTY_PATH_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"/faculty/[a-z]",
        r"/people/[a-z]",
        r"/profile[s]?/",
        r"/directory/[a-z]",
        r"/staff/[a-z]",
        r"/~[a-z]",
        r"/lab/?$",
        r"/research/[a-z]+-lab",
        r"/person/",
        r"/experts?/",
    )
)
_RESEARCH_SITES = ("researchgate.net/profile", "scholar.google.com/citations", "orcid.org/", "loop.frontiersin.org/people")
_GENERIC_DIRECTORY_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"/(faculty|people|directory|staff)/?$",
        r"/(faculty|people)/?(index\.html?)?$",
        r"[?&](q|search|query)=",
        r"linkedin\.com/",
        r"wikipedia\.org/",
    )
)

FALLBACK_QUERY_TEMPLATES = (
    '"{name}" {institution} faculty',
    '"{name}" site:.edu',
    '"{name}" lab research',
    '"{name}" {institution} profile',
)


class SerpError(Exception):
    pass


@dataclass(frozen=True)
class SerpContact:
    email: str | None = None
    faculty_page_url: str | None = None
    website: str | None = None
    queries_run: int = 0

    @property
    def found(self) -> bool:
        return bool(self.email or self.faculty_page_url or self.website)


def primary_institution(affiliation: str | None) -> str:
    """First comma-separated part of an affiliation."""
    if not affiliation:
        return ""
    return affiliation.split(",")[0].strip()


def is_generic_directory_url(url: str | None) -> bool:
    if not url:
        return True
    lower = url.lower()
    return any(p.search(lower) for p in _GENERIC_DIRECTORY_PATTERNS)


def is_faculty_page_url(url: str | None) -> bool:
    """Heuristic: academic host with a person-shaped path, or a known research profile site."""
    if not url or is_generic_directory_url(url):
        return False
    lower = url.lower()
    if any(site in lower for site in _RESEARCH_SITES):
        return True
    host = urlparse(lower).netloc
    academic = host.endswith(ACADEMIC_SUFFIXES) or ".edu." in host or ".ac." in host
    return academic and any(p.search(lower) for p in _FACULTY_PATH_PATTERNS)


def parse_organic_results(results: list[dict], name: str) -> SerpContact:
    email = None
    faculty = None
    website = None
    last_name = name.split()[-1].lower() if name.split() else ""
    for r in results:
        link = r.get("link") or ""
        text = f"{r.get('title') or ''} {r.get('snippet') or ''}"
        if email is None:
            email = extract_personal_email(text)
        mentions_name = bool(last_name) and last_name in text.lower()
        if faculty is None and is_faculty_page_url(link) and mentions_name:
            faculty = link
        elif website is None and mentions_name and is_useful_website_url(link) and not is_generic_directory_url(link):
            website = link
    return SerpContact(email=email, faculty_page_url=faculty, website=website)


class SerpClient:
    def __init__(self, api_key: str, client: httpx.AsyncClient | None = None, timeout: float = 20.0):
        self.api_key = api_key
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, engine: str = "google", **params) -> dict:
        request = {"engine": engine, "api_key": self.api_key, **params}
        if query:
            request.update(q=query, num="10")
        resp = await self.client.get(SERP_URL, params=request)
        if resp.status_code != 200:
            raise SerpError(f"SerpAPI request failed: {resp.status_code} {resp.text[:200]}")
        data = resp.json()
        if data.get("error"):
            raise SerpError(str(data["error"]))
        return data

    async def find_contact(self, name: str, affiliation: str | None = None) -> SerpContact:
        """Primary `"Name" institution email` query, then fallbacks until an email or faculty page turns up."""
        institution = primary_institution(affiliation)
        queries = [f'"{name}" {institution} email'.replace("  ", " ")]
        queries += [t.format(name=name, institution=institution).replace("  ", " ").strip() for t in FALLBACK_QUERY_TEMPLATES]

        email = faculty = website = None
        runs = 0
        for query in queries:
            data = await self.search(query)
            runs += 1
            found = parse_organic_results(data.get("organic_results") or [], name)
            email = email or found.email
            faculty = faculty or found.faculty_page_url
            website = website or found.website
            if email or faculty:
                break
        logger.debug("[serp] %s: %s queries, email=%s faculty=%s", name, runs, bool(email), bool(faculty))
        return SerpContact(email=email, faculty_page_url=faculty, website=website, queries_run=runs)

    async def find_scholar_profile(self, name: str, affiliation: str | None = None) -> str | None:
        """Google Scholar author id via the google_scholar_profiles engine."""
        mauthors = f"{name} {primary_institution(affiliation)}".strip()
        data = await self.search("", engine="google_scholar_profiles", mauthors=mauthors)
        last_name = name.split()[-1].lower() if name.split() else ""
        for profile in data.get("profiles") or []:
            if last_name and last_name in (profile.get("name") or "").lower():
                return profile.get("author_id")
        return None
