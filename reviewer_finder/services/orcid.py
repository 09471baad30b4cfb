"""ORCID public API client (client-credentials token, expanded search, full record)."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass

import httpx

from reviewer_finder.services.identity import split_name, strip_honorifics

logger = logging.getLogger(__name__)

BASE_URL = "https://pub.orcid.org/v3.0"
TOKEN_URL = "https://orcid.org/oauth/token"
TOKEN_REFRESH_MARGIN = 60  # seconds before expiry

_INSTITUTION_PART = re.compile(r"university|institute|college|school|hospital|medical center|laboratory", re.IGNORECASE)


class ORCIDError(Exception):
    pass


@dataclass(frozen=True)
class ORCIDContact:
    orcid_id: str
    orcid_url: str
    name: str = ""
    email: str | None = None
    website: str | None = None
    affiliation: str | None = None
    source: str = "orcid_search"  # orcid_search | orcid_profile


# ---------------------------------------------------------------------------
# Token cache (process-global, keyed by client id)
# ---------------------------------------------------------------------------

class _TokenCache:
    def __init__(self):
        self._tokens: dict[str, tuple[str, float]] = {}
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def get(self, client_id: str) -> str | None:
        entry = self._tokens.get(client_id)
        if entry and time.monotonic() < entry[1]:
            return entry[0]
        return None

    def put(self, client_id: str, token: str, expires_in: float) -> None:
        self._tokens[client_id] = (token, time.monotonic() + max(0.0, expires_in - TOKEN_REFRESH_MARGIN))

    def clear(self) -> None:
        self._tokens.clear()


_token_cache = _TokenCache()


def extract_institution_name(affiliation: str | None) -> str | None:
    """Institution part of a full affiliation, department prefix removed."""
    if not affiliation:
        return None
    parts = [p.strip() for p in affiliation.split(",") if p.strip()]
    for part in parts:
        if _INSTITUTION_PART.search(part):
            return re.sub(r"^(department of|dept\.? of|division of|school of)\s+", "", part, flags=re.IGNORECASE).strip()
    return parts[0] if parts else None


def build_search_query(name: str, affiliation: str | None = None) -> str:
    first, last = split_name(strip_honorifics(name))
    if first and last:
        query = f"given-names:{first}* AND family-name:{last}*"
    else:
        single = last or first or name.strip()
        query = f"(given-names:{single}* OR family-name:{single}*)"
    institution = extract_institution_name(affiliation)
    if institution:
        query += f" AND affiliation-org-name:*{institution}*"
    return query


class ORCIDClient:
    def __init__(self, client_id: str, client_secret: str, client: httpx.AsyncClient | None = None, timeout: float = 20.0):
        self.client_id = client_id
        self.client_secret = client_secret
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

    async def get_access_token(self) -> str:
        token = _token_cache.get(self.client_id)
        if token:
            return token
        async with _token_cache._get_lock():
            token = _token_cache.get(self.client_id)
            if token:
                return token
            resp = await self.client.post(
                TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                    "scope": "/read-public",
                },
                headers={"Accept": "application/json"},
            )
            if resp.status_code != 200:
                raise ORCIDError(f"ORCID authentication failed: {resp.status_code} {resp.text[:200]}")
            data = resp.json()
            token = data["access_token"]
            _token_cache.put(self.client_id, token, float(data.get("expires_in", 1200)))
            logger.debug("[orcid] new access token cached")
            return token

    async def _get_json(self, url: str, params: dict | None = None) -> dict | None:
        token = await self.get_access_token()
        resp = await self.client.get(
            url,
            params=params,
            headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        )
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ORCIDError(f"ORCID request failed: {resp.status_code} {resp.text[:200]}")
        return resp.json()

    async def search_by_name(self, name: str, affiliation: str | None = None, max_results: int = 10) -> list[dict]:
        data = await self._get_json(
            f"{BASE_URL}/expanded-search/",
            {"q": build_search_query(name, affiliation), "rows": str(max_results)},
        )
        results = []
        for r in (data or {}).get("expanded-result") or []:
            orcid_id = r.get("orcid-id")
            if not orcid_id:
                continue
            results.append({
                "orcid_id": orcid_id,
                "orcid_url": f"https://orcid.org/{orcid_id}",
                "given_names": r.get("given-names") or "",
                "family_name": r.get("family-name") or "",
                "emails": r.get("email") or [],
                "institutions": r.get("institution-name") or [],
            })
        return results

    async def get_profile(self, orcid_id: str) -> dict | None:
        data = await self._get_json(f"{BASE_URL}/{orcid_id}/record")
        if data is None:
            return None
        person = data.get("person") or {}
        activities = data.get("activities-summary") or {}

        emails = [e for e in ((person.get("emails") or {}).get("email") or []) if e.get("email")]
        primary_email = next((e["email"] for e in emails if e.get("primary")), None) or (emails[0]["email"] if emails else None)

        urls = [
            (u.get("url") or {}).get("value")
            for u in ((person.get("researcher-urls") or {}).get("researcher-url") or [])
        ]
        urls = [u for u in urls if u]

        affiliations = []
        for group in (activities.get("employments") or {}).get("affiliation-group") or []:
            for summary in group.get("summaries") or []:
                emp = summary.get("employment-summary")
                if emp:
                    affiliations.append({
                        "organization": (emp.get("organization") or {}).get("name") or "",
                        "current": not emp.get("end-date"),
                    })
        current = next((a["organization"] for a in affiliations if a["current"]), None)

        name = person.get("name") or {}
        given = (name.get("given-names") or {}).get("value") or ""
        family = (name.get("family-name") or {}).get("value") or ""
        credit = (name.get("credit-name") or {}).get("value") or ""
        return {
            "orcid_id": orcid_id,
            "orcid_url": f"https://orcid.org/{orcid_id}",
            "name": credit or f"{given} {family}".strip(),
            "email": primary_email,
            "website": urls[0] if urls else None,
            "affiliation": current or (affiliations[0]["organization"] if affiliations else None),
        }

    async def find_contact(self, name: str, affiliation: str | None = None) -> ORCIDContact | None:
        """Search, then prefer an email from the search hit; else read the top hit's record."""
        results = await self.search_by_name(name, affiliation, max_results=5)
        if not results:
            return None
        with_email = next((r for r in results if r["emails"]), None)
        if with_email:
            return ORCIDContact(
                orcid_id=with_email["orcid_id"],
                orcid_url=with_email["orcid_url"],
                name=f"{with_email['given_names']} {with_email['family_name']}".strip(),
                email=with_email["emails"][0],
                source="orcid_search",
            )
        top = results[0]
        profile = await self.get_profile(top["orcid_id"])
        if profile is None:
            return ORCIDContact(
                orcid_id=top["orcid_id"],
                orcid_url=top["orcid_url"],
                name=f"{top['given_names']} {top['family_name']}".strip(),
                source="orcid_search",
            )
        return ORCIDContact(
            orcid_id=profile["orcid_id"],
            orcid_url=profile["orcid_url"],
            name=profile["name"],
            email=profile["email"],
            website=profile["website"],
            affiliation=profile["affiliation"],
            source="orcid_profile",
        )
