"""Common plumbing for bibliographic source adapters.

Adapters share three behaviours:

* one process-global :class:`RequestThrottle` per source, so concurrent
  discovery runs together stay under each API's rate ceiling;
* an ``httpx.AsyncClient`` that callers may inject (tests use
  ``httpx.MockTransport``);
* :meth:`SourceAdapter.search` / :meth:`SourceAdapter.search_topic_safe`
  never raise: a timeout or upstream error degrades to zero records with the
  error attached.
"""
from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx

from reviewer_finder.candidates import PublicationRecord, SearchHints, SourceSearchResult

logger = logging.getLogger(__name__)

USER_AGENT = "reviewer-finder/0.1 (mailto:reviewers@example.org)"


class SourceUnavailableError(Exception):
    """Upstream bibliographic API failed or returned something unusable."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------

class RequestThrottle:
    """Minimum spacing between requests to one upstream, shared across runs."""

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._last_request = 0.0
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
            self._last_request = 0.0
        return self._lock

    async def wait(self, min_interval: float | None = None) -> None:
        interval = self.min_interval if min_interval is None else min_interval
        loop = asyncio.get_running_loop()
        async with self._get_lock():
            delay = self._last_request + interval - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            self._last_request = loop.time()


_THROTTLES: dict[str, RequestThrottle] = {}


def get_throttle(source: str, min_interval: float) -> RequestThrottle:
    """Process-global throttle for *source* (created on first use)."""
    throttle = _THROTTLES.get(source)
    if throttle is None:
        throttle = RequestThrottle(min_interval)
        _THROTTLES[source] = throttle
    return throttle


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------

class SourceAdapter(ABC):
    """One bibliographic database."""

    name: str = ""
    min_interval: float = 1.0

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        throttle: RequestThrottle | None = None,
        timeout: float = 30.0,
        years_lookback: int = 5,
    ):
        self._client = client
        self._owns_client = client is None
        self.throttle = throttle or get_throttle(self.name, self.min_interval)
        self.timeout = timeout
        self.years_lookback = years_lookback

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ http
    async def _get(self, url: str, params: dict[str, Any] | None = None, *, interval: float | None = None) -> httpx.Response:
        await self.throttle.wait(interval)
        resp = await self.client.get(url, params=params)
        resp.raise_for_status()
        return resp

    @property
    def current_year(self) -> int:
        return datetime.now().year

    @property
    def cutoff_year(self) -> int:
        return self.current_year - self.years_lookback

    # ------------------------------------------------------ adapter contract
    @abstractmethod
    async def search_author(
        self, name: str, hints: SearchHints, max_results: int
    ) -> list[PublicationRecord]:
        """Publications attributed to *name*. May raise; :meth:`search` wraps it."""

    @abstractmethod
    async def search_topic(self, query: str, max_results: int) -> list[PublicationRecord]:
        """Publications matching a subject query (used for independent discovery)."""

    @staticmethod
    @abstractmethod
    def generate_query(primary_research_area: str | None) -> str:
        """Source-specific topic query from the proposal's research area ("" = skip)."""

    def is_relevant(self, primary_research_area: str | None, keywords: tuple[str, ...] = ()) -> bool:
        return True

    # ----------------------------------------------------------- safe wrappers
    async def search(
        self,
        name: str,
        hints: SearchHints | None = None,
        max_results: int = 20,
    ) -> SourceSearchResult:
        """Author search that never raises; failures degrade to zero records."""
        hints = hints or SearchHints()
        try:
            records = await asyncio.wait_for(
                self.search_author(name, hints, max_results), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("[%s] author search timed out after %ss for %r", self.name, self.timeout, name)
            return SourceSearchResult(source=self.name, error=f"timeout after {self.timeout}s")
        except Exception as exc:
            logger.warning("[%s] author search failed for %r: %s", self.name, name, exc)
            return SourceSearchResult(source=self.name, error=str(exc)[:300] or type(exc).__name__)
        logger.debug("[%s] %s records for %r", self.name, len(records), name)
        return SourceSearchResult(source=self.name, records=tuple(records))

    async def search_topic_safe(self, query: str, max_results: int = 50) -> SourceSearchResult:
        try:
            records = await asyncio.wait_for(
                self.search_topic(query, max_results), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("[%s] topic search timed out after %ss: %r", self.name, self.timeout, query[:60])
            return SourceSearchResult(source=self.name, error=f"timeout after {self.timeout}s")
        except Exception as exc:
            logger.warning("[%s] topic search failed %r: %s", self.name, query[:60], exc)
            return SourceSearchResult(source=self.name, error=str(exc)[:300] or type(exc).__name__)
        return SourceSearchResult(source=self.name, records=tuple(records))


def split_terms(text: str | None, limit: int) -> list[str]:
    """First *limit* whitespace/comma separated terms of *text*."""
    if not text or text.strip().lower() == "not specified":
        return []
    return [t for t in re.split(r"[\s,]+", text.strip()) if t][:limit]
