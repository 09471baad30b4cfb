"""Build the enabled source adapters for one run."""
from __future__ import annotations

import logging
from typing import Iterable

import httpx

from reviewer_finder.pipeline.config import ALL_SOURCES, Credentials
from reviewer_finder.services.sources.arxiv import ArXivAdapter
from reviewer_finder.services.sources.base import SourceAdapter
from reviewer_finder.services.sources.biorxiv import BioRxivAdapter
from reviewer_finder.services.sources.chemrxiv import ChemRxivAdapter
from reviewer_finder.services.sources.pubmed import PubMedAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[SourceAdapter]] = {
    "pubmed": PubMedAdapter,
    "arxiv": ArXivAdapter,
    "biorxiv": BioRxivAdapter,
    "chemrxiv": ChemRxivAdapter,
}


def build_adapters(
    enabled_sources: Iterable[str],
    credentials: Credentials | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
    years_lookback: int = 5,
) -> dict[str, SourceAdapter]:
    """Adapters keyed by source name, in canonical order. Unknown names are ignored."""
    credentials = credentials or Credentials()
    wanted = {s.lower().strip() for s in enabled_sources}
    adapters: dict[str, SourceAdapter] = {}
    for source in ALL_SOURCES:
        if source not in wanted:
            continue
        if source == "pubmed":
            adapters[source] = PubMedAdapter(
                client,
                api_key=credentials.ncbi_api_key,
                tool="reviewer-finder",
                email=credentials.ncbi_email,
                timeout=timeout,
                years_lookback=years_lookback,
            )
        else:
            adapters[source] = ADAPTER_CLASSES[source](client, timeout=timeout, years_lookback=years_lookback)
    unknown = wanted - set(ALL_SOURCES)
    if unknown:
        logger.warning("[sources] ignoring unknown sources: %s", sorted(unknown))
    return adapters


async def close_adapters(adapters: dict[str, SourceAdapter]) -> None:
    for adapter in adapters.values():
        await adapter.aclose()
