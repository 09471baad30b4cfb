"""Proposal analysis and discovered-candidate reasoning via the LLM provider.

LLM output is untrusted: every field is coerced, blanks and excluded names are
dropped, and a response that cannot be parsed at all fails the ``analysis``
stage with :class:`StageError`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import Iterable

from reviewer_finder.candidates import Candidate, ProposalAnalysis, ReviewerSuggestion
from reviewer_finder.services.error_tracker import StageError
from reviewer_finder.services.identity import is_excluded, strip_honorifics
from reviewer_finder.services.llm_provider import LLMProvider
from reviewer_finder.services.utils import as_str_list, parse_json_response

logger = logging.getLogger(__name__)

MAX_PROPOSAL_CHARS = 15000
REASONING_BATCH_SIZE = 10
QUERY_SOURCES = ("pubmed", "arxiv", "biorxiv", "chemrxiv")

_ANALYSIS_FORMAT = """{
  "title": "complete proposal title",
  "proposal_authors": ["names of the proposal author(s); [] if not found"],
  "author_institution": "university or organization, or null",
  "primary_research_area": "main scientific discipline",
  "secondary_areas": ["related fields"],
  "key_methodologies": ["main techniques"],
  "keywords": ["5-8 specific technical terms for database searching"],
  "abstract": "verbatim abstract if present, else a 2-3 sentence summary",
  "reviewers": [
    {
      "name": "FirstName LastName (western order)",
      "institution": "current institution",
      "expertise": ["2-4 specific areas"],
      "seniority": "Early-career | Mid-career | Senior",
      "reasoning": "2-3 sentences on why they fit THIS proposal",
      "source": "Mentioned in proposal | References | Known expert | Field leader"
    }
  ],
  "search_queries": {
    "pubmed": ["3-6 word topic queries, no author names"],
    "arxiv": ["computational / theoretical queries"],
    "biorxiv": ["experimental biology queries"],
    "chemrxiv": ["chemistry queries, [] if not relevant"]
  }
}"""

_REASONING_FORMAT = """{
  "candidates": [
    {"index": 1, "relevant": true, "reasoning": "1-2 sentences", "seniority": "Early-career | Mid-career | Senior"}
  ]
}"""


# ---------------------------------------------------------------------------
# Proposal analysis
# ---------------------------------------------------------------------------

def build_analysis_prompt(
    proposal_text: str,
    additional_notes: str = "",
    excluded_names: Iterable[str] = (),
    reviewer_count: int = 12,
) -> str:
    text = proposal_text or "No proposal text provided"
    if len(text) > MAX_PROPOSAL_CHARS:
        text = text[:MAX_PROPOSAL_CHARS] + "\n\n[...truncated for length...]"
    excluded = [n for n in excluded_names if n]

    parts = [
        "You are an expert at identifying qualified peer reviewers for scientific research proposals. "
        "Analyze this proposal and return structured output for a reviewer discovery system.",
        f"PROPOSAL TEXT:\n{text}",
    ]
    if additional_notes:
        parts.append(f"ADDITIONAL CONTEXT FROM USER:\n{additional_notes}")
    if excluded:
        parts.append(
            "EXCLUDED NAMES (conflicts of interest, do NOT suggest these):\n" + ", ".join(excluded)
        )
    parts.append(
        f"Suggest {reviewer_count} potential reviewers. Prefer researchers cited or discussed in the "
        "proposal, then senior authors of cited work, then known field leaders. They must be established "
        "researchers with relevant expertise and must NOT be from the author's institution. "
        "Mix seniority levels and cover every major area of interdisciplinary work."
    )
    parts.append(
        "Also generate database search queries using specific technical terminology "
        "(methods, organisms, phenomena). Never include author names in queries."
    )
    parts.append("Return ONLY valid JSON in this format:\n" + _ANALYSIS_FORMAT)
    return "\n\n".join(parts)


def _opt_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("not specified", "unknown", "n/a", "none", "null"):
        return None
    return text


def parse_analysis_response(response: str, excluded_names: Iterable[str] = ()) -> ProposalAnalysis:
    """Turn the raw LLM response into a ProposalAnalysis.

    Raises ValueError / json.JSONDecodeError when nothing usable can be parsed.
    """
    data = parse_json_response(response)
    excluded = [n for n in excluded_names if n]

    suggestions: list[ReviewerSuggestion] = []
    seen: list[str] = []
    for item in data.get("reviewers") or []:
        if not isinstance(item, dict):
            continue
        name = strip_honorifics(_opt_str(item.get("name")) or "")
        if not name or len(name.split()) < 2:
            continue
        if is_excluded(name, excluded):
            logger.info("[analysis] dropping excluded suggestion %s", name)
            continue
        if is_excluded(name, seen):
            continue
        seen.append(name)
        suggestions.append(
            ReviewerSuggestion(
                name=name,
                affiliation=_opt_str(item.get("institution")),
                expertise_areas=tuple(as_str_list(item.get("expertise"))),
                reasoning=_opt_str(item.get("reasoning")) or "",
                seniority_estimate=_opt_str(item.get("seniority")),
            )
        )

    raw_queries = data.get("search_queries") or {}
    queries: dict[str, tuple[str, ...]] = {}
    if isinstance(raw_queries, dict):
        for source in QUERY_SOURCES:
            picked = tuple(q for q in as_str_list(raw_queries.get(source)) if len(q) > 2)
            if picked:
                queries[source] = picked

    authors = as_str_list(data.get("proposal_authors"))
    return ProposalAnalysis(
        title=_opt_str(data.get("title")) or "",
        abstract=_opt_str(data.get("abstract")) or "",
        proposal_authors=tuple(a for a in authors if _opt_str(a)),
        institution=_opt_str(data.get("author_institution")),
        primary_research_area=_opt_str(data.get("primary_research_area")) or "",
        keywords=tuple(as_str_list(data.get("keywords"))),
        suggestions=tuple(suggestions),
        search_queries=queries,
        excluded_names=tuple(excluded),
    )


def validate_analysis(analysis: ProposalAnalysis) -> list[str]:
    """Issues that make an analysis less useful (logged, not fatal)."""
    issues = []
    if not analysis.title:
        issues.append("Missing proposal title")
    if not analysis.suggestions:
        issues.append("No reviewer suggestions generated")
    if not any(analysis.search_queries.values()):
        issues.append("No search queries generated")
    return issues


async def analyze_proposal(
    llm: LLMProvider,
    proposal_text: str,
    *,
    additional_notes: str = "",
    excluded_names: Iterable[str] = (),
    reviewer_count: int = 12,
    timeout: float | None = None,
) -> ProposalAnalysis:
    """Run the analysis prompt; any LLM or parse failure raises StageError("analysis")."""
    excluded_names = list(excluded_names)
    prompt = build_analysis_prompt(proposal_text, additional_notes, excluded_names, reviewer_count)
    try:
        response = await asyncio.wait_for(llm.generate(prompt, temperature=0.3), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StageError("analysis", f"LLM call timed out after {timeout}s") from e
    except Exception as e:
        raise StageError("analysis", f"LLM call failed: {e}") from e

    try:
        analysis = parse_analysis_response(response, excluded_names)
    except (ValueError, json.JSONDecodeError) as e:
        raise StageError("analysis", f"Could not parse analysis response: {e}") from e

    issues = validate_analysis(analysis)
    if issues:
        logger.warning("[analysis] validation issues: %s", issues)
    logger.info(
        "[analysis] %s suggestions, %s queries",
        len(analysis.suggestions), sum(len(q) for q in analysis.search_queries.values()),
    )
    return analysis


# ---------------------------------------------------------------------------
# Discovered-candidate reasoning
# ---------------------------------------------------------------------------

def build_proposal_summary(analysis: ProposalAnalysis) -> str:
    parts = []
    if analysis.title:
        parts.append(f"Title: {analysis.title}")
    if analysis.primary_research_area:
        parts.append(f"Research Area: {analysis.primary_research_area}")
    if analysis.keywords:
        parts.append(f"Keywords: {', '.join(analysis.keywords)}")
    return "\n".join(parts)


def build_reasoning_prompt(proposal_summary: str, candidates: list[Candidate]) -> str:
    entries = []
    for i, c in enumerate(candidates, start=1):
        pubs = "\n".join(f'  - "{p.title}" ({p.year or "N/A"})' for p in c.publications[:3])
        entries.append(
            f"{i}. {c.name}\n   Affiliation: {c.affiliation or 'Unknown'}\n   Recent Publications:\n"
            + (pubs or "  (No publications available)")
        )
    return (
        "You are helping identify qualified peer reviewers for a research proposal.\n\n"
        f"PROPOSAL SUMMARY:\n{proposal_summary}\n\n"
        "CANDIDATE REVIEWERS FOUND VIA DATABASE SEARCH (some may only share keywords with the proposal):\n\n"
        + "\n\n".join(entries)
        + "\n\nFor each candidate decide whether their research is RELEVANT to this specific proposal "
        "(same field or closely related methods) and explain why in 1-2 sentences. Be strict: publications "
        "from a clearly different domain are not relevant.\n\n"
        "Return ONLY valid JSON in this format (index is the candidate number above):\n" + _REASONING_FORMAT
    )


def apply_reasoning(candidates: list[Candidate], data: dict) -> list[Candidate]:
    """Attach reasoning/seniority; drop candidates the LLM marked not relevant.

    Candidates the response does not mention are kept with placeholder reasoning.
    """
    by_index: dict[int, dict] = {}
    for item in data.get("candidates") or []:
        if not isinstance(item, dict):
            continue
        try:
            by_index[int(item.get("index"))] = item
        except (TypeError, ValueError):
            continue

    result = []
    for i, c in enumerate(candidates, start=1):
        item = by_index.get(i)
        if item is None:
            result.append(replace(c, reasoning=c.reasoning or "Reasoning not available"))
            continue
        relevant = item.get("relevant", True)
        if relevant is False or (isinstance(relevant, str) and relevant.strip().lower() == "no"):
            logger.info("[analysis] discovered candidate %s marked not relevant", c.name)
            continue
        result.append(
            replace(
                c,
                reasoning=_opt_str(item.get("reasoning")) or c.reasoning or "Reasoning not available",
                seniority_estimate=_opt_str(item.get("seniority")) or c.seniority_estimate,
            )
        )
    return result


async def generate_discovered_reasoning(
    llm: LLMProvider,
    analysis: ProposalAnalysis,
    candidates: list[Candidate],
    *,
    timeout: float | None = None,
) -> list[Candidate]:
    """Reasoning for discovered candidates in batches; a failed batch keeps its candidates."""
    if not candidates:
        return []
    summary = build_proposal_summary(analysis)
    results: list[Candidate] = []
    for start in range(0, len(candidates), REASONING_BATCH_SIZE):
        batch = candidates[start:start + REASONING_BATCH_SIZE]
        prompt = build_reasoning_prompt(summary, batch)
        try:
            response = await asyncio.wait_for(
                llm.generate(prompt, max_tokens=1024, temperature=0.1), timeout=timeout
            )
            results.extend(apply_reasoning(batch, parse_json_response(response)))
        except Exception as e:
            logger.warning("[analysis] reasoning batch %s failed: %s", start // REASONING_BATCH_SIZE + 1, e)
            results.extend(replace(c, reasoning=c.reasoning or "Reasoning generation failed") for c in batch)
    return results
