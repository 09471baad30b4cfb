"""Institution normalization and comparison.

Two comparisons live here:

* :func:`institutions_match` - strict, used for institution COI. "University
  of Michigan" and "Michigan State University" must NOT match.
* :func:`check_institution_mismatch` - lenient, used by the verifier to decide
  whether a claimed affiliation is contradicted by a publication affiliation
  string ("MIT" vs "Massachusetts Institute of Technology, Cambridge, MA").
"""
from __future__ import annotations

import re
from collections import Counter
from difflib import SequenceMatcher
from typing import Iterable

_STOP_WORDS = {"of", "the", "and", "at", "in", "for"}
# Short words that still identify an institution ("am" from "A&M")
_SIGNIFICANT_SHORT_WORDS = {"am"}
# Qualifiers that turn one institution into a different one
_CONFLICTING_WORDS = {"state", "tech", "polytechnic", "community", "medical", "health", "am"}

INSTITUTION_ALIASES: dict[str, tuple[str, ...]] = {
    "mit": ("massachusetts institute of technology", "mit"),
    "caltech": ("california institute of technology", "caltech"),
    "uc berkeley": ("university of california berkeley", "uc berkeley", "ucb", "berkeley"),
    "ucla": ("university of california los angeles", "ucla"),
    "ucsf": ("university of california san francisco", "ucsf"),
    "ucsd": ("university of california san diego", "ucsd"),
    "ucd": ("university of california davis", "uc davis", "ucd"),
    "uci": ("university of california irvine", "uc irvine", "uci"),
    "stanford": ("stanford university", "stanford"),
    "harvard": ("harvard university", "harvard medical school", "harvard"),
    "yale": ("yale university", "yale school of medicine", "yale"),
    "princeton": ("princeton university", "princeton"),
    "columbia": ("columbia university", "columbia"),
    "cornell": ("cornell university", "weill cornell", "cornell"),
    "upenn": ("university of pennsylvania", "upenn", "penn", "perelman school"),
    "brandeis": ("brandeis university", "brandeis"),
    "rockefeller": ("rockefeller university", "rockefeller"),
    "hhmi": ("howard hughes medical institute", "hhmi", "janelia"),
    "nih": ("national institutes of health", "nih", "niehs", "nimh", "nci"),
    "wustl": ("washington university", "wustl", "wash u", "washington university in st louis"),
    "umich": ("university of michigan", "umich", "u-m", "michigan"),
    "uw": ("university of washington", "uw", "u washington"),
    "wisc": ("university of wisconsin", "uw-madison", "wisconsin"),
    "jhu": ("johns hopkins", "jhu", "hopkins"),
    "duke": ("duke university", "duke"),
    "unc": ("university of north carolina", "unc", "unc-chapel hill"),
    "emory": ("emory university", "emory"),
    "vanderbilt": ("vanderbilt university", "vanderbilt"),
    "northwestern": ("northwestern university", "northwestern"),
    "uchicago": ("university of chicago", "uchicago", "u chicago"),
    "nyu": ("new york university", "nyu"),
    "bu": ("boston university", "bu"),
    "bc": ("boston college", "bc"),
    "pitt": ("university of pittsburgh", "pitt"),
    "osu": ("ohio state university", "osu", "ohio state"),
    "psu": ("penn state", "pennsylvania state university", "psu"),
    "msu": ("michigan state university", "msu", "michigan state"),
    "uva": ("university of virginia", "uva"),
    "gt": ("georgia tech", "georgia institute of technology"),
    "ut austin": ("university of texas at austin", "ut austin", "texas"),
    "ucsb": ("university of california santa barbara", "ucsb"),
    "ucsc": ("university of california santa cruz", "ucsc"),
    "scripps": ("scripps research", "scripps institute", "scripps"),
    "salk": ("salk institute", "salk"),
    "broad": ("broad institute", "broad"),
    "whitehead": ("whitehead institute", "whitehead"),
    "cshl": ("cold spring harbor", "cshl"),
    "mbl": ("marine biological laboratory", "mbl", "woods hole"),
}

_INSTITUTION_PATTERNS = (
    re.compile(r"university of [\w\s]+"),
    re.compile(r"[\w\s]+ university"),
    re.compile(r"[\w\s]+ institute of technology"),
    re.compile(r"[\w\s]+ institute"),
    re.compile(r"[\w\s]+ college"),
    re.compile(r"[\w\s]+ school of medicine"),
    re.compile(r"[\w\s]+ medical school"),
    re.compile(r"[\w\s]+ medical center"),
)

_MISMATCH_STOP_WORDS = {"of", "the", "at", "in", "and", "for", "school", "department", "dept", "center", "centre"}


def _contains_phrase(haystack: str, needle: str) -> bool:
    """Whole-word containment ("mit" is not inside "smith")."""
    if not needle:
        return False
    return re.search(rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])", haystack) is not None


# ---------------------------------------------------------------------------
# Strict comparison (institution COI)
# ---------------------------------------------------------------------------

def normalize_institution(institution: str | None) -> str:
    """Drop department prefixes, trailing country and punctuation."""
    if not institution:
        return ""
    normalized = institution.lower()
    normalized = re.sub(r"^(department|dept|school|division|center|centre)\s+(of|for)\s+[^,]+,?\s*", "", normalized)
    normalized = re.sub(r",?\s*(usa|united states|u\.?s\.?a?\.?)$", "", normalized)
    normalized = normalized.replace("&", "")
    normalized = re.sub(r"[^a-z\s]", "", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def _key_words(text: str) -> list[str]:
    return [
        w for w in text.split()
        if (len(w) > 2 or w in _SIGNIFICANT_SHORT_WORDS) and w not in _STOP_WORDS
    ]


def institutions_match(inst1: str | None, inst2: str | None) -> bool:
    """True when two institution strings name the same place."""
    a = normalize_institution(inst1)
    b = normalize_institution(inst2)
    if not a or not b:
        return False
    if a == b:
        return True

    words1 = _key_words(a)
    words2 = _key_words(b)
    if len(words1) == len(words2) and sorted(words1) == sorted(words2):
        return True

    shorter, longer = (words1, words2) if len(words1) <= len(words2) else (words2, words1)
    # "Ohio State University" is not "Ohio University", however they nest
    if any(w in _CONFLICTING_WORDS and w not in shorter for w in longer):
        return False
    if _contains_phrase(a, b) or _contains_phrase(b, a):
        return True
    if len(shorter) >= 2 and all(w in longer for w in shorter):
        return True

    return SequenceMatcher(None, a, b).ratio() > 0.9


# ---------------------------------------------------------------------------
# Lenient comparison (verifier)
# ---------------------------------------------------------------------------

def extract_institution_name(text: str) -> str:
    """First "University of X" / "X Institute" / ... phrase, else the whole string."""
    lower = text.lower()
    for pattern in _INSTITUTION_PATTERNS:
        match = pattern.search(lower)
        if match:
            return match.group(0).strip()
    return lower.strip()


def _significant_words(text: str) -> list[str]:
    words = []
    for w in text.split():
        if len(w) <= 2 or w in _MISMATCH_STOP_WORDS:
            continue
        cleaned = re.sub(r"[^a-z]", "", w)
        if cleaned:
            words.append(cleaned)
    return words


def check_institution_mismatch(found_affiliation: str | None, claimed_institution: str | None) -> bool:
    """True when *found_affiliation* contradicts *claimed_institution*.

    Returns False when either side is missing (nothing to contradict).
    """
    if not found_affiliation or not claimed_institution:
        return False

    found = found_affiliation.lower()
    claimed = claimed_institution.lower().strip()

    if _contains_phrase(found, claimed):
        return False

    for aliases in INSTITUTION_ALIASES.values():
        if any(_contains_phrase(found, a) for a in aliases) and any(_contains_phrase(claimed, a) for a in aliases):
            return False

    found_inst = extract_institution_name(found)
    claimed_inst = extract_institution_name(claimed)
    if _contains_phrase(found_inst, claimed_inst) or _contains_phrase(claimed_inst, found_inst):
        return False

    found_words = _significant_words(found_inst)
    claimed_words = _significant_words(claimed_inst)
    common = [w for w in found_words if w in claimed_words]
    if any(len(w) > 4 for w in common):
        return False
    return True


def affiliation_matches_claim(found_affiliation: str | None, claimed_institution: str | None) -> bool:
    if not found_affiliation or not claimed_institution:
        return False
    return not check_institution_mismatch(found_affiliation, claimed_institution)


# ---------------------------------------------------------------------------
# Affiliation clustering
# ---------------------------------------------------------------------------

def normalize_affiliation_for_comparison(affiliation: str | None) -> str:
    """Core institution of a full affiliation string, used to cluster affiliations."""
    if not affiliation:
        return ""
    normalized = affiliation.lower()
    normalized = re.sub(r"\s*\.?\s*\S+@\S+", "", normalized)
    normalized = re.sub(r",?\s*(usa|united states|uk|france|germany|canada)\.?$", "", normalized)
    match = re.search(r"(university of [^,]+|[^,]+ university|[^,]+ institute of technology|[^,]+ institute)", normalized)
    if match:
        return match.group(1).strip()
    return normalized[:50].strip()


def most_common_affiliation(affiliations: Iterable[str]) -> str | None:
    """Full text of the most frequent affiliation cluster (ties go to first seen)."""
    counts: Counter[str] = Counter()
    first_text: dict[str, str] = {}
    for aff in affiliations:
        if not aff or len(aff) <= 10:
            continue
        key = normalize_affiliation_for_comparison(aff)
        counts[key] += 1
        first_text.setdefault(key, aff)
    if not counts:
        return None
    best_key, _ = counts.most_common(1)[0]
    return first_text[best_key]


def count_affiliation_clusters(affiliations: Iterable[str]) -> int:
    return len({normalize_affiliation_for_comparison(a) for a in affiliations if a and len(a) > 10})
