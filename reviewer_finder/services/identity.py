"""Centralized person-identity matching.

Every place that asks "is this the same person?" goes through this module:
source adapters (name variants), the verifier and COI detector (author
matching), ranking (duplicate grouping of discovered candidates) and the
researcher store (upsert keys and duplicate detection).

Identity key priority, highest first: email, ORCID, Google Scholar ID,
normalized name.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from collections import defaultdict
from difflib import SequenceMatcher
from typing import Any, Iterable

logger = logging.getLogger(__name__)

IDENTITY_KEY_PRIORITY: tuple[str, ...] = ("email", "orcid", "google_scholar", "name")

_HONORIFIC_RE = re.compile(r"^(dr|prof|professor|mr|ms|mrs|sir|dame)\.?\s+", re.IGNORECASE)
_CREDENTIAL_RE = re.compile(r",?\s+(ph\.?\s?d|m\.?\s?d|d\.?\s?phil|frs)\.?$", re.IGNORECASE)

# Common nickname -> formal first name (PubMed indexes formal names)
NICKNAMES: dict[str, str] = {
    "will": "William",
    "bill": "William",
    "bob": "Robert",
    "rob": "Robert",
    "mike": "Michael",
    "jim": "James",
    "joe": "Joseph",
    "tom": "Thomas",
    "dan": "Daniel",
    "dave": "David",
    "ed": "Edward",
    "ted": "Edward",
    "ben": "Benjamin",
    "matt": "Matthew",
    "chris": "Christopher",
    "alex": "Alexander",
    "nick": "Nicholas",
    "tony": "Anthony",
    "steve": "Steven",
    "tim": "Timothy",
    "sam": "Samuel",
    "andy": "Andrew",
    "drew": "Andrew",
    "pete": "Peter",
    "pat": "Patrick",
    "greg": "Gregory",
    "phil": "Philip",
    "ken": "Kenneth",
    "kate": "Katherine",
    "kathy": "Katherine",
    "cathy": "Catherine",
    "liz": "Elizabeth",
    "beth": "Elizabeth",
    "sue": "Susan",
    "jenny": "Jennifer",
    "jen": "Jennifer",
    "meg": "Margaret",
    "maggie": "Margaret",
    "peg": "Margaret",
    "sally": "Sarah",
    "vicky": "Victoria",
    "vic": "Victoria",
    "nicky": "Nicole",
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _fold_ascii(text: str) -> str:
    return unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")


def strip_honorifics(name: str | None) -> str:
    """Remove leading titles (Dr., Prof., ...) and trailing credentials (PhD, MD)."""
    if not name:
        return ""
    cleaned = name.strip()
    while True:
        stripped = _HONORIFIC_RE.sub("", cleaned, count=1)
        if stripped == cleaned:
            break
        cleaned = stripped.strip()
    cleaned = _CREDENTIAL_RE.sub("", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_name(name: str | None) -> str:
    """Lowercase, honorifics stripped, letters and single spaces only.

    This is the stored ``researchers.normalized_name`` and the name-level
    identity key.
    """
    if not name:
        return ""
    cleaned = _fold_ascii(strip_honorifics(name)).lower()
    cleaned = re.sub(r"[.\-]", " ", cleaned)
    cleaned = re.sub(r"[^a-z\s]", "", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def split_name(name: str) -> tuple[str, str]:
    """Return (first, last) of a normalized name; single token is treated as last."""
    parts = normalize_name(name).split(" ")
    parts = [p for p in parts if p]
    if not parts:
        return "", ""
    if len(parts) == 1:
        return "", parts[0]
    return parts[0], parts[-1]


# ---------------------------------------------------------------------------
# Name variants
# ---------------------------------------------------------------------------

def generate_name_variants(name: str) -> list[str]:
    """Search variants for one person: as given, formal first name, initial + rest.

    "Dr. Will Harcombe" -> ["Will Harcombe", "William Harcombe", "W Harcombe"]
    """
    clean = strip_honorifics(name)
    parts = clean.split(" ")
    if len(parts) < 2:
        return [clean] if clean else []

    first = parts[0]
    rest = " ".join(parts[1:])
    variants = [clean]

    formal = NICKNAMES.get(first.lower().rstrip("."))
    if formal:
        variants.append(f"{formal} {rest}")

    if len(first.rstrip(".")) > 1:
        variants.append(f"{first[0]} {rest}")

    seen: set[str] = set()
    unique: list[str] = []
    for v in variants:
        if v.lower() not in seen:
            seen.add(v.lower())
            unique.append(v)
    return unique


def without_middle_names(name: str) -> str:
    clean = strip_honorifics(name)
    parts = clean.split(" ")
    if len(parts) <= 2:
        return clean
    return f"{parts[0]} {parts[-1]}"


def to_pubmed_author_format(name: str) -> str:
    """"Jane A. Smith" -> "Smith J" (PubMed ``[Author]`` field format)."""
    first, last = split_name(name)
    if not last:
        return ""
    last_display = strip_honorifics(name).split(" ")[-1]
    if not first:
        return last_display
    return f"{last_display} {first[0].upper()}"


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def names_match(name1: str | None, name2: str | None) -> bool:
    """Strict same-person test used against bibliographic author lists.

    Last names must agree. First names must agree exactly, or one side is an
    initial (1-2 chars) of the other, or the first initials agree and exactly
    one side carries a middle initial ("W R Harcombe" vs "William Harcombe").
    Different first names ("Will" vs "Helen") never match.
    """
    n1 = normalize_name(name1)
    n2 = normalize_name(name2)
    if not n1 or not n2:
        return False
    if n1 == n2:
        return True

    parts1 = n1.split(" ")
    parts2 = n2.split(" ")
    if parts1[-1] != parts2[-1]:
        return False

    first1 = parts1[0] if len(parts1) > 1 else ""
    first2 = parts2[0] if len(parts2) > 1 else ""
    if first1 == first2:
        return True
    if not first1 or not first2:
        return False

    if len(first1) <= 2 and first2.startswith(first1):
        return True
    if len(first2) <= 2 and first1.startswith(first2):
        return True

    if first1[0] == first2[0]:
        if len(parts1) == 3 and len(parts2) == 2:
            return True
        if len(parts2) == 3 and len(parts1) == 2:
            return True
    return False


def matches_any_variant(author_name: str, variants: Iterable[str]) -> bool:
    return any(names_match(v, author_name) for v in variants)


def name_similarity(name1: str, name2: str) -> float:
    return SequenceMatcher(None, normalize_name(name1), normalize_name(name2)).ratio()


def _is_initials_match(name1: str, name2: str) -> bool:
    parts1 = name1.split()
    parts2 = name2.split()
    if len(parts1) < 2 or len(parts2) < 2 or parts1[-1] != parts2[-1]:
        return False
    first1, first2 = parts1[0], parts2[0]
    if len(first1) == 1 and first2.startswith(first1):
        return True
    if len(first2) == 1 and first1.startswith(first2):
        return True
    return False


def _is_partial_match(name1: str, name2: str) -> bool:
    parts1 = name1.split()
    parts2 = name2.split()
    if len(parts1) < 2 or len(parts2) < 2 or parts1[-1] != parts2[-1]:
        return False
    first1, first2 = parts1[0], parts2[0]
    return first1 in first2 or first2 in first1


def are_names_similar(name1: str | None, name2: str | None, threshold: float = 0.85) -> bool:
    """Looser test for grouping discovered candidates that are probably one person."""
    n1 = normalize_name(name1)
    n2 = normalize_name(name2)
    if not n1 or not n2:
        return False
    if n1 == n2:
        return True
    if name_similarity(n1, n2) > threshold:
        return True
    return _is_initials_match(n1, n2) or _is_partial_match(n1, n2)


def is_excluded(name: str, excluded_names: Iterable[str]) -> bool:
    """Case-insensitive exclusion through the same matcher used everywhere else."""
    return any(names_match(name, ex) for ex in excluded_names if ex)


# ---------------------------------------------------------------------------
# Identity keys (store upsert + duplicate detection)
# ---------------------------------------------------------------------------

def normalize_orcid(orcid: str | None) -> str:
    """Strip URL prefix; "https://orcid.org/0000-0001-2345-6789" -> "0000-0001-2345-6789"."""
    if not orcid:
        return ""
    value = orcid.strip()
    value = re.sub(r"^https?://(www\.)?orcid\.org/", "", value, flags=re.IGNORECASE)
    return value.strip("/").upper()


def identity_keys(
    *,
    email: str | None = None,
    orcid: str | None = None,
    google_scholar_id: str | None = None,
    name: str | None = None,
) -> list[tuple[str, str]]:
    """Non-empty (match_type, value) pairs in priority order."""
    keys: list[tuple[str, str]] = []
    if email and email.strip():
        keys.append(("email", email.strip().lower()))
    norm_orcid = normalize_orcid(orcid)
    if norm_orcid:
        keys.append(("orcid", norm_orcid))
    if google_scholar_id and google_scholar_id.strip():
        keys.append(("google_scholar", google_scholar_id.strip()))
    norm_name = normalize_name(name)
    if norm_name:
        keys.append(("name", norm_name))
    return keys


def row_identity_keys(row: Any) -> list[tuple[str, str]]:
    return identity_keys(
        email=getattr(row, "email", None),
        orcid=getattr(row, "orcid", None),
        google_scholar_id=getattr(row, "google_scholar_id", None),
        name=getattr(row, "normalized_name", None) or getattr(row, "name", None),
    )


def group_duplicates(rows: Iterable[Any]) -> list[tuple[str, str, list[Any]]]:
    """Group researcher rows sharing an identity key.

    Returns ``(match_type, value, rows)`` for groups of size >= 2, rows
    oldest first. Keys are visited in priority order and a set of rows
    already reported under a higher-priority key is not reported again.
    """
    rows = list(rows)
    buckets: dict[str, dict[str, list[Any]]] = {k: defaultdict(list) for k in IDENTITY_KEY_PRIORITY}
    for row in rows:
        for match_type, value in row_identity_keys(row):
            buckets[match_type][value].append(row)

    groups: list[tuple[str, str, list[Any]]] = []
    reported: set[frozenset] = set()
    for match_type in IDENTITY_KEY_PRIORITY:
        for value, members in buckets[match_type].items():
            if len(members) < 2:
                continue
            ids = frozenset(m.id for m in members)
            if ids in reported:
                continue
            reported.add(ids)
            ordered = sorted(members, key=lambda r: (getattr(r, "created_at", None) is None, getattr(r, "created_at", None) or 0))
            groups.append((match_type, value, ordered))
    logger.debug("[identity] %s duplicate groups across %s rows", len(groups), len(rows))
    return groups
