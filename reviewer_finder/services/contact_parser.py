"""Email / URL extraction from affiliation strings and search snippets."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from reviewer_finder.candidates import PublicationRecord
from reviewer_finder.services.identity import generate_name_variants, matches_any_variant

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

FALSE_POSITIVE_DOMAINS = ("example.com", "email.com", "test.com", "sample.edu")
GENERIC_MAILBOXES = (
    "info@", "contact@", "support@", "help@", "webmaster@", "admin@", "no-reply@", "noreply@",
)

_SOURCE_LABELS = {"pubmed": "PubMed", "arxiv": "arXiv", "biorxiv": "bioRxiv", "chemrxiv": "ChemRxiv"}

ACADEMIC_SUFFIXES = (
    ".edu", ".ac.uk", ".ac.jp", ".edu.au", ".edu.cn", ".ac.in", ".edu.sg", ".ac.nz",
    ".edu.hk", ".ac.il", ".edu.tw", ".ac.za", ".edu.br", ".edu.mx", ".ac.kr", ".edu.co",
)

_GENERIC_PAGE_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"[?&]p=people$",
        r"/people/?$",
        r"/directory/?$",
        r"/faculty/?$",
        r"/staff/?$",
        r"/members/?$",
        r"/team/?$",
        r"[?&]q=",
        r"/search/?$",
    )
)


def extract_emails(text: str | None) -> list[str]:
    """Lowercased, de-duplicated emails in order of appearance."""
    if not text:
        return []
    emails: list[str] = []
    for match in EMAIL_RE.findall(text):
        email = match.lower().rstrip(".")
        if email.index("@") < 1 or email in emails:
            continue
        if any(email.endswith(fp) for fp in FALSE_POSITIVE_DOMAINS):
            continue
        emails.append(email)
    return emails


def extract_primary_email(text: str | None) -> str | None:
    emails = extract_emails(text)
    return emails[0] if emails else None


def extract_personal_email(text: str | None) -> str | None:
    """First email in a search snippet that is not a shared/generic mailbox."""
    for email in extract_emails(text):
        if "example" in email or email.startswith(GENERIC_MAILBOXES):
            continue
        return email
    return None


def is_recent_publication(year: int | None, max_age: int = 2) -> bool:
    if not year:
        return False
    return datetime.now().year - year <= max_age


def is_useful_website_url(url: str | None) -> bool:
    """False for generic listing/search pages (.../people, ?q=...)."""
    if not url:
        return False
    lower = url.lower()
    return not any(p.search(lower) for p in _GENERIC_PAGE_PATTERNS)


@dataclass(frozen=True)
class PublicationContact:
    email: str | None = None
    email_source: str | None = None
    email_year: int | None = None
    is_recent: bool = False
    publication_title: str | None = None


def extract_contact_from_publications(
    publications: Iterable[PublicationRecord],
    author_name: str,
    *,
    max_email_age: int = 2,
) -> PublicationContact:
    """Email from the matching author's affiliation text, most recent publication first.

    An email older than *max_email_age* years is still returned but with
    ``is_recent`` False so callers can keep looking.
    """
    variants = generate_name_variants(author_name)
    ordered = sorted(publications, key=lambda p: p.year or 0, reverse=True)
    for pub in ordered:
        author = next((a for a in pub.authors if matches_any_variant(a.name, variants)), None)
        if author is None:
            continue
        for affiliation in author.affiliations:
            email = extract_primary_email(affiliation)
            if email:
                return PublicationContact(
                    email=email,
                    email_source=f"{_SOURCE_LABELS.get(pub.source, pub.source)} ({pub.source_id or 'unknown'})",
                    email_year=pub.year,
                    is_recent=is_recent_publication(pub.year, max_email_age),
                    publication_title=pub.title,
                )
    return PublicationContact()
