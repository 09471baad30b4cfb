from sqlalchemy import Boolean, Column, String, DateTime, Integer, Text, ForeignKey, Float, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from reviewer_finder.database import Base


class Researcher(Base):
    """One row per real person; duplicates are collapsed by merge."""
    __tablename__ = "researchers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=True, index=True)  # lowercase, letters/spaces only, honorifics stripped
    primary_affiliation = Column(String(500), nullable=True)
    department = Column(String(255), nullable=True)

    # Contact
    email = Column(String(255), nullable=True, index=True)
    email_source = Column(String(100), nullable=True)  # e.g. "PubMed (12345678)", "ORCID", "Claude Web Search"
    email_year = Column(Integer, nullable=True)  # year of the publication the email came from
    website = Column(String(500), nullable=True)
    orcid = Column(String(50), nullable=True, index=True)
    orcid_url = Column(String(255), nullable=True)
    google_scholar_id = Column(String(100), nullable=True, index=True)
    google_scholar_url = Column(String(500), nullable=True)
    faculty_page_url = Column(String(500), nullable=True)

    # Bibliometrics
    h_index = Column(Integer, nullable=True)
    i10_index = Column(Integer, nullable=True)
    total_citations = Column(Integer, nullable=True)
    metrics_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_checked = Column(DateTime, nullable=True)  # last time the profile was verified against sources
    contact_enriched_at = Column(DateTime, nullable=True)
    contact_enrichment_source = Column(String(50), nullable=True)  # pubmed, orcid, claude_search, serp


class ResearcherKeyword(Base):
    """Expertise tag attached to a researcher."""
    __tablename__ = "researcher_keywords"
    __table_args__ = (UniqueConstraint("researcher_id", "keyword", "source", name="uq_researcher_keyword_source"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    researcher_id = Column(UUID(as_uuid=True), ForeignKey("researchers.id", ondelete="CASCADE"), nullable=False, index=True)
    keyword = Column(String(255), nullable=False, index=True)
    relevance_score = Column(Float, default=1.0, nullable=False)  # 0-1
    source = Column(String(50), nullable=True)  # claude, source:pubmed, publications, manual
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Publication(Base):
    __tablename__ = "publications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    researcher_id = Column(UUID(as_uuid=True), ForeignKey("researchers.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    authors = Column(JSONB, nullable=True)  # ordered list of author names
    author_position = Column(Integer, nullable=True)
    year = Column(Integer, nullable=True)
    journal = Column(String(500), nullable=True)
    doi = Column(String(100), nullable=True, index=True)
    pmid = Column(String(50), nullable=True)
    arxiv_id = Column(String(50), nullable=True)
    url = Column(String(500), nullable=True)
    abstract = Column(Text, nullable=True)
    source = Column(String(50), nullable=True)  # pubmed, arxiv, biorxiv, chemrxiv
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GrantCycle(Base):
    __tablename__ = "grant_cycles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    short_code = Column(String(50), unique=True, nullable=False)  # e.g. "J26"
    program_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ReviewerSuggestion(Base):
    """A researcher saved as a reviewer candidate for one proposal."""
    __tablename__ = "reviewer_suggestions"
    __table_args__ = (UniqueConstraint("proposal_id", "researcher_id", name="uq_suggestion_proposal_researcher"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    proposal_id = Column(String(100), nullable=False, index=True)
    proposal_title = Column(Text, nullable=True)
    proposal_abstract = Column(Text, nullable=True)
    proposal_authors = Column(Text, nullable=True)  # comma separated PI / co-investigators
    proposal_institution = Column(String(500), nullable=True)
    grant_cycle_id = Column(UUID(as_uuid=True), ForeignKey("grant_cycles.id", ondelete="SET NULL"), nullable=True)
    researcher_id = Column(UUID(as_uuid=True), ForeignKey("researchers.id", ondelete="CASCADE"), nullable=False, index=True)

    relevance_score = Column(Float, nullable=True)
    match_reason = Column(Text, nullable=True)
    sources = Column(JSONB, nullable=True)  # ["claude", "pubmed", ...]
    candidate_source = Column(String(50), nullable=True)  # claude_suggestion, database_discovery
    verification_confidence = Column(Float, nullable=True)  # NULL when unverified
    seniority_estimate = Column(String(50), nullable=True)

    # Conflict of interest / verification flags
    has_institution_coi = Column(Boolean, default=False, nullable=False)
    has_coauthor_coi = Column(Boolean, default=False, nullable=False)
    coauthorships = Column(JSONB, nullable=True)  # [{proposal_author, paper_count, recent_papers}]
    institution_mismatch = Column(Boolean, default=False, nullable=False)
    expertise_mismatch = Column(Boolean, default=False, nullable=False)

    # Outreach status
    selected = Column(Boolean, default=True, nullable=False)  # false = removed from the proposal's list
    invited = Column(Boolean, default=False, nullable=False)
    accepted = Column(Boolean, nullable=True)
    declined = Column(Boolean, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)
    response_type = Column(String(50), nullable=True)  # accepted, declined, bounced
    notes = Column(Text, nullable=True)

    suggested_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
