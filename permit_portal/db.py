"""
Database models for the portal resolver using SQLAlchemy 2.0 style.

Models:
- Jurisdiction: reference data (geoid, name, level, parent county, homepage hints)
- CandidateRecord: append-only log of every discovered URL with provenance
- JurisdictionMeta: proposed or authoritative resolution per jurisdiction
- DiscoveryJob: unit of work for the batch search path (search_queue)
- PortalEndpoint: classified, de-duplicated URL worth crawling
- PortalSnapshot: one fetch of an endpoint, content-hashed
- AIUsage: per-day count of expensive-tier oracle calls
- PermitParsed / PermitParsedItem: structured extraction output per snapshot
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    false,
    true,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import JSON

from .models import CandidateSource, EndpointStatus, EndpointVendor, JobStatus, SubmissionMethod


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so we never store it)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls: type) -> SAEnum:
    # Store the enum *values* ("offline_only"), not member names.
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


_JSON = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Jurisdiction(Base):
    """Reference data for one government jurisdiction.

    portal_url / submission_method hold the authoritative online state and are
    written only by the human review workflow.
    """

    __tablename__ = "jurisdictions"

    geoid: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(String(10), nullable=False, comment="state | county | place")
    statefp: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    county_geoid: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    homepage_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    codes_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    permits_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    portal_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submission_method: Mapped[Optional[SubmissionMethod]] = mapped_column(
        _enum(SubmissionMethod), nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def display_name(self) -> str:
        return f"{self.name}, {self.statefp}" if self.statefp else self.name

    def __repr__(self) -> str:
        return f"<Jurisdiction(geoid={self.geoid!r}, name={self.name!r}, level={self.level!r})>"


class CandidateRecord(Base):
    """One discovered URL for one jurisdiction from one source. Never deleted."""

    __tablename__ = "portal_candidates"
    __table_args__ = (
        UniqueConstraint("jurisdiction_geoid", "url_found", "source", name="uq_candidate_geoid_url_source"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jurisdiction_geoid: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    url_found: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[CandidateSource] = mapped_column(_enum(CandidateSource), nullable=False)
    query_used: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vendor_type: Mapped[str] = mapped_column(String(40), nullable=False, default="unknown", index=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class JurisdictionMeta(Base):
    """A proposed or authoritative answer for one jurisdiction.

    Soft-invalidated rather than deleted. At most one row per jurisdiction may
    be verified and not invalid; see the partial unique index below.
    """

    __tablename__ = "jurisdiction_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jurisdiction_geoid: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    portal_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    manual_info_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vendor_type: Mapped[str] = mapped_column(String(40), nullable=False, default="unknown")
    submission_method: Mapped[SubmissionMethod] = mapped_column(
        _enum(SubmissionMethod), nullable=False, default=SubmissionMethod.UNKNOWN
    )
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    invalid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invalid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    raw_payload: Mapped[Optional[dict]] = mapped_column(_JSON, nullable=True)
    verification_html_sample: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<JurisdictionMeta(id={self.id}, geoid={self.jurisdiction_geoid!r}, "
            f"verified={self.verified}, invalid={self.invalid})>"
        )


Index(
    "uq_jurisdiction_meta_authoritative",
    JurisdictionMeta.jurisdiction_geoid,
    unique=True,
    sqlite_where=and_(JurisdictionMeta.verified == true(), JurisdictionMeta.invalid == false()),
    postgresql_where=and_(JurisdictionMeta.verified == true(), JurisdictionMeta.invalid == false()),
)


class DiscoveryJob(Base):
    """One (jurisdiction, search query) unit of batch work."""

    __tablename__ = "search_queue"
    __table_args__ = (
        UniqueConstraint("jurisdiction_geoid", "query", name="search_queue_unique_geoid_query"),
        Index("idx_search_queue_status_created_at", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jurisdiction_geoid: Mapped[str] = mapped_column(String(20), nullable=False)
    jurisdiction_name: Mapped[str] = mapped_column(Text, nullable=False)
    jurisdiction_type: Mapped[str] = mapped_column(String(10), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), nullable=False, default=JobStatus.PENDING)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PortalEndpoint(Base):
    __tablename__ = "portal_endpoints"
    __table_args__ = (
        UniqueConstraint("jurisdiction_geoid", "url", name="uq_portal_endpoints_geoid_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jurisdiction_geoid: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    vendor: Mapped[EndpointVendor] = mapped_column(_enum(EndpointVendor), nullable=False)
    status: Mapped[EndpointStatus] = mapped_column(
        _enum(EndpointStatus), nullable=False, default=EndpointStatus.UNKNOWN
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    change_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    freshness_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PortalSnapshot(Base):
    __tablename__ = "portal_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    endpoint_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("portal_endpoints.id"), nullable=True, index=True
    )
    jurisdiction_geoid: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    vendor: Mapped[EndpointVendor] = mapped_column(_enum(EndpointVendor), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_url: Mapped[str] = mapped_column(Text, nullable=False, comment="Storage reference")
    parsed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class AIUsage(Base):
    __tablename__ = "portal_ai_usage"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PermitParsed(Base):
    __tablename__ = "permit_parsed"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(ForeignKey("portal_snapshots.id"), nullable=False, index=True)
    jurisdiction_geoid: Mapped[str] = mapped_column(String(20), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    vendor: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PermitParsedItem(Base):
    """One extracted entry (a fee, a form, a contact...) tagged with its collection."""

    __tablename__ = "permit_parsed_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parsed_id: Mapped[int] = mapped_column(ForeignKey("permit_parsed.id"), nullable=False, index=True)
    collection: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    data: Mapped[dict] = mapped_column(_JSON, nullable=False)


# ─── Engine / Session Setup ──────────────────────────────────────────


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url == "sqlite://" or (database_url.startswith("sqlite") and ":memory:" in database_url):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30}
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables if they don't exist."""
    Base.metadata.create_all(engine)
