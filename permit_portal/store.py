"""
PortalStore: the only module that talks to the database.

Each public method runs in its own short transaction. Methods that must be
atomic across several rows (promoting a verified record, invalidating and
re-queueing, saving a parse) do all of their writes inside one transaction
so a crash can never leave half of them applied.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, aliased, sessionmaker

from .db import (
    AIUsage,
    CandidateRecord,
    DiscoveryJob,
    Jurisdiction,
    JurisdictionMeta,
    PermitParsed,
    PermitParsedItem,
    PortalEndpoint,
    PortalSnapshot,
    utcnow,
)
from .exceptions import InvariantViolationError, RecordNotFoundError
from .models import (
    CandidateSource,
    EndpointStatus,
    JobStatus,
    MetaProposal,
    PermitExtraction,
    RecordSummary,
    SubmissionMethod,
)

logger = logging.getLogger(__name__)

_INSERT_CHUNK = 500

# A merge planner receives the jurisdiction's live record (or None) and the
# proposal, and returns either ("insert", values) or ("update", values).
MergePlanner = Callable[[Optional[JurisdictionMeta], MetaProposal], tuple[str, dict[str, Any]]]


class PortalStore:
    """Keyed read/filter/insert/update access to every pipeline entity."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._locks_guard = threading.Lock()
        self._jurisdiction_locks: dict[str, threading.Lock] = {}

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _jurisdiction_write(self, geoid: str) -> Iterator[Session]:
        """A transaction that is the only writer of ``geoid``'s records.

        Threads of this process queue on a per-jurisdiction lock; on PostgreSQL
        a transaction-scoped advisory lock also fences other processes.
        """
        with self._locks_guard:
            lock = self._jurisdiction_locks.setdefault(geoid, threading.Lock())
        with lock, self.transaction() as session:
            if session.get_bind().dialect.name == "postgresql":
                session.execute(select(func.pg_advisory_xact_lock(func.hashtext(geoid))))
            yield session

    # ─── Insert-or-ignore ────────────────────────────────────────────

    def _insert_ignore(
        self, session: Session, model: type, rows: list[dict[str, Any]], keys: list[str]
    ) -> int:
        """Insert rows, silently skipping conflicts on ``keys``; returns inserted count."""
        if not rows:
            return 0

        dialect = session.get_bind().dialect.name
        inserted = 0
        for chunk in _uniform_chunks(rows):
            if dialect == "postgresql":
                stmt = postgresql.insert(model).values(chunk).on_conflict_do_nothing(index_elements=keys)
            elif dialect == "sqlite":
                stmt = sqlite.insert(model).values(chunk).on_conflict_do_nothing(index_elements=keys)
            else:
                inserted += self._insert_missing(session, model, chunk, keys)
                continue
            result = session.execute(stmt)
            inserted += max(result.rowcount or 0, 0)
        return inserted

    @staticmethod
    def _insert_missing(session: Session, model: type, rows: list[dict[str, Any]], keys: list[str]) -> int:
        inserted = 0
        for row in rows:
            clause = and_(*[getattr(model, k) == row[k] for k in keys])
            if session.scalar(select(exists().where(clause))):
                continue
            session.add(model(**row))
            inserted += 1
        session.flush()
        return inserted

    # ─── Jurisdictions ───────────────────────────────────────────────

    def add_jurisdictions(self, rows: list[dict[str, Any]]) -> int:
        with self.transaction() as session:
            return self._insert_ignore(session, Jurisdiction, rows, ["geoid"])

    def get_jurisdiction(self, geoid: str) -> Optional[Jurisdiction]:
        with self.transaction() as session:
            return session.get(Jurisdiction, geoid)

    def list_jurisdictions(
        self, offset: int = 0, limit: int = 100, level: Optional[str] = None
    ) -> list[Jurisdiction]:
        with self.transaction() as session:
            stmt = select(Jurisdiction).order_by(Jurisdiction.geoid).offset(offset).limit(limit)
            if level:
                stmt = stmt.where(Jurisdiction.level == level)
            return list(session.scalars(stmt))

    def county_members(self, county_geoid: str) -> list[Jurisdiction]:
        """The county itself plus every place whose parent is that county."""
        with self.transaction() as session:
            stmt = (
                select(Jurisdiction)
                .where((Jurisdiction.geoid == county_geoid) | (Jurisdiction.county_geoid == county_geoid))
                .order_by(Jurisdiction.geoid)
            )
            return list(session.scalars(stmt))

    def count_unresolved_jurisdictions(self) -> int:
        with self.transaction() as session:
            return session.scalar(
                select(func.count()).select_from(Jurisdiction).where(Jurisdiction.portal_url.is_(None))
            ) or 0

    # ─── Candidate Store ─────────────────────────────────────────────

    def add_candidate(
        self,
        geoid: str,
        url: str,
        source: CandidateSource,
        vendor_type: str = "unknown",
        confidence: float = 0.0,
        query: Optional[str] = None,
        notes: str = "",
    ) -> bool:
        """Append one candidate; returns False if this (geoid, url, source) is already logged."""
        row = {
            "jurisdiction_geoid": geoid,
            "url_found": url,
            "source": source,
            "query_used": query,
            "vendor_type": vendor_type,
            "confidence": confidence,
            "notes": notes or "",
            "created_at": utcnow(),
        }
        with self.transaction() as session:
            return self._insert_ignore(
                session, CandidateRecord, [row], ["jurisdiction_geoid", "url_found", "source"]
            ) > 0

    def candidates_for(self, geoids: list[str]) -> list[CandidateRecord]:
        if not geoids:
            return []
        with self.transaction() as session:
            stmt = (
                select(CandidateRecord)
                .where(CandidateRecord.jurisdiction_geoid.in_(geoids))
                .order_by(CandidateRecord.id)
            )
            return list(session.scalars(stmt))

    # ─── Jurisdiction Records ────────────────────────────────────────

    @staticmethod
    def _live_records_stmt(geoid: str):
        return (
            select(JurisdictionMeta)
            .where(JurisdictionMeta.jurisdiction_geoid == geoid, JurisdictionMeta.invalid.is_(False))
            .order_by(
                JurisdictionMeta.verified.desc(),
                JurisdictionMeta.updated_at.desc(),
                JurisdictionMeta.id.desc(),
            )
        )

    def get_record(self, record_id: int) -> RecordSummary:
        with self.transaction() as session:
            record = session.get(JurisdictionMeta, record_id)
            if record is None:
                raise RecordNotFoundError(f"jurisdiction_meta record {record_id} not found")
            return RecordSummary.model_validate(record)

    def records_for(self, geoid: str) -> list[RecordSummary]:
        with self.transaction() as session:
            stmt = (
                select(JurisdictionMeta)
                .where(JurisdictionMeta.jurisdiction_geoid == geoid)
                .order_by(JurisdictionMeta.id)
            )
            return [RecordSummary.model_validate(r) for r in session.scalars(stmt)]

    def cached_record(self, geoid: str) -> Optional[RecordSummary]:
        """The best live record with a portal URL: authoritative first, then newest."""
        with self.transaction() as session:
            stmt = self._live_records_stmt(geoid).where(JurisdictionMeta.portal_url.is_not(None)).limit(1)
            record = session.scalars(stmt).first()
            return RecordSummary.model_validate(record) if record else None

    def upsert_record(self, proposal: MetaProposal, planner: MergePlanner) -> RecordSummary:
        """Merge a proposal into the jurisdiction's live record, keyed by geoid.

        The planner decides whether to update the live record or insert a
        competing one. The read and the write share one transaction, and no
        other upsert of the same jurisdiction can interleave with them.
        """
        with self._jurisdiction_write(proposal.geoid) as session:
            stmt = self._live_records_stmt(proposal.geoid).limit(1)
            live = session.scalars(stmt).first()

            action, values = planner(live, proposal)
            if action == "update" and live is not None:
                for key, value in values.items():
                    setattr(live, key, value)
                live.updated_at = utcnow()
                record = live
            else:
                record = JurisdictionMeta(jurisdiction_geoid=proposal.geoid, **values)
                session.add(record)
            session.flush()
            return RecordSummary.model_validate(record)

    def promote_record(self, record_id: int, values: dict[str, Any]) -> tuple[RecordSummary, list[int]]:
        """Mark one record verified and invalidate every other record of its jurisdiction.

        Everything runs in one per-jurisdiction transaction: the competing rows
        are demoted, the target is promoted, the authoritative count is
        re-checked, and the answer is pushed onto the jurisdiction row.
        """
        geoid = self.get_record(record_id).jurisdiction_geoid
        now = utcnow()
        with self._jurisdiction_write(geoid) as session:
            record = session.get(JurisdictionMeta, record_id)

            others = (
                and_(
                    JurisdictionMeta.jurisdiction_geoid == geoid,
                    JurisdictionMeta.id != record_id,
                    JurisdictionMeta.invalid.is_(False),
                )
            )
            invalidated = list(session.scalars(select(JurisdictionMeta.id).where(others)))
            session.execute(
                update(JurisdictionMeta)
                .where(others)
                .values(invalid=True, invalid_at=now, verified=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )

            for key, value in values.items():
                setattr(record, key, value)
            record.verified = True
            record.verified_at = now
            record.invalid = False
            record.invalid_at = None
            record.updated_at = now
            session.flush()

            authoritative = session.scalar(
                select(func.count())
                .select_from(JurisdictionMeta)
                .where(
                    JurisdictionMeta.jurisdiction_geoid == geoid,
                    JurisdictionMeta.verified.is_(True),
                    JurisdictionMeta.invalid.is_(False),
                )
            )
            if authoritative != 1:
                raise InvariantViolationError(
                    f"{authoritative} authoritative records for {geoid} after promoting {record_id}",
                    {"geoid": geoid, "record_id": record_id},
                )

            jurisdiction = session.get(Jurisdiction, geoid)
            if jurisdiction is not None:
                jurisdiction.portal_url = record.portal_url
                jurisdiction.submission_method = record.submission_method
                jurisdiction.updated_at = now
            else:
                logger.warning("No jurisdiction row for %s; authoritative state not written", geoid)

            session.refresh(record)
            return RecordSummary.model_validate(record), invalidated

    def refresh_verification(self, record_id: int, values: dict[str, Any]) -> RecordSummary:
        """Re-stamp an already authoritative record without touching its competitors."""
        now = utcnow()
        with self.transaction() as session:
            record = session.get(JurisdictionMeta, record_id)
            if record is None:
                raise RecordNotFoundError(f"jurisdiction_meta record {record_id} not found")
            for key, value in values.items():
                setattr(record, key, value)
            record.verified_at = now
            record.updated_at = now
            session.flush()
            return RecordSummary.model_validate(record)

    def invalidate_record(self, record_id: int, notes: Optional[str] = None) -> RecordSummary:
        now = utcnow()
        with self.transaction() as session:
            record = session.get(JurisdictionMeta, record_id)
            if record is None:
                raise RecordNotFoundError(f"jurisdiction_meta record {record_id} not found")
            record.verified = False
            record.invalid = True
            record.invalid_at = now
            record.updated_at = now
            if notes:
                record.notes = _append_note(record.notes, notes)
            session.flush()
            return RecordSummary.model_validate(record)

    def invalidate_and_requeue(
        self, record_id: int, jurisdiction: Jurisdiction, query: str, reason: str
    ) -> RecordSummary:
        """Demote a decayed record and put its jurisdiction back on the search queue."""
        now = utcnow()
        with self.transaction() as session:
            record = session.get(JurisdictionMeta, record_id)
            if record is None:
                raise RecordNotFoundError(f"jurisdiction_meta record {record_id} not found")
            record.verified = False
            record.invalid = True
            record.invalid_at = now
            record.updated_at = now
            record.notes = _append_note(record.notes, f"verifier: {reason}")
            self._requeue(session, jurisdiction, query, f"requeued: {reason}")
            session.flush()
            return RecordSummary.model_validate(record)

    def records_to_verify(self, limit: int) -> list[JurisdictionMeta]:
        """Live records with a portal URL: never-verified first, then stalest verification.

        Unverified proposals for a jurisdiction that already has an authoritative
        record are left to human review.
        """
        authoritative = aliased(JurisdictionMeta)
        has_authority = exists().where(
            authoritative.jurisdiction_geoid == JurisdictionMeta.jurisdiction_geoid,
            authoritative.id != JurisdictionMeta.id,
            authoritative.verified.is_(True),
            authoritative.invalid.is_(False),
        )
        with self.transaction() as session:
            stmt = (
                select(JurisdictionMeta)
                .where(
                    JurisdictionMeta.portal_url.is_not(None),
                    JurisdictionMeta.invalid.is_(False),
                    ~(JurisdictionMeta.verified.is_(False) & has_authority),
                )
                .order_by(
                    JurisdictionMeta.verified.asc(),
                    JurisdictionMeta.verified_at.asc(),
                    JurisdictionMeta.id.asc(),
                )
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def pending_review(self, limit: int = 50, offset: int = 0) -> list[RecordSummary]:
        with self.transaction() as session:
            stmt = (
                select(JurisdictionMeta)
                .where(JurisdictionMeta.verified.is_(False), JurisdictionMeta.invalid.is_(False))
                .order_by(JurisdictionMeta.created_at.desc(), JurisdictionMeta.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return [RecordSummary.model_validate(r) for r in session.scalars(stmt)]

    def recent_records(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.transaction() as session:
            stmt = (
                select(JurisdictionMeta, Jurisdiction.name)
                .join(Jurisdiction, Jurisdiction.geoid == JurisdictionMeta.jurisdiction_geoid, isouter=True)
                .order_by(JurisdictionMeta.updated_at.desc(), JurisdictionMeta.id.desc())
                .limit(limit)
            )
            return [
                {
                    "jurisdiction_geoid": meta.jurisdiction_geoid,
                    "name": name,
                    "portal_url": meta.portal_url,
                    "vendor_type": meta.vendor_type,
                    "updated_at": meta.updated_at,
                }
                for meta, name in session.execute(stmt)
            ]

    def set_authoritative_state(
        self, geoid: str, portal_url: Optional[str], method: SubmissionMethod
    ) -> None:
        with self.transaction() as session:
            jurisdiction = session.get(Jurisdiction, geoid)
            if jurisdiction is None:
                logger.warning("No jurisdiction row for %s; authoritative state not written", geoid)
                return
            jurisdiction.portal_url = portal_url
            jurisdiction.submission_method = method
            jurisdiction.updated_at = utcnow()

    # ─── Discovery Jobs ──────────────────────────────────────────────

    def enqueue_jobs(self, rows: list[dict[str, Any]]) -> int:
        """Insert pending jobs, de-duplicated on (jurisdiction, query)."""
        now = utcnow()
        prepared = [
            {
                **row,
                "status": JobStatus.PENDING,
                "attempt_count": 0,
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]
        with self.transaction() as session:
            return self._insert_ignore(session, DiscoveryJob, prepared, ["jurisdiction_geoid", "query"])

    @staticmethod
    def _requeue(session: Session, jurisdiction: Jurisdiction, query: str, reason: str) -> None:
        job = session.scalars(
            select(DiscoveryJob).where(
                DiscoveryJob.jurisdiction_geoid == jurisdiction.geoid, DiscoveryJob.query == query
            )
        ).first()
        now = utcnow()
        if job is None:
            session.add(
                DiscoveryJob(
                    jurisdiction_geoid=jurisdiction.geoid,
                    jurisdiction_name=jurisdiction.name,
                    jurisdiction_type=jurisdiction.level,
                    query=query,
                    status=JobStatus.PENDING,
                    attempt_count=0,
                    last_error=reason,
                    created_at=now,
                    updated_at=now,
                )
            )
            return
        job.status = JobStatus.PENDING
        job.attempt_count = 0
        job.last_error = reason
        job.updated_at = now

    def requeue_jurisdiction(self, jurisdiction: Jurisdiction, query: str, reason: str) -> None:
        with self.transaction() as session:
            self._requeue(session, jurisdiction, query, reason)

    def claim_jobs(
        self, limit: int, include_errors: bool = False, max_attempts: Optional[int] = None
    ) -> list[DiscoveryJob]:
        """Move up to ``limit`` jobs to running and bump their attempt count."""
        statuses = [JobStatus.PENDING]
        if include_errors:
            statuses.append(JobStatus.ERROR)

        with self.transaction() as session:
            stmt = (
                select(DiscoveryJob)
                .where(DiscoveryJob.status.in_(statuses))
                .order_by(DiscoveryJob.created_at.asc(), DiscoveryJob.id.asc())
                .limit(limit)
            )
            if max_attempts is not None:
                stmt = stmt.where(DiscoveryJob.attempt_count < max_attempts)
            if session.get_bind().dialect.name == "postgresql":
                stmt = stmt.with_for_update(skip_locked=True)

            jobs = list(session.scalars(stmt))
            now = utcnow()
            for job in jobs:
                job.status = JobStatus.RUNNING
                job.attempt_count = (job.attempt_count or 0) + 1
                job.updated_at = now
            session.flush()
            return jobs

    def finish_job(self, job_id: int, status: JobStatus, error: Optional[str] = None) -> None:
        with self.transaction() as session:
            job = session.get(DiscoveryJob, job_id)
            if job is None:
                return
            job.status = status
            job.last_error = error
            job.updated_at = utcnow()

    def jobs_for(self, geoid: str, status: Optional[JobStatus] = None) -> list[DiscoveryJob]:
        with self.transaction() as session:
            stmt = select(DiscoveryJob).where(DiscoveryJob.jurisdiction_geoid == geoid).order_by(DiscoveryJob.id)
            if status is not None:
                stmt = stmt.where(DiscoveryJob.status == status)
            return list(session.scalars(stmt))

    # ─── Endpoints & Snapshots ───────────────────────────────────────

    def upsert_endpoints(self, rows: list[dict[str, Any]]) -> int:
        now = utcnow()
        prepared = [{**row, "status": EndpointStatus.UNKNOWN, "created_at": now} for row in rows]
        with self.transaction() as session:
            return self._insert_ignore(session, PortalEndpoint, prepared, ["jurisdiction_geoid", "url"])

    def endpoints_to_crawl(self, limit: int) -> list[PortalEndpoint]:
        with self.transaction() as session:
            stmt = (
                select(PortalEndpoint)
                .where(PortalEndpoint.status == EndpointStatus.UNKNOWN)
                .order_by(PortalEndpoint.id)
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def requeue_stale_endpoints(self, checked_before: datetime) -> int:
        """Put crawled endpoints last checked before ``checked_before`` back in the crawl queue."""
        with self.transaction() as session:
            result = session.execute(
                update(PortalEndpoint)
                .where(
                    PortalEndpoint.status == EndpointStatus.CRAWLED,
                    (PortalEndpoint.last_checked_at.is_(None)) | (PortalEndpoint.last_checked_at < checked_before),
                )
                .values(status=EndpointStatus.UNKNOWN)
                .execution_options(synchronize_session=False)
            )
            return max(result.rowcount or 0, 0)

    def list_endpoints(self, geoid: Optional[str] = None, limit: int = 1000) -> list[PortalEndpoint]:
        with self.transaction() as session:
            stmt = select(PortalEndpoint).order_by(PortalEndpoint.id).limit(limit)
            if geoid:
                stmt = stmt.where(PortalEndpoint.jurisdiction_geoid == geoid)
            return list(session.scalars(stmt))

    def mark_endpoint(self, endpoint_id: int, status: EndpointStatus, error: Optional[str] = None) -> None:
        with self.transaction() as session:
            endpoint = session.get(PortalEndpoint, endpoint_id)
            if endpoint is None:
                return
            endpoint.status = status
            endpoint.last_error = error

    def update_endpoint_freshness(
        self, endpoint_id: int, change_hash: Optional[str], freshness_score: int
    ) -> None:
        with self.transaction() as session:
            endpoint = session.get(PortalEndpoint, endpoint_id)
            if endpoint is None:
                return
            endpoint.change_hash = change_hash
            endpoint.freshness_score = freshness_score
            endpoint.last_checked_at = utcnow()

    def add_snapshot(
        self,
        endpoint: PortalEndpoint,
        content_hash: str,
        storage_ref: str,
    ) -> PortalSnapshot:
        with self.transaction() as session:
            snapshot = PortalSnapshot(
                endpoint_id=endpoint.id,
                jurisdiction_geoid=endpoint.jurisdiction_geoid,
                url=endpoint.url,
                vendor=endpoint.vendor,
                hash=content_hash,
                snapshot_url=storage_ref,
                parsed=False,
                created_at=utcnow(),
            )
            session.add(snapshot)
            session.flush()
            return snapshot

    def latest_snapshots(self, endpoint: PortalEndpoint, count: int = 2) -> list[PortalSnapshot]:
        with self.transaction() as session:
            stmt = (
                select(PortalSnapshot)
                .where(
                    PortalSnapshot.jurisdiction_geoid == endpoint.jurisdiction_geoid,
                    PortalSnapshot.url == endpoint.url,
                )
                .order_by(PortalSnapshot.created_at.desc(), PortalSnapshot.id.desc())
                .limit(count)
            )
            return list(session.scalars(stmt))

    def unparsed_snapshots(self, limit: int) -> list[PortalSnapshot]:
        with self.transaction() as session:
            stmt = (
                select(PortalSnapshot)
                .where(PortalSnapshot.parsed.is_(False))
                .order_by(PortalSnapshot.created_at.asc(), PortalSnapshot.id.asc())
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def save_parsed(self, snapshot: PortalSnapshot, extraction: PermitExtraction) -> int:
        """Store every extracted collection and mark the snapshot parsed, atomically."""
        with self.transaction() as session:
            parsed = PermitParsed(
                snapshot_id=snapshot.id,
                jurisdiction_geoid=snapshot.jurisdiction_geoid,
                url=snapshot.url,
                vendor=snapshot.vendor.value,
                created_at=utcnow(),
            )
            session.add(parsed)
            session.flush()

            for collection, rows in extraction.collections().items():
                for row in rows:
                    session.add(PermitParsedItem(parsed_id=parsed.id, collection=collection, data=row.model_dump()))

            session.execute(
                update(PortalSnapshot)
                .where(PortalSnapshot.id == snapshot.id)
                .values(parsed=True, last_error=None)
            )
            return parsed.id

    def mark_snapshot_error(self, snapshot_id: int, error: str) -> None:
        with self.transaction() as session:
            session.execute(
                update(PortalSnapshot)
                .where(PortalSnapshot.id == snapshot_id)
                .values(parsed=False, last_error=error)
            )

    def parsed_items(self, snapshot_id: int) -> list[PermitParsedItem]:
        with self.transaction() as session:
            stmt = (
                select(PermitParsedItem)
                .join(PermitParsed, PermitParsed.id == PermitParsedItem.parsed_id)
                .where(PermitParsed.snapshot_id == snapshot_id)
                .order_by(PermitParsedItem.id)
            )
            return list(session.scalars(stmt))

    # ─── AI Usage Counter ────────────────────────────────────────────

    def ai_usage(self, day: date) -> int:
        with self.transaction() as session:
            row = session.get(AIUsage, day)
            return row.count if row else 0

    def increment_ai_usage(self, day: date) -> int:
        """Atomically add one expensive-tier call to ``day``; returns the new count."""
        with self.transaction() as session:
            self._insert_ignore(session, AIUsage, [{"day": day, "count": 0}], ["day"])
            session.execute(
                update(AIUsage).where(AIUsage.day == day).values(count=AIUsage.count + 1)
            )
            return session.scalar(select(AIUsage.count).where(AIUsage.day == day)) or 0

    def reserve_ai_call(self, day: date, cap: int) -> bool:
        """Count one expensive-tier call against ``day`` if it is still under ``cap``.

        The check and the increment are a single conditional UPDATE, so
        concurrent callers can never push the day past the cap.
        """
        with self.transaction() as session:
            self._insert_ignore(session, AIUsage, [{"day": day, "count": 0}], ["day"])
            result = session.execute(
                update(AIUsage)
                .where(AIUsage.day == day, AIUsage.count < cap)
                .values(count=AIUsage.count + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def ai_usage_history(self, days: int = 14) -> list[dict[str, Any]]:
        with self.transaction() as session:
            stmt = select(AIUsage).order_by(AIUsage.day.desc()).limit(days)
            return [{"day": row.day.isoformat(), "count": row.count} for row in session.scalars(stmt)]


def _uniform_chunks(rows: list[dict[str, Any]]) -> Iterator[list[dict[str, Any]]]:
    """Split rows into chunks that share one key set.

    A multi-row INSERT takes its column list from the first row, so rows with
    different keys must never share a statement.
    """
    groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
    for row in rows:
        groups.setdefault(tuple(sorted(row)), []).append(row)
    for group in groups.values():
        for start in range(0, len(group), _INSERT_CHUNK):
            yield group[start:start + _INSERT_CHUNK]


def _append_note(existing: Optional[str], note: str) -> str:
    if not existing:
        return note
    if note in existing:
        return existing
    return f"{existing}\n{note}"
