"""
Jurisdiction Record Resolver: one jurisdiction_meta answer per jurisdiction.

Every tier and sweep that has something to say about a jurisdiction goes
through here. Two rules:

  1. Merge, don't clobber. A proposal never turns an authoritative
     (verified, not invalid) record back into an unverified one. A
     proposal that disagrees with the authoritative URL is stored as a
     separate unverified record for human review.
  2. At most one authoritative record. Promoting a record invalidates
     every other record of the jurisdiction in the same transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .db import JurisdictionMeta
from .models import MetaProposal, RecordSummary, SubmissionMethod
from .store import PortalStore
from .vendors import VENDOR_TABLE_VERSION

logger = logging.getLogger(__name__)


def _payload(proposal: MetaProposal, existing: Optional[dict] = None) -> dict:
    merged = dict(existing or {})
    merged.update(proposal.raw_payload)
    merged["vendor_table_version"] = VENDOR_TABLE_VERSION
    return merged


def _merge_notes(existing: Optional[str], new: str) -> str:
    if not new:
        return existing or ""
    if not existing or new in existing:
        return existing or new
    return f"{existing}\n{new}"


def plan_merge(live: Optional[JurisdictionMeta], proposal: MetaProposal) -> tuple[str, dict[str, Any]]:
    """Decide how a proposal lands against the jurisdiction's live record.

    Returns ``("insert", values)`` for a new record or ``("update", values)``
    for changes to ``live``.
    """
    fresh = {
        "portal_url": proposal.portal_url,
        "manual_info_url": proposal.manual_info_url,
        "vendor_type": proposal.vendor_type,
        "submission_method": proposal.submission_method,
        "notes": proposal.notes or "",
        "raw_payload": _payload(proposal),
        "verified": False,
        "invalid": False,
    }

    if live is None:
        return "insert", fresh

    if live.verified:
        agrees = (
            proposal.portal_url == live.portal_url
            or proposal.submission_method is SubmissionMethod.UNKNOWN
        )
        if agrees:
            # Only annotate; the authoritative fields stay as a human or the verifier left them.
            return "update", {
                "notes": _merge_notes(live.notes, proposal.notes),
                "raw_payload": _payload(proposal, live.raw_payload),
            }
        return "insert", fresh

    if proposal.submission_method is SubmissionMethod.UNKNOWN:
        # "Nothing found" must not erase an earlier, more useful proposal.
        values: dict[str, Any] = {
            "notes": _merge_notes(live.notes, proposal.notes),
            "raw_payload": _payload(proposal, live.raw_payload),
        }
        if live.submission_method is SubmissionMethod.UNKNOWN and proposal.portal_url:
            values["portal_url"] = proposal.portal_url
            values["vendor_type"] = proposal.vendor_type
        return "update", values

    return "update", {
        "portal_url": proposal.portal_url,
        "manual_info_url": proposal.manual_info_url or live.manual_info_url,
        "vendor_type": proposal.vendor_type,
        "submission_method": proposal.submission_method,
        "notes": proposal.notes or live.notes,
        "raw_payload": _payload(proposal, live.raw_payload),
    }


class JurisdictionRecordResolver:
    """Funnels proposals, promotions and rejections into the store."""

    def __init__(self, store: PortalStore):
        self.store = store

    def propose(self, proposal: MetaProposal) -> RecordSummary:
        record = self.store.upsert_record(proposal, plan_merge)
        logger.info(
            "Record %s for %s now %s (%s)",
            record.id, proposal.geoid, record.submission_method.value, record.portal_url,
        )
        return record

    def promote(self, record_id: int, values: Optional[dict[str, Any]] = None) -> tuple[RecordSummary, list[int]]:
        """Make a record authoritative and push its answer onto the jurisdiction."""
        record, invalidated = self.store.promote_record(record_id, values or {})
        if invalidated:
            logger.info(
                "Promoted record %s for %s; invalidated %s",
                record.id, record.jurisdiction_geoid, invalidated,
            )
        return record, invalidated

    def invalidate(self, record_id: int, notes: Optional[str] = None) -> RecordSummary:
        return self.store.invalidate_record(record_id, notes)
