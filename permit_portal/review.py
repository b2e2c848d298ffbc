"""
Human Review Workflow and the dashboard read models.

Approve and reject are the terminal actions a reviewer takes on a proposed
jurisdiction record. A reject that carries a manual_info_url is a positive
offline classification, not a failure: the reviewer is confirming that the
jurisdiction has no portal and pointing at its paper process.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

from .classifier import detect_vendor
from .context import PipelineContext
from .models import (
    RecordSummary,
    ReviewAction,
    ReviewOutcome,
    ReviewOverrides,
    SubmissionMethod,
    UsageReport,
)
from .resolver import JurisdictionRecordResolver
from .vendors import UNKNOWN_VENDOR

logger = logging.getLogger(__name__)


def _review_note(record: RecordSummary, overrides: ReviewOverrides, action: ReviewAction) -> str:
    note = f"review: {action.value}"
    if overrides.notes:
        note = f"{note}: {overrides.notes}"
    if not record.notes:
        return note
    return f"{record.notes}\n{note}"


class ReviewWorkflow:
    def __init__(self, ctx: PipelineContext, resolver: Optional[JurisdictionRecordResolver] = None):
        self.ctx = ctx
        self.resolver = resolver or JurisdictionRecordResolver(ctx.store)

    def list_pending(self, limit: int = 50, offset: int = 0) -> list[RecordSummary]:
        """Records neither verified nor invalid, newest first."""
        return self.ctx.store.pending_review(limit=limit, offset=offset)

    def approve(self, record_id: int, overrides: Optional[ReviewOverrides] = None) -> ReviewOutcome:
        overrides = overrides or ReviewOverrides()
        record = self.ctx.store.get_record(record_id)

        ai_url = (record.raw_payload or {}).get("raw_url")
        canonical = overrides.portal_url or record.portal_url or ai_url

        values: dict[str, Any] = {"notes": _review_note(record, overrides, ReviewAction.APPROVED)}
        if canonical:
            values["portal_url"] = canonical
            values["submission_method"] = SubmissionMethod.ONLINE
            if overrides.vendor_type:
                values["vendor_type"] = overrides.vendor_type
            elif canonical != record.portal_url or record.vendor_type == UNKNOWN_VENDOR:
                values["vendor_type"] = detect_vendor(canonical)
            if overrides.manual_info_url:
                values["manual_info_url"] = overrides.manual_info_url
        elif overrides.manual_info_url or record.manual_info_url:
            values["portal_url"] = None
            values["manual_info_url"] = overrides.manual_info_url or record.manual_info_url
            values["submission_method"] = SubmissionMethod.OFFLINE_ONLY

        summary, invalidated = self.resolver.promote(record_id, values)
        logger.info("Approved record %s for %s (%s)", record_id, summary.jurisdiction_geoid, summary.portal_url)
        return ReviewOutcome(action=ReviewAction.APPROVED, record=summary, invalidated_ids=invalidated)

    def reject(self, record_id: int, overrides: Optional[ReviewOverrides] = None) -> ReviewOutcome:
        overrides = overrides or ReviewOverrides()
        record = self.ctx.store.get_record(record_id)

        if overrides.manual_info_url:
            summary, invalidated = self.resolver.promote(
                record_id,
                {
                    "portal_url": None,
                    "manual_info_url": overrides.manual_info_url,
                    "submission_method": SubmissionMethod.OFFLINE_ONLY,
                    "vendor_type": overrides.vendor_type or UNKNOWN_VENDOR,
                    "notes": _review_note(record, overrides, ReviewAction.OFFLINE_CONFIRMED),
                },
            )
            logger.info("Record %s confirmed offline-only for %s", record_id, summary.jurisdiction_geoid)
            return ReviewOutcome(
                action=ReviewAction.OFFLINE_CONFIRMED, record=summary, invalidated_ids=invalidated
            )

        note = f"review: rejected: {overrides.notes}" if overrides.notes else "review: rejected"
        summary = self.resolver.invalidate(record_id, note)
        if record.verified and not record.invalid:
            self.ctx.store.set_authoritative_state(record.jurisdiction_geoid, None, SubmissionMethod.UNKNOWN)
        logger.info("Rejected record %s for %s", record_id, record.jurisdiction_geoid)
        return ReviewOutcome(action=ReviewAction.REJECTED, record=summary)


# ─── Dashboard ───────────────────────────────────────────────────────


def usage_report(ctx: PipelineContext) -> UsageReport:
    today = ctx.store.ai_usage(datetime.now(timezone.utc).date())
    limit = ctx.daily_ai_cap
    return UsageReport(
        today=today,
        limit=limit,
        remaining=max(0, limit - today),
        last14=ctx.store.ai_usage_history(14),
    )


def recent_activity(ctx: PipelineContext, limit: int = 20) -> dict[str, Any]:
    rows = ctx.store.recent_records(limit)
    breakdown = Counter(row["vendor_type"] or UNKNOWN_VENDOR for row in rows)
    return {"rows": rows, "vendor_breakdown": dict(breakdown)}


def pending_count(ctx: PipelineContext) -> dict[str, int]:
    return {"count": ctx.store.count_unresolved_jurisdictions()}
