"""
Automated Verifier: batch re-check of records that point at a portal URL.

Per record:
    DNS fails                         → Invalid + Requeued (DNS_Failure)
    fetch fails / non-2xx / not HTML  → Invalid + Requeued (Fetch_Failure)
    no portal keywords in the body    → Invalid + Requeued (No_Portal_Keywords)
    otherwise                         → Verified, vendor re-detected from the body

"Requeued" puts a fresh pending search job on the queue for the
jurisdiction, so decayed answers are rediscovered from scratch.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

from .classifier import count_keyword_hits, detect_vendor_from_html
from .context import PipelineContext
from .db import JurisdictionMeta
from .exceptions import TransientNetworkError
from .models import SubmissionMethod, SweepReport, VerificationReason, VerificationResult
from .resolver import JurisdictionRecordResolver
from .seeding import rediscovery_query
from .vendors import VERIFIER_KEYWORDS, VERIFIER_SAMPLE_CHARS
from .workers import run_bounded

logger = logging.getLogger(__name__)


class AutomatedVerifier:
    def __init__(self, ctx: PipelineContext, resolver: Optional[JurisdictionRecordResolver] = None):
        self.ctx = ctx
        self.resolver = resolver or JurisdictionRecordResolver(ctx.store)

    def check(self, url: str) -> tuple[VerificationReason, Optional[str], Optional[str]]:
        """Probe a URL; returns (reason, vendor, html sample)."""
        host = urlparse(url).hostname
        if not host or not self.ctx.fetcher.resolve_host(host):
            return VerificationReason.DNS_FAILURE, None, None

        try:
            response = self.ctx.fetcher.fetch(url, method="GET")
        except TransientNetworkError as e:
            logger.info("Verifier fetch failed for %s: %s", url, e)
            return VerificationReason.FETCH_FAILURE, None, None

        if not response.ok or "text/html" not in response.content_type:
            return VerificationReason.FETCH_FAILURE, None, None

        html = response.text
        if count_keyword_hits(html, VERIFIER_KEYWORDS) == 0:
            return VerificationReason.NO_PORTAL_KEYWORDS, None, None

        return VerificationReason.OK, detect_vendor_from_html(html, url), html[:VERIFIER_SAMPLE_CHARS]

    def verify_record(self, record: JurisdictionMeta) -> VerificationResult:
        url = record.portal_url or ""
        reason, vendor, sample = self.check(url)

        if reason is VerificationReason.OK:
            values = {
                "vendor_type": vendor,
                "submission_method": SubmissionMethod.ONLINE,
                "verification_html_sample": sample,
            }
            if record.verified:
                # Still live; pending competitors stay queued for review.
                summary = self.ctx.store.refresh_verification(record.id, values)
            else:
                summary, _ = self.resolver.promote(record.id, values)
            logger.info("Verified record %s (%s) as %s", record.id, url, vendor)
            return VerificationResult(
                id=summary.id, geoid=summary.jurisdiction_geoid, url=url,
                verified=True, reason=reason, vendor_type=vendor,
            )

        self._demote(record, reason)
        return VerificationResult(
            id=record.id, geoid=record.jurisdiction_geoid, url=url, verified=False, reason=reason,
        )

    def _demote(self, record: JurisdictionMeta, reason: VerificationReason) -> None:
        jurisdiction = self.ctx.store.get_jurisdiction(record.jurisdiction_geoid)
        if jurisdiction is None:
            logger.warning("Record %s has no jurisdiction row; invalidating without requeue", record.id)
            self.ctx.store.invalidate_record(record.id, f"verifier: {reason.value}")
            return

        self.ctx.store.invalidate_and_requeue(
            record.id, jurisdiction, rediscovery_query(jurisdiction), reason.value
        )
        if record.verified:
            # The authoritative answer just decayed.
            self.ctx.store.set_authoritative_state(jurisdiction.geoid, None, SubmissionMethod.UNKNOWN)
        logger.info("Record %s (%s) failed verification: %s; requeued", record.id, record.portal_url, reason.value)

    def sweep(self, limit: Optional[int] = None) -> SweepReport:
        limit = limit or self.ctx.settings.verifier_batch_size
        records = self.ctx.store.records_to_verify(limit)
        report = SweepReport(kind="verify")

        for record, result, error in run_bounded(self.verify_record, records, self.ctx.settings.concurrency):
            report.processed += 1
            if error is not None:
                report.failed += 1
                report.details.append({"id": record.id, "error": str(error)})
                continue
            if result.verified:
                report.succeeded += 1
            else:
                report.failed += 1
            report.details.append(result.model_dump(mode="json"))

        logger.info(
            "Verifier sweep: %d checked, %d verified, %d demoted",
            report.processed, report.succeeded, report.failed,
        )
        return report

