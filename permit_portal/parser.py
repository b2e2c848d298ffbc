"""
Parse worker: structured extraction of unparsed snapshots.

HTML snapshots are passed through as text; PDF snapshots go through the
text extractor first. The structured extractor fills the fixed
PermitExtraction schema, and every collection is stored together with the
snapshot's parsed flag in one transaction. A failure leaves the snapshot
unparsed with the error recorded, so the next sweep retries it.
"""

from __future__ import annotations

import logging
from typing import Optional

from .context import PipelineContext
from .db import PortalSnapshot
from .exceptions import ExtractionError, PortalDiscoveryError
from .models import EndpointVendor, SweepReport
from .workers import run_bounded

logger = logging.getLogger(__name__)


class ParseWorker:
    def __init__(self, ctx: PipelineContext):
        if ctx.storage is None or ctx.extractor is None:
            raise PortalDiscoveryError(
                "NO_EXTRACTOR", "parse sweep needs snapshot storage and a structured extractor"
            )
        self.ctx = ctx

    def snapshot_text(self, snapshot: PortalSnapshot) -> str:
        data = self.ctx.storage.load(snapshot.snapshot_url)
        is_pdf = snapshot.vendor is EndpointVendor.PDF or snapshot.snapshot_url.lower().endswith(".pdf")
        if not is_pdf:
            return data.decode("utf-8", errors="replace")

        if self.ctx.pdf_extractor is None:
            raise ExtractionError("no PDF text extractor configured")
        return self.ctx.pdf_extractor.extract(data)

    def parse(self, snapshot: PortalSnapshot) -> int:
        """Extract and store one snapshot; returns the number of stored items."""
        logger.info("Parsing snapshot %s (%s)", snapshot.id, snapshot.vendor.value)
        try:
            text = self.snapshot_text(snapshot)
            if not text.strip():
                raise ExtractionError(f"snapshot {snapshot.id} has no text")

            extraction = self.ctx.extractor.extract(
                text,
                {"vendor": snapshot.vendor.value, "url": snapshot.url, "geoid": snapshot.jurisdiction_geoid},
            )
            self.ctx.store.save_parsed(snapshot, extraction)
        except Exception as e:
            self.ctx.store.mark_snapshot_error(snapshot.id, str(e) or type(e).__name__)
            raise

        return sum(len(rows) for rows in extraction.collections().values())

    def sweep(self, limit: Optional[int] = None) -> SweepReport:
        snapshots = self.ctx.store.unparsed_snapshots(limit or self.ctx.settings.parse_batch_size)
        report = SweepReport(kind="parse")

        for snapshot, items, error in run_bounded(self.parse, snapshots, self.ctx.settings.concurrency):
            report.processed += 1
            if error is not None:
                report.failed += 1
                report.details.append({"snapshot_id": snapshot.id, "error": str(error)})
            else:
                report.succeeded += 1
                report.details.append({"snapshot_id": snapshot.id, "items": items})

        logger.info("Parse sweep: %d snapshots, %d parsed, %d errors", report.processed, report.succeeded, report.failed)
        return report
