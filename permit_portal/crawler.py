"""
Crawl worker and freshness scoring for portal endpoints.

Interactive vendor systems are rendered in a headless browser; PDFs are
fetched as raw bytes; plain government pages are fetched directly. Each
fetch becomes a PortalSnapshot keyed by the SHA-256 of its content, and
consecutive snapshots of one endpoint form the time series freshness is
computed from.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .context import PipelineContext
from .db import PortalEndpoint, PortalSnapshot, utcnow
from .exceptions import PortalDiscoveryError, TransientNetworkError
from .fetcher import content_hash
from .models import EndpointStatus, EndpointVendor, FreshnessReport, SweepReport
from .vendors import INTERACTIVE_ENDPOINT_VENDORS
from .workers import run_bounded

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
HTML_CONTENT_TYPE = "text/html"

# Freshness = 100 on the day of the snapshot, minus 5 per day of age, floored at 0.
FRESHNESS_MAX = 100
FRESHNESS_DECAY_PER_DAY = 5
STALE_AGE_DAYS = 999


def freshness_score(age_days: int) -> int:
    return max(0, FRESHNESS_MAX - age_days * FRESHNESS_DECAY_PER_DAY)


class CrawlWorker:
    def __init__(self, ctx: PipelineContext):
        if ctx.storage is None:
            raise PortalDiscoveryError("NO_SNAPSHOT_STORAGE", "crawl sweep needs snapshot storage")
        self.ctx = ctx

    def _fetch_bytes(self, url: str) -> bytes:
        response = self.ctx.fetcher.fetch(url, method="GET")
        if not response.ok:
            raise TransientNetworkError(f"GET {url} returned HTTP {response.status}", {"url": url})
        return response.body

    def fetch_content(self, endpoint: PortalEndpoint) -> tuple[bytes, str]:
        """Vendor-aware fetch; returns (content, content type)."""
        if endpoint.vendor is EndpointVendor.PDF:
            return self._fetch_bytes(endpoint.url), PDF_CONTENT_TYPE

        if endpoint.vendor in INTERACTIVE_ENDPOINT_VENDORS and self.ctx.renderer is not None:
            html = self.ctx.renderer.render(endpoint.url)
            return html.encode("utf-8"), HTML_CONTENT_TYPE

        return self._fetch_bytes(endpoint.url), HTML_CONTENT_TYPE

    def crawl(self, endpoint: PortalEndpoint) -> PortalSnapshot:
        logger.info("Crawling %s (%s)", endpoint.url, endpoint.vendor.value)
        try:
            data, content_type = self.fetch_content(endpoint)
            digest = content_hash(data)
            ref = self.ctx.storage.save(digest, data, content_type)
            snapshot = self.ctx.store.add_snapshot(endpoint, digest, ref)
        except Exception as e:
            self.ctx.store.mark_endpoint(endpoint.id, EndpointStatus.ERROR, str(e) or type(e).__name__)
            raise

        self.ctx.store.mark_endpoint(endpoint.id, EndpointStatus.CRAWLED)
        update_freshness(self.ctx, endpoint)
        return snapshot

    def sweep(self, limit: Optional[int] = None) -> SweepReport:
        recrawl_after = self.ctx.settings.recrawl_after_days
        if recrawl_after > 0:
            requeued = self.ctx.store.requeue_stale_endpoints(utcnow() - timedelta(days=recrawl_after))
            if requeued:
                logger.info("Re-queued %d endpoints not checked in %d days", requeued, recrawl_after)

        endpoints = self.ctx.store.endpoints_to_crawl(limit or self.ctx.settings.crawl_batch_size)
        report = SweepReport(kind="crawl")

        for endpoint, snapshot, error in run_bounded(self.crawl, endpoints, self.ctx.settings.concurrency):
            report.processed += 1
            if error is not None:
                report.failed += 1
                report.details.append({"endpoint_id": endpoint.id, "error": str(error)})
            else:
                report.succeeded += 1
                report.details.append({"endpoint_id": endpoint.id, "snapshot_id": snapshot.id, "hash": snapshot.hash})

        logger.info("Crawl sweep: %d endpoints, %d crawled, %d errors", report.processed, report.succeeded, report.failed)
        return report


# ─── Freshness ───────────────────────────────────────────────────────


def update_freshness(ctx: PipelineContext, endpoint: PortalEndpoint, now: Optional[datetime] = None) -> FreshnessReport:
    """Compare the two newest snapshots and score the endpoint's staleness."""
    latest, previous = (ctx.store.latest_snapshots(endpoint, 2) + [None, None])[:2]
    changed = bool(latest and previous and latest.hash != previous.hash)

    now = now or utcnow()
    age_days = (now - latest.created_at).days if latest else STALE_AGE_DAYS
    score = freshness_score(max(age_days, 0))

    ctx.store.update_endpoint_freshness(endpoint.id, latest.hash if latest else None, score)
    return FreshnessReport(
        endpoint_id=endpoint.id,
        changed=changed,
        freshness_score=score,
        latest_hash=latest.hash if latest else None,
    )


def freshness_sweep(ctx: PipelineContext, limit: Optional[int] = None, geoid: Optional[str] = None) -> SweepReport:
    endpoints = ctx.store.list_endpoints(geoid=geoid, limit=limit or 1000)
    report = SweepReport(kind="freshness")

    for endpoint, result, error in run_bounded(lambda e: update_freshness(ctx, e), endpoints, ctx.settings.concurrency):
        report.processed += 1
        if error is not None:
            report.failed += 1
            report.details.append({"endpoint_id": endpoint.id, "error": str(error)})
            continue
        report.succeeded += 1
        report.details.append(result.model_dump())

    return report
