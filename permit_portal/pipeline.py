"""
Portal pipeline: one object that wires every component to one context.

Flow:
                    ┌──────────────┐
                    │ Jurisdiction │
                    └──────┬───────┘
                           │
      interactive ─────────┼───────── batch
            │                              │
   ┌────────▼─────────┐           ┌────────▼────────┐
   │ Tier Controller  │           │ Seed → Search   │
   │ cache → offline  │           │ → Endpoints     │
   │ → cheap → full   │           │ → Crawl → Parse │
   └────────┬─────────┘           └────────┬────────┘
            │                              │
            └──────────────┬───────────────┘
                           │
                  ┌────────▼────────┐
                  │    Resolver     │   ← merge, one authoritative record
                  └────────┬────────┘
                           │
            ┌──────────────┴──────────────┐
            │                             │
   ┌────────▼────────┐          ┌─────────▼────────┐
   │    Verifier     │          │   Human Review   │
   │ (decay→requeue) │          │ (approve/reject) │
   └─────────────────┘          └──────────────────┘

Design principles:
  - Every component gets the same PipelineContext; nothing reads globals.
  - Both paths write through the resolver, so the single-authoritative
    record rule holds no matter which path wins a race.
  - A batch sweep never dies because one item failed; the item's error is
    recorded on the item and the sweep moves on.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .context import PipelineContext
from .crawler import CrawlWorker, freshness_sweep
from .discovery import DiscoveryTierController
from .endpoints import detect_county_endpoints
from .models import ResolutionResult, ReviewOutcome, ReviewOverrides, SweepReport
from .parser import ParseWorker
from .resolver import JurisdictionRecordResolver
from .review import ReviewWorkflow
from .search_worker import SearchWorker
from .seeding import seed_all, seed_county
from .verifier import AutomatedVerifier
from .workers import run_bounded

logger = logging.getLogger(__name__)


class SweepKind(str, Enum):
    SEARCH = "search"
    CRAWL = "crawl"
    PARSE = "parse"
    VERIFY = "verify"
    FRESHNESS = "freshness"
    REPROCESS = "reprocess"


class PortalPipeline:
    """Entry point for the CLI and the API.

    Usage:
        pipeline = PortalPipeline(build_context(load_settings()))
        result = pipeline.resolve("4805000")
        report = pipeline.sweep(SweepKind.VERIFY, limit=25)
    """

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx
        self.resolver = JurisdictionRecordResolver(ctx.store)
        self.controller = DiscoveryTierController(ctx, self.resolver)
        self.verifier = AutomatedVerifier(ctx, self.resolver)
        self.review = ReviewWorkflow(ctx, self.resolver)

    # ─── Interactive Path ────────────────────────────────────────────

    def resolve(self, geoid: str, force_refresh: bool = False) -> ResolutionResult:
        return self.controller.resolve(geoid, force_refresh=force_refresh)

    def reprocess(self, offset: int = 0, limit: Optional[int] = None) -> SweepReport:
        """Force-refresh resolution for a page of jurisdictions, ordered by geoid."""
        limit = limit or self.ctx.settings.search_batch_size
        jurisdictions = self.ctx.store.list_jurisdictions(offset=offset, limit=limit)
        report = SweepReport(kind=SweepKind.REPROCESS.value)

        def work(jurisdiction) -> ResolutionResult:
            return self.controller.resolve(jurisdiction.geoid, force_refresh=True)

        for jurisdiction, result, error in run_bounded(work, jurisdictions, self.ctx.settings.concurrency):
            report.processed += 1
            if error is not None:
                report.failed += 1
                report.details.append({"geoid": jurisdiction.geoid, "error": str(error)})
            else:
                report.succeeded += 1
                report.details.append(result.model_dump(mode="json"))

        logger.info("Reprocessed %d jurisdictions from offset %d", report.processed, offset)
        return report

    # ─── Batch Path ──────────────────────────────────────────────────

    def seed(self, county_geoid: Optional[str] = None) -> SweepReport:
        if county_geoid:
            return seed_county(self.ctx, county_geoid)
        return seed_all(self.ctx)

    def detect_endpoints(self, county_geoid: str) -> SweepReport:
        return detect_county_endpoints(self.ctx, county_geoid)

    def sweep(
        self,
        kind: SweepKind,
        limit: Optional[int] = None,
        offset: int = 0,
        include_errors: bool = False,
    ) -> SweepReport:
        kind = SweepKind(kind)
        logger.info("Starting %s sweep (limit=%s)", kind.value, limit)

        if kind is SweepKind.SEARCH:
            return SearchWorker(self.ctx, self.resolver).sweep(limit, include_errors=include_errors)
        if kind is SweepKind.CRAWL:
            return CrawlWorker(self.ctx).sweep(limit)
        if kind is SweepKind.PARSE:
            return ParseWorker(self.ctx).sweep(limit)
        if kind is SweepKind.VERIFY:
            return self.verifier.sweep(limit)
        if kind is SweepKind.FRESHNESS:
            return freshness_sweep(self.ctx, limit)
        if kind is SweepKind.REPROCESS:
            return self.reprocess(offset=offset, limit=limit)
        raise ValueError(f"Unhandled sweep kind: {kind}")

    # ─── Review ──────────────────────────────────────────────────────

    def approve(self, record_id: int, overrides: Optional[ReviewOverrides] = None) -> ReviewOutcome:
        return self.review.approve(record_id, overrides)

    def reject(self, record_id: int, overrides: Optional[ReviewOverrides] = None) -> ReviewOutcome:
        return self.review.reject(record_id, overrides)
