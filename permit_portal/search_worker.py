"""
Search worker: drains the search queue through the search provider.

Each result goes through the same normalize/validate/probe gate as the
oracle tiers. Every survivor is logged as a candidate; the first one is
proposed to the resolver as a merge, never as an overwrite of an
authoritative record.
"""

from __future__ import annotations

import logging
from typing import Optional

from .classifier import detect_vendor, vet_candidate
from .context import PipelineContext
from .db import DiscoveryJob
from .exceptions import PortalDiscoveryError
from .models import CandidateSource, JobStatus, MetaProposal, SubmissionMethod, SweepReport
from .resolver import JurisdictionRecordResolver
from .vendors import UNKNOWN_VENDOR
from .workers import run_bounded

logger = logging.getLogger(__name__)

SEARCH_CONFIDENCE = 1.0


class SearchWorker:
    def __init__(self, ctx: PipelineContext, resolver: Optional[JurisdictionRecordResolver] = None):
        if ctx.search is None:
            raise PortalDiscoveryError("NO_SEARCH_PROVIDER", "search sweep needs a search provider")
        self.ctx = ctx
        self.resolver = resolver or JurisdictionRecordResolver(ctx.store)

    def process(self, job: DiscoveryJob) -> Optional[str]:
        """Run one claimed job; returns the proposed URL, if any."""
        try:
            results = self.ctx.search.search(job.query)
            best = self._vet_results(job, [r.url for r in results])
            self._propose(job, best)
        except Exception as e:
            self.ctx.store.finish_job(job.id, JobStatus.ERROR, str(e) or type(e).__name__)
            raise

        self.ctx.store.finish_job(job.id, JobStatus.DONE)
        return best

    def _vet_results(self, job: DiscoveryJob, urls: list[str]) -> Optional[str]:
        best: Optional[str] = None
        for raw in urls:
            vetted = vet_candidate(self.ctx.fetcher, raw)
            if not vetted:
                continue
            self.ctx.store.add_candidate(
                job.jurisdiction_geoid, vetted, CandidateSource.SEARCH,
                vendor_type=detect_vendor(vetted), confidence=SEARCH_CONFIDENCE,
                query=job.query, notes=f"search job {job.id}",
            )
            if best is None:
                best = vetted
        return best

    def _propose(self, job: DiscoveryJob, best: Optional[str]) -> None:
        if best:
            proposal = MetaProposal(
                geoid=job.jurisdiction_geoid,
                portal_url=best,
                vendor_type=detect_vendor(best),
                submission_method=SubmissionMethod.ONLINE,
                notes=f"Seeded from search job {job.id}",
                raw_payload={"tier": CandidateSource.SEARCH.value, "query": job.query},
            )
        else:
            proposal = MetaProposal(
                geoid=job.jurisdiction_geoid,
                vendor_type=UNKNOWN_VENDOR,
                submission_method=SubmissionMethod.UNKNOWN,
                notes=f"search job {job.id}: no reliable portal found",
                raw_payload={"tier": CandidateSource.SEARCH.value, "query": job.query},
            )
        self.resolver.propose(proposal)

    def sweep(self, limit: Optional[int] = None, include_errors: bool = False) -> SweepReport:
        settings = self.ctx.settings
        jobs = self.ctx.store.claim_jobs(
            limit or settings.search_batch_size,
            include_errors=include_errors,
            max_attempts=settings.max_job_attempts,
        )
        report = SweepReport(kind="search")
        if not jobs:
            logger.info("No pending search jobs")
            return report

        for job, best, error in run_bounded(self.process, jobs, settings.concurrency):
            report.processed += 1
            if error is not None:
                report.failed += 1
                report.details.append({"job_id": job.id, "error": str(error)})
            else:
                report.succeeded += 1
                report.details.append({"job_id": job.id, "portal_url": best})

        logger.info("Search sweep: %d jobs, %d done, %d errors", report.processed, report.succeeded, report.failed)
        return report
