"""
Tests for the automated verifier: promote live portals, demote and requeue
decayed ones.
"""

from __future__ import annotations

import pytest

from permit_portal.models import JobStatus, MetaProposal, SubmissionMethod, VerificationReason
from permit_portal.resolver import JurisdictionRecordResolver
from permit_portal.seeding import rediscovery_query
from permit_portal.verifier import AutomatedVerifier

PORTAL = "https://aca-prod.accela.com/AUSTIN/"


@pytest.fixture
def resolver(store) -> JurisdictionRecordResolver:
    return JurisdictionRecordResolver(store)


@pytest.fixture
def verifier(ctx, resolver) -> AutomatedVerifier:
    return AutomatedVerifier(ctx, resolver)


@pytest.fixture
def proposed(resolver, jurisdictions):
    return resolver.propose(
        MetaProposal(
            geoid=jurisdictions["austin"], portal_url=PORTAL, vendor_type="Accela",
            submission_method=SubmissionMethod.ONLINE,
        )
    )


class TestCheck:
    def test_live_portal_is_ok(self, verifier, fetcher) -> None:
        fetcher.add_page(PORTAL)
        reason, vendor, sample = verifier.check(PORTAL)
        assert reason is VerificationReason.OK
        assert vendor == "Accela"
        assert sample.startswith("<html>")

    def test_dns_failure(self, verifier, fetcher) -> None:
        fetcher.dead_hosts.add("aca-prod.accela.com")
        assert verifier.check(PORTAL)[0] is VerificationReason.DNS_FAILURE
        assert fetcher.calls == []

    def test_non_html_is_fetch_failure(self, verifier, fetcher) -> None:
        fetcher.add_page(PORTAL, body="{}", content_type="application/json")
        assert verifier.check(PORTAL)[0] is VerificationReason.FETCH_FAILURE

    def test_network_error_is_fetch_failure(self, verifier, fetcher) -> None:
        fetcher.fail(PORTAL)
        assert verifier.check(PORTAL)[0] is VerificationReason.FETCH_FAILURE

    def test_parked_page_has_no_keywords(self, verifier, fetcher) -> None:
        fetcher.add_page(PORTAL, body="<html><body>This domain is for sale</body></html>")
        assert verifier.check(PORTAL)[0] is VerificationReason.NO_PORTAL_KEYWORDS


class TestSweep:
    def test_live_record_is_promoted(self, verifier, fetcher, store, proposed, jurisdictions) -> None:
        fetcher.add_page(PORTAL)

        report = verifier.sweep()

        assert (report.processed, report.succeeded, report.failed) == (1, 1, 0)
        record = store.get_record(proposed.id)
        assert record.verified is True
        assert record.verified_at is not None
        assert store.get_jurisdiction(jurisdictions["austin"]).portal_url == PORTAL

    def test_http_500_invalidates_and_requeues_once(
        self, verifier, fetcher, store, resolver, proposed, jurisdictions
    ) -> None:
        geoid = jurisdictions["austin"]
        resolver.promote(proposed.id)
        fetcher.add_page(PORTAL, status=500)

        report = verifier.sweep()

        assert report.failed == 1
        assert report.details[0]["reason"] == VerificationReason.FETCH_FAILURE.value
        record = store.get_record(proposed.id)
        assert record.invalid is True
        assert record.verified is False

        pending = store.jobs_for(geoid, JobStatus.PENDING)
        assert len(pending) == 1
        assert pending[0].query == rediscovery_query(store.get_jurisdiction(geoid))

    def test_requeue_resets_existing_job_instead_of_duplicating(
        self, ctx, verifier, fetcher, store, proposed, jurisdictions
    ) -> None:
        geoid = jurisdictions["austin"]
        jurisdiction = store.get_jurisdiction(geoid)
        query = rediscovery_query(jurisdiction)
        store.enqueue_jobs([{
            "jurisdiction_geoid": geoid, "jurisdiction_name": jurisdiction.name,
            "jurisdiction_type": jurisdiction.level, "query": query,
        }])
        job = store.claim_jobs(10)[0]
        store.finish_job(job.id, JobStatus.DONE)
        fetcher.dead_hosts.add("aca-prod.accela.com")

        verifier.sweep()

        jobs = store.jobs_for(geoid)
        assert len(jobs) == 1
        assert jobs[0].status is JobStatus.PENDING
        assert jobs[0].attempt_count == 0

    def test_decayed_authoritative_record_clears_jurisdiction(
        self, verifier, fetcher, store, resolver, proposed, jurisdictions
    ) -> None:
        resolver.promote(proposed.id)
        fetcher.add_page(PORTAL, status=404)

        verifier.sweep()

        assert store.get_record(proposed.id).invalid is True
        jurisdiction = store.get_jurisdiction(jurisdictions["austin"])
        assert jurisdiction.portal_url is None
        assert jurisdiction.submission_method is SubmissionMethod.UNKNOWN

    def test_competing_proposal_is_left_for_review(
        self, verifier, fetcher, store, resolver, proposed, jurisdictions
    ) -> None:
        resolver.promote(proposed.id)
        competing = resolver.propose(
            MetaProposal(
                geoid=jurisdictions["austin"],
                portal_url="https://x-energovpub.tylerhost.net/apps/selfservice/",
                submission_method=SubmissionMethod.ONLINE,
            )
        )
        fetcher.add_page(PORTAL)

        report = verifier.sweep()

        assert report.processed == 1
        assert store.get_record(competing.id).verified is False
        assert store.get_record(competing.id).invalid is False

    def test_records_without_url_are_skipped(self, verifier, resolver, jurisdictions) -> None:
        resolver.propose(MetaProposal(geoid=jurisdictions["pflugerville"]))
        assert verifier.sweep().processed == 0
