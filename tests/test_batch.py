"""
Tests for the batch path: seeding, search worker, endpoint classification,
crawling, freshness and parsing.
"""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from permit_portal.crawler import CrawlWorker, freshness_score, freshness_sweep, update_freshness
from permit_portal.db import PortalEndpoint, utcnow
from permit_portal.endpoints import classify_endpoint, detect_county_endpoints
from permit_portal.exceptions import (
    ExtractionError,
    InvalidJurisdictionError,
    JurisdictionNotFoundError,
    PortalDiscoveryError,
    TransientNetworkError,
)
from permit_portal.models import (
    CandidateSource,
    EndpointStatus,
    EndpointVendor,
    JobStatus,
    SearchResult,
    SubmissionMethod,
)
from permit_portal.parser import ParseWorker
from permit_portal.pipeline import PortalPipeline, SweepKind
from permit_portal.search import (
    DuckDuckGoSearch,
    FallbackSearchProvider,
    ProviderResponseError,
    SerpApiSearch,
    TavilySearch,
    parse_duckduckgo_html,
)
from permit_portal.search_worker import SearchWorker
from permit_portal.seeding import build_queries, seed_all, seed_county, state_label
from permit_portal.vendors import SEED_QUERY_TEMPLATES
from permit_portal.workers import run_bounded

ACCELA = "https://aca-prod.accela.com/AUSTIN/"

DDG_HTML = """
<html><body>
<div class="result results_links web-result">
  <h2 class="result__title">
    <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Faca-prod.accela.com%2FAUSTIN%2F&amp;rut=abc">
      Austin Accela Citizen Access</a>
  </h2>
  <a class="result__snippet" href="#">Apply for building permits online.</a>
</div>
<div class="result results_links web-result">
  <h2 class="result__title">
    <a class="result__a" href="https://www.austintexas.gov/department/permits">City of Austin Permits</a>
  </h2>
</div>
<div class="result"><a class="result__a" href="/relative/only">Broken</a></div>
</body></html>
"""


def _endpoint(store, geoid: str, url: str, vendor: EndpointVendor):
    store.upsert_endpoints([{"jurisdiction_geoid": geoid, "url": url, "vendor": vendor}])
    return next(e for e in store.list_endpoints(geoid) if e.url == url)


def _all_jobs(store, jurisdictions: dict[str, str]) -> list:
    return [job for geoid in jurisdictions.values() for job in store.jobs_for(geoid)]


# ═══════════════════════════════════════════════════════════════════════
# SEEDING
# ═══════════════════════════════════════════════════════════════════════


class TestSeeding:
    def test_state_label(self) -> None:
        assert state_label("48") == "TX"
        assert state_label("6") == "CA"
        assert state_label("TX") == "TX"
        assert state_label(None) == ""

    def test_queries_render_every_template(self, store, jurisdictions) -> None:
        queries = build_queries(store.get_jurisdiction(jurisdictions["austin"]))
        assert len(queries) == len(SEED_QUERY_TEMPLATES)
        assert queries[0] == '"Austin" TX building permits'

    def test_seed_county_is_idempotent(self, ctx, store, jurisdictions) -> None:
        first = seed_county(ctx, jurisdictions["county"])
        second = seed_county(ctx, jurisdictions["county"])

        assert first.succeeded == 3 * len(SEED_QUERY_TEMPLATES)
        assert second.succeeded == 0
        assert second.processed == first.processed
        assert len(store.jobs_for(jurisdictions["austin"])) == len(SEED_QUERY_TEMPLATES)

    def test_places_keep_their_county_when_loaded_with_it(self, store) -> None:
        store.add_jurisdictions([
            {"geoid": "06037", "name": "Los Angeles County", "level": "county", "statefp": "06"},
            {"geoid": "0644000", "name": "Los Angeles", "level": "place", "statefp": "06",
             "county_geoid": "06037"},
            {"geoid": "0670000", "name": "Santa Monica", "level": "place", "statefp": "06",
             "county_geoid": "06037", "homepage_url": "https://www.santamonica.gov/"},
        ])

        assert store.get_jurisdiction("0644000").county_geoid == "06037"
        assert store.get_jurisdiction("0670000").homepage_url == "https://www.santamonica.gov/"
        assert [j.geoid for j in store.county_members("06037")] == ["06037", "0644000", "0670000"]

    def test_seed_all_pages_through_jurisdictions(self, ctx, jurisdictions) -> None:
        report = seed_all(ctx, page_size=2)
        assert report.succeeded == 3 * len(SEED_QUERY_TEMPLATES)

    def test_seed_county_errors(self, ctx, jurisdictions) -> None:
        with pytest.raises(InvalidJurisdictionError):
            seed_county(ctx, " ")
        with pytest.raises(JurisdictionNotFoundError):
            seed_county(ctx, "99999")


# ═══════════════════════════════════════════════════════════════════════
# SEARCH
# ═══════════════════════════════════════════════════════════════════════


class TestSearchProviders:
    def test_parse_duckduckgo_unwraps_redirects(self) -> None:
        results = parse_duckduckgo_html(DDG_HTML)
        assert [r.url for r in results] == [ACCELA, "https://www.austintexas.gov/department/permits"]
        assert results[0].title == "Austin Accela Citizen Access"
        assert results[0].snippet == "Apply for building permits online."

    def test_duckduckgo_search_over_mock_transport(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            return httpx.Response(200, text=DDG_HTML)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        results = DuckDuckGoSearch(client, attempts=1).search("austin permits")
        assert results[0].url == ACCELA

    def test_duckduckgo_server_error_is_transient(self) -> None:
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(TransientNetworkError):
            DuckDuckGoSearch(client, attempts=1).search("q")

    def test_busy_provider_is_retried(self) -> None:
        answers = iter([httpx.Response(503), httpx.Response(200, text=DDG_HTML)])
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return next(answers)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        results = DuckDuckGoSearch(client, attempts=2).search("austin permits")

        assert len(requests) == 2
        assert results[0].url == ACCELA

    def test_rejected_request_is_not_retried(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(403)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientNetworkError):
            TavilySearch(client, "key", attempts=3).search("q")
        assert len(requests) == 1

    def test_unexpected_json_shape_is_a_provider_error(self) -> None:
        client = httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"]))
        )
        with pytest.raises(ProviderResponseError):
            SerpApiSearch(client, "key", attempts=1).search("q")

    def test_fallback_skips_unreadable_body(self, search) -> None:
        client = httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        )
        search.default = [SearchResult(url=ACCELA)]

        provider = FallbackSearchProvider([TavilySearch(client, "key", attempts=1), search])

        assert provider.search("q")[0].url == ACCELA
        assert search.queries == ["q"]

    def test_fallback_uses_next_provider(self, search) -> None:
        broken = type(search)()
        broken.name = "broken"
        broken.error = TransientNetworkError("down")
        search.default = [SearchResult(url=ACCELA)]

        provider = FallbackSearchProvider([broken, search])

        assert provider.search("q")[0].url == ACCELA

    def test_fallback_raises_only_when_nobody_answered(self, search) -> None:
        search.error = TransientNetworkError("down")
        with pytest.raises(TransientNetworkError):
            FallbackSearchProvider([search]).search("q")

        empty = type(search)()
        assert FallbackSearchProvider([empty]).search("q") == []


class TestSearchWorker:
    def test_sweep_logs_candidates_and_proposes_best(self, ctx, fetcher, search, store, jurisdictions) -> None:
        seed_county(ctx, jurisdictions["county"])
        fetcher.add_page(ACCELA)
        search.default = [
            SearchResult(url="https://www.example.com/"),
            SearchResult(url=ACCELA),
        ]

        report = SearchWorker(ctx).sweep(limit=1)

        assert (report.processed, report.succeeded) == (1, 1)
        job_id = report.details[0]["job_id"]
        geoid = next(j.jurisdiction_geoid for j in _all_jobs(store, jurisdictions) if j.id == job_id)
        candidates = store.candidates_for([geoid])
        assert [(c.url_found, c.source) for c in candidates] == [(ACCELA, CandidateSource.SEARCH)]

        record = store.records_for(geoid)[0]
        assert record.portal_url == ACCELA
        assert record.submission_method is SubmissionMethod.ONLINE
        assert record.verified is False

    def test_failed_job_is_marked_error_and_retryable(self, ctx, search, store, jurisdictions) -> None:
        seed_county(ctx, jurisdictions["county"])
        search.error = TransientNetworkError("search down")

        report = SearchWorker(ctx).sweep(limit=2)

        assert report.failed == 2
        errored = [j for j in _all_jobs(store, jurisdictions) if j.status is JobStatus.ERROR]
        assert len(errored) == 2 and all(j.attempt_count == 1 for j in errored)

        search.error = None
        retry = SearchWorker(ctx).sweep(limit=50, include_errors=True)
        assert retry.failed == 0

    def test_max_attempts_stops_retries(self, ctx, settings, search, store, jurisdictions) -> None:
        settings.max_job_attempts = 1
        seed_county(ctx, jurisdictions["county"])
        search.error = TransientNetworkError("search down")
        total = 3 * len(SEED_QUERY_TEMPLATES)

        SearchWorker(ctx).sweep(limit=total)
        again = SearchWorker(ctx).sweep(limit=total, include_errors=True)

        assert again.processed == 0

    def test_needs_a_provider(self, ctx) -> None:
        ctx.search = None
        with pytest.raises(PortalDiscoveryError):
            SearchWorker(ctx)


# ═══════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════


class TestEndpoints:
    @pytest.mark.parametrize("url, vendor", [
        ("https://aca-prod.accela.com/AUSTIN/", EndpointVendor.ACCELA),
        ("https://city.org/CitizenAccess/Default.aspx", EndpointVendor.ACCELA),
        ("https://x-energovpub.tylerhost.net/apps/selfservice/", EndpointVendor.ENERGOV),
        ("https://city.tylertech.com/", EndpointVendor.TYLER),
        ("https://permits.city.org/eTRAKiT/", EndpointVendor.ETRAKIT),
        ("https://app.cloudpermit.com/", EndpointVendor.CLOUDPERMIT),
        ("https://city.org/forms/permit.pdf", EndpointVendor.PDF),
        ("https://www.austintexas.gov/permits", EndpointVendor.GOV_PAGE),
        ("https://www.ci.example.tx.us/permits", EndpointVendor.GOV_PAGE),
    ])
    def test_classify(self, url, vendor) -> None:
        assert classify_endpoint(url) is vendor

    def test_uncrawlable(self) -> None:
        assert classify_endpoint("https://www.example.com/") is None
        assert classify_endpoint("") is None

    def test_detect_county_endpoints(self, ctx, store, jurisdictions) -> None:
        store.add_candidate(jurisdictions["austin"], ACCELA, CandidateSource.SEARCH)
        store.add_candidate(jurisdictions["austin"], ACCELA, CandidateSource.AI_MINI)
        store.add_candidate(jurisdictions["pflugerville"], "https://www.example.com/", CandidateSource.SEARCH)
        store.add_candidate(jurisdictions["county"], "https://www.traviscountytx.gov/fees.pdf", CandidateSource.SEARCH)

        report = detect_county_endpoints(ctx, jurisdictions["county"])
        again = detect_county_endpoints(ctx, jurisdictions["county"])

        assert report.processed == 4
        assert report.succeeded == 2
        assert again.succeeded == 0
        vendors = {e.url: e.vendor for e in store.list_endpoints()}
        assert vendors == {ACCELA: EndpointVendor.ACCELA, "https://www.traviscountytx.gov/fees.pdf": EndpointVendor.PDF}


# ═══════════════════════════════════════════════════════════════════════
# CRAWL + FRESHNESS
# ═══════════════════════════════════════════════════════════════════════


class TestCrawl:
    def test_interactive_vendor_is_rendered(self, ctx, store, storage, renderer, jurisdictions) -> None:
        endpoint = _endpoint(store, jurisdictions["austin"], ACCELA, EndpointVendor.ACCELA)

        snapshot = CrawlWorker(ctx).crawl(endpoint)

        assert renderer.rendered == [ACCELA]
        assert storage.load(snapshot.snapshot_url) == renderer.html.encode("utf-8")
        assert store.list_endpoints(jurisdictions["austin"])[0].status is EndpointStatus.CRAWLED

    def test_pdf_is_fetched_as_bytes(self, ctx, store, fetcher, storage, jurisdictions) -> None:
        url = "https://www.austintexas.gov/fees.pdf"
        fetcher.add_bytes(url, b"%PDF-1.4 fake")
        endpoint = _endpoint(store, jurisdictions["austin"], url, EndpointVendor.PDF)

        snapshot = CrawlWorker(ctx).crawl(endpoint)

        assert snapshot.snapshot_url.startswith("pdfs/")
        assert storage.load(snapshot.snapshot_url) == b"%PDF-1.4 fake"

    def test_failure_marks_endpoint_error(self, ctx, store, jurisdictions) -> None:
        url = "https://www.austintexas.gov/missing"
        _endpoint(store, jurisdictions["austin"], url, EndpointVendor.GOV_PAGE)

        report = CrawlWorker(ctx).sweep()

        assert report.failed == 1
        endpoint = store.list_endpoints(jurisdictions["austin"])[0]
        assert endpoint.status is EndpointStatus.ERROR
        assert "404" in endpoint.last_error

    def test_freshness_detects_change(self, ctx, store, fetcher, jurisdictions) -> None:
        url = "https://www.austintexas.gov/permits"
        fetcher.add_page(url, body="<p>Permit fees v1</p>")
        endpoint = _endpoint(store, jurisdictions["austin"], url, EndpointVendor.GOV_PAGE)
        worker = CrawlWorker(ctx)

        worker.crawl(endpoint)
        assert update_freshness(ctx, endpoint).changed is False

        fetcher.add_page(url, body="<p>Permit fees v2</p>")
        worker.crawl(endpoint)
        report = update_freshness(ctx, endpoint)

        assert report.changed is True
        assert report.freshness_score == 100

    def test_stale_endpoint_is_crawled_again(self, ctx, store, fetcher, jurisdictions) -> None:
        url = "https://www.austintexas.gov/permits"
        fetcher.add_page(url, body="<p>Permit fees v1</p>")
        endpoint = _endpoint(store, jurisdictions["austin"], url, EndpointVendor.GOV_PAGE)
        worker = CrawlWorker(ctx)

        assert worker.sweep().succeeded == 1
        assert worker.sweep().processed == 0

        fetcher.add_page(url, body="<p>Permit fees v2</p>")
        with store.transaction() as session:
            session.execute(
                update(PortalEndpoint)
                .where(PortalEndpoint.id == endpoint.id)
                .values(last_checked_at=utcnow() - timedelta(days=ctx.settings.recrawl_after_days + 1))
            )

        assert worker.sweep().succeeded == 1
        assert len(store.latest_snapshots(endpoint, 5)) == 2
        assert update_freshness(ctx, endpoint).changed is True

    def test_recrawl_disabled(self, ctx, store, fetcher, jurisdictions) -> None:
        ctx.settings.recrawl_after_days = 0
        url = "https://www.austintexas.gov/permits"
        fetcher.add_page(url)
        endpoint = _endpoint(store, jurisdictions["austin"], url, EndpointVendor.GOV_PAGE)
        CrawlWorker(ctx).sweep()
        with store.transaction() as session:
            session.execute(
                update(PortalEndpoint)
                .where(PortalEndpoint.id == endpoint.id)
                .values(last_checked_at=utcnow() - timedelta(days=365))
            )

        assert CrawlWorker(ctx).sweep().processed == 0

    def test_freshness_decays_with_age(self, ctx, store, fetcher, jurisdictions) -> None:
        url = "https://www.austintexas.gov/permits"
        fetcher.add_page(url)
        endpoint = _endpoint(store, jurisdictions["austin"], url, EndpointVendor.GOV_PAGE)
        snapshot = CrawlWorker(ctx).crawl(endpoint)

        report = update_freshness(ctx, endpoint, now=snapshot.created_at + timedelta(days=3))
        assert report.freshness_score == 85

    def test_freshness_score_floor(self) -> None:
        assert freshness_score(0) == 100
        assert freshness_score(20) == 0
        assert freshness_score(400) == 0

    def test_never_crawled_endpoint_is_stale(self, ctx, store, jurisdictions) -> None:
        _endpoint(store, jurisdictions["austin"], ACCELA, EndpointVendor.ACCELA)
        report = freshness_sweep(ctx)
        assert report.details[0]["freshness_score"] == 0
        assert report.details[0]["latest_hash"] is None


# ═══════════════════════════════════════════════════════════════════════
# PARSE
# ═══════════════════════════════════════════════════════════════════════


class TestParse:
    def _crawled(self, ctx, store, fetcher, jurisdictions, url="https://www.austintexas.gov/permits"):
        fetcher.add_page(url)
        endpoint = _endpoint(store, jurisdictions["austin"], url, EndpointVendor.GOV_PAGE)
        return CrawlWorker(ctx).crawl(endpoint)

    def test_parse_stores_every_collection(self, ctx, store, fetcher, extractor, jurisdictions) -> None:
        snapshot = self._crawled(ctx, store, fetcher, jurisdictions)

        report = ParseWorker(ctx).sweep()

        assert report.succeeded == 1
        assert report.details[0]["items"] == 3
        items = store.parsed_items(snapshot.id)
        assert {i.collection for i in items} == {"permit_types", "fees", "contacts"}
        fee = next(i for i in items if i.collection == "fees")
        assert fee.data["amount"] == "150"
        assert extractor.calls[0] == {"vendor": "gov_page", "url": snapshot.url, "geoid": jurisdictions["austin"]}
        assert store.unparsed_snapshots(10) == []

    def test_pdf_goes_through_text_extractor(self, ctx, store, fetcher, extractor, jurisdictions) -> None:
        url = "https://www.austintexas.gov/fees.pdf"
        fetcher.add_bytes(url, b"%PDF-1.4 fake")
        CrawlWorker(ctx).crawl(_endpoint(store, jurisdictions["austin"], url, EndpointVendor.PDF))

        ParseWorker(ctx).sweep()

        assert extractor.calls[0]["vendor"] == "pdf"

    def test_failed_parse_stays_unparsed(self, ctx, store, fetcher, extractor, jurisdictions) -> None:
        snapshot = self._crawled(ctx, store, fetcher, jurisdictions)
        extractor.error = ExtractionError("model returned garbage")

        report = ParseWorker(ctx).sweep()

        assert report.failed == 1
        pending = store.unparsed_snapshots(10)
        assert [s.id for s in pending] == [snapshot.id]
        assert pending[0].last_error == "model returned garbage"
        assert store.parsed_items(snapshot.id) == []

    def test_needs_an_extractor(self, ctx) -> None:
        ctx.extractor = None
        with pytest.raises(PortalDiscoveryError):
            ParseWorker(ctx)


# ═══════════════════════════════════════════════════════════════════════
# WORKER POOL + PIPELINE
# ═══════════════════════════════════════════════════════════════════════


class TestRunBounded:
    def test_failures_do_not_stop_the_batch(self) -> None:
        def work(n: int) -> int:
            if n == 2:
                raise ValueError("boom")
            return n * 10

        results = {item: (result, error) for item, result, error in run_bounded(work, [1, 2, 3], concurrency=3)}

        assert results[1] == (10, None)
        assert results[3] == (30, None)
        assert isinstance(results[2][1], ValueError)

    def test_inline_preserves_order(self) -> None:
        assert [item for item, _, _ in run_bounded(str, [3, 1, 2])] == [3, 1, 2]


class TestPipeline:
    def test_reprocess_forces_every_jurisdiction(self, ctx, oracle, jurisdictions) -> None:
        report = PortalPipeline(ctx).sweep(SweepKind.REPROCESS, limit=2, offset=1)

        assert report.processed == 2
        assert [d["geoid"] for d in report.details] == [jurisdictions["county"], jurisdictions["pflugerville"]]
        assert report.details[0]["status"] == "none"

    def test_seed_then_search_sweep(self, ctx, fetcher, search, store, jurisdictions) -> None:
        pipeline = PortalPipeline(ctx)
        fetcher.add_page(ACCELA)
        search.default = [SearchResult(url=ACCELA)]

        pipeline.seed(jurisdictions["county"])
        report = pipeline.sweep("search", limit=100)

        assert report.succeeded == 3 * len(SEED_QUERY_TEMPLATES)
        assert store.jobs_for(jurisdictions["austin"], JobStatus.PENDING) == []
