"""
FastAPI endpoint tests for the Permit Portal Resolver API.

Uses httpx + FastAPI TestClient, with no real server and no LLM calls.
The pipeline is wired to the in-memory fakes from conftest.
"""

from __future__ import annotations

import api
import pytest
from api import app
from fastapi.testclient import TestClient

from permit_portal.models import MetaProposal, OracleTier, SubmissionMethod
from permit_portal.pipeline import PortalPipeline

client = TestClient(app)

PORTAL = "https://aca-prod.accela.com/AUSTIN/"


@pytest.fixture(autouse=True)
def _pipeline(ctx):
    """Point the API at a pipeline over fakes (bypasses lifespan)."""
    api._pipeline = PortalPipeline(ctx)
    yield api._pipeline
    api._pipeline = None


@pytest.fixture
def proposed(_pipeline, jurisdictions):
    return _pipeline.resolver.propose(
        MetaProposal(
            geoid=jurisdictions["austin"], portal_url=PORTAL, vendor_type="Accela",
            submission_method=SubmissionMethod.ONLINE,
        )
    )


class TestHealthEndpoint:
    def test_health_returns_200(self) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200

    def test_health_response_shape(self) -> None:
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert data["oracle_configured"] is True

    def test_health_before_startup(self) -> None:
        api._pipeline = None
        assert client.get("/health").status_code == 503


class TestResolveEndpoint:
    def test_resolves_cheap_tier(self, fetcher, oracle, jurisdictions) -> None:
        fetcher.add_page(PORTAL)
        oracle.set(OracleTier.CHEAP, PORTAL, 0.9)

        resp = client.post(f"/jurisdictions/{jurisdictions['austin']}/resolve")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "cheap"
        assert data["portal_url"] == PORTAL
        assert data["vendor_type"] == "Accela"
        assert data["submission_method"] == "online"

    def test_second_call_hits_cache(self, fetcher, oracle, jurisdictions) -> None:
        fetcher.add_page(PORTAL)
        oracle.set(OracleTier.CHEAP, PORTAL, 0.9)
        url = f"/jurisdictions/{jurisdictions['austin']}/resolve"

        client.post(url)
        data = client.post(url).json()

        assert data["status"] == "cache"
        assert oracle.calls == [OracleTier.CHEAP]

    def test_force_refresh_body(self, fetcher, oracle, jurisdictions) -> None:
        fetcher.add_page(PORTAL)
        oracle.set(OracleTier.CHEAP, PORTAL, 0.9)
        url = f"/jurisdictions/{jurisdictions['austin']}/resolve"

        client.post(url)
        data = client.post(url, json={"force_refresh": True}).json()

        assert data["status"] == "cheap"

    def test_unknown_jurisdiction_is_404(self, jurisdictions) -> None:
        resp = client.post("/jurisdictions/0000000/resolve")
        assert resp.status_code == 404
        assert resp.json()["error"] == "JURISDICTION_NOT_FOUND"


class TestReviewEndpoints:
    def test_list_pending(self, proposed) -> None:
        data = client.get("/review").json()
        assert [r["id"] for r in data["records"]] == [proposed.id]
        assert data["limit"] == 50

    def test_approve(self, proposed, store, jurisdictions) -> None:
        resp = client.post(f"/review/{proposed.id}/approve", json={"notes": "looks right"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["action"] == "approved"
        assert data["record"]["verified"] is True
        assert store.get_jurisdiction(jurisdictions["austin"]).portal_url == PORTAL

    def test_approve_without_body(self, proposed) -> None:
        assert client.post(f"/review/{proposed.id}/approve").status_code == 200

    def test_reject_with_manual_info(self, proposed) -> None:
        manual = "https://www.austintexas.gov/permits"
        data = client.post(f"/review/{proposed.id}/reject", json={"manual_info_url": manual}).json()

        assert data["action"] == "offline_confirmed"
        assert data["record"]["submission_method"] == "offline_only"
        assert data["record"]["manual_info_url"] == manual

    def test_unknown_record_is_404(self) -> None:
        resp = client.post("/review/4242/approve")
        assert resp.status_code == 404
        assert resp.json()["error"] == "RECORD_NOT_FOUND"


class TestBatchEndpoints:
    def test_seed_county(self, jurisdictions) -> None:
        data = client.post("/seed", json={"county_geoid": jurisdictions["county"]}).json()
        assert data["kind"] == "seed"
        assert data["succeeded"] > 0

    def test_verify_sweep(self, fetcher, proposed) -> None:
        fetcher.add_page(PORTAL)
        data = client.post("/sweeps/verify", json={"limit": 5}).json()
        assert (data["processed"], data["succeeded"]) == (1, 1)

    def test_unknown_sweep_kind(self) -> None:
        assert client.post("/sweeps/teleport").status_code == 422

    def test_county_endpoints_404(self) -> None:
        assert client.post("/counties/99999/endpoints").status_code == 404


class TestDashboardEndpoints:
    def test_usage(self) -> None:
        data = client.get("/dashboard/usage").json()
        assert data == {"today": 0, "limit": 30, "remaining": 30, "last14": []}

    def test_recent(self, proposed) -> None:
        data = client.get("/dashboard/recent").json()
        assert data["vendor_breakdown"] == {"Accela": 1}
        assert data["rows"][0]["name"] == "Austin"

    def test_pending(self, jurisdictions) -> None:
        assert client.get("/dashboard/pending").json() == {"count": 3}
