"""Pytest configuration: in-memory store and fake collaborators, no network."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Union

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from permit_portal.config import Settings  # noqa: E402
from permit_portal.context import PipelineContext  # noqa: E402
from permit_portal.db import create_db_engine, create_session_factory, init_db  # noqa: E402
from permit_portal.exceptions import TransientNetworkError  # noqa: E402
from permit_portal.models import (  # noqa: E402
    FetchResponse,
    OracleAnswer,
    OracleTier,
    PermitExtraction,
    SearchResult,
)
from permit_portal.store import PortalStore  # noqa: E402

PORTAL_HTML = (
    "<html><body><h1>Citizen Self-Service Permit Portal</h1>"
    "<p>Contractors can apply for a building permit, submit plans for plan review "
    "and login to track inspections.</p></body></html>"
)


# ─── Fakes ───────────────────────────────────────────────────────────


class FakeFetcher:
    """Canned responses keyed by URL; anything unknown is a 404."""

    def __init__(self) -> None:
        self.pages: dict[str, Union[FetchResponse, Exception]] = {}
        self.dead_hosts: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def add_page(self, url: str, body: str = PORTAL_HTML, status: int = 200,
                 content_type: str = "text/html; charset=utf-8") -> None:
        self.pages[url] = FetchResponse(
            status=status, headers={"Content-Type": content_type}, body=body.encode("utf-8"), url=url,
        )

    def add_bytes(self, url: str, data: bytes, content_type: str = "application/pdf") -> None:
        self.pages[url] = FetchResponse(status=200, headers={"Content-Type": content_type}, body=data, url=url)

    def fail(self, url: str, message: str = "connection reset") -> None:
        self.pages[url] = TransientNetworkError(message, {"url": url})

    def fetch(self, url: str, method: str = "GET") -> FetchResponse:
        self.calls.append((method, url))
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return FetchResponse(status=404, headers={"Content-Type": "text/html"}, body=b"", url=url)
        if method == "HEAD":
            return page.model_copy(update={"body": b""})
        return page

    def resolve_host(self, host: str) -> bool:
        return host not in self.dead_hosts


class FakeOracle:
    """Scripted answers per tier; records every call."""

    def __init__(self) -> None:
        self.answers: dict[OracleTier, Union[OracleAnswer, Exception]] = {}
        self.calls: list[OracleTier] = []

    def set(self, tier: OracleTier, url: Optional[str] = None, confidence: float = 0.0, notes: str = "") -> None:
        self.answers[tier] = OracleAnswer(url=url, confidence=confidence, notes=notes)

    def raise_on(self, tier: OracleTier, error: Exception) -> None:
        self.answers[tier] = error

    def query(self, prompt: str, tier: OracleTier) -> OracleAnswer:
        self.calls.append(tier)
        answer = self.answers.get(tier, OracleAnswer())
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeSearch:
    name = "fake"

    def __init__(self) -> None:
        self.results: dict[str, list[SearchResult]] = {}
        self.default: list[SearchResult] = []
        self.error: Optional[Exception] = None
        self.queries: list[str] = []

    def search(self, query: str) -> list[SearchResult]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.results.get(query, self.default)


class FakeRenderer:
    def __init__(self, html: str = PORTAL_HTML) -> None:
        self.html = html
        self.rendered: list[str] = []

    def render(self, url: str) -> str:
        self.rendered.append(url)
        return self.html


class FakeStorage:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    def save(self, key: str, data: bytes, content_type: str) -> str:
        ref = f"{'pdfs' if 'pdf' in content_type else 'html'}/{key}.{'pdf' if 'pdf' in content_type else 'html'}"
        self.blobs[ref] = data
        return ref

    def load(self, ref: str) -> bytes:
        return self.blobs[ref]


class FakePdfExtractor:
    def __init__(self, text: str = "Building permit application. Fee schedule attached.") -> None:
        self.text = text

    def extract(self, data: bytes) -> str:
        return self.text


class FakeExtractor:
    def __init__(self, payload: Optional[dict] = None) -> None:
        self.payload = payload or {
            "permit_types": [{"name": "Residential Building", "category": "building"}],
            "fees": [{"fee_name": "Plan review", "amount": 150}],
            "contacts": [{"department": "Building Services", "phone": "555-0100"}],
        }
        self.calls: list[dict] = []
        self.error: Optional[Exception] = None

    def extract(self, text: str, metadata: dict) -> PermitExtraction:
        self.calls.append(metadata)
        if self.error is not None:
            raise self.error
        return PermitExtraction.model_validate(self.payload)


# ─── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _no_llm_calls(monkeypatch: pytest.MonkeyPatch):
    """Prevent real LLM API calls during tests."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        openai_api_key=None,
        cheap_model="gpt-4o-mini",
        expensive_model="gpt-4.1",
        confidence_threshold=0.70,
        daily_ai_cap=30,
        search_batch_size=10,
        crawl_batch_size=10,
        parse_batch_size=3,
        verifier_batch_size=10,
        concurrency=1,
        max_job_attempts=None,
        recrawl_after_days=7,
        http_timeout=5.0,
        retry_attempts=1,
        user_agent="test-agent",
        tavily_api_key=None,
        serpapi_key=None,
        snapshot_dir="snapshots",
    )


@pytest.fixture
def store() -> PortalStore:
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield PortalStore(create_session_factory(engine))
    engine.dispose()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def ctx(settings, store, fetcher, oracle, search, storage, extractor, renderer) -> PipelineContext:
    return PipelineContext(
        settings=settings,
        store=store,
        fetcher=fetcher,
        oracle=oracle,
        search=search,
        renderer=renderer,
        pdf_extractor=FakePdfExtractor(),
        extractor=extractor,
        storage=storage,
    )


@pytest.fixture
def jurisdictions(store: PortalStore) -> dict[str, str]:
    """A county with two places; returns geoid by short name."""
    store.add_jurisdictions([
        {"geoid": "48453", "name": "Travis County", "level": "county", "statefp": "48",
         "homepage_url": "https://www.traviscountytx.gov/"},
        {"geoid": "4805000", "name": "Austin", "level": "place", "statefp": "48",
         "county_geoid": "48453", "homepage_url": "https://www.austintexas.gov/"},
        {"geoid": "4856348", "name": "Pflugerville", "level": "place", "statefp": "48",
         "county_geoid": "48453", "homepage_url": "https://www.pflugervilletx.gov/"},
    ])
    return {"county": "48453", "austin": "4805000", "pflugerville": "4856348"}
