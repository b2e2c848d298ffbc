"""
Collaborator interfaces and the PipelineContext that carries them.

Every component receives its store, clients and settings through one
explicitly built PipelineContext instead of reaching for module globals.
Tests build a context out of in-memory fakes; production builds one with
``build_context``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .config import Settings
from .models import FetchResponse, OracleAnswer, OracleTier, PermitExtraction, SearchResult
from .store import PortalStore

logger = logging.getLogger(__name__)


# ─── Collaborator Protocols ──────────────────────────────────────────


class PageFetcher(Protocol):
    def fetch(self, url: str, method: str = "GET") -> FetchResponse:
        """Fetch a URL; raises TransientNetworkError after retries are exhausted."""
        ...

    def resolve_host(self, host: str) -> bool:
        """True if the host name resolves in DNS."""
        ...


class PortalOracle(Protocol):
    def query(self, prompt: str, tier: OracleTier) -> OracleAnswer:
        """Ask the LLM for a portal URL; raises OracleQuotaError on rate limits."""
        ...


class SearchProvider(Protocol):
    name: str

    def search(self, query: str) -> list[SearchResult]:
        ...


class PageRenderer(Protocol):
    def render(self, url: str) -> str:
        """Return the HTML of a JavaScript-driven page after it settles."""
        ...


class TextExtractor(Protocol):
    def extract(self, data: bytes) -> str:
        ...


class StructuredExtractor(Protocol):
    def extract(self, text: str, metadata: dict) -> PermitExtraction:
        """Fill the fixed extraction schema; metadata carries vendor, url and geoid."""
        ...


class SnapshotStorage(Protocol):
    def save(self, key: str, data: bytes, content_type: str) -> str:
        """Persist snapshot bytes; returns a storage reference."""
        ...

    def load(self, ref: str) -> bytes:
        ...


# ─── Context ─────────────────────────────────────────────────────────


@dataclass
class PipelineContext:
    """Everything a pipeline component may touch, as named fields."""

    settings: Settings
    store: PortalStore
    fetcher: PageFetcher
    oracle: Optional[PortalOracle] = None
    search: Optional[SearchProvider] = None
    renderer: Optional[PageRenderer] = None
    pdf_extractor: Optional[TextExtractor] = None
    extractor: Optional[StructuredExtractor] = None
    storage: Optional[SnapshotStorage] = None

    @property
    def confidence_threshold(self) -> float:
        return self.settings.confidence_threshold

    @property
    def daily_ai_cap(self) -> int:
        return self.settings.daily_ai_cap


def build_context(settings: Settings) -> PipelineContext:
    """Wire the production collaborators for the given settings."""
    from .db import create_db_engine, create_session_factory, init_db
    from .fetcher import HttpFetcher, LocalSnapshotStorage, PdfTextExtractor, PlaywrightRenderer
    from .oracle import OpenAIPortalOracle, OpenAIStructuredExtractor
    from .search import build_search_provider

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    store = PortalStore(create_session_factory(engine))

    oracle = None
    extractor = None
    if settings.openai_api_key:
        oracle = OpenAIPortalOracle(settings)
        extractor = OpenAIStructuredExtractor(settings)
    else:
        logger.warning("OPENAI_API_KEY not set; oracle tiers and structured extraction disabled")

    return PipelineContext(
        settings=settings,
        store=store,
        fetcher=HttpFetcher(settings),
        oracle=oracle,
        search=build_search_provider(settings),
        renderer=PlaywrightRenderer(settings),
        pdf_extractor=PdfTextExtractor(),
        extractor=extractor,
        storage=LocalSnapshotStorage(settings.snapshot_dir),
    )
