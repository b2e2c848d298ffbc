"""
Network-facing collaborators: page fetching, JS rendering, PDF text and
snapshot storage.

Only transient transport failures (timeouts and dropped connections) are
retried, a fixed number of times with exponential backoff.
Once retries are exhausted the caller sees a TransientNetworkError.
"""

from __future__ import annotations

import hashlib
import io
import logging
import socket
from pathlib import Path

import httpx
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .exceptions import ExtractionError, TransientNetworkError
from .models import FetchResponse

logger = logging.getLogger(__name__)

_TRANSIENT = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def with_retries(attempts: int, func, *args, retry_on: tuple = (), **kwargs):
    """Run ``func`` with bounded exponential backoff on transient httpx errors.

    ``retry_on`` adds exception types the caller also treats as transient,
    such as a server answering 429 or 5xx.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(_TRANSIENT + tuple(retry_on)),
        reraise=False,
    )
    try:
        return retrying(func, *args, **kwargs)
    except RetryError as e:
        cause = e.last_attempt.exception()
        raise TransientNetworkError(f"gave up after {attempts} attempts: {cause}") from cause


# ─── HTTP Fetcher ────────────────────────────────────────────────────


class HttpFetcher:
    """httpx-backed PageFetcher with redirects followed."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self._attempts = settings.retry_attempts
        self._client = client or httpx.Client(
            timeout=settings.http_timeout,
            follow_redirects=True,
            headers={"User-Agent": settings.user_agent},
        )

    def fetch(self, url: str, method: str = "GET") -> FetchResponse:
        try:
            response = with_retries(self._attempts, self._client.request, method, url)
        except httpx.HTTPError as e:
            # Non-transient transport problems (bad URL, TLS) are not worth retrying.
            raise TransientNetworkError(f"{method} {url} failed: {e}", {"url": url}) from e
        except TransientNetworkError as e:
            e.details.setdefault("url", url)
            raise

        return FetchResponse(
            status=response.status_code,
            headers={k: v for k, v in response.headers.items()},
            body=response.content if method.upper() != "HEAD" else b"",
            url=str(response.url),
        )

    def resolve_host(self, host: str) -> bool:
        try:
            socket.getaddrinfo(host, None)
        except (socket.gaierror, UnicodeError) as e:
            logger.info("DNS lookup failed for %s: %s", host, e)
            return False
        return True

    def close(self) -> None:
        self._client.close()


# ─── Rendered Pages ──────────────────────────────────────────────────


class PlaywrightRenderer:
    """Renders JavaScript-driven vendor portals with headless Chromium."""

    def __init__(self, settings: Settings):
        self._timeout_ms = int(settings.http_timeout * 1000)
        self._user_agent = settings.user_agent

    def render(self, url: str) -> str:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright

        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True)
                try:
                    page = browser.new_page(user_agent=self._user_agent)
                    page.goto(url, wait_until="networkidle", timeout=self._timeout_ms)
                    return page.content()
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise TransientNetworkError(f"render of {url} failed: {e}", {"url": url}) from e


# ─── PDF Text ────────────────────────────────────────────────────────


class PdfTextExtractor:
    def extract(self, data: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except (PdfReadError, ValueError) as e:
            raise ExtractionError(f"PDF text extraction failed: {e}") from e
        return "\n".join(pages).strip()


# ─── Snapshot Storage ────────────────────────────────────────────────


class LocalSnapshotStorage:
    """Stores snapshot bytes under ``<root>/html`` and ``<root>/pdfs``."""

    def __init__(self, root: str):
        self._root = Path(root)

    def save(self, key: str, data: bytes, content_type: str) -> str:
        is_pdf = "pdf" in content_type.lower()
        folder = self._root / ("pdfs" if is_pdf else "html")
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{key}.{'pdf' if is_pdf else 'html'}"
        path.write_bytes(data)
        return str(path)

    def load(self, ref: str) -> bytes:
        return Path(ref).read_bytes()
