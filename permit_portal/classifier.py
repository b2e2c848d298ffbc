"""
URL classification: validity, canonical vendor, and liveness/content probes.

The first three functions are pure: no network, no side effects, same answer
every time. Only the two probe_* functions touch the network, and they do it
through the injected PageFetcher so tests can hand them canned responses.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from .exceptions import TransientNetworkError
from .vendors import (
    CITYVIEW_HOST_MARKER,
    HTML_VENDOR_MARKERS,
    KNOWN_VENDOR_MARKERS,
    MUNICIPAL_VENDOR,
    PORTAL_PROBE_CHARS,
    PORTAL_PROBE_KEYWORDS,
    PORTAL_PROBE_MIN_HITS,
    TYLER_IDENTITY_HOSTS,
    UNKNOWN_VENDOR,
    VENDOR_PRECEDENCE,
)

if TYPE_CHECKING:
    from .context import PageFetcher

logger = logging.getLogger(__name__)

_CALLBACK_SUFFIX = re.compile(r"/callback.*", re.IGNORECASE)
_CITYVIEW_LOGON = re.compile(r"/Account/Logon.*", re.IGNORECASE)


# ─── Pure Classification ─────────────────────────────────────────────


def validate_url(url: str | None) -> str | None:
    """Return the URL if it could plausibly be a permit portal, else None.

    Accepted: an http(s) URL whose host contains a dot and either ends in
    ``.gov`` or contains a known vendor marker anywhere in the URL. Unknown
    commercial domains are rejected even when well-formed.
    """
    if not url or not isinstance(url, str):
        return None

    cleaned = url.strip()
    parsed = urlparse(cleaned)
    if parsed.scheme not in ("http", "https"):
        return None

    host = (parsed.hostname or "").lower()
    if "." not in host:
        return None

    if host.endswith(".gov"):
        return cleaned

    lower = cleaned.lower()
    if any(marker in lower for marker in KNOWN_VENDOR_MARKERS):
        return cleaned

    return None


def detect_vendor(url: str | None) -> str:
    """Map a URL onto a vendor tag using the ordered precedence table."""
    if not url:
        return UNKNOWN_VENDOR

    lower = url.lower()
    for tag, markers in VENDOR_PRECEDENCE:
        if any(marker in lower for marker in markers):
            return tag

    host = (urlparse(lower).hostname or "").lower()
    if host.endswith(".gov"):
        return MUNICIPAL_VENDOR

    return UNKNOWN_VENDOR


def normalize_vendor_redirect(url: str | None) -> str | None:
    """Collapse a Tyler identity-provider OAuth redirect to the portal it protects.

    Example:
        https://identity.tylerportico.com/oauth2/...?redirect_uri=https://x-energovpub.tylerhost.net/apps/selfservice/callback
        → https://x-energovpub.tylerhost.net/apps/selfservice/

    Returns None for anything that is not such a redirect.
    """
    if not url:
        return None

    try:
        parsed = urlparse(url)
    except ValueError:
        return None

    host = (parsed.hostname or "").lower()
    if not any(identity in host for identity in TYLER_IDENTITY_HOSTS):
        return None

    params = parse_qs(parsed.query)
    redirect = (params.get("redirect_uri") or params.get("redirect") or [None])[0]
    if not redirect:
        return None

    try:
        target = urlparse(redirect)
    except ValueError:
        return None
    if not target.scheme or not target.netloc:
        return None

    path = _CALLBACK_SUFFIX.sub("/", target.path)
    return f"{target.scheme}://{target.netloc}{path}"


def normalize_candidate(url: str | None) -> str | None:
    """Apply every known login-redirect normalization to a raw candidate URL."""
    if not url:
        return None

    candidate = url.strip()
    redirected = normalize_vendor_redirect(candidate)
    if redirected:
        candidate = redirected

    if CITYVIEW_HOST_MARKER in candidate.lower():
        candidate = _CITYVIEW_LOGON.sub("/", candidate)

    return candidate


def detect_vendor_from_html(html: str | None, url: str | None) -> str:
    """Re-detect a vendor from page content, falling back to the URL."""
    if not html:
        return detect_vendor(url)

    lower = html.lower()
    for marker, tag in HTML_VENDOR_MARKERS:
        if marker in lower:
            return tag

    return detect_vendor(url)


def count_keyword_hits(text: str, keywords: tuple[str, ...]) -> int:
    """Number of distinct keywords present in text (case-insensitive)."""
    lower = text.lower()
    return sum(1 for keyword in keywords if keyword in lower)


# ─── Network Probes ──────────────────────────────────────────────────


def probe_liveness(fetcher: PageFetcher, url: str) -> bool:
    """HEAD-style reachability check; any 2xx or 3xx counts as alive."""
    try:
        response = fetcher.fetch(url, method="HEAD")
    except TransientNetworkError as e:
        logger.info("Liveness probe failed for %s: %s", url, e)
        return False
    return 200 <= response.status < 400


def probe_content(fetcher: PageFetcher, url: str) -> bool:
    """Sniff the start of the page for permit-portal vocabulary.

    Requires at least PORTAL_PROBE_MIN_HITS distinct keywords in the first
    PORTAL_PROBE_CHARS characters.
    """
    try:
        response = fetcher.fetch(url, method="GET")
    except TransientNetworkError as e:
        logger.info("Content probe failed for %s: %s", url, e)
        return False

    if not response.ok:
        return False

    snippet = response.text[:PORTAL_PROBE_CHARS]
    return count_keyword_hits(snippet, PORTAL_PROBE_KEYWORDS) >= PORTAL_PROBE_MIN_HITS


def vet_candidate(fetcher: PageFetcher, raw_url: str | None) -> str | None:
    """Normalize, validate and probe a raw URL; the surviving URL or None.

    Validation is deterministic and never retried; only the probes go out
    to the network.
    """
    normalized = normalize_candidate(raw_url)
    valid = validate_url(normalized)
    if not valid:
        return None
    if not probe_liveness(fetcher, valid):
        return None
    if not probe_content(fetcher, valid):
        return None
    return valid
