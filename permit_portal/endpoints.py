"""
Endpoint classification: candidates worth crawling, per county.
"""

from __future__ import annotations

import logging
from typing import Optional

from .context import PipelineContext
from .exceptions import InvalidJurisdictionError, JurisdictionNotFoundError
from .models import EndpointVendor, SweepReport
from .offline import is_pdf_url
from .vendors import ENDPOINT_VENDOR_RULES

logger = logging.getLogger(__name__)

_GOV_MARKERS = (".gov", ".us")


def classify_endpoint(url: str) -> Optional[EndpointVendor]:
    """Coarse crawl vendor for a URL, or None if it is not worth crawling."""
    lower = (url or "").lower()
    if not lower:
        return None

    for vendor, markers in ENDPOINT_VENDOR_RULES:
        if any(marker in lower for marker in markers):
            return vendor

    if is_pdf_url(lower):
        return EndpointVendor.PDF
    if any(marker in lower for marker in _GOV_MARKERS):
        return EndpointVendor.GOV_PAGE
    return None


def detect_county_endpoints(ctx: PipelineContext, county_geoid: str) -> SweepReport:
    """Upsert a PortalEndpoint for every crawlable candidate under a county."""
    if not county_geoid or not county_geoid.strip():
        raise InvalidJurisdictionError("county geoid is required")

    members = ctx.store.county_members(county_geoid.strip())
    if not members:
        raise JurisdictionNotFoundError(f"No jurisdictions under county {county_geoid}")

    candidates = ctx.store.candidates_for([j.geoid for j in members])

    rows: list[dict] = []
    seen: set[tuple[str, str]] = set()
    for candidate in candidates:
        vendor = classify_endpoint(candidate.url_found)
        key = (candidate.jurisdiction_geoid, candidate.url_found)
        if vendor is None or key in seen:
            continue
        seen.add(key)
        rows.append({"jurisdiction_geoid": candidate.jurisdiction_geoid, "url": candidate.url_found, "vendor": vendor})

    inserted = ctx.store.upsert_endpoints(rows)
    logger.info(
        "County %s: %d candidates, %d crawlable, %d new endpoints",
        county_geoid, len(candidates), len(rows), inserted,
    )
    return SweepReport(
        kind="endpoints",
        processed=len(candidates),
        succeeded=inserted,
        details=[{"county_geoid": county_geoid, "crawlable": len(rows)}],
    )
