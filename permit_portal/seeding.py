"""
Seeding: turn jurisdictions into pending search-queue jobs.
"""

from __future__ import annotations

import logging
from typing import Optional

from .context import PipelineContext
from .db import Jurisdiction
from .exceptions import InvalidJurisdictionError, JurisdictionNotFoundError
from .models import SweepReport
from .vendors import REDISCOVERY_QUERY_TEMPLATE, SEED_QUERY_TEMPLATES

logger = logging.getLogger(__name__)

# Census state FIPS code → USPS abbreviation.
STATE_POSTAL_CODES: dict[str, str] = {
    "01": "AL", "02": "AK", "04": "AZ", "05": "AR", "06": "CA", "08": "CO", "09": "CT",
    "10": "DE", "11": "DC", "12": "FL", "13": "GA", "15": "HI", "16": "ID", "17": "IL",
    "18": "IN", "19": "IA", "20": "KS", "21": "KY", "22": "LA", "23": "ME", "24": "MD",
    "25": "MA", "26": "MI", "27": "MN", "28": "MS", "29": "MO", "30": "MT", "31": "NE",
    "32": "NV", "33": "NH", "34": "NJ", "35": "NM", "36": "NY", "37": "NC", "38": "ND",
    "39": "OH", "40": "OK", "41": "OR", "42": "PA", "44": "RI", "45": "SC", "46": "SD",
    "47": "TN", "48": "TX", "49": "UT", "50": "VT", "51": "VA", "53": "WA", "54": "WV",
    "55": "WI", "56": "WY", "72": "PR",
}


def state_label(statefp: Optional[str]) -> str:
    if not statefp:
        return ""
    code = statefp.strip()
    return STATE_POSTAL_CODES.get(code.zfill(2), code) if code.isdigit() else code


def render_query(template: str, jurisdiction: Jurisdiction) -> str:
    query = template.format(name=jurisdiction.name, state=state_label(jurisdiction.statefp))
    return " ".join(query.split())


def build_queries(jurisdiction: Jurisdiction) -> list[str]:
    return [render_query(template, jurisdiction) for template in SEED_QUERY_TEMPLATES]


def rediscovery_query(jurisdiction: Jurisdiction) -> str:
    return render_query(REDISCOVERY_QUERY_TEMPLATE, jurisdiction)


def _job_rows(jurisdictions: list[Jurisdiction]) -> list[dict]:
    return [
        {
            "jurisdiction_geoid": j.geoid,
            "jurisdiction_name": j.name,
            "jurisdiction_type": j.level,
            "query": query,
        }
        for j in jurisdictions
        for query in build_queries(j)
    ]


def seed_county(ctx: PipelineContext, county_geoid: str) -> SweepReport:
    """Queue every template for a county and its member places."""
    if not county_geoid or not county_geoid.strip():
        raise InvalidJurisdictionError("county geoid is required")

    members = ctx.store.county_members(county_geoid.strip())
    if not members:
        raise JurisdictionNotFoundError(f"No jurisdictions under county {county_geoid}")

    rows = _job_rows(members)
    inserted = ctx.store.enqueue_jobs(rows)
    logger.info("Seeded %d new jobs (%d skipped) for county %s", inserted, len(rows) - inserted, county_geoid)

    return SweepReport(
        kind="seed",
        processed=len(rows),
        succeeded=inserted,
        details=[{"county_geoid": county_geoid, "jurisdictions": len(members)}],
    )


def seed_all(ctx: PipelineContext, page_size: int = 500, level: Optional[str] = None) -> SweepReport:
    """Queue every template for every jurisdiction, a page at a time."""
    report = SweepReport(kind="seed")
    offset = 0
    while True:
        page = ctx.store.list_jurisdictions(offset=offset, limit=page_size, level=level)
        if not page:
            break
        rows = _job_rows(page)
        report.processed += len(rows)
        report.succeeded += ctx.store.enqueue_jobs(rows)
        offset += len(page)

    logger.info("Seeded %d new jobs out of %d generated", report.succeeded, report.processed)
    return report
