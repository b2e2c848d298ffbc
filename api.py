"""
Permit Portal Resolver — FastAPI Server
========================================

RESTful API over the portal resolution pipeline.

Endpoints:
    POST /jurisdictions/{geoid}/resolve     Resolve one jurisdiction (interactive path)
    POST /sweeps/{kind}                     Run a batch sweep (search|crawl|parse|verify|freshness|reprocess)
    POST /seed                              Queue search jobs (all jurisdictions or one county)
    POST /counties/{geoid}/endpoints        Classify a county's candidates into crawl endpoints
    GET  /review                            Records awaiting human review
    POST /review/{id}/approve               Approve a record (optional overrides)
    POST /review/{id}/reject                Reject a record (optional overrides)
    GET  /dashboard/usage                   Expensive-tier usage today and for 14 days
    GET  /dashboard/recent                  Recently updated records + vendor breakdown
    GET  /dashboard/pending                 Jurisdictions without an authoritative portal
    GET  /health                            Health check / readiness probe

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production

Docs:
    http://localhost:8000/docs             # Swagger UI (auto-generated)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from permit_portal import __version__
from permit_portal.config import load_settings
from permit_portal.context import build_context
from permit_portal.exceptions import (
    InvalidJurisdictionError,
    InvariantViolationError,
    JurisdictionNotFoundError,
    PortalDiscoveryError,
    RecordNotFoundError,
)
from permit_portal.models import (
    RecordSummary,
    ResolutionResult,
    ReviewOutcome,
    ReviewOverrides,
    SweepReport,
    UsageReport,
)
from permit_portal.pipeline import PortalPipeline, SweepKind
from permit_portal.review import pending_count, recent_activity, usage_report

load_dotenv()


# ─── Application Lifespan (build the pipeline once) ─────────────────

_pipeline: PortalPipeline | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the store and collaborators on startup."""
    global _pipeline  # noqa: PLW0603
    _pipeline = PortalPipeline(build_context(load_settings()))
    yield
    _pipeline = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Permit Portal Resolver API",
    description=(
        "Resolves, for each jurisdiction, how a contractor submits a building "
        "permit application: an online vendor portal, an offline/PDF process, "
        "or unknown. Tiered discovery, automated verification and human review."
    ),
    version=__version__,
    lifespan=lifespan,
)


# ─── Request / Response Schemas ─────────────────────────────────────


class ResolveRequest(BaseModel):
    force_refresh: bool = Field(False, description="Skip the cache and run every tier again.")


class SweepRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000, description="Batch size; defaults to the configured size.")
    offset: int = Field(0, ge=0, description="Start offset (reprocess only).")
    include_errors: bool = Field(False, description="Also re-pick errored jobs (search only).")


class SeedRequest(BaseModel):
    county_geoid: Optional[str] = Field(None, description="Seed one county and its places; omit to seed everything.")


class ReviewList(BaseModel):
    records: list[RecordSummary]
    limit: int
    offset: int


class RecentResponse(BaseModel):
    rows: list[dict[str, Any]]
    vendor_breakdown: dict[str, int]


class PendingResponse(BaseModel):
    count: int


class HealthResponse(BaseModel):
    status: str
    version: str
    oracle_configured: bool


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_pipeline() -> PortalPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _pipeline


_STATUS_FOR_ERROR: dict[type, int] = {
    InvalidJurisdictionError: 400,
    JurisdictionNotFoundError: 404,
    RecordNotFoundError: 404,
    InvariantViolationError: 409,
}


@app.exception_handler(PortalDiscoveryError)
async def _portal_error_handler(request: Request, exc: PortalDiscoveryError) -> JSONResponse:
    status = _STATUS_FOR_ERROR.get(type(exc), 502)
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "message": str(exc), "details": exc.details},
    )


# ─── Interactive Resolution ──────────────────────────────────────────


@app.post(
    "/jurisdictions/{geoid}/resolve",
    summary="Resolve one jurisdiction's permit portal",
    tags=["Resolution"],
    responses={400: {"description": "Missing geoid"}, 404: {"description": "Unknown jurisdiction"}},
)
async def resolve_jurisdiction(geoid: str, request: Optional[ResolveRequest] = None) -> ResolutionResult:
    """Run the tier cascade: cache → offline check → cheap oracle → expensive oracle.

    Returns the tier that produced the answer (**status**), the portal URL,
    vendor and submission method.
    """
    pipeline = _get_pipeline()
    force = request.force_refresh if request else False
    return await asyncio.to_thread(pipeline.resolve, geoid, force)


# ─── Batch Sweeps ────────────────────────────────────────────────────


@app.post("/sweeps/{kind}", summary="Run one batch sweep", tags=["Batch"])
async def run_sweep(kind: SweepKind, request: Optional[SweepRequest] = None) -> SweepReport:
    pipeline = _get_pipeline()
    request = request or SweepRequest()
    return await asyncio.to_thread(
        pipeline.sweep, kind, request.limit, request.offset, request.include_errors
    )


@app.post("/seed", summary="Queue search jobs", tags=["Batch"])
async def seed(request: Optional[SeedRequest] = None) -> SweepReport:
    pipeline = _get_pipeline()
    county = request.county_geoid if request else None
    return await asyncio.to_thread(pipeline.seed, county)


@app.post("/counties/{geoid}/endpoints", summary="Classify a county's crawl endpoints", tags=["Batch"])
async def detect_endpoints(geoid: str) -> SweepReport:
    pipeline = _get_pipeline()
    return await asyncio.to_thread(pipeline.detect_endpoints, geoid)


# ─── Human Review ────────────────────────────────────────────────────


@app.get("/review", summary="Records awaiting review", tags=["Review"])
def list_review(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> ReviewList:
    pipeline = _get_pipeline()
    return ReviewList(records=pipeline.review.list_pending(limit=limit, offset=offset), limit=limit, offset=offset)


@app.post(
    "/review/{record_id}/approve",
    summary="Approve a record",
    tags=["Review"],
    responses={404: {"description": "Unknown record"}},
)
def approve_record(record_id: int, overrides: Optional[ReviewOverrides] = None) -> ReviewOutcome:
    """Mark the record authoritative; every other record for the jurisdiction is invalidated."""
    return _get_pipeline().approve(record_id, overrides)


@app.post(
    "/review/{record_id}/reject",
    summary="Reject a record",
    tags=["Review"],
    responses={404: {"description": "Unknown record"}},
)
def reject_record(record_id: int, overrides: Optional[ReviewOverrides] = None) -> ReviewOutcome:
    """Invalidate the record, or confirm an offline process when `manual_info_url` is given."""
    return _get_pipeline().reject(record_id, overrides)


# ─── Dashboard ───────────────────────────────────────────────────────


@app.get("/dashboard/usage", summary="Expensive-tier usage", tags=["Dashboard"])
def dashboard_usage() -> UsageReport:
    return usage_report(_get_pipeline().ctx)


@app.get("/dashboard/recent", summary="Recently updated records", tags=["Dashboard"])
def dashboard_recent() -> RecentResponse:
    return RecentResponse(**recent_activity(_get_pipeline().ctx))


@app.get("/dashboard/pending", summary="Jurisdictions without a portal", tags=["Dashboard"])
def dashboard_pending() -> PendingResponse:
    return PendingResponse(**pending_count(_get_pipeline().ctx))


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Pipeline not yet initialised"}},
)
def health_check() -> HealthResponse:
    pipeline = _get_pipeline()
    return HealthResponse(
        status="healthy",
        version=__version__,
        oracle_configured=pipeline.ctx.oracle is not None,
    )
