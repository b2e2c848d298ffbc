"""
Pydantic models and closed status enums shared across the pipeline.

Every status that used to be a free-form string is an Enum here, so an
invalid status cannot be written without failing at the boundary.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ─── Status Enums ───────────────────────────────────────────────────


class Tier(str, Enum):
    """Which step of the interactive pipeline produced a resolution."""

    CACHE = "cache"
    OFFLINE = "offline"
    CHEAP = "cheap"
    EXPENSIVE = "expensive"
    NONE = "none"


class CandidateSource(str, Enum):
    """Provenance of a row in the candidate store."""

    CACHE = "cache"
    OFFLINE = "offline"
    AI_MINI = "ai-mini"
    AI_FULL = "ai-full"
    SEARCH = "search"


class SubmissionMethod(str, Enum):
    ONLINE = "online"
    OFFLINE_ONLY = "offline_only"
    UNKNOWN = "unknown"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class EndpointStatus(str, Enum):
    UNKNOWN = "unknown"
    CRAWLED = "crawled"
    ERROR = "error"


class EndpointVendor(str, Enum):
    """Closed vendor set used by the crawl path (coarser than VendorTag)."""

    ACCELA = "accela"
    ENERGOV = "energov"
    TYLER = "tyler"
    ETRAKIT = "etrakit"
    CLOUDPERMIT = "cloudpermit"
    PDF = "pdf"
    GOV_PAGE = "gov_page"


class OracleTier(str, Enum):
    CHEAP = "cheap"
    EXPENSIVE = "expensive"


class VerificationReason(str, Enum):
    OK = "OK"
    DNS_FAILURE = "DNS_Failure"
    FETCH_FAILURE = "Fetch_Failure"
    NO_PORTAL_KEYWORDS = "No_Portal_Keywords"


class ReviewAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    OFFLINE_CONFIRMED = "offline_confirmed"


# ─── Collaborator Payloads ──────────────────────────────────────────


class OracleAnswer(BaseModel):
    """What the LLM oracle returns for one portal question."""

    url: Optional[str] = None
    confidence: float = 0.0
    notes: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: object) -> float:
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        return min(max(number, 0.0), 1.0)

    @field_validator("notes", mode="before")
    @classmethod
    def _none_notes(cls, value: object) -> str:
        return "" if value is None else str(value)


class PageLink(BaseModel):
    """An outbound link found on a page, with its anchor text."""

    url: str
    text: str = ""


class OfflineVerdict(BaseModel):
    offline: bool
    confidence: float = 0.0


class FetchResponse(BaseModel):
    """Result of one page fetch."""

    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value.lower()
        return ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class SearchResult(BaseModel):
    url: str
    title: str = ""
    snippet: str = ""


# ─── Pipeline Results ───────────────────────────────────────────────


class ResolutionResult(BaseModel):
    """The answer returned for one interactive resolution run."""

    geoid: str
    status: Tier
    portal_url: Optional[str] = None
    manual_info_url: Optional[str] = None
    vendor_type: str = "unknown"
    submission_method: SubmissionMethod = SubmissionMethod.UNKNOWN
    notes: str = ""
    record_id: Optional[int] = None


class MetaProposal(BaseModel):
    """A write request against a jurisdiction's record, merged by the resolver."""

    geoid: str
    portal_url: Optional[str] = None
    manual_info_url: Optional[str] = None
    vendor_type: str = "unknown"
    submission_method: SubmissionMethod = SubmissionMethod.UNKNOWN
    notes: str = ""
    raw_payload: dict = Field(default_factory=dict)


class RecordSummary(BaseModel):
    """API/CLI-facing view of a jurisdiction_meta row."""

    id: int
    jurisdiction_geoid: str
    portal_url: Optional[str] = None
    manual_info_url: Optional[str] = None
    vendor_type: str = "unknown"
    submission_method: SubmissionMethod = SubmissionMethod.UNKNOWN
    verified: bool = False
    verified_at: Optional[datetime] = None
    invalid: bool = False
    invalid_at: Optional[datetime] = None
    notes: str = ""
    raw_payload: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReviewOverrides(BaseModel):
    """Optional reviewer-supplied corrections."""

    portal_url: Optional[str] = None
    manual_info_url: Optional[str] = None
    vendor_type: Optional[str] = None
    notes: Optional[str] = None


class ReviewOutcome(BaseModel):
    action: ReviewAction
    record: RecordSummary
    invalidated_ids: list[int] = Field(default_factory=list)


class VerificationResult(BaseModel):
    id: int
    geoid: str
    url: str
    verified: bool
    reason: VerificationReason
    vendor_type: Optional[str] = None


class SweepReport(BaseModel):
    """Counts returned by every batch sweep."""

    kind: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    details: list[dict] = Field(default_factory=list)


class FreshnessReport(BaseModel):
    endpoint_id: int
    changed: bool
    freshness_score: int
    latest_hash: Optional[str] = None


class UsageReport(BaseModel):
    today: int
    limit: int
    remaining: int
    last14: list[dict] = Field(default_factory=list)


# ─── Structured Extraction Schema ───────────────────────────────────


class _ExtractedRow(BaseModel):
    """Base for extracted rows: nulls fall back to defaults, numbers become text."""

    model_config = {"coerce_numbers_to_str": True}

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: object) -> object:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class PermitType(_ExtractedRow):
    name: str = ""
    category: str = ""
    description: str = ""


class PermitForm(_ExtractedRow):
    permit_type: str = ""
    form_name: str = ""
    form_url: str = ""
    required: bool = True


class PermitFee(_ExtractedRow):
    permit_type: str = ""
    fee_name: str = ""
    amount: str = ""
    formula: str = ""
    notes: str = ""


class PermitRequirement(_ExtractedRow):
    permit_type: str = ""
    requirement: str = ""
    category: str = ""
    notes: str = ""


class PermitContact(_ExtractedRow):
    department: str = ""
    name: str = ""
    phone: str = ""
    email: str = ""
    hours: str = ""
    address: str = ""
    url: str = ""


class PermitLink(_ExtractedRow):
    link_type: str = ""
    link_url: str = ""
    link_title: str = ""


class PermitInspection(_ExtractedRow):
    permit_type: str = ""
    inspection_name: str = ""
    description: str = ""
    notes: str = ""


class PermitNote(_ExtractedRow):
    note: str = ""


class PermitExtraction(BaseModel):
    """Fixed output schema for structured extraction of a portal snapshot.

    Missing collections default to empty lists so a partial answer still
    validates.
    """

    permit_types: list[PermitType] = Field(default_factory=list)
    forms: list[PermitForm] = Field(default_factory=list)
    fees: list[PermitFee] = Field(default_factory=list)
    requirements: list[PermitRequirement] = Field(default_factory=list)
    contacts: list[PermitContact] = Field(default_factory=list)
    links: list[PermitLink] = Field(default_factory=list)
    inspections: list[PermitInspection] = Field(default_factory=list)
    notes: list[PermitNote] = Field(default_factory=list)

    def collections(self) -> dict[str, list[BaseModel]]:
        return {
            "permit_types": list(self.permit_types),
            "forms": list(self.forms),
            "fees": list(self.fees),
            "requirements": list(self.requirements),
            "contacts": list(self.contacts),
            "links": list(self.links),
            "inspections": list(self.inspections),
            "notes": list(self.notes),
        }
