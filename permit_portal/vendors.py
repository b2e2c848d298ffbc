"""
Versioned keyword tables for vendor detection and page heuristics.

Every substring list the classifiers rely on lives here so the tables can be
reviewed, versioned and tested in one place. Bump VENDOR_TABLE_VERSION
whenever a table changes; it is written into each record's raw payload.
"""

from __future__ import annotations

from .models import EndpointVendor

VENDOR_TABLE_VERSION = "2025.02"


# ─── Vendor Tags ─────────────────────────────────────────────────────
# Ordered most-specific first. The first rule whose substring occurs in the
# lowercased URL wins, so Tyler-hosted EnerGov instances resolve to EnerGov
# before the generic TylerTech rule can see them.

VENDOR_PRECEDENCE: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Accela", ("accela",)),
    ("EnerGov", ("energov", "tylerhost")),
    ("TylerTech", ("tylertech", "tylerportico")),
    ("eTrakit", ("etrakit",)),
    ("CitizenServe", ("citizenserve",)),
    ("OpenGov", ("opengov",)),
    ("MyGovernmentOnline", ("mygovernmentonline",)),
    ("PermitEyes", ("permiteyes",)),
    ("ViewPointCloud", ("viewpointcloud",)),
    ("CityView", ("cityview", "cvprodportal")),
    ("ESRI-WebGIS", ("arcgis", "webgis", "gisweb")),
)

MUNICIPAL_VENDOR = "municipal"
UNKNOWN_VENDOR = "unknown"

KNOWN_VENDOR_MARKERS: frozenset[str] = frozenset(
    marker for _, markers in VENDOR_PRECEDENCE for marker in markers
)

# Body-content markers used when re-detecting a vendor from fetched HTML.
# Order matters for the same reason as VENDOR_PRECEDENCE.
HTML_VENDOR_MARKERS: tuple[tuple[str, str], ...] = (
    ("accela", "Accela"),
    ("energov", "EnerGov"),
    ("etrakit", "eTrakit"),
    ("citizenserve", "CitizenServe"),
    ("tyler", "TylerTech"),
    ("mygovernmentonline", "MyGovernmentOnline"),
    ("opengov", "OpenGov"),
    ("viewpoint", "ViewPointCloud"),
    ("cityview", "CityView"),
)


# ─── Redirect Normalization ──────────────────────────────────────────

TYLER_IDENTITY_HOSTS: tuple[str, ...] = ("tylertech.com", "tylerportico.com")
OAUTH_AUTHORIZE_MARKER = "authorize?"
CITYVIEW_HOST_MARKER = "cvprodportal"


# ─── Portal Content Probe ────────────────────────────────────────────

PORTAL_PROBE_KEYWORDS: tuple[str, ...] = (
    "permit",
    "permitting",
    "inspection",
    "apply",
    "application",
    "contractor",
    "selfservice",
    "self-service",
    "login",
    "plan review",
    "submit",
)
PORTAL_PROBE_CHARS = 5000
PORTAL_PROBE_MIN_HITS = 2


# ─── Offline Detector ────────────────────────────────────────────────

OFFLINE_VENDOR_PATTERNS: tuple[str, ...] = (
    "opengov",
    "permiteyes",
    "epermithub",
    "tylertech",
    "citytech",
    "mygovernmentonline",
    "smartgov",
    "permitcenter",
    "cloudpermit",
    "citizenserve",
)

OFFLINE_PHRASES: tuple[str, ...] = (
    "pdf",
    "print",
    "mail",
    "fee schedule",
    "codes & compliance",
    "download",
    "forms",
    "applications",
    "permit packet",
    "return completed",
)

ONLINE_SUBMISSION_PHRASES: tuple[str, ...] = (
    "apply online",
    "submit online",
    "/login",
    "/account",
    "/application",
    "portal",
)


# ─── Automated Verifier ──────────────────────────────────────────────

VERIFIER_KEYWORDS: tuple[str, ...] = ("permit", "apply", "contractor", "citizen", "portal")
VERIFIER_SAMPLE_CHARS = 2000


# ─── Endpoint Classification ─────────────────────────────────────────
# Evaluated in order; anything matching none of these is dropped.

ENDPOINT_VENDOR_RULES: tuple[tuple[EndpointVendor, tuple[str, ...]], ...] = (
    (EndpointVendor.ACCELA, ("citizenaccess", "accela", "/aca/")),
    (EndpointVendor.ENERGOV, ("energov", "selfservice")),
    (EndpointVendor.TYLER, ("tyler",)),
    (EndpointVendor.ETRAKIT, ("etrakit",)),
    (EndpointVendor.CLOUDPERMIT, ("cloudpermit",)),
)

INTERACTIVE_ENDPOINT_VENDORS: frozenset[EndpointVendor] = frozenset({
    EndpointVendor.ACCELA,
    EndpointVendor.ENERGOV,
    EndpointVendor.TYLER,
    EndpointVendor.ETRAKIT,
    EndpointVendor.CLOUDPERMIT,
})


# ─── Seed Query Templates ────────────────────────────────────────────

SEED_QUERY_TEMPLATES: tuple[str, ...] = (
    '"{name}" {state} building permits',
    '"{name}" {state} building permit portal',
    '"{name}" {state} online permitting',
    '"{name}" {state} permit portal',
    '"{name}" {state} building permits Accela',
    '"{name}" {state} building permits EnerGov',
    '"{name}" {state} building permits Tyler',
    '"{name}" {state} eTRAKiT',
    '"{name}" {state} Cloudpermit',
    '"{name}" {state} permit application pdf',
    '"{name}" {state} permit application form',
    '"{name}" {state} building permits fee schedule',
)

# The single query used when the verifier sends a jurisdiction back for rediscovery.
REDISCOVERY_QUERY_TEMPLATE = SEED_QUERY_TEMPLATES[0]
