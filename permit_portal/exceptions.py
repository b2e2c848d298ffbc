"""
Custom exception hierarchy for portal resolution.

Each exception type maps to one category of the error taxonomy, so callers
can tell a caller mistake (bad jurisdiction id) from a recoverable oracle
quota hit or an exhausted network retry.
"""

from __future__ import annotations


class PortalDiscoveryError(Exception):
    """Base exception for all portal resolution failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class InvalidJurisdictionError(PortalDiscoveryError):
    """The caller did not supply a usable jurisdiction id."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVALID_JURISDICTION", message, details)


class JurisdictionNotFoundError(PortalDiscoveryError):
    """No jurisdiction exists with the requested geoid."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("JURISDICTION_NOT_FOUND", message, details)


class RecordNotFoundError(PortalDiscoveryError):
    """No jurisdiction_meta record exists with the requested id."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("RECORD_NOT_FOUND", message, details)


class OracleError(PortalDiscoveryError):
    """The LLM oracle failed or returned something unusable."""

    def __init__(self, message: str, details: dict | None = None, code: str = "ORACLE_FAILED"):
        super().__init__(code, message, details)


class OracleQuotaError(OracleError):
    """The oracle refused the call because of a rate limit or exhausted quota."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, details, code="ORACLE_QUOTA")


class TransientNetworkError(PortalDiscoveryError):
    """A fetch, search or DNS call kept failing after all retries."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("TRANSIENT_NETWORK", message, details)


class ExtractionError(PortalDiscoveryError):
    """Text or structured extraction of a snapshot failed."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("EXTRACTION_FAILED", message, details)


class InvariantViolationError(PortalDiscoveryError):
    """A write would leave two authoritative records for one jurisdiction."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVARIANT_VIOLATION", message, details)
