"""
Discovery Tier Controller: the interactive, per-jurisdiction resolution run.

Tiers, cheapest first:

    CacheCheck → OfflineCheck → CheapQuery → {Accept | Escalate}
               → ExpensiveQuery → {Accept | None}

Escalate to the expensive tier iff the cheap candidate is invalid, fails
its probes, is below the confidence threshold, or the raw URL is still an
OAuth ``authorize?`` redirect. The expensive answer wins only if it is
valid and at least as confident as the cheap one. Expensive-tier calls are
capped per day; a quota refusal falls back to the cheap answer.

A run writes its jurisdiction record only after it reaches a terminal
state, so an abandoned run leaves at most some advisory candidate rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .classifier import detect_vendor, normalize_candidate, vet_candidate
from .context import PipelineContext
from .db import Jurisdiction
from .exceptions import (
    InvalidJurisdictionError,
    JurisdictionNotFoundError,
    OracleQuotaError,
    TransientNetworkError,
)
from .models import (
    CandidateSource,
    MetaProposal,
    OracleAnswer,
    OracleTier,
    ResolutionResult,
    SubmissionMethod,
    Tier,
)
from .offline import classify_offline, extract_links
from .oracle import build_cheap_prompt, build_expensive_prompt
from .resolver import JurisdictionRecordResolver
from .seeding import state_label
from .vendors import OAUTH_AUTHORIZE_MARKER, UNKNOWN_VENDOR

logger = logging.getLogger(__name__)


@dataclass
class TierAttempt:
    """One oracle answer and what survived vetting."""

    tier: OracleTier
    answer: OracleAnswer
    vetted_url: Optional[str]

    @property
    def confidence(self) -> float:
        return self.answer.confidence


def needs_escalation(attempt: TierAttempt, threshold: float) -> bool:
    if attempt.vetted_url is None:
        return True
    if attempt.confidence < threshold:
        return True
    raw = attempt.answer.url or ""
    return OAUTH_AUTHORIZE_MARKER in raw.lower()


def prefer_expensive(cheap: TierAttempt, expensive: Optional[TierAttempt]) -> bool:
    """Ties go to the expensive tier."""
    return (
        expensive is not None
        and expensive.vetted_url is not None
        and expensive.confidence >= cheap.confidence
    )


def _today():
    return datetime.now(timezone.utc).date()


class DiscoveryTierController:
    """Runs one jurisdiction through the tier cascade and persists the outcome."""

    def __init__(self, ctx: PipelineContext, resolver: Optional[JurisdictionRecordResolver] = None):
        self.ctx = ctx
        self.resolver = resolver or JurisdictionRecordResolver(ctx.store)

    # ─── Entry Point ─────────────────────────────────────────────────

    def resolve(self, geoid: str, force_refresh: bool = False) -> ResolutionResult:
        if not geoid or not str(geoid).strip():
            raise InvalidJurisdictionError("geoid is required")
        geoid = str(geoid).strip()

        jurisdiction = self.ctx.store.get_jurisdiction(geoid)
        if jurisdiction is None:
            raise JurisdictionNotFoundError(f"Jurisdiction not found: {geoid}", {"geoid": geoid})

        logger.info("Resolving %s (%s), force_refresh=%s", geoid, jurisdiction.name, force_refresh)

        if not force_refresh:
            cached = self._check_cache(geoid)
            if cached is not None:
                return cached

        offline = self._check_offline(jurisdiction)
        if offline is not None:
            return offline

        if self.ctx.oracle is None:
            logger.warning("No oracle configured; %s resolves to none", geoid)
            return self._finish_none(jurisdiction, None, "No oracle configured")

        cheap = self._query(jurisdiction, OracleTier.CHEAP)
        accepted: Optional[TierAttempt] = cheap if cheap.vetted_url else None

        if needs_escalation(cheap, self.ctx.confidence_threshold):
            expensive = self._escalate(jurisdiction)
            if prefer_expensive(cheap, expensive):
                accepted = expensive

        if accepted is None:
            return self._finish_none(jurisdiction, cheap, cheap.answer.notes)
        return self._finish_accept(jurisdiction, accepted)

    # ─── Tiers ───────────────────────────────────────────────────────

    def _check_cache(self, geoid: str) -> Optional[ResolutionResult]:
        record = self.ctx.store.cached_record(geoid)
        if record is None:
            return None
        logger.info("Cache hit for %s: %s", geoid, record.portal_url)
        return ResolutionResult(
            geoid=geoid,
            status=Tier.CACHE,
            portal_url=record.portal_url,
            manual_info_url=record.manual_info_url,
            vendor_type=record.vendor_type or UNKNOWN_VENDOR,
            submission_method=record.submission_method,
            notes=record.notes or "",
            record_id=record.id,
        )

    def _check_offline(self, jurisdiction: Jurisdiction) -> Optional[ResolutionResult]:
        page_url = jurisdiction.permits_url or jurisdiction.homepage_url
        if not page_url:
            return None

        try:
            response = self.ctx.fetcher.fetch(page_url, method="GET")
        except TransientNetworkError as e:
            logger.info("Offline check skipped for %s: %s", jurisdiction.geoid, e)
            return None
        if not response.ok:
            logger.info("Offline check skipped for %s: HTTP %s", jurisdiction.geoid, response.status)
            return None

        html = response.text
        verdict = classify_offline(html, extract_links(html, response.url or page_url))
        if not verdict.offline:
            return None

        notes = f"Offline-only process detected (score {verdict.confidence:.2f})"
        self.ctx.store.add_candidate(
            jurisdiction.geoid, page_url, CandidateSource.OFFLINE,
            vendor_type=UNKNOWN_VENDOR, confidence=verdict.confidence, notes=notes,
        )
        record = self.resolver.propose(
            MetaProposal(
                geoid=jurisdiction.geoid,
                manual_info_url=page_url,
                vendor_type=UNKNOWN_VENDOR,
                submission_method=SubmissionMethod.OFFLINE_ONLY,
                notes=notes,
                raw_payload={"tier": Tier.OFFLINE.value, "offline_score": verdict.confidence},
            )
        )
        return ResolutionResult(
            geoid=jurisdiction.geoid,
            status=Tier.OFFLINE,
            manual_info_url=page_url,
            vendor_type=UNKNOWN_VENDOR,
            submission_method=SubmissionMethod.OFFLINE_ONLY,
            notes=notes,
            record_id=record.id,
        )

    def _query(self, jurisdiction: Jurisdiction, tier: OracleTier) -> TierAttempt:
        state = state_label(jurisdiction.statefp)
        if tier is OracleTier.CHEAP:
            prompt = build_cheap_prompt(jurisdiction.name, state)
        else:
            prompt = build_expensive_prompt(jurisdiction.name, state)

        answer = self.ctx.oracle.query(prompt, tier)
        vetted = vet_candidate(self.ctx.fetcher, answer.url)
        self._log_candidate(jurisdiction, tier, answer, vetted)
        return TierAttempt(tier=tier, answer=answer, vetted_url=vetted)

    def _escalate(self, jurisdiction: Jurisdiction) -> Optional[TierAttempt]:
        """Ask the expensive tier, unless today's cap is spent or the provider refuses."""
        if not self.ctx.store.reserve_ai_call(_today(), self.ctx.daily_ai_cap):
            logger.info("Daily expensive-tier cap of %d reached; keeping cheap answer", self.ctx.daily_ai_cap)
            return None

        try:
            return self._query(jurisdiction, OracleTier.EXPENSIVE)
        except OracleQuotaError as e:
            logger.warning("Expensive tier refused for %s (%s); falling back to cheap", jurisdiction.geoid, e)
            return None

    def _log_candidate(
        self, jurisdiction: Jurisdiction, tier: OracleTier, answer: OracleAnswer, vetted: Optional[str]
    ) -> None:
        if not answer.url:
            return
        url = vetted or normalize_candidate(answer.url) or answer.url
        source = CandidateSource.AI_MINI if tier is OracleTier.CHEAP else CandidateSource.AI_FULL
        notes = answer.notes if vetted else f"rejected: {answer.notes}".strip()
        self.ctx.store.add_candidate(
            jurisdiction.geoid, url, source,
            vendor_type=detect_vendor(url), confidence=answer.confidence, notes=notes,
        )

    # ─── Terminal States ─────────────────────────────────────────────

    def _finish_accept(self, jurisdiction: Jurisdiction, attempt: TierAttempt) -> ResolutionResult:
        url = attempt.vetted_url
        vendor = detect_vendor(url)
        tier = Tier.CHEAP if attempt.tier is OracleTier.CHEAP else Tier.EXPENSIVE
        notes = attempt.answer.notes or ""

        record = self.resolver.propose(
            MetaProposal(
                geoid=jurisdiction.geoid,
                portal_url=url,
                vendor_type=vendor,
                submission_method=SubmissionMethod.ONLINE,
                notes=notes,
                raw_payload={
                    "tier": tier.value,
                    "raw_url": attempt.answer.url,
                    "confidence": attempt.confidence,
                },
            )
        )
        logger.info("Accepted %s for %s from %s tier", url, jurisdiction.geoid, tier.value)
        return ResolutionResult(
            geoid=jurisdiction.geoid,
            status=tier,
            portal_url=url,
            vendor_type=vendor,
            submission_method=SubmissionMethod.ONLINE,
            notes=notes,
            record_id=record.id,
        )

    def _finish_none(
        self, jurisdiction: Jurisdiction, cheap: Optional[TierAttempt], notes: str
    ) -> ResolutionResult:
        notes = notes or "No reliable portal identified"
        record = self.resolver.propose(
            MetaProposal(
                geoid=jurisdiction.geoid,
                vendor_type=UNKNOWN_VENDOR,
                submission_method=SubmissionMethod.UNKNOWN,
                notes=notes,
                raw_payload={
                    "tier": Tier.NONE.value,
                    "raw_url": cheap.answer.url if cheap else None,
                },
            )
        )
        logger.info("No portal found for %s", jurisdiction.geoid)
        return ResolutionResult(
            geoid=jurisdiction.geoid,
            status=Tier.NONE,
            vendor_type=UNKNOWN_VENDOR,
            submission_method=SubmissionMethod.UNKNOWN,
            notes=notes,
            record_id=record.id,
        )
