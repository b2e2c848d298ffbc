"""
LLM oracle clients backed by the OpenAI chat completions API.

Two jobs:
  - OpenAIPortalOracle answers "what is the official permit portal for X?"
    at a cheap or an expensive tier.
  - OpenAIStructuredExtractor turns a snapshot's text into the fixed
    PermitExtraction schema.

Design:
  - JSON mode enforced (structured output, not free text)
  - Every answer is parsed through a pydantic model before anyone sees it
  - Rate-limit and quota refusals raise OracleQuotaError so the tier
    controller can fall back; every other failure raises OracleError
"""

from __future__ import annotations

import json
import logging

from openai import APIError, OpenAI, RateLimitError
from pydantic import ValidationError

from .config import Settings
from .exceptions import OracleError, OracleQuotaError
from .models import OracleAnswer, OracleTier, PermitExtraction

logger = logging.getLogger(__name__)


# ─── Prompts ─────────────────────────────────────────────────────────

PORTAL_SYSTEM_PROMPT = """\
You identify official building permit portals for US jurisdictions.
Answer with JSON only.
"""

_ALLOWED_VENDORS = """\
    - a government (.gov) site
    - Accela
    - EnerGov / TylerTech / TylerHost / TylerPortico
    - eTrakit
    - CitizenServe
    - OpenGov
    - MyGovernmentOnline
    - CityView (CVProdPortal)
    - PermitEyes
    - ViewPointCloud
    - ArcGIS / ESRI WebGIS instances"""

_ANSWER_SHAPE = """\
Return a JSON object with these exact keys:
{
    "url": "string or null",
    "confidence": number between 0 and 1,
    "notes": "short reasoning"
}"""


def build_cheap_prompt(name: str, state: str) -> str:
    return f"""\
You are identifying the OFFICIAL building permit portal for:
"{name}, {state}"

STRICT RULES:
1. Return ONE URL or null.
2. The URL MUST be one of:
{_ALLOWED_VENDORS}
3. Prefer URLs that explicitly allow online permit applications.
4. Avoid PDFs, "forms & documents" pages, agendas, minutes, or zoning pages.
5. If login redirects to a vendor SSO (e.g. TylerPortico), return the underlying portal.
6. If unsure, return null.

{_ANSWER_SHAPE}
"""


def build_expensive_prompt(name: str, state: str) -> str:
    return f"""\
You are performing a careful, accurate investigation to determine the OFFICIAL
online building permit portal used by contractors for:
"{name}, {state}"

STRICT RULES:
1. Return ONE URL or null.
2. Allowed categories:
{_ALLOWED_VENDORS}
3. If the jurisdiction uses a vendor login redirect (e.g. TylerPortico OAuth),
   extract the final portal base. Example:
     identity.tylerportico.com -> https://xxx-energovpub.tylerhost.net/apps/selfservice/
4. Avoid PDFs, About pages, agendas, minutes, zoning-only pages.
5. Prefer pages mentioning "apply", "permit", "contractor login", "self-service".

{_ANSWER_SHAPE}
"""


EXTRACTION_SYSTEM_PROMPT = "You are a permit data extraction engine."

EXTRACTION_PROMPT = """\
You are parsing permitting data from a city or county permit portal.
Extract ALL structured data as JSON only, no comments.

Return a JSON object with this shape:
{{
    "permit_types": [{{"name": "", "category": "", "description": ""}}],
    "forms": [{{"permit_type": "", "form_name": "", "form_url": "", "required": true}}],
    "fees": [{{"permit_type": "", "fee_name": "", "amount": "", "formula": "", "notes": ""}}],
    "requirements": [{{"permit_type": "", "requirement": "", "category": "", "notes": ""}}],
    "contacts": [{{"department": "", "name": "", "phone": "", "email": "", "hours": "", "address": "", "url": ""}}],
    "links": [{{"link_type": "", "link_url": "", "link_title": ""}}],
    "inspections": [{{"permit_type": "", "inspection_name": "", "description": "", "notes": ""}}],
    "notes": [{{"note": ""}}]
}}

If data is missing, return empty arrays for each field.

---
CONTEXT:
Vendor: {vendor}
URL: {url}
Jurisdiction: {geoid}
---
CONTENT:
{text}
"""

# Keep prompts inside the model's context window.
MAX_EXTRACTION_CHARS = 60_000


# ─── Shared Call ─────────────────────────────────────────────────────


def _complete_json(client: OpenAI, model: str, system: str, user: str) -> dict:
    """One JSON-mode chat completion, decoded; maps provider errors onto ours."""
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )
    except RateLimitError as e:
        raise OracleQuotaError(f"{model} rate limited: {e}", {"model": model}) from e
    except APIError as e:
        if getattr(e, "code", None) == "insufficient_quota":
            raise OracleQuotaError(f"{model} quota exhausted: {e}", {"model": model}) from e
        raise OracleError(f"{model} call failed: {e}", {"model": model}) from e

    content = response.choices[0].message.content
    if content is None:
        raise OracleError(f"{model} returned empty content", {"model": model})

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise OracleError(f"{model} returned invalid JSON: {e}", {"model": model}) from e

    if not isinstance(data, dict):
        raise OracleError(f"{model} returned a non-object JSON value", {"model": model})
    return data


# ─── Portal Oracle ───────────────────────────────────────────────────


class OpenAIPortalOracle:
    """Two-tier portal oracle: a cheap model and a stricter expensive one."""

    def __init__(self, settings: Settings, client: OpenAI | None = None):
        self._client = client or OpenAI(api_key=settings.openai_api_key)
        self._models = {
            OracleTier.CHEAP: settings.cheap_model,
            OracleTier.EXPENSIVE: settings.expensive_model,
        }

    def query(self, prompt: str, tier: OracleTier) -> OracleAnswer:
        model = self._models[tier]
        data = _complete_json(self._client, model, PORTAL_SYSTEM_PROMPT, prompt)

        try:
            answer = OracleAnswer.model_validate(data)
        except ValidationError as e:
            raise OracleError(f"{model} answer did not match schema: {e}", {"model": model}) from e

        logger.info("Oracle %s answered url=%s confidence=%.2f", tier.value, answer.url, answer.confidence)
        return answer


# ─── Structured Extraction ───────────────────────────────────────────


class OpenAIStructuredExtractor:
    """Fills the PermitExtraction schema from snapshot text."""

    def __init__(self, settings: Settings, client: OpenAI | None = None):
        self._client = client or OpenAI(api_key=settings.openai_api_key)
        self._model = settings.cheap_model

    def extract(self, text: str, metadata: dict) -> PermitExtraction:
        prompt = EXTRACTION_PROMPT.format(
            vendor=metadata.get("vendor", ""),
            url=metadata.get("url", ""),
            geoid=metadata.get("geoid", ""),
            text=text[:MAX_EXTRACTION_CHARS],
        )
        data = _complete_json(self._client, self._model, EXTRACTION_SYSTEM_PROMPT, prompt)

        try:
            return PermitExtraction.model_validate(data)
        except ValidationError as e:
            raise OracleError(f"extraction did not match schema: {e}", {"model": self._model}) from e
