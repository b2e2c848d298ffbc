import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    # Database
    database_url: str

    # OpenAI
    openai_api_key: Optional[str]
    cheap_model: str
    expensive_model: str

    # Escalation policy
    confidence_threshold: float
    daily_ai_cap: int

    # Batch sweeps
    search_batch_size: int
    crawl_batch_size: int
    parse_batch_size: int
    verifier_batch_size: int
    concurrency: int
    max_job_attempts: Optional[int]
    recrawl_after_days: int

    # Network
    http_timeout: float
    retry_attempts: int
    user_agent: str

    # Search providers
    tavily_api_key: Optional[str]
    serpapi_key: Optional[str]

    # Snapshots
    snapshot_dir: str


# Global settings instance
_settings: Optional[Settings] = None


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_settings() -> Settings:
    global _settings
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "sqlite:///permit_portal.db").strip().strip('"')

    max_attempts_raw = os.getenv("MAX_JOB_ATTEMPTS", "").strip()
    max_job_attempts = int(max_attempts_raw) if max_attempts_raw else None

    batch_size = _int_env("BATCH_SIZE", 10)

    _settings = Settings(
        database_url=database_url,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        cheap_model=os.getenv("CHEAP_MODEL", "gpt-4o-mini"),
        expensive_model=os.getenv("EXPENSIVE_MODEL", "gpt-4.1"),
        confidence_threshold=_float_env("CONFIDENCE_THRESHOLD", 0.70),
        daily_ai_cap=_int_env("DAILY_AI_CAP", 30),
        search_batch_size=_int_env("SEARCH_BATCH_SIZE", batch_size),
        crawl_batch_size=_int_env("CRAWL_BATCH_SIZE", batch_size),
        parse_batch_size=_int_env("PARSE_BATCH_SIZE", 3),
        verifier_batch_size=_int_env("VERIFIER_BATCH", batch_size),
        concurrency=max(1, _int_env("CONCURRENCY", 4)),
        max_job_attempts=max_job_attempts,
        recrawl_after_days=max(0, _int_env("RECRAWL_AFTER_DAYS", 7)),
        http_timeout=_float_env("HTTP_TIMEOUT", 20.0),
        retry_attempts=max(1, _int_env("RETRY_ATTEMPTS", 3)),
        user_agent=os.getenv("USER_AGENT", "Mozilla/5.0 (PermitPortalBot/1.0)"),
        tavily_api_key=os.getenv("TAVILY_API_KEY") or None,
        serpapi_key=os.getenv("SERPAPI_KEY") or None,
        snapshot_dir=os.getenv("SNAPSHOT_DIR", "snapshots"),
    )

    return _settings


def get_settings() -> Settings:
    if _settings is None:
        return load_settings()
    return _settings
