"""Centralized runtime configuration loaded from environment variables.

Every tunable used by the discovery pipeline lives here so the CLI, the
API and tests read a single source of truth. Values are resolved once at
import time; tests that need different values should set the environment
before importing or monkeypatch the module attributes directly.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float for %s=%r; using default %s", name, raw, default)
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid int for %s=%r; using default %s", name, raw, default)
        return default


def _get_date(name: str, default: str) -> datetime:
    raw = os.getenv(name) or default
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Invalid date for %s=%r; using default %s", name, raw, default)
        parsed = datetime.fromisoformat(default)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/news_pipeline.db")

# Structured extraction service (Firecrawl-compatible API)
EXTRACTION_API_BASE = os.getenv(
    "EXTRACTION_API_BASE", "https://api.firecrawl.dev/v1"
).rstrip("/")
EXTRACTION_API_KEY = os.getenv("EXTRACTION_API_KEY") or os.getenv(
    "FIRECRAWL_API_KEY"
)

# Completion service (OpenAI-compatible chat completions)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
COMPLETION_MODEL = os.getenv("COMPLETION_MODEL", "gpt-4o-mini")
COMPLETION_TIMEOUT = _get_float("COMPLETION_TIMEOUT", 30.0)

# Outbound fetch limits
FETCH_TIMEOUT = _get_float("FETCH_TIMEOUT", 20.0)
FETCH_MAX_CONCURRENT = _get_int("FETCH_MAX_CONCURRENT", 4)
FETCH_MIN_INTERVAL = _get_float("FETCH_MIN_INTERVAL", 0.5)
USER_AGENT = os.getenv(
    "FETCH_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
)

# Batch scheduling
SCRAPE_CHUNK_SIZE = _get_int("SCRAPE_CHUNK_SIZE", 20)
SCRAPE_CONCURRENCY = _get_int("SCRAPE_CONCURRENCY", 3)
SCRAPE_CHUNK_DELAY = _get_float("SCRAPE_CHUNK_DELAY", 2.0)

# Discovery
DISCOVERY_MAX_URLS = _get_int("DISCOVERY_MAX_URLS", 100)

# Asynchronous extraction jobs
EXTRACT_JOB_MAX_ATTEMPTS = _get_int("EXTRACT_JOB_MAX_ATTEMPTS", 60)
EXTRACT_JOB_POLL_INTERVAL = _get_float("EXTRACT_JOB_POLL_INTERVAL", 2.0)
EXTRACT_JOB_TIMEOUT = _get_float("EXTRACT_JOB_TIMEOUT", 120.0)

# Validation
PUBLISH_DATE_CUTOFF = _get_date("PUBLISH_DATE_CUTOFF", "2024-01-01")

# Logging / API
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")
