"""Configuration management for the generation pipeline.

This module provides centralized configuration loading from environment variables.
Each setting has its own getter so tests can monkeypatch the environment.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    KLING_API_KEY: PiAPI key used for Kling video and sound tasks
    PIAPI_BASE_URL: PiAPI gateway base URL (default: https://api.piapi.ai/api/v1)
    GEMINI_API_KEY: Google Generative Language API key (prompt/image/motion)
    GEMINI_TEXT_MODEL, GEMINI_IMAGE_MODEL: Gemini model names
    POLL_INTERVAL_SECONDS: Seconds between task status checks (default: 10)
    MAX_POLL_ATTEMPTS: Status checks before a task times out (default: 30)
    WORKER_CONCURRENCY: Pipelines one worker runs at once (default: 3)
    WORKER_IDLE_SLEEP_SECONDS: Sleep when the queue is empty (default: 5)

Usage:
    from cgi_pipeline.config import get_kling_api_key, get_database_url

    api_key = get_kling_api_key()  # Returns None if not set
    db_url = get_database_url()  # Raises if DATABASE_URL not set
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

DEFAULT_PIAPI_BASE_URL = "https://api.piapi.ai/api/v1"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_TEXT_MODEL = "gemini-2.0-flash"
DEFAULT_GEMINI_IMAGE_MODEL = "gemini-2.0-flash-preview-image-generation"

DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_MAX_POLL_ATTEMPTS = 30
DEFAULT_WORKER_CONCURRENCY = 3
DEFAULT_WORKER_IDLE_SLEEP_SECONDS = 5


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_kling_api_key() -> str | None:
    """Get the PiAPI key used for Kling tasks.

    Returns:
        API key string, or None if not set. Image-only projects never need it,
        so the check is deferred until a video stage actually runs.
    """
    return os.getenv("KLING_API_KEY")


def get_piapi_base_url() -> str:
    """Get the PiAPI gateway base URL (no trailing slash)."""
    return os.getenv("PIAPI_BASE_URL", DEFAULT_PIAPI_BASE_URL).rstrip("/")


def get_gemini_api_key() -> str | None:
    """Get the Gemini API key, or None when Gemini collaborators are disabled."""
    return os.getenv("GEMINI_API_KEY")


def get_gemini_base_url() -> str:
    return os.getenv("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).rstrip("/")


def get_gemini_text_model() -> str:
    return os.getenv("GEMINI_TEXT_MODEL", DEFAULT_GEMINI_TEXT_MODEL)


def get_gemini_image_model() -> str:
    return os.getenv("GEMINI_IMAGE_MODEL", DEFAULT_GEMINI_IMAGE_MODEL)


def _get_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer setting, clamped to [minimum, maximum].

    Invalid values are logged and replaced by the default.
    """
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def get_poll_interval_seconds() -> int:
    """Get the delay between provider status checks.

    Environment Variable:
        POLL_INTERVAL_SECONDS: Poll interval (default: 10, clamped to 1..60)
    """
    return _get_int("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, 1, 60)


def get_max_poll_attempts() -> int:
    """Get the number of status checks before a task is declared timed out.

    Environment Variable:
        MAX_POLL_ATTEMPTS: Attempt budget (default: 30, clamped to 1..360)

    Note:
        Interval x attempts is the wall-clock ceiling of one poll loop
        (10s x 30 = 5 minutes by default).
    """
    return _get_int("MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS, 1, 360)


def get_worker_concurrency() -> int:
    """Get how many pipelines a single worker process runs concurrently.

    Environment Variable:
        WORKER_CONCURRENCY: Parallel pipelines per worker (default: 3, clamped to 1..20)

    Note:
        Kling accepts a limited number of concurrent tasks per account, so the
        default stays small. Each worker enforces this independently.
    """
    return _get_int("WORKER_CONCURRENCY", DEFAULT_WORKER_CONCURRENCY, 1, 20)


def get_worker_idle_sleep_seconds() -> int:
    """Get the sleep between queue checks when no job is pending (clamped to 1..60)."""
    return _get_int("WORKER_IDLE_SLEEP_SECONDS", DEFAULT_WORKER_IDLE_SLEEP_SECONDS, 1, 60)
