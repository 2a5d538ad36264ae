"""
Runtime configuration for the trace proxy.
Values come from environment variables (optionally loaded from a .env file).
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_UPSTREAM_URL = "https://api.anthropic.com"
DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_DB_URL = "sqlite:///./traces.db"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """
    Immutable snapshot of proxy configuration.

    Attributes:
        upstream_url: Base URL of the upstream Messages API
        default_api_key: API key used when the caller omits x-api-key
        anthropic_version: Protocol version used when the caller omits it
        db_url: SQLAlchemy database URL for the trace store
        page_size: Maximum traces returned by an unfiltered trace query
        store_headers: Persist (redacted) request headers with each trace
        project_name: Optional label attached to new sessions
        observer_queue_size: Per-observer backlog before events are dropped
        cors_origins: Allowed CORS origins for the query API
        log_level: Root log level
    """

    upstream_url: str = DEFAULT_UPSTREAM_URL
    default_api_key: Optional[str] = None
    anthropic_version: str = DEFAULT_ANTHROPIC_VERSION
    db_url: str = DEFAULT_DB_URL
    page_size: int = 100
    store_headers: bool = False
    project_name: Optional[str] = None
    observer_queue_size: int = 256
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @property
    def messages_url(self) -> str:
        return f"{self.upstream_url.rstrip('/')}/v1/messages"

    @property
    def count_tokens_url(self) -> str:
        return f"{self.upstream_url.rstrip('/')}/v1/messages/count_tokens"


def get_settings() -> Settings:
    """
    Build settings from the current environment.

    Returns:
        Settings instance
    """
    return Settings(
        upstream_url=os.getenv("UPSTREAM_URL", DEFAULT_UPSTREAM_URL),
        default_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        anthropic_version=os.getenv("ANTHROPIC_VERSION", DEFAULT_ANTHROPIC_VERSION),
        db_url=os.getenv("TRACE_DB_URL", DEFAULT_DB_URL),
        page_size=_env_int("TRACE_PAGE_SIZE", 100),
        store_headers=_env_bool("TRACE_STORE_HEADERS"),
        project_name=os.getenv("TRACE_PROJECT_NAME") or None,
        observer_queue_size=_env_int("OBSERVER_QUEUE_SIZE", 256),
        cors_origins=tuple(
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
