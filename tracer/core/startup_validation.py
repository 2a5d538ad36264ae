"""
Startup validation for ensuring the proxy is properly configured.
"""

import logging
import os
from typing import List, Tuple

from sqlalchemy import text

from tracer.core.config import Settings
from tracer.database.database import engine

logger = logging.getLogger(__name__)


class StartupValidationError(Exception):
    """Raised when startup validation fails."""


def validate_database() -> Tuple[bool, str]:
    """
    Validate database connectivity.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True, ""
    except Exception as e:
        return False, f"Database connection failed: {str(e)}"


def validate_upstream(settings: Settings) -> Tuple[bool, List[str]]:
    """
    Check upstream settings. A missing default API key is only a warning,
    since callers normally send their own x-api-key.

    Returns:
        Tuple of (is_valid, list_of_warnings)
    """
    warnings = []
    if not settings.upstream_url.startswith(("http://", "https://")):
        return False, [f"UPSTREAM_URL is not an http(s) URL: {settings.upstream_url}"]
    if not settings.default_api_key:
        warnings.append(
            "ANTHROPIC_API_KEY is not set; callers must send their own x-api-key"
        )
    return True, warnings


def validate_startup(settings: Settings) -> None:
    """
    Run all startup checks, logging problems.

    Raises:
        StartupValidationError: If a check fails and
            FAIL_ON_STARTUP_VALIDATION=true
    """
    errors = []

    db_ok, db_error = validate_database()
    if not db_ok:
        errors.append(db_error)

    upstream_ok, upstream_messages = validate_upstream(settings)
    if upstream_ok:
        for message in upstream_messages:
            logger.warning(message)
    else:
        errors.extend(upstream_messages)

    if not errors:
        return

    for error in errors:
        logger.error("Startup validation error: %s", error)
    if os.getenv("FAIL_ON_STARTUP_VALIDATION", "false").lower() == "true":
        raise StartupValidationError("; ".join(errors))
