"""
Core logging utilities: identifiers, timestamps, header redaction and
extraction of the caller-relevant fields of a Messages API request.
"""

import json
import logging
import time
import uuid
from typing import Any, Dict, Mapping, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Header names (lower-case) that must never be persisted or broadcast
SENSITIVE_HEADERS = {"x-api-key", "authorization", "proxy-authorization", "cookie"}

REDACTED = "[redacted]"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the proxy process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def generate_request_id() -> str:
    """
    Generate a unique request ID (UUID v4).

    Returns:
        UUID string
    """
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Copy headers, replacing credential values.

    Args:
        headers: Incoming header mapping

    Returns:
        Plain dict safe to persist
    """
    return {
        key: (REDACTED if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


def extract_request_summary(request_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract the fields of a Messages request that observers are shown.

    Args:
        request_dict: Parsed request body

    Returns:
        Dictionary with model, messages, tools and sampling parameters
    """
    return {
        "model": request_dict.get("model"),
        "messages": request_dict.get("messages"),
        "tools": request_dict.get("tools"),
        "temperature": request_dict.get("temperature"),
        "max_tokens": request_dict.get("max_tokens"),
        "stream": bool(request_dict.get("stream", False)),
    }


def safe_parse_json(value: Optional[str]) -> Any:
    """
    Parse stored JSON text, returning the raw text when it is not JSON.

    Args:
        value: Stored text or None

    Returns:
        Parsed object, the original text, or None
    """
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value
