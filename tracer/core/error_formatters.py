"""
Error formatters producing Anthropic-style error envelopes.
"""

from typing import Any, Dict

from fastapi.responses import JSONResponse

ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
    500: "internal_server_error",
    502: "proxy_error",
    503: "service_unavailable_error",
    504: "gateway_timeout_error",
}


def format_anthropic_error(
    status_code: int, message: str, error_type: str = None
) -> Dict[str, Any]:
    """
    Format an error response in Anthropic API format.

    Args:
        status_code: HTTP status code
        message: Error message
        error_type: Optional error type

    Returns:
        Anthropic-formatted error response
    """
    error_type = error_type or ERROR_TYPE_MAP.get(status_code, "api_error")
    return {"type": "error", "error": {"type": error_type, "message": message}}


def create_proxy_error_response(
    status_code: int, message: str, error_type: str = None
) -> JSONResponse:
    """
    Build the JSON response returned to a caller when the proxy itself fails.

    Args:
        status_code: HTTP status code
        message: Error message
        error_type: Optional error type

    Returns:
        JSONResponse with the error envelope
    """
    return JSONResponse(
        status_code=status_code,
        content=format_anthropic_error(status_code, message, error_type),
    )
