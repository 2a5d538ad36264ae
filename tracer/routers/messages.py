"""
Anthropic-compatible Messages endpoint.
Every call is forwarded unmodified to the upstream API and captured.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response

from tracer.core.capture import CapturePipeline, InboundCall
from tracer.core.error_formatters import create_proxy_error_response

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> CapturePipeline:
    return request.app.state.pipeline


def _log_bad_request(endpoint: str, detail: Any, payload: bytes) -> None:
    """Log 400-level failures with a bounded excerpt of the payload."""
    logger.warning(
        "Rejected request on %s: detail=%s payload=%s",
        endpoint,
        detail,
        payload[:500].decode("utf-8", errors="replace"),
    )


async def _read_call(http_request: Request) -> InboundCall:
    body = await http_request.body()
    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return InboundCall(
        method=http_request.method,
        endpoint=http_request.url.path,
        headers=http_request.headers,
        body=body,
        payload=payload,
    )


@router.post("/v1/messages")
async def messages(
    http_request: Request,
    pipeline: CapturePipeline = Depends(get_pipeline),
) -> Response:
    """
    Messages endpoint. Streams when the body sets ``"stream": true``,
    otherwise returns the upstream response once complete.
    """
    try:
        call = await _read_call(http_request)
    except ValueError as e:
        body = await http_request.body()
        _log_bad_request("/v1/messages", e, body)
        return create_proxy_error_response(400, f"Invalid request body: {e}")

    request_id = getattr(http_request.state, "request_id", None)
    try:
        return await pipeline.capture(call, request_id=request_id)
    except Exception as e:
        logger.exception(f"Unexpected error in /v1/messages: {e}")
        return create_proxy_error_response(500, f"Proxy error: {str(e)}")


@router.post("/v1/messages/count_tokens")
async def messages_count_tokens(
    http_request: Request,
    pipeline: CapturePipeline = Depends(get_pipeline),
) -> Response:
    """Token counting, forwarded upstream without being traced."""
    try:
        call = await _read_call(http_request)
    except ValueError as e:
        return create_proxy_error_response(400, f"Invalid request body: {e}")
    return await pipeline.passthrough(call, pipeline.settings.count_tokens_url)
