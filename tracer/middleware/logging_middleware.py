"""
Middleware assigning each HTTP request its trace ID and start time.
"""

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from tracer.core.logging import generate_request_id


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Generates the request ID before the route runs, so the capture pipeline
    can reference it in events published before any upstream call.
    The ID is echoed back in the X-Request-ID response header.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = generate_request_id()
        request.state.request_id = request_id
        request.state.start_time = time.time()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response
