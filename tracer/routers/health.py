"""
Health check endpoints for system monitoring.
"""

import time
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

from tracer.database.database import engine

router = APIRouter()

# Track application start time for uptime calculation
_app_start_time = time.time()


def check_database() -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        start_time = time.time()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        response_time_ms = int((time.time() - start_time) * 1000)
        return {"status": "healthy", "response_time_ms": response_time_ms}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_capture(request: Request) -> Dict[str, Any]:
    """Report the active session and observer count."""
    state = request.app.state
    session = state.sessions.current
    return {
        "status": "healthy" if session.id else "unhealthy",
        "session_id": session.id,
        "observers": state.hub.subscriber_count,
        "upstream_url": state.settings.upstream_url,
    }


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if the trace store is reachable, 503 otherwise.
    """
    database_status = check_database()

    if database_status.get("status") != "healthy":
        raise HTTPException(status_code=503, detail="Database unavailable")

    return {
        "status": "healthy",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request):
    """
    Detailed health check with component status.
    The proxy keeps forwarding when the store is down, so an unhealthy
    database only degrades the overall status.
    """
    components = {
        "database": check_database(),
        "capture": check_capture(request),
    }

    if components["capture"]["status"] != "healthy":
        overall_status = "unhealthy"
    elif components["database"]["status"] != "healthy":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    response = {
        "status": overall_status,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "uptime_seconds": int(time.time() - _app_start_time),
        "components": components,
    }

    if overall_status != "healthy":
        raise HTTPException(status_code=503, detail=response)

    return response
