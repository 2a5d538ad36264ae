"""
Read-only query API over captured traces, plus the destructive clear.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracer.database import crud
from tracer.database.database import SessionLocal
from tracer.models.events import cleared_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

EMPTY_STATS = {"totalRequests": 0, "totalTokens": 0, "avgLatency": 0.0, "toolUsage": []}

EXPORT_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv"}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _page_size(request: Request) -> int:
    return request.app.state.settings.page_size


@router.get("/sessions")
async def list_sessions(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """All capture sessions, most recent first."""
    try:
        return [crud.session_to_dict(s) for s in crud.get_sessions(db)]
    except SQLAlchemyError as e:
        logger.warning(f"Failed to read sessions: {e}")
        return []


@router.get("/traces")
@router.get("/traces/{session_id}")
async def list_traces(
    request: Request,
    session_id: Optional[str] = None,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """
    Request traces with their response and tool calls, most recent first.
    Unfiltered queries return at most one page.
    """
    try:
        traces = crud.get_traces(db, session_id=session_id, limit=_page_size(request))
        return [crud.trace_to_dict(t) for t in traces]
    except SQLAlchemyError as e:
        logger.warning(f"Failed to read traces: {e}")
        return []


@router.get("/stats")
async def stats(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Request count, token total, average latency and tool usage."""
    try:
        return crud.get_stats(db)
    except SQLAlchemyError as e:
        logger.warning(f"Failed to compute stats: {e}")
        return dict(EMPTY_STATS)


@router.get("/export")
async def export(
    request: Request,
    export_format: str = Query("json", alias="format", description="json or csv"),
    session_id: Optional[str] = Query(None, alias="session"),
    db: Session = Depends(get_db),
) -> Response:
    """Download traces as JSON or CSV."""
    if export_format not in EXPORT_MEDIA_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported format '{export_format}'")
    content = crud.export_traces(
        db, export_format=export_format, session_id=session_id, limit=_page_size(request)
    )
    return Response(
        content=content,
        media_type=EXPORT_MEDIA_TYPES[export_format],
        headers={"Content-Disposition": f'attachment; filename="traces.{export_format}"'},
    )


@router.post("/clear")
async def clear(request: Request, db: Session = Depends(get_db)):
    """
    Delete every session, request, response and tool call, then start a
    fresh session. On failure nothing is deleted.
    """
    try:
        crud.clear_all(db)
    except crud.ClearError as e:
        logger.error(f"Failed to clear traces: {e}")
        return JSONResponse(
            status_code=500, content={"ok": False, "error": "Failed to clear traces"}
        )

    session_id = await request.app.state.sessions.rotate(end_previous=False)
    request.app.state.hub.publish(cleared_event())
    return {"ok": True, "sessionId": session_id}
