"""
CRUD operations for the trace store.
"""

import csv
import io
import json
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from tracer.core.logging import now_ms, safe_parse_json
from . import models

EXPORT_FORMATS = ("json", "csv")

CSV_COLUMNS = [
    "id",
    "session_id",
    "timestamp",
    "model",
    "is_streaming",
    "status_code",
    "latency_ms",
    "tokens_used",
    "tool_calls",
]


class ClearError(Exception):
    """Raised when the bulk delete fails and has been rolled back."""


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def create_session(
    db: Session,
    session_id: str,
    started_at: Optional[int] = None,
    project_name: Optional[str] = None,
) -> models.TraceSession:
    """
    Create a new capture session.

    Args:
        db: Database session
        session_id: Unique session ID (UUID)
        started_at: Start time in epoch ms (defaults to now)
        project_name: Optional project label

    Returns:
        Created TraceSession instance
    """
    session = models.TraceSession(
        id=session_id,
        started_at=started_at if started_at is not None else now_ms(),
        project_name=project_name,
        total_requests=0,
        total_tokens=0,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def end_session(
    db: Session, session_id: str, ended_at: Optional[int] = None
) -> Optional[models.TraceSession]:
    """Stamp ended_at on a session. Returns None when it no longer exists."""
    session = db.get(models.TraceSession, session_id)
    if session is None:
        return None
    session.ended_at = ended_at if ended_at is not None else now_ms()
    db.commit()
    db.refresh(session)
    return session


def get_session(db: Session, session_id: str) -> Optional[models.TraceSession]:
    return db.get(models.TraceSession, session_id)


def get_sessions(db: Session) -> List[models.TraceSession]:
    """All sessions, most recent first."""
    return (
        db.query(models.TraceSession)
        .order_by(models.TraceSession.started_at.desc())
        .all()
    )


def create_request_trace(
    db: Session,
    request_id: str,
    session_id: Optional[str],
    method: str,
    endpoint: str,
    body: Any,
    is_streaming: bool = False,
    headers: Optional[Dict[str, str]] = None,
    timestamp: Optional[int] = None,
) -> models.RequestTrace:
    """
    Create a request trace and count it against its session.

    Args:
        db: Database session
        request_id: Request ID generated before forwarding
        session_id: Active session ID
        method: HTTP method
        endpoint: API endpoint path
        body: Request payload (dict or already-serialized text)
        is_streaming: Whether the caller asked for a stream
        headers: Redacted headers, or None to omit
        timestamp: Capture time in epoch ms (defaults to now)

    Returns:
        Created RequestTrace instance
    """
    trace = models.RequestTrace(
        id=request_id,
        session_id=session_id,
        timestamp=timestamp if timestamp is not None else now_ms(),
        method=method,
        endpoint=endpoint,
        headers=_dump(headers),
        body=_dump(body),
        is_streaming=is_streaming,
    )
    db.add(trace)
    if session_id:
        db.query(models.TraceSession).filter(
            models.TraceSession.id == session_id
        ).update(
            {models.TraceSession.total_requests: models.TraceSession.total_requests + 1},
            synchronize_session=False,
        )
    db.commit()
    db.refresh(trace)
    return trace


def create_response_trace(
    db: Session,
    request_id: str,
    status_code: Optional[int],
    body: Any,
    latency_ms: int,
    tokens_used: int = 0,
    headers: Optional[Dict[str, str]] = None,
    timestamp: Optional[int] = None,
    response_id: Optional[str] = None,
) -> models.ResponseTrace:
    """
    Create the response trace of a request and add its tokens to the session.

    Args:
        db: Database session
        request_id: Owning request ID
        status_code: Upstream HTTP status
        body: Response payload or raw stream text
        latency_ms: Upstream latency in milliseconds
        tokens_used: Token count (0 when unknown)
        headers: Upstream response headers
        timestamp: Completion time in epoch ms (defaults to now)
        response_id: Explicit ID (generated when omitted)

    Returns:
        Created ResponseTrace instance
    """
    trace = models.ResponseTrace(
        id=response_id or str(uuid.uuid4()),
        request_id=request_id,
        timestamp=timestamp if timestamp is not None else now_ms(),
        status_code=status_code,
        headers=_dump(headers),
        body=_dump(body),
        latency_ms=latency_ms,
        tokens_used=tokens_used or 0,
    )
    db.add(trace)
    if tokens_used:
        session_id = (
            db.query(models.RequestTrace.session_id)
            .filter(models.RequestTrace.id == request_id)
            .scalar()
        )
        if session_id:
            db.query(models.TraceSession).filter(
                models.TraceSession.id == session_id
            ).update(
                {models.TraceSession.total_tokens: models.TraceSession.total_tokens + tokens_used},
                synchronize_session=False,
            )
    db.commit()
    db.refresh(trace)
    return trace


def create_tool_call(
    db: Session,
    request_id: str,
    tool_name: str,
    tool_input: Any,
    timestamp: Optional[int] = None,
) -> models.ToolCall:
    """
    Record one tool invocation of a response.

    Args:
        db: Database session
        request_id: Owning request ID
        tool_name: Declared tool name
        tool_input: Tool input payload (None when absent)
        timestamp: Detection time in epoch ms (defaults to now)

    Returns:
        Created ToolCall instance
    """
    tool_call = models.ToolCall(
        request_id=request_id,
        tool_name=tool_name,
        input=json.dumps(tool_input, ensure_ascii=False),
        timestamp=timestamp if timestamp is not None else now_ms(),
    )
    db.add(tool_call)
    db.commit()
    db.refresh(tool_call)
    return tool_call


def session_to_dict(session: models.TraceSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "project_name": session.project_name,
        "total_requests": session.total_requests,
        "total_tokens": session.total_tokens,
    }


def _response_to_dict(response: models.ResponseTrace) -> Dict[str, Any]:
    return {
        "id": response.id,
        "request_id": response.request_id,
        "timestamp": response.timestamp,
        "status": response.status_code,
        "headers": safe_parse_json(response.headers),
        "body": safe_parse_json(response.body),
        "latency": response.latency_ms,
        "tokens_used": response.tokens_used,
    }


def _tool_call_to_dict(tool_call: models.ToolCall) -> Dict[str, Any]:
    return {
        "id": tool_call.id,
        "request_id": tool_call.request_id,
        "tool_name": tool_call.tool_name,
        "input": safe_parse_json(tool_call.input),
        "output": safe_parse_json(tool_call.output),
        "timestamp": tool_call.timestamp,
    }


def trace_to_dict(trace: models.RequestTrace) -> Dict[str, Any]:
    """
    Serialize a request with its response and tool calls.
    Stored bodies that are not valid JSON are returned as raw text.
    """
    return {
        "id": trace.id,
        "session_id": trace.session_id,
        "timestamp": trace.timestamp,
        "method": trace.method,
        "endpoint": trace.endpoint,
        "headers": safe_parse_json(trace.headers),
        "body": safe_parse_json(trace.body),
        "is_streaming": trace.is_streaming,
        "response": _response_to_dict(trace.response) if trace.response else None,
        "toolCalls": [_tool_call_to_dict(tc) for tc in trace.tool_calls],
    }


def get_traces(
    db: Session, session_id: Optional[str] = None, limit: int = 100
) -> List[models.RequestTrace]:
    """
    Get request traces with their responses and tool calls, most recent first.

    Args:
        db: Database session
        session_id: Restrict to one session (unbounded when given)
        limit: Page size for the unfiltered query

    Returns:
        List of RequestTrace instances
    """
    query = db.query(models.RequestTrace).options(
        selectinload(models.RequestTrace.response),
        selectinload(models.RequestTrace.tool_calls),
    )
    if session_id:
        query = query.filter(models.RequestTrace.session_id == session_id)

    query = query.order_by(models.RequestTrace.timestamp.desc())
    if not session_id:
        query = query.limit(limit)
    return query.all()


def get_request_by_id(db: Session, request_id: str) -> Optional[models.RequestTrace]:
    return db.get(models.RequestTrace, request_id)


def get_stats(db: Session) -> Dict[str, Any]:
    """
    Get aggregate statistics over all captured traffic.

    Returns:
        Dictionary with totalRequests, totalTokens, avgLatency and toolUsage
    """
    total_requests = db.query(func.count(models.RequestTrace.id)).scalar() or 0
    total_tokens = db.query(func.sum(models.ResponseTrace.tokens_used)).scalar() or 0
    avg_latency = db.query(func.avg(models.ResponseTrace.latency_ms)).scalar() or 0

    count = func.count(models.ToolCall.id).label("count")
    tool_usage = (
        db.query(models.ToolCall.tool_name, count)
        .group_by(models.ToolCall.tool_name)
        .order_by(count.desc())
        .all()
    )

    return {
        "totalRequests": int(total_requests),
        "totalTokens": int(total_tokens),
        "avgLatency": float(avg_latency),
        "toolUsage": [
            {"tool_name": tool_name, "count": tool_count}
            for tool_name, tool_count in tool_usage
        ],
    }


def clear_all(db: Session) -> None:
    """
    Delete every row of every trace table in one transaction.

    Raises:
        ClearError: If any delete fails; the transaction is rolled back and
            prior data is left intact
    """
    try:
        db.query(models.ToolCall).delete(synchronize_session=False)
        db.query(models.ResponseTrace).delete(synchronize_session=False)
        db.query(models.RequestTrace).delete(synchronize_session=False)
        db.query(models.TraceSession).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise ClearError(f"Failed to clear traces: {e}") from e


def _csv_row(trace: Dict[str, Any]) -> Dict[str, Any]:
    body = trace["body"] if isinstance(trace["body"], dict) else {}
    response = trace["response"] or {}
    return {
        "id": trace["id"],
        "session_id": trace["session_id"],
        "timestamp": trace["timestamp"],
        "model": body.get("model"),
        "is_streaming": trace["is_streaming"],
        "status_code": response.get("status"),
        "latency_ms": response.get("latency"),
        "tokens_used": response.get("tokens_used"),
        "tool_calls": ";".join(tc["tool_name"] for tc in trace["toolCalls"]),
    }


def export_traces(
    db: Session,
    export_format: str = "json",
    session_id: Optional[str] = None,
    limit: int = 100,
) -> str:
    """
    Render traces as JSON (full records) or CSV (one summary row per request).

    Args:
        db: Database session
        export_format: "json" or "csv"
        session_id: Optional session filter
        limit: Page size for the unfiltered query

    Returns:
        Exported text

    Raises:
        ValueError: For an unknown format
    """
    if export_format not in EXPORT_FORMATS:
        raise ValueError(
            f"Unsupported export format '{export_format}', expected one of {EXPORT_FORMATS}"
        )

    traces = [trace_to_dict(t) for t in get_traces(db, session_id=session_id, limit=limit)]

    if export_format == "json":
        return json.dumps(traces, indent=2, ensure_ascii=False)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for trace in traces:
        writer.writerow(_csv_row(trace))
    return buffer.getvalue()
