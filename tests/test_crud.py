"""
Tests for trace store models and CRUD operations.
"""

import csv
import io
import json
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tracer.core.logging import generate_request_id
from tracer.database import crud, models
from tracer.database.database import SessionLocal


def _seed_request(db, session_id, request_id=None, timestamp=None, body=None, streaming=False):
    return crud.create_request_trace(
        db=db,
        request_id=request_id or generate_request_id(),
        session_id=session_id,
        method="POST",
        endpoint="/v1/messages",
        body=body if body is not None else {"model": "claude-sonnet-4", "messages": []},
        is_streaming=streaming,
        timestamp=timestamp,
    )


@pytest.fixture
def session_id(db_session: Session):
    session = crud.create_session(db_session, generate_request_id(), started_at=1000)
    return session.id


def test_create_session(db_session: Session):
    session = crud.create_session(db_session, "s-1", started_at=123, project_name="demo")
    assert session.id == "s-1"
    assert session.started_at == 123
    assert session.ended_at is None
    assert session.project_name == "demo"
    assert session.total_requests == 0
    assert session.total_tokens == 0


def test_end_session(db_session: Session, session_id):
    ended = crud.end_session(db_session, session_id, ended_at=5000)
    assert ended.ended_at == 5000
    assert crud.end_session(db_session, "missing") is None


def test_get_sessions_most_recent_first(db_session: Session):
    crud.create_session(db_session, "old", started_at=1)
    crud.create_session(db_session, "new", started_at=2)
    assert [s.id for s in crud.get_sessions(db_session)] == ["new", "old"]


def test_create_request_trace_counts_against_session(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id, streaming=True)
    assert trace.session_id == session_id
    assert trace.is_streaming
    assert trace.headers is None
    assert json.loads(trace.body)["model"] == "claude-sonnet-4"

    db_session.expire_all()
    assert crud.get_session(db_session, session_id).total_requests == 1


def test_create_response_trace_adds_tokens(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    response = crud.create_response_trace(
        db_session,
        request_id=trace.id,
        status_code=200,
        body={"content": []},
        latency_ms=150,
        tokens_used=30,
    )
    assert response.request_id == trace.id
    assert response.tokens_used == 30

    db_session.expire_all()
    assert crud.get_session(db_session, session_id).total_tokens == 30


def test_response_tokens_default_to_zero(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    response = crud.create_response_trace(
        db_session, request_id=trace.id, status_code=200, body="raw", latency_ms=1, tokens_used=None
    )
    assert response.tokens_used == 0


def test_create_tool_call(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    first = crud.create_tool_call(db_session, trace.id, "Read", {"path": "a.py"})
    second = crud.create_tool_call(db_session, trace.id, "Bash", None)
    assert second.id > first.id
    assert json.loads(first.input) == {"path": "a.py"}
    assert second.input == "null"
    assert first.output is None


def test_get_traces_joins_response_and_tool_calls(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    crud.create_response_trace(
        db_session, request_id=trace.id, status_code=200, body={"ok": True}, latency_ms=10, tokens_used=5
    )
    crud.create_tool_call(db_session, trace.id, "Read", {"path": "a.py"})
    crud.create_tool_call(db_session, trace.id, "Edit", {"path": "b.py"})

    traces = [crud.trace_to_dict(t) for t in crud.get_traces(db_session)]
    assert len(traces) == 1
    result = traces[0]
    assert result["body"]["model"] == "claude-sonnet-4"
    assert result["response"]["body"] == {"ok": True}
    assert result["response"]["tokens_used"] == 5
    assert [tc["tool_name"] for tc in result["toolCalls"]] == ["Read", "Edit"]
    assert result["toolCalls"][0]["input"] == {"path": "a.py"}


def test_get_traces_without_response(db_session: Session, session_id):
    _seed_request(db_session, session_id)
    result = crud.trace_to_dict(crud.get_traces(db_session)[0])
    assert result["response"] is None
    assert result["toolCalls"] == []


def test_get_traces_order_filter_and_limit(db_session: Session, session_id):
    other = crud.create_session(db_session, "other", started_at=2000).id
    for ts in (100, 300, 200):
        _seed_request(db_session, session_id, timestamp=ts)
    _seed_request(db_session, other, timestamp=400)

    all_traces = crud.get_traces(db_session)
    assert [t.timestamp for t in all_traces] == [400, 300, 200, 100]

    in_session = crud.get_traces(db_session, session_id=session_id, limit=1)
    assert [t.timestamp for t in in_session] == [300, 200, 100]

    assert len(crud.get_traces(db_session, limit=2)) == 2


def test_malformed_stored_body_returned_raw(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    crud.create_response_trace(
        db_session,
        request_id=trace.id,
        status_code=200,
        body="event: ping\ndata: {}\n\n",
        latency_ms=1,
    )
    result = crud.trace_to_dict(crud.get_traces(db_session)[0])
    assert result["response"]["body"] == "event: ping\ndata: {}\n\n"


def test_get_stats(db_session: Session, session_id):
    first = _seed_request(db_session, session_id)
    second = _seed_request(db_session, session_id)
    crud.create_response_trace(db_session, first.id, 200, {}, latency_ms=100, tokens_used=30)
    crud.create_response_trace(db_session, second.id, 200, {}, latency_ms=200, tokens_used=40)
    crud.create_tool_call(db_session, first.id, "Read", {})
    crud.create_tool_call(db_session, first.id, "Bash", {})
    crud.create_tool_call(db_session, second.id, "Read", {})

    stats = crud.get_stats(db_session)
    assert stats["totalRequests"] == 2
    assert stats["totalTokens"] == 70
    assert stats["avgLatency"] == 150
    assert stats["toolUsage"] == [
        {"tool_name": "Read", "count": 2},
        {"tool_name": "Bash", "count": 1},
    ]


def test_get_stats_empty(db_session: Session):
    assert crud.get_stats(db_session) == {
        "totalRequests": 0,
        "totalTokens": 0,
        "avgLatency": 0.0,
        "toolUsage": [],
    }


def test_clear_all(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    crud.create_response_trace(db_session, trace.id, 200, {}, latency_ms=1)
    crud.create_tool_call(db_session, trace.id, "Read", {})

    crud.clear_all(db_session)

    assert crud.get_traces(db_session) == []
    assert crud.get_sessions(db_session) == []
    assert db_session.query(models.ToolCall).count() == 0
    assert db_session.query(models.ResponseTrace).count() == 0


def test_clear_all_on_empty_store(db_session: Session):
    crud.clear_all(db_session)
    crud.clear_all(db_session)
    assert crud.get_traces(db_session) == []


def test_clear_all_failure_leaves_data_intact(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    crud.create_tool_call(db_session, trace.id, "Read", {})

    failure = OperationalError("COMMIT", {}, Exception("disk I/O error"))
    with patch.object(db_session, "commit", side_effect=failure):
        with pytest.raises(crud.ClearError):
            crud.clear_all(db_session)

    check = SessionLocal()
    try:
        assert check.query(models.RequestTrace).count() == 1
        assert check.query(models.ToolCall).count() == 1
        assert check.query(models.TraceSession).count() == 1
    finally:
        check.close()


def test_export_json(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    exported = json.loads(crud.export_traces(db_session, "json"))
    assert exported[0]["id"] == trace.id


def test_export_csv(db_session: Session, session_id):
    trace = _seed_request(db_session, session_id)
    crud.create_response_trace(db_session, trace.id, 200, {}, latency_ms=12, tokens_used=7)
    crud.create_tool_call(db_session, trace.id, "Read", {})
    crud.create_tool_call(db_session, trace.id, "Bash", {})

    rows = list(csv.DictReader(io.StringIO(crud.export_traces(db_session, "csv"))))
    assert len(rows) == 1
    assert rows[0]["id"] == trace.id
    assert rows[0]["model"] == "claude-sonnet-4"
    assert rows[0]["tokens_used"] == "7"
    assert rows[0]["tool_calls"] == "Read;Bash"


def test_export_unknown_format(db_session: Session):
    with pytest.raises(ValueError):
        crud.export_traces(db_session, "xml")
