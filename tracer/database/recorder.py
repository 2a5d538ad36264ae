"""
Best-effort persistence for the capture pipeline.

Every write goes through TraceRecorder, which runs it off the event loop,
serializes it behind a single writer lock and turns any failure into a
logged warning plus a WriteResult. Nothing here raises to the caller.
"""

import logging
import threading
from typing import Any, Callable, NamedTuple, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from . import crud
from .database import SessionLocal

logger = logging.getLogger(__name__)


class WriteResult(NamedTuple):
    """Outcome of a best-effort write."""

    ok: bool
    error: Optional[str] = None
    value: Any = None


class TraceRecorder:
    """
    Wraps crud writes so trace persistence can never fail a proxied call.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self._write_lock = threading.Lock()

    def _run(self, operation: str, fn: Callable[..., Any], **kwargs) -> WriteResult:
        with self._write_lock:
            db = self.session_factory()
            try:
                value = fn(db, **kwargs)
                return WriteResult(ok=True, value=getattr(value, "id", None))
            except Exception as e:
                db.rollback()
                logger.warning("Trace store %s failed: %s", operation, e)
                return WriteResult(ok=False, error=str(e))
            finally:
                db.close()

    async def _write(self, operation: str, fn: Callable[..., Any], **kwargs) -> WriteResult:
        try:
            return await run_in_threadpool(self._run, operation, fn, **kwargs)
        except Exception as e:
            logger.warning("Trace store %s could not be scheduled: %s", operation, e)
            return WriteResult(ok=False, error=str(e))

    async def record_session(self, session_id: str, started_at: int, project_name=None) -> WriteResult:
        return await self._write(
            "session insert",
            crud.create_session,
            session_id=session_id,
            started_at=started_at,
            project_name=project_name,
        )

    async def end_session(self, session_id: str, ended_at: int) -> WriteResult:
        return await self._write(
            "session end", crud.end_session, session_id=session_id, ended_at=ended_at
        )

    async def record_request(self, **fields) -> WriteResult:
        return await self._write("request insert", crud.create_request_trace, **fields)

    async def record_response(self, **fields) -> WriteResult:
        return await self._write("response insert", crud.create_response_trace, **fields)

    async def record_tool_call(self, **fields) -> WriteResult:
        return await self._write("tool call insert", crud.create_tool_call, **fields)
