"""
Ownership of the active capture session.
"""

import logging
import uuid
from typing import NamedTuple, Optional

from tracer.core.logging import now_ms
from tracer.database.recorder import TraceRecorder

logger = logging.getLogger(__name__)


class SessionSnapshot(NamedTuple):
    """Immutable view of the active session taken by a capture at its start."""

    id: Optional[str]
    started_at: Optional[int]


class SessionManager:
    """
    Holds the single active session and rotates it.

    Captures read ``current`` once and keep that snapshot, so a rotation while
    calls are in flight only affects calls that start afterwards.
    """

    def __init__(self, recorder: TraceRecorder, project_name: Optional[str] = None):
        self.recorder = recorder
        self.project_name = project_name
        self._current = SessionSnapshot(id=None, started_at=None)

    @property
    def current(self) -> SessionSnapshot:
        return self._current

    async def rotate(self, end_previous: bool = True) -> str:
        """
        Start a new session and make it the active one.

        Args:
            end_previous: Stamp ended_at on the outgoing session

        Returns:
            The new session ID
        """
        previous = self._current
        started_at = now_ms()
        session_id = str(uuid.uuid4())

        if end_previous and previous.id:
            await self.recorder.end_session(previous.id, ended_at=started_at)

        await self.recorder.record_session(
            session_id, started_at=started_at, project_name=self.project_name
        )
        self._current = SessionSnapshot(id=session_id, started_at=started_at)
        logger.info("Started capture session %s", session_id)
        return session_id
