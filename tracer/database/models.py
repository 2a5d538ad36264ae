"""
Database models for captured sessions, requests, responses and tool calls.
All timestamps are epoch milliseconds.
"""

from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


class TraceSession(Base):
    """One proxy run (or the span between two clears)."""

    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    started_at = Column(BigInteger, nullable=False)
    ended_at = Column(BigInteger)
    project_name = Column(String)
    total_requests = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)

    requests = relationship("RequestTrace", back_populates="session")


class RequestTrace(Base):
    """
    A captured inbound call, written once before forwarding begins.
    Headers are only stored when enabled, and then with credentials redacted.
    """

    __tablename__ = "requests"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("sessions.id"))
    timestamp = Column(BigInteger, nullable=False)
    method = Column(String)
    endpoint = Column(String)
    headers = Column(Text)  # JSON text or NULL
    body = Column(Text)  # serialized request payload
    is_streaming = Column(Boolean, nullable=False, default=False)

    session = relationship("TraceSession", back_populates="requests")
    response = relationship("ResponseTrace", back_populates="request", uselist=False)
    tool_calls = relationship(
        "ToolCall", back_populates="request", order_by="ToolCall.id"
    )

    __table_args__ = (
        Index("idx_requests_session", "session_id"),
        Index("idx_requests_timestamp", "timestamp"),
    )


class ResponseTrace(Base):
    """The outcome of a captured call, written once after upstream resolves."""

    __tablename__ = "responses"

    id = Column(String, primary_key=True)
    request_id = Column(String, ForeignKey("requests.id"), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    status_code = Column(Integer)
    headers = Column(Text)
    body = Column(Text)  # JSON response or raw stream text
    latency_ms = Column(Integer)
    tokens_used = Column(Integer, nullable=False, default=0)

    request = relationship("RequestTrace", back_populates="response")

    __table_args__ = (Index("idx_responses_request", "request_id"),)


class ToolCall(Base):
    """A tool invocation block found in a response."""

    __tablename__ = "tool_calls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String, ForeignKey("requests.id"), nullable=False)
    tool_name = Column(String, nullable=False)
    input = Column(Text)
    output = Column(Text)  # never populated by the proxy
    timestamp = Column(BigInteger)

    request = relationship("RequestTrace", back_populates="tool_calls")

    __table_args__ = (Index("idx_tool_calls_request", "request_id"),)
