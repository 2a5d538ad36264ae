"""
Live feed event payloads.

Every event is serialized as ``{"type": <kind>, "data": {...}}``; ``cleared``
carries no data.
"""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

CONNECTED_MESSAGE = "Connected to LLM Trace Proxy"


class ConnectedData(BaseModel):
    message: str = CONNECTED_MESSAGE


class RequestEventData(BaseModel):
    """Caller-relevant request fields. Headers are never included."""

    id: str
    timestamp: int
    sessionId: Optional[str] = None
    model: Optional[Any] = None
    messages: Optional[Any] = None
    tools: Optional[Any] = None
    temperature: Optional[Any] = None
    max_tokens: Optional[Any] = None
    stream: bool = False


class ResponseEventData(BaseModel):
    requestId: str
    response: Any = None
    latency: int
    tokensUsed: int = 0
    usage: Optional[Dict[str, Any]] = None
    status: Optional[int] = None
    stopReason: Any = None


class ToolCallEventData(BaseModel):
    requestId: str
    toolName: Any = None
    input: Any = None
    toolUseId: Any = None


class TraceEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["connected", "request", "response", "tool_call", "cleared"]
    data: Optional[
        Union[ConnectedData, RequestEventData, ResponseEventData, ToolCallEventData]
    ] = None

    def to_message(self) -> Dict[str, Any]:
        if self.data is None:
            return {"type": self.type}
        return {"type": self.type, "data": self.data.model_dump()}


def connected_event() -> Dict[str, Any]:
    return TraceEvent(type="connected", data=ConnectedData()).to_message()


def request_event(**fields) -> Dict[str, Any]:
    return TraceEvent(type="request", data=RequestEventData(**fields)).to_message()


def response_event(**fields) -> Dict[str, Any]:
    return TraceEvent(type="response", data=ResponseEventData(**fields)).to_message()


def tool_call_event(**fields) -> Dict[str, Any]:
    return TraceEvent(type="tool_call", data=ToolCallEventData(**fields)).to_message()


def cleared_event() -> Dict[str, Any]:
    return TraceEvent(type="cleared").to_message()

