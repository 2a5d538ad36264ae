import asyncio
import json
import os
import tempfile
import time

import httpx
import pytest
from fastapi.testclient import TestClient

# Point the trace store at a throwaway database before importing tracer modules
_tmp_dir = tempfile.mkdtemp(prefix="tracer-tests-")
os.environ["TRACE_DB_URL"] = f"sqlite:///{os.path.join(_tmp_dir, 'traces.db')}"
os.environ.pop("ANTHROPIC_API_KEY", None)
os.environ.pop("TRACE_STORE_HEADERS", None)

from tracer.core.config import Settings
from tracer.database import crud, models
from tracer.database.database import SessionLocal, engine
from tracer.main import create_app

UPSTREAM_URL = "https://upstream.test"


def make_settings(**overrides) -> Settings:
    values = {
        "upstream_url": UPSTREAM_URL,
        "default_api_key": "default-key",
        "db_url": os.environ["TRACE_DB_URL"],
    }
    values.update(overrides)
    return Settings(**values)


def message_response(content=None, usage=None, **extra):
    """A buffered Messages API response body."""
    body = {
        "id": "msg_123",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4",
        "content": content if content is not None else [{"type": "text", "text": "Hello!"}],
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": usage if usage is not None else {"input_tokens": 10, "output_tokens": 20},
    }
    body.update(extra)
    return body


def sse(event: str, data) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode()


def text_stream(text: str = "Hi there", input_tokens: int = 3, output_tokens: int = 7):
    """The chunks of a streamed Messages API text response."""
    return [
        sse(
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": "msg_stream",
                    "type": "message",
                    "role": "assistant",
                    "model": "claude-sonnet-4",
                    "content": [],
                    "stop_reason": None,
                    "usage": {"input_tokens": input_tokens, "output_tokens": 1},
                },
            },
        ),
        sse(
            "content_block_start",
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        ),
        sse(
            "content_block_delta",
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        ),
        sse("content_block_stop", {"type": "content_block_stop", "index": 0}),
        sse(
            "message_delta",
            {
                "type": "message_delta",
                "delta": {"stop_reason": "end_turn", "stop_sequence": None},
                "usage": {"output_tokens": output_tokens},
            },
        ),
        sse("message_stop", {"type": "message_stop"}),
    ]


class ChunkStream(httpx.AsyncByteStream):
    """Upstream body delivered chunk by chunk."""

    def __init__(self, chunks, delay: float = 0.0):
        self.chunks = list(chunks)
        self.delay = delay

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk


class RecordingHub:
    """Stands in for BroadcastHub, keeping every published event."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return 1

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.02):
    """Poll until predicate() is truthy; stream captures finish in the background."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def clean_trace_store():
    """Fresh tables for every test."""
    models.Base.metadata.create_all(bind=engine)
    yield
    db = SessionLocal()
    try:
        crud.clear_all(db)
    finally:
        db.close()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def upstream():
    """
    Mutable upstream behaviour: tests assign ``upstream.handler`` and read
    ``upstream.requests`` afterwards.
    """

    class Upstream:
        def __init__(self):
            self.requests = []
            self.handler = lambda request: httpx.Response(200, json=message_response())

        def __call__(self, request: httpx.Request):
            self.requests.append(request)
            return self.handler(request)

    return Upstream()


@pytest.fixture
def client(upstream):
    """Test client whose upstream is the ``upstream`` fixture."""
    app = create_app(settings=make_settings(), transport=httpx.MockTransport(upstream))
    with TestClient(app) as c:
        yield c
