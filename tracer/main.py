"""
FastAPI application: Messages proxy, trace query API and live event feed.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tracer import __version__
from tracer.core.broadcast import BroadcastHub
from tracer.core.capture import CapturePipeline
from tracer.core.config import Settings, get_settings
from tracer.core.logging import configure_logging
from tracer.core.session_manager import SessionManager
from tracer.core.startup_validation import validate_startup
from tracer.database import models
from tracer.database.database import engine
from tracer.database.recorder import TraceRecorder
from tracer.middleware.logging_middleware import LoggingMiddleware
from tracer.routers.events import router as events_router
from tracer.routers.health import router as health_router
from tracer.routers.messages import router as messages_router
from tracer.routers.traces import router as traces_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        settings: Configuration (read from the environment when omitted)
        transport: httpx transport for upstream calls (tests inject a mock)

    Returns:
        FastAPI application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        models.Base.metadata.create_all(bind=engine)
        validate_startup(settings)

        # Upstream duration is bounded only by the upstream itself
        client = httpx.AsyncClient(timeout=httpx.Timeout(None), transport=transport)
        recorder = TraceRecorder()
        hub = BroadcastHub(max_queue=settings.observer_queue_size)
        sessions = SessionManager(recorder, project_name=settings.project_name)
        await sessions.rotate()

        pipeline = CapturePipeline(client, recorder, hub, sessions, settings)
        app.state.settings = settings
        app.state.recorder = recorder
        app.state.hub = hub
        app.state.sessions = sessions
        app.state.pipeline = pipeline
        logger.info("Forwarding /v1/messages to %s", settings.messages_url)
        try:
            yield
        finally:
            await pipeline.wait_idle()
            await hub.close()
            await client.aclose()

    app = FastAPI(
        title="LLM Trace Proxy",
        description="Transparent Messages API proxy with trace capture and live events",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(messages_router)
    app.include_router(traces_router)
    app.include_router(events_router)
    app.include_router(health_router)
    return app


configure_logging(get_settings().log_level)
app = create_app()
