"""
Live event feed over WebSocket.
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tracer.models.events import connected_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def event_feed(websocket: WebSocket):
    """
    Subscribe to request, response, tool_call and cleared events.
    The first message on every connection is a ``connected`` event.
    Messages sent by the observer are ignored.
    """
    await websocket.accept()
    hub = websocket.app.state.hub
    channel = hub.subscribe(websocket.send_text, greeting=connected_event())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unsubscribe(channel)
