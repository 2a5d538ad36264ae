"""
Fan-out of trace events to live observers.

Each subscriber gets its own bounded queue and sender task, so publishing
only enqueues and never waits on a socket. A slow observer loses events
once its queue is full; a failed observer is dropped.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[Any]]


class Channel:
    """
    One observer connection.

    Args:
        send: Coroutine function delivering a text frame (e.g. WebSocket.send_text)
        max_queue: Events buffered before new ones are dropped for this observer
    """

    def __init__(self, send: SendFn, max_queue: int = 256):
        self._send = send
        self.queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=max_queue)
        self.closed = False
        self.dropped = 0
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drain())

    def offer(self, message: str) -> bool:
        """Enqueue without waiting. Returns False when the event was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def _drain(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                await self._send(message)
            except Exception as e:
                logger.debug("Observer send failed, closing channel: %s", e)
                break
        self.closed = True

    async def close(self) -> None:
        if self.closed and self._task is None:
            return
        self.closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


class BroadcastHub:
    """
    Registry of live observer channels.

    Membership changes and publishes may interleave freely: publish iterates
    over a snapshot of the set taken at call time.
    """

    def __init__(self, max_queue: int = 256):
        self.max_queue = max_queue
        self._channels: Set[Channel] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._channels)

    def subscribe(self, send: SendFn, greeting: Optional[Dict[str, Any]] = None) -> Channel:
        """
        Register a new observer and start its sender task.

        Args:
            send: Coroutine function delivering one text frame
            greeting: Event queued to this observer only, before anything else

        Returns:
            The observer's Channel
        """
        channel = Channel(send, max_queue=self.max_queue)
        if greeting is not None:
            channel.offer(json.dumps(greeting, default=str))
        self._channels.add(channel)
        channel.start()
        logger.info("Observer connected (%d total)", len(self._channels))
        return channel

    async def unsubscribe(self, channel: Channel) -> None:
        self._channels.discard(channel)
        await channel.close()
        logger.info("Observer disconnected (%d total)", len(self._channels))

    def publish(self, event: Dict[str, Any]) -> int:
        """
        Deliver an event to every open channel without waiting.

        Args:
            event: JSON-serializable event

        Returns:
            Number of channels the event was queued for
        """
        message = json.dumps(event, default=str)
        delivered = 0
        for channel in list(self._channels):
            if channel.closed:
                self._channels.discard(channel)
                continue
            if channel.offer(message):
                delivered += 1
            else:
                logger.debug(
                    "Dropped %s event for slow observer (%d dropped)",
                    event.get("type"),
                    channel.dropped,
                )
        return delivered

    async def close(self) -> None:
        channels = list(self._channels)
        self._channels.clear()
        for channel in channels:
            await channel.close()
