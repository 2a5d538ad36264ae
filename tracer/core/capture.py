"""
Capture pipeline: forwards one Messages API call upstream while recording
and broadcasting it.

The forwarding result and the trace result are kept apart. Upstream
transport failures reach the caller as a 502; trace persistence goes through
TraceRecorder and can only ever log a warning.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Mapping, NamedTuple, Optional, Set

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse

from tracer.core.broadcast import BroadcastHub
from tracer.core.config import Settings
from tracer.core.error_formatters import create_proxy_error_response, format_anthropic_error
from tracer.core.logging import (
    extract_request_summary,
    generate_request_id,
    now_ms,
    redact_headers,
)
from tracer.core.session_manager import SessionManager
from tracer.core.sse import StreamSummary, reassemble
from tracer.core.usage import as_dict, extract_tool_uses, tokens_of
from tracer.database.recorder import TraceRecorder
from tracer.models.events import request_event, response_event, tool_call_event

logger = logging.getLogger(__name__)

# Caller headers forwarded upstream as-is when present
PASSTHROUGH_HEADERS = ("anthropic-beta", "authorization")

UNKNOWN_TOOL = "unknown"


class InboundCall(NamedTuple):
    """An inbound Messages API call as received from the client."""

    method: str
    endpoint: str
    headers: Mapping[str, str]
    body: bytes
    payload: Dict[str, Any]

    @property
    def is_streaming(self) -> bool:
        return self.payload.get("stream") is True


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _decode_body(raw: bytes) -> Any:
    """Parse an upstream body as JSON, keeping the text when it is not."""
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class _StreamRelay:
    """Hands upstream chunks to the caller's response iterator."""

    def __init__(self):
        self.queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self.caller_connected = True

    def put(self, chunk: bytes) -> None:
        if self.caller_connected:
            self.queue.put_nowait(chunk)

    def finish(self) -> None:
        self.queue.put_nowait(None)

    async def __aiter__(self):
        try:
            while True:
                chunk = await self.queue.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            # Runs on normal end and when the caller disconnects mid-stream
            self.caller_connected = False


class CapturePipeline:
    """
    Orchestrates capture of inbound calls.

    Args:
        client: httpx client used for upstream calls
        recorder: Best-effort trace writer
        hub: Live event fan-out
        sessions: Owner of the active session
        settings: Proxy configuration
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        recorder: TraceRecorder,
        hub: BroadcastHub,
        sessions: SessionManager,
        settings: Settings,
    ):
        self.client = client
        self.recorder = recorder
        self.hub = hub
        self.sessions = sessions
        self.settings = settings
        self._pending: Set[asyncio.Task] = set()

    def upstream_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        """
        Build upstream headers, substituting configured defaults for the API
        key and protocol version when the caller omits them.
        """
        upstream = {
            "content-type": "application/json",
            # Decoded chunks must equal the wire bytes relayed to the caller
            "accept-encoding": "identity",
            "anthropic-version": headers.get("anthropic-version")
            or self.settings.anthropic_version,
        }
        api_key = headers.get("x-api-key") or self.settings.default_api_key
        if api_key:
            upstream["x-api-key"] = api_key
        for name in PASSTHROUGH_HEADERS:
            value = headers.get(name)
            if value:
                upstream[name] = value
        return upstream

    def _stored_headers(self, headers: Mapping[str, str]) -> Optional[Dict[str, str]]:
        if not self.settings.store_headers:
            return None
        return redact_headers(headers)

    async def capture(self, call: InboundCall, request_id: Optional[str] = None) -> Response:
        """
        Record, forward and reconstruct one inbound call.

        Args:
            call: The inbound call
            request_id: ID assigned by the logging middleware, if any

        Returns:
            The response relayed to the caller
        """
        request_id = request_id or generate_request_id()
        session = self.sessions.current
        timestamp = now_ms()

        self.hub.publish(
            request_event(
                id=request_id,
                timestamp=timestamp,
                sessionId=session.id,
                **extract_request_summary(call.payload),
            )
        )
        await self.recorder.record_request(
            request_id=request_id,
            session_id=session.id,
            method=call.method,
            endpoint=call.endpoint,
            body=call.body.decode("utf-8", errors="replace"),
            is_streaming=call.is_streaming,
            headers=self._stored_headers(call.headers),
            timestamp=timestamp,
        )

        if call.is_streaming:
            return await self._forward_stream(call, request_id)
        return await self._forward_buffered(call, request_id)

    async def passthrough(self, call: InboundCall, url: str) -> Response:
        """Forward a call without tracing it (e.g. token counting)."""
        try:
            upstream = await self.client.request(
                call.method, url, headers=self.upstream_headers(call.headers), content=call.body
            )
        except httpx.HTTPError as e:
            logger.error("Upstream passthrough to %s failed: %s", url, e)
            return create_proxy_error_response(502, f"Upstream request failed: {e}")
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
        )

    async def _forward_buffered(self, call: InboundCall, request_id: str) -> Response:
        start = time.perf_counter()
        try:
            upstream = await self.client.post(
                self.settings.messages_url,
                headers=self.upstream_headers(call.headers),
                content=call.body,
            )
        except httpx.HTTPError as e:
            return await self._transport_failure(request_id, start, e)

        latency_ms = _elapsed_ms(start)
        payload = _decode_body(upstream.content)
        usage = as_dict(payload).get("usage")
        tokens = tokens_of(usage)

        await self._record_tool_calls(request_id, payload)
        await self.recorder.record_response(
            request_id=request_id,
            status_code=upstream.status_code,
            body=payload,
            latency_ms=latency_ms,
            tokens_used=tokens,
            headers=self._stored_headers(upstream.headers),
        )
        self.hub.publish(
            response_event(
                requestId=request_id,
                response=payload,
                latency=latency_ms,
                tokensUsed=tokens,
                usage=usage if isinstance(usage, dict) else None,
                status=upstream.status_code,
                stopReason=as_dict(payload).get("stop_reason"),
            )
        )

        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
        )

    async def _forward_stream(self, call: InboundCall, request_id: str) -> Response:
        upstream_request = self.client.build_request(
            "POST",
            self.settings.messages_url,
            headers=self.upstream_headers(call.headers),
            content=call.body,
        )
        start = time.perf_counter()
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            return await self._transport_failure(request_id, start, e)

        relay = _StreamRelay()
        task = asyncio.create_task(self._pump_stream(request_id, upstream, relay, start))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        return StreamingResponse(
            relay,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "text/event-stream"),
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def _pump_stream(
        self,
        request_id: str,
        upstream: httpx.Response,
        relay: _StreamRelay,
        start: float,
    ) -> None:
        """
        Read the upstream body to its end, relaying each chunk as it arrives.
        Keeps reading after a caller disconnect so the trace is complete.
        """
        buffer = bytearray()
        try:
            async for chunk in upstream.aiter_bytes():
                buffer.extend(chunk)
                relay.put(chunk)
        except httpx.HTTPError as e:
            logger.warning("Upstream stream for %s ended early: %s", request_id, e)
        finally:
            relay.finish()
            await upstream.aclose()

        latency_ms = _elapsed_ms(start)
        text = buffer.decode("utf-8", errors="replace")
        try:
            summary = reassemble(text)
            await self._finish_stream(request_id, upstream, text, summary, latency_ms)
        except Exception:
            logger.exception("Failed to finalize stream capture for %s", request_id)

    async def _finish_stream(
        self,
        request_id: str,
        upstream: httpx.Response,
        text: str,
        summary: StreamSummary,
        latency_ms: int,
    ) -> None:
        # The rebuilt message carries usage merged from start and delta records
        usage = as_dict(summary.final).get("usage")
        if not isinstance(usage, dict):
            usage = summary.usage
        tokens = tokens_of(usage)

        if summary.final is not None:
            await self._record_tool_calls(request_id, summary.final)
        await self.recorder.record_response(
            request_id=request_id,
            status_code=upstream.status_code,
            body=text,
            latency_ms=latency_ms,
            tokens_used=tokens,
            headers=self._stored_headers(upstream.headers),
        )
        self.hub.publish(
            response_event(
                requestId=request_id,
                response=summary.final if summary.final is not None else text,
                latency=latency_ms,
                tokensUsed=tokens,
                usage=usage,
                status=upstream.status_code,
                stopReason=summary.stop_reason,
            )
        )

    async def _record_tool_calls(self, request_id: str, payload: Any) -> None:
        """Publish and persist each tool invocation in content order."""
        for tool_use in extract_tool_uses(payload):
            self.hub.publish(
                tool_call_event(
                    requestId=request_id,
                    toolName=tool_use.name,
                    input=tool_use.input,
                    toolUseId=tool_use.id,
                )
            )
            await self.recorder.record_tool_call(
                request_id=request_id,
                tool_name=tool_use.name or UNKNOWN_TOOL,
                tool_input=tool_use.input,
            )

    async def _transport_failure(
        self, request_id: str, start: float, error: Exception
    ) -> Response:
        latency_ms = _elapsed_ms(start)
        message = f"Upstream request failed: {error}"
        logger.error("Upstream call for request %s failed: %s", request_id, error)
        body = format_anthropic_error(502, message)

        await self.recorder.record_response(
            request_id=request_id,
            status_code=502,
            body=body,
            latency_ms=latency_ms,
            tokens_used=0,
        )
        self.hub.publish(
            response_event(
                requestId=request_id,
                response=body,
                latency=latency_ms,
                tokensUsed=0,
                status=502,
            )
        )
        return create_proxy_error_response(502, message)

    async def wait_idle(self) -> None:
        """Wait for every in-flight stream to be fully captured."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
