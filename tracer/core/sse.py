"""
Server-sent event reassembly for captured streaming responses.

Works on the buffered text of a whole (or truncated) stream. Malformed
records are skipped; nothing here raises on bad input.
"""

import json
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from tracer.core.usage import as_dict, merge_usage, scan_stream_usage

logger = logging.getLogger(__name__)

DEFAULT_EVENT = "message"


class SSERecord(NamedTuple):
    """One event-stream record: event name and parsed (or raw) data."""

    event: str
    data: Any


class StreamSummary(NamedTuple):
    """Everything derived from a captured stream."""

    records: List[SSERecord]
    final: Optional[Dict[str, Any]]
    usage: Optional[Dict[str, Any]]
    stop_reason: Optional[str]
    last_json: Optional[Dict[str, Any]]


def _parse_data(data: str) -> Any:
    try:
        return json.loads(data)
    except ValueError:
        return data


def parse_sse(text: str) -> List[SSERecord]:
    """
    Split event-stream text into records.

    Args:
        text: Accumulated stream text

    Returns:
        Records in stream order; records without data are dropped
    """
    records = []
    if not text:
        return records

    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    for block in normalized.split("\n\n"):
        event = None
        data_lines = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event = value.strip() or None
            elif field == "data":
                data_lines.append(value)
        if not data_lines:
            continue
        records.append(SSERecord(event or DEFAULT_EVENT, _parse_data("\n".join(data_lines))))
    return records


def last_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Find the last complete JSON object that sits on its own line.

    A leading ``data:`` field prefix is ignored.

    Args:
        text: Accumulated stream text

    Returns:
        Parsed object or None
    """
    if not text:
        return None
    for line in reversed(text.splitlines()):
        candidate = line.strip()
        if candidate.startswith("data:"):
            candidate = candidate[5:].strip()
        if not (candidate.startswith("{") and candidate.endswith("}")):
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class _MessageBuilder:
    """Rebuilds a Messages API response object from its stream events."""

    def __init__(self):
        self.message: Optional[Dict[str, Any]] = None
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.partial_json: Dict[int, str] = {}
        self.start_usage: Optional[Dict[str, Any]] = None
        self.delta_usage: Optional[Dict[str, Any]] = None

    def feed(self, record: SSERecord) -> None:
        data = as_dict(record.data)
        event_type = data.get("type") or record.event
        handler = getattr(self, f"_on_{event_type}", None)
        if handler is not None:
            handler(data)

    def _on_message_start(self, data: Dict[str, Any]) -> None:
        message = as_dict(data.get("message"))
        self.message = dict(message)
        self.message["content"] = []
        if isinstance(message.get("usage"), dict):
            self.start_usage = message["usage"]

    def _on_content_block_start(self, data: Dict[str, Any]) -> None:
        index = data.get("index")
        if isinstance(index, int):
            self.blocks[index] = dict(as_dict(data.get("content_block")))

    def _on_content_block_delta(self, data: Dict[str, Any]) -> None:
        index = data.get("index")
        block = self.blocks.get(index) if isinstance(index, int) else None
        if block is None:
            return
        delta = as_dict(data.get("delta"))
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            block["text"] = str(block.get("text") or "") + str(delta.get("text") or "")
        elif delta_type == "input_json_delta":
            self.partial_json[index] = self.partial_json.get(index, "") + str(
                delta.get("partial_json") or ""
            )
        elif delta_type == "thinking_delta":
            block["thinking"] = str(block.get("thinking") or "") + str(
                delta.get("thinking") or ""
            )
        elif delta_type == "signature_delta":
            block["signature"] = delta.get("signature")

    def _on_content_block_stop(self, data: Dict[str, Any]) -> None:
        index = data.get("index")
        if isinstance(index, int):
            self._finish_block(index)

    def _on_message_delta(self, data: Dict[str, Any]) -> None:
        if self.message is None:
            return
        for key, value in as_dict(data.get("delta")).items():
            self.message[key] = value
        if isinstance(data.get("usage"), dict):
            self.delta_usage = data["usage"]

    def _finish_block(self, index: Any) -> None:
        raw = self.partial_json.pop(index, None)
        block = self.blocks.get(index)
        if block is None or not raw:
            return
        try:
            block["input"] = json.loads(raw)
        except ValueError:
            block["input"] = {"_raw": raw}

    def build(self) -> Optional[Dict[str, Any]]:
        if self.message is None:
            return None
        # Truncated streams may leave blocks open
        for index in list(self.partial_json):
            self._finish_block(index)
        message = dict(self.message)
        message["content"] = [self.blocks[index] for index in sorted(self.blocks)]
        usage = merge_usage(self.start_usage, self.delta_usage)
        if usage is not None:
            message["usage"] = usage
        return message


def reassemble(text: str) -> StreamSummary:
    """
    Derive structured values from captured stream text.

    Args:
        text: Accumulated stream text, possibly truncated

    Returns:
        StreamSummary with records, the final message object (rebuilt from
        Messages API events when present, else the last JSON line), the
        usage record and the stop reason
    """
    records = parse_sse(text)
    usage, stop_reason = scan_stream_usage(records)

    builder = _MessageBuilder()
    for record in records:
        try:
            builder.feed(record)
        except Exception as e:
            logger.debug("Skipping unusable %s record: %s", record.event, e)

    last_json = last_json_object(text)
    final = builder.build()
    if final is None:
        final = last_json

    return StreamSummary(
        records=records,
        final=final,
        usage=usage,
        stop_reason=stop_reason,
        last_json=last_json,
    )
