"""
Token usage and tool invocation extraction.

Upstream payloads are arbitrary JSON, so every helper here is total: it
accepts any value and returns a neutral default instead of raising.
"""

import math
from numbers import Real
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

TOOL_USE_BLOCK = "tool_use"

# Event names carrying usage in the Anthropic streaming protocol
USAGE_DELTA_EVENT = "message_delta"
USAGE_START_EVENT = "message_start"


class ToolUse(NamedTuple):
    """A tool invocation block found in a response."""

    name: Optional[str]
    input: Any
    id: Optional[str] = None


def as_dict(value: Any) -> Dict[str, Any]:
    """Return value when it is a dict, else an empty dict."""
    return value if isinstance(value, dict) else {}


def _as_number(value: Any) -> Optional[float]:
    # bool is a Real subclass but never a token count
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    # JSON numbers like 1e400 decode to inf
    if not math.isfinite(value):
        return None
    return value


def tokens_of(usage: Any) -> int:
    """
    Compute a token count from a usage record.

    A numeric ``total_tokens`` wins; otherwise ``input_tokens`` and
    ``output_tokens`` are summed, each defaulting to 0.

    Args:
        usage: Usage record of any shape (None allowed)

    Returns:
        Token count, 0 when nothing could be derived
    """
    usage = as_dict(usage)
    total = _as_number(usage.get("total_tokens"))
    if total is not None:
        return int(total)
    input_tokens = _as_number(usage.get("input_tokens")) or 0
    output_tokens = _as_number(usage.get("output_tokens")) or 0
    total = input_tokens + output_tokens
    return int(total) if math.isfinite(total) else 0


def merge_usage(start_usage: Any, delta_usage: Any) -> Optional[Dict[str, Any]]:
    """
    Combine the usage snapshot of a stream start with its final delta.

    The delta is authoritative; fields it omits (typically input_tokens)
    are taken from the start record.

    Args:
        start_usage: usage from message_start.message.usage
        delta_usage: usage from the last message_delta

    Returns:
        Merged usage dict, or None when neither side had usage
    """
    start_usage = as_dict(start_usage)
    delta_usage = as_dict(delta_usage)
    if not start_usage and not delta_usage:
        return None
    merged = dict(start_usage)
    merged.update(delta_usage)
    return merged


def extract_tool_uses(payload: Any) -> List[ToolUse]:
    """
    Select the tool invocation blocks of a response, in content order.

    Args:
        payload: Response payload of any shape

    Returns:
        List of ToolUse, empty when content is not a list of blocks
    """
    content = as_dict(payload).get("content")
    if not isinstance(content, list):
        return []
    tool_uses = []
    for block in content:
        block = as_dict(block)
        if block.get("type") == TOOL_USE_BLOCK:
            tool_uses.append(
                ToolUse(name=block.get("name"), input=block.get("input"), id=block.get("id"))
            )
    return tool_uses


def scan_stream_usage(
    records: Iterable[Tuple[str, Any]],
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Scan reassembled stream records for usage and stop reason.

    Usage from the last message_delta record is preferred since it carries
    the final count; message_start usage is the fallback.

    Args:
        records: (event name, data) pairs

    Returns:
        (usage or None, stop_reason or None)
    """
    start_usage = None
    delta_usage = None
    stop_reason = None

    for event, data in records:
        data = as_dict(data)
        event_type = data.get("type") or event
        if event_type == USAGE_DELTA_EVENT:
            if isinstance(data.get("usage"), dict):
                delta_usage = data["usage"]
            reason = as_dict(data.get("delta")).get("stop_reason")
            if reason:
                stop_reason = reason
        elif event_type == USAGE_START_EVENT and start_usage is None:
            usage = as_dict(data.get("message")).get("usage")
            if isinstance(usage, dict):
                start_usage = usage

    return (delta_usage if delta_usage is not None else start_usage), stop_reason
