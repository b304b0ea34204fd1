"""Server-sent event decoding for the Messages API stream.

The wire format is line oriented::

    event: content_block_delta
    data: {"type": "content_block_delta", "index": 0, ...}

Events are normally separated by a blank line, but some transports strip
blank lines, so a new ``event:`` line also terminates the previous event.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from parley.api.models import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class MessageStart:
    usage: TokenUsage = field(default_factory=TokenUsage)
    message_id: str = ""
    model: str = ""


@dataclass
class ContentBlockStart:
    index: int
    block_type: str  # "text" or "tool_use"
    tool_id: str = ""
    tool_name: str = ""


@dataclass
class TextDelta:
    text: str


@dataclass
class InputJSONDelta:
    partial_json: str


@dataclass
class ContentBlockDelta:
    index: int
    delta: TextDelta | InputJSONDelta


@dataclass
class ContentBlockStop:
    index: int


@dataclass
class MessageDelta:
    stop_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class MessageStop:
    pass


@dataclass
class Ping:
    pass


@dataclass
class StreamError:
    error_type: str
    message: str


StreamEvent = (
    MessageStart
    | ContentBlockStart
    | ContentBlockDelta
    | ContentBlockStop
    | MessageDelta
    | MessageStop
    | Ping
    | StreamError
)


def _decode(event_type: str, data: dict[str, Any]) -> StreamEvent | None:
    if event_type == "message_start":
        message = data["message"]
        return MessageStart(
            usage=TokenUsage.from_api(message.get("usage")),
            message_id=message.get("id", ""),
            model=message.get("model", ""),
        )

    if event_type == "content_block_start":
        block = data["content_block"]
        return ContentBlockStart(
            index=data["index"],
            block_type=block["type"],
            tool_id=block.get("id", ""),
            tool_name=block.get("name", ""),
        )

    if event_type == "content_block_delta":
        delta = data["delta"]
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return ContentBlockDelta(index=data["index"], delta=TextDelta(delta["text"]))
        if delta_type == "input_json_delta":
            return ContentBlockDelta(
                index=data["index"], delta=InputJSONDelta(delta["partial_json"])
            )
        # thinking/signature deltas etc. are not surfaced
        return None

    if event_type == "content_block_stop":
        return ContentBlockStop(index=data["index"])

    if event_type == "message_delta":
        return MessageDelta(
            stop_reason=data.get("delta", {}).get("stop_reason"),
            usage=TokenUsage.from_api(data.get("usage")),
        )

    if event_type == "message_stop":
        return MessageStop()

    if event_type == "ping":
        return Ping()

    if event_type == "error":
        error = data.get("error") or {}
        return StreamError(
            error_type=error.get("type", "unknown"),
            message=error.get("message") or data.get("message") or "Unknown API error",
        )

    return None


def parse_sse_event(event_type: str | None, data: str) -> StreamEvent | None:
    """Decode one SSE event payload.

    Returns None for unknown event types and for malformed payloads (the
    latter are logged and skipped so the stream can continue).
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping SSE event %s with invalid JSON: %.200s", event_type, data)
        return None
    if not isinstance(payload, dict):
        logger.warning("Skipping SSE event %s with non-object payload", event_type)
        return None

    kind = event_type or payload.get("type")
    if not kind:
        return None
    try:
        return _decode(kind, payload)
    except (KeyError, TypeError, AttributeError) as e:
        logger.warning("Skipping malformed SSE event %s: %s", kind, e)
        return None


class SSEDecoder:
    """Incremental line-fed SSE decoder."""

    def __init__(self) -> None:
        self._event_type: str | None = None
        self._data = ""

    def feed(self, line: str) -> list[StreamEvent]:
        """Consume one line (without its terminator) and return completed events."""
        line = line.rstrip("\r\n")

        if not line:
            return self.flush()

        if line.startswith("event:"):
            events = self.flush()
            self._event_type = line[6:].strip()
            return events

        if line.startswith("data:"):
            fragment = line[5:]
            if fragment.startswith(" "):
                fragment = fragment[1:]
            self._data += fragment
            return []

        # comments (":") and unknown fields are ignored
        return []

    def flush(self) -> list[StreamEvent]:
        """Emit the buffered event, if any, and reset."""
        event_type, data = self._event_type, self._data
        self._event_type = None
        self._data = ""
        if not data:
            return []
        event = parse_sse_event(event_type, data)
        return [event] if event is not None else []
