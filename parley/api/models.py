"""Shared data models for the API layer.

Content blocks, messages, system blocks and token usage mirror the
Anthropic Messages API wire format.  Turn events are what the runner
surfaces to its callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

# Prefix identifying the per-query knowledge block in the system prompt
VOLATILE_MARKER = "[Relevant knowledge]\n"


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        # is_error only sent when true
        if self.is_error:
            data["is_error"] = True
        return data


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Decode a wire-format content block."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data["text"])
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=dict(data.get("input") or {}))
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=data.get("content", ""),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown content block type: {block_type!r}")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single message in a conversation transcript."""

    role: str  # "user" or "assistant"
    content: list[ContentBlock] = field(default_factory=list)

    @property
    def has_text(self) -> bool:
        return any(isinstance(b, TextBlock) for b in self.content)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": [b.to_dict() for b in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        content = data.get("content", [])
        if isinstance(content, str):
            return cls(role=data["role"], content=[TextBlock(text=content)])
        return cls(role=data["role"], content=[block_from_dict(b) for b in content])


@dataclass
class SystemBlock:
    """One block of the system prompt.  Cached blocks form the stable prefix."""

    text: str
    cached: bool = False

    @property
    def is_volatile(self) -> bool:
        return self.text.startswith(VOLATILE_MARKER)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "text", "text": self.text}
        # Omit cache_control entirely when not cached (API rejects null)
        if self.cached:
            data["cache_control"] = {"type": "ephemeral"}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemBlock:
        return cls(text=data["text"], cached=data.get("cache_control") is not None)


@dataclass
class TokenUsage:
    """Token usage, accumulated additively across model turns."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    turns: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.turns += other.turns

    @classmethod
    def from_api(cls, usage: dict[str, Any] | None) -> TokenUsage:
        """Read an Anthropic usage dict (missing or null counters count as 0)."""
        usage = usage or {}
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cache_creation_tokens=usage.get("cache_creation_input_tokens") or 0,
            cache_read_tokens=usage.get("cache_read_input_tokens") or 0,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "turns": self.turns,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenUsage:
        return cls(**{k: int(data.get(k, 0) or 0) for k in cls().to_dict()})


@dataclass
class ToolOutcome:
    """Result of executing one tool call."""

    content: str
    is_error: bool = False


@dataclass
class ApiRequest:
    """A streaming Messages API request."""

    model: str
    max_tokens: int
    system: list[SystemBlock]
    tools: list[dict[str, Any]]
    messages: list[Message]
    stream: bool = True

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": [b.to_dict() for b in self.system],
            "messages": [m.to_dict() for m in self.messages],
            "stream": self.stream,
        }
        if self.tools:
            payload["tools"] = self.tools
        return payload


# ---------------------------------------------------------------------------
# Turn events (what callers of the runner observe)
# ---------------------------------------------------------------------------


@dataclass
class TextChunk:
    type: ClassVar[str] = "text"
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ToolStarted:
    type: ClassVar[str] = "tool_started"
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "name": self.name, "input": self.input}


@dataclass
class ToolFinished:
    type: ClassVar[str] = "tool_finished"
    name: str
    result_preview: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "result_preview": self.result_preview,
            "is_error": self.is_error,
        }


@dataclass
class TurnDone:
    type: ClassVar[str] = "done"
    usage: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "usage": self.usage.to_dict()}


@dataclass
class TurnFailed:
    type: ClassVar[str] = "error"
    message: str
    kind: str = "error"  # rate_limited, overloaded, http, transport, stream, cli
    retry_after: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "message": self.message, "kind": self.kind}
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


TurnEvent = TextChunk | ToolStarted | ToolFinished | TurnDone | TurnFailed
