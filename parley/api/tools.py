"""Tool collaborator interfaces and the tool dispatcher.

Provides:
- ToolExecutor: what the runner needs from a tool backend
- KnowledgeSource: optional per-query context lookup
- ToolDispatcher: registers handlers and dispatches tool calls
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from parley.api.models import ToolOutcome

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    async def execute(self, name: str, input: dict[str, Any]) -> ToolOutcome: ...

    def tool_definitions(self) -> list[dict[str, Any]]: ...


class KnowledgeSource(Protocol):
    async def search(self, query: str) -> str: ...


class ToolError(Exception):
    """Expected tool failure; the message is returned to the model as-is."""


def mcp_response(text: str) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}]}


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the API.

    Each handler is an async callable that accepts **kwargs and returns
    either an MCP-format response ({"content": [{"type": "text", "text": "..."}]})
    or a plain string.  Raising ToolError reports a failure to the model;
    any other exception is logged and reported the same way.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    async def execute(self, name: str, input: dict[str, Any]) -> ToolOutcome:
        """Run one tool call.  Never raises for tool-level failures."""
        handler = self._handlers.get(name)
        if not handler:
            return ToolOutcome(f"Unknown tool: {name}", is_error=True)
        try:
            result = await handler(**input)
        except ToolError as e:
            logger.info("Tool %s failed: %s", name, e)
            return ToolOutcome(str(e), is_error=True)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolOutcome(f"Tool error: {e}", is_error=True)

        if isinstance(result, str):
            return ToolOutcome(result)
        try:
            return ToolOutcome(result["content"][0]["text"])
        except (KeyError, IndexError, TypeError):
            logger.warning("Tool %s returned an unexpected result shape", name)
            return ToolOutcome(f"Tool {name} returned an invalid result", is_error=True)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format.

        The last definition carries cache_control so the tool list is
        cached together with the system prompt.
        """
        definitions = [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in self._schemas.items()
        ]
        if definitions:
            definitions[-1]["cache_control"] = {"type": "ephemeral"}
        return definitions
