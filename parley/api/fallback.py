"""Fallback turn execution through a local Claude CLI.

Used when no API credential is configured.  The CLI runs its own tool
loop; we only translate its ``--output-format stream-json`` lines into the
same TurnEvent stream the runner produces.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

from parley.api.models import (
    TextChunk,
    TokenUsage,
    ToolFinished,
    ToolStarted,
    TurnDone,
    TurnEvent,
    TurnFailed,
)
from parley.api.prompt import build_identity
from parley.config import Settings

logger = logging.getLogger(__name__)

_STREAM_LIMIT = 16 * 1024 * 1024  # max bytes per CLI output line


class CLIStreamParser:
    """Maps CLI stream-json lines to TurnEvents.

    Line types:
      system (init)  -> capture CLI session id
      stream_event   -> text deltas and tool_use starts
      assistant      -> ToolStarted for tool calls not already seen
      tool           -> ToolFinished
      result         -> capture session id and error flag
    """

    def __init__(self, preview_chars: int = 200) -> None:
        self.preview_chars = preview_chars
        self.cli_session_id: str | None = None
        self.is_error = False
        self.num_turns = 0
        self._emitted_tool_ids: set[str] = set()

    def feed(self, line: str) -> list[TurnEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON CLI output: %.200s", line)
            return []
        if not isinstance(data, dict):
            return []

        handler = {
            "system": self._on_system,
            "stream_event": self._on_stream_event,
            "assistant": self._on_assistant,
            "tool": self._on_tool,
            "result": self._on_result,
        }.get(data.get("type"))
        return handler(data) if handler else []

    def _on_system(self, data: dict[str, Any]) -> list[TurnEvent]:
        if data.get("subtype") == "init":
            self.cli_session_id = data.get("sessionId") or data.get("session_id") or self.cli_session_id
        return []

    def _on_stream_event(self, data: dict[str, Any]) -> list[TurnEvent]:
        wrapper = data.get("event")
        if not isinstance(wrapper, dict):
            return []
        event_type = wrapper.get("event")
        payload = wrapper.get("data")
        if not isinstance(payload, dict):
            return []

        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                tool_id = block.get("id")
                if tool_id:
                    self._emitted_tool_ids.add(tool_id)
                return [ToolStarted(name=block.get("name", "unknown"), input={})]
            return []

        if event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [TextChunk(delta["text"])]
        return []

    def _on_assistant(self, data: dict[str, Any]) -> list[TurnEvent]:
        if data.get("session_id"):
            self.cli_session_id = data["session_id"]
        message = data.get("message") or {}
        content = message.get("content")
        events: list[TurnEvent] = []
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict) or block.get("type") != "tool_use":
                    continue
                tool_id = block.get("id", "")
                if tool_id and tool_id not in self._emitted_tool_ids:
                    tool_input = block.get("input")
                    events.append(ToolStarted(
                        name=block.get("name", "unknown"),
                        input=tool_input if isinstance(tool_input, dict) else {},
                    ))
        # assistant turn complete
        self._emitted_tool_ids.clear()
        return events

    def _on_tool(self, data: dict[str, Any]) -> list[TurnEvent]:
        content = data.get("content")
        if not isinstance(content, str):
            content = "" if content is None else json.dumps(content)
        preview = content
        if len(content) > self.preview_chars:
            preview = content[:self.preview_chars] + "..."
        return [ToolFinished(
            name=data.get("name", "unknown"),
            result_preview=preview,
            is_error=bool(data.get("is_error", False)),
        )]

    def _on_result(self, data: dict[str, Any]) -> list[TurnEvent]:
        self.num_turns = data.get("num_turns") or 0
        self.is_error = bool(data.get("is_error", False))
        if data.get("session_id"):
            self.cli_session_id = data["session_id"]
        if self.is_error:
            message = data.get("result") if isinstance(data.get("result"), str) else None
            return [TurnFailed(message or "CLI reported an error", kind="cli")]
        return []


class CLIFallback:
    """Runs turns through the CLI, remembering CLI session ids for --resume."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._cli_sessions: dict[str, str] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def cli_session(self, session_id: str) -> str | None:
        return self._cli_sessions.get(session_id)

    def build_args(
        self,
        session_id: str,
        message: str,
        project: str | None = None,
        working_directory: str | None = None,
        parent_session_id: str | None = None,
    ) -> list[str]:
        settings = self._settings
        args = [
            settings.fallback_cli_path,
            "--output-format", "stream-json",
            "--verbose",
            *settings.fallback_cli_args,
            "-p", message,
            "--model", settings.model,
        ]
        cli_sid = self._cli_sessions.get(session_id)
        if cli_sid:
            args += ["--resume", cli_sid]
        elif parent_session_id and parent_session_id in self._cli_sessions:
            args += ["--resume", self._cli_sessions[parent_session_id], "--fork-session"]
        args += ["--append-system-prompt", build_identity(settings, project, working_directory)]
        return args

    @staticmethod
    def child_env() -> dict[str, str]:
        """Current environment without ANTHROPIC_API_KEY (the CLI uses its own login)."""
        env = dict(os.environ)
        env.pop("ANTHROPIC_API_KEY", None)
        return env

    def cancel(self, session_id: str) -> bool:
        proc = self._processes.get(session_id)
        if proc is None or proc.returncode is not None:
            return False
        proc.terminate()
        return True

    async def stream_turn(
        self,
        session_id: str,
        message: str,
        *,
        project: str | None = None,
        working_directory: str | None = None,
        parent_session_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run one turn through the CLI.

        A CLI that ran ends the turn with TurnDone, after a TurnFailed if it
        reported an error or exited non-zero.  A CLI that could not be
        launched ends it with TurnFailed alone.  Cancelled turns end silently.
        """
        args = self.build_args(session_id, message, project, working_directory, parent_session_id)
        cwd = Path(working_directory or self._settings.workspace_dir).expanduser()
        parser = CLIStreamParser(self._settings.tool_result_preview_chars)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd.is_dir() else None,
                env=self.child_env(),
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to launch CLI %s: %s", args[0], e)
            yield TurnFailed(f"Failed to launch Claude CLI: {e}", kind="cli")
            return

        self._processes[session_id] = proc
        logger.info(
            "CLI launched: session=%s resume=%s",
            session_id, self._cli_sessions.get(session_id, "none"),
        )
        stderr_task = asyncio.create_task(proc.stderr.read())
        cancelled = False
        try:
            async for raw in proc.stdout:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                for event in parser.feed(raw.decode("utf-8", errors="replace")):
                    yield event
                if parser.cli_session_id:
                    self._cli_sessions[session_id] = parser.cli_session_id
        finally:
            if proc.returncode is None and (cancelled or not proc.stdout.at_eof()):
                proc.terminate()
            returncode = await proc.wait()
            stderr = await stderr_task
            self._processes.pop(session_id, None)

        if parser.cli_session_id:
            self._cli_sessions[session_id] = parser.cli_session_id
        if cancelled or (cancel_event is not None and cancel_event.is_set()):
            logger.info("CLI turn cancelled: session=%s", session_id)
            return

        if returncode != 0 and not parser.is_error:
            logger.warning(
                "CLI exited with status %d: %s",
                returncode, stderr.decode("utf-8", errors="replace")[:500],
            )
            yield TurnFailed(f"CLI exited with status {returncode}", kind="cli")
        yield TurnDone(TokenUsage())
