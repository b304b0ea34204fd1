"""Tests for the CLI fallback: stream-json parsing, argument building
and running a stand-in CLI script end to end."""

import json
import stat

import pytest

from parley.api.fallback import CLIFallback, CLIStreamParser
from parley.api.models import TextChunk, TokenUsage, ToolFinished, ToolStarted, TurnDone, TurnFailed
from parley.config import Settings


def _line(**data) -> str:
    return json.dumps(data)


def _stream_event(event: str, payload: dict) -> str:
    return _line(type="stream_event", event={"event": event, "data": payload})


def _make_cli(tmp_path, lines: list[str], exit_code: int = 0):
    """Write an executable script that prints ``lines`` and exits."""
    script = tmp_path / "fake-cli"
    body = "\n".join(lines)
    script.write_text(f"#!/bin/sh\ncat <<'EOF'\n{body}\nEOF\nexit {exit_code}\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script


def _fallback(tmp_path, cli_path) -> CLIFallback:
    settings = Settings(
        fallback_cli_path=str(cli_path),
        fallback_cli_args=[],
        workspace_dir=str(tmp_path),
        global_instructions_dir=str(tmp_path),
    )
    return CLIFallback(settings)


# ---------------------------------------------------------------------------
# CLIStreamParser
# ---------------------------------------------------------------------------


class TestCLIStreamParser:
    def test_init_captures_session(self):
        parser = CLIStreamParser()
        assert parser.feed(_line(type="system", subtype="init", session_id="cli-1")) == []
        assert parser.cli_session_id == "cli-1"

    def test_text_delta(self):
        parser = CLIStreamParser()
        line = _stream_event("content_block_delta", {"delta": {"type": "text_delta", "text": "Hi"}})
        assert parser.feed(line) == [TextChunk("Hi")]

    def test_tool_start_not_repeated_by_assistant_line(self):
        parser = CLIStreamParser()
        start = _stream_event(
            "content_block_start",
            {"content_block": {"type": "tool_use", "id": "t1", "name": "Bash"}},
        )
        assistant = _line(type="assistant", message={"content": [
            {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
            {"type": "tool_use", "id": "t2", "name": "Read", "input": {"file_path": "a"}},
        ]})
        assert parser.feed(start) == [ToolStarted(name="Bash", input={})]
        assert parser.feed(assistant) == [ToolStarted(name="Read", input={"file_path": "a"})]

    def test_tool_result_preview_truncated(self):
        parser = CLIStreamParser(preview_chars=5)
        events = parser.feed(_line(type="tool", name="Bash", content="abcdefghij", is_error=True))
        assert events == [ToolFinished(name="Bash", result_preview="abcde...", is_error=True)]

    def test_non_string_tool_content(self):
        parser = CLIStreamParser()
        events = parser.feed(_line(type="tool", name="Read", content=[{"type": "text", "text": "x"}]))
        assert events[0].result_preview == '[{"type": "text", "text": "x"}]'

    def test_result_error(self):
        parser = CLIStreamParser()
        events = parser.feed(_line(type="result", is_error=True, result="quota exceeded", session_id="cli-2"))
        assert events == [TurnFailed("quota exceeded", kind="cli")]
        assert parser.is_error
        assert parser.cli_session_id == "cli-2"

    def test_result_success(self):
        parser = CLIStreamParser()
        assert parser.feed(_line(type="result", is_error=False, num_turns=3)) == []
        assert parser.num_turns == 3
        assert not parser.is_error

    @pytest.mark.parametrize("line", ["", "   ", "not json", "[1, 2]", '{"type": "mystery"}'])
    def test_ignored_lines(self, line):
        assert CLIStreamParser().feed(line) == []


# ---------------------------------------------------------------------------
# CLIFallback
# ---------------------------------------------------------------------------


class TestBuildArgs:
    def test_new_session(self, tmp_path):
        fallback = _fallback(tmp_path, "claude")
        args = fallback.build_args("s1", "hello", project="apollo")
        assert args[:4] == ["claude", "--output-format", "stream-json", "--verbose"]
        assert args[args.index("-p") + 1] == "hello"
        assert "--resume" not in args
        assert "Active project: apollo." in args[args.index("--append-system-prompt") + 1]

    def test_configured_args_included(self, settings):
        args = CLIFallback(settings).build_args("s1", "hello")
        assert "--dangerously-skip-permissions" in args

    @pytest.mark.asyncio
    async def test_resume_and_fork(self, tmp_path):
        script = _make_cli(tmp_path, [_line(type="system", subtype="init", session_id="cli-parent")])
        fallback = _fallback(tmp_path, script)
        [event async for event in fallback.stream_turn("parent", "hi")]
        assert fallback.cli_session("parent") == "cli-parent"

        resumed = fallback.build_args("parent", "again")
        assert resumed[resumed.index("--resume") + 1] == "cli-parent"
        assert "--fork-session" not in resumed

        forked = fallback.build_args("child", "branch", parent_session_id="parent")
        assert forked[forked.index("--resume") + 1] == "cli-parent"
        assert "--fork-session" in forked

    def test_child_env_drops_api_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")
        monkeypatch.setenv("PARLEY_MARKER", "1")
        env = CLIFallback.child_env()
        assert "ANTHROPIC_API_KEY" not in env
        assert env["PARLEY_MARKER"] == "1"


class TestStreamTurn:
    @pytest.mark.asyncio
    async def test_successful_turn(self, tmp_path):
        script = _make_cli(tmp_path, [
            _line(type="system", subtype="init", session_id="cli-9"),
            _stream_event("content_block_delta", {"delta": {"type": "text_delta", "text": "Hello"}}),
            _line(type="tool", name="Bash", content="ok"),
            _line(type="result", is_error=False, num_turns=1, session_id="cli-9"),
        ])
        fallback = _fallback(tmp_path, script)

        events = [e async for e in fallback.stream_turn("s1", "hi", working_directory=str(tmp_path))]

        assert events == [
            TextChunk("Hello"),
            ToolFinished(name="Bash", result_preview="ok", is_error=False),
            TurnDone(TokenUsage()),
        ]
        assert fallback.cli_session("s1") == "cli-9"

    @pytest.mark.asyncio
    async def test_nonzero_exit_reported(self, tmp_path):
        script = _make_cli(tmp_path, ["garbage"], exit_code=2)
        events = [e async for e in _fallback(tmp_path, script).stream_turn("s1", "hi")]
        assert events == [TurnFailed("CLI exited with status 2", kind="cli"), TurnDone(TokenUsage())]

    @pytest.mark.asyncio
    async def test_reported_error_not_duplicated(self, tmp_path):
        script = _make_cli(tmp_path, [_line(type="result", is_error=True, result="boom")], exit_code=1)
        events = [e async for e in _fallback(tmp_path, script).stream_turn("s1", "hi")]
        assert events == [TurnFailed("boom", kind="cli"), TurnDone(TokenUsage())]

    @pytest.mark.asyncio
    async def test_missing_cli(self, tmp_path):
        fallback = _fallback(tmp_path, tmp_path / "no-such-cli")
        events = [e async for e in fallback.stream_turn("s1", "hi")]
        assert len(events) == 1
        assert isinstance(events[0], TurnFailed)
        assert events[0].kind == "cli"
        assert events[0].message.startswith("Failed to launch Claude CLI")
        assert fallback.cancel("s1") is False

    def test_cancel_without_process(self, tmp_path):
        assert _fallback(tmp_path, "claude").cancel("s1") is False
