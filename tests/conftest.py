"""Shared fixtures: settings isolated from the real home directory, fake
collaborators, and an on-disk sqlite database per test."""

from typing import Any

import pytest
import pytest_asyncio

from parley.api.models import TokenUsage, ToolOutcome
from parley.api.sse import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJSONDelta,
    MessageDelta,
    MessageStart,
    MessageStop,
    Ping,
    TextDelta,
)
from parley.config import Settings
from parley.storage.database import Database
from parley.storage.snapshots import MemorySnapshotStore, SqlSnapshotStore

# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeExecutor:
    """Records every call; answers from a name -> outcome map."""

    def __init__(self, outcomes: dict[str, ToolOutcome] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, name: str, input: dict[str, Any]) -> ToolOutcome:
        self.calls.append((name, input))
        return self.outcomes.get(name, ToolOutcome(f"{name} ok"))

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [
            {
                "name": "read_file",
                "description": "Read a file",
                "input_schema": {"type": "object", "properties": {"file_path": {"type": "string"}}},
                "cache_control": {"type": "ephemeral"},
            }
        ]


class FakeKnowledge:
    def __init__(self, answer: str = "", fail: bool = False) -> None:
        self.answer = answer
        self.fail = fail
        self.queries: list[str] = []

    async def search(self, query: str) -> str:
        self.queries.append(query)
        if self.fail:
            raise RuntimeError("knowledge base offline")
        return self.answer


# ---------------------------------------------------------------------------
# Scripted Messages API client
# ---------------------------------------------------------------------------


def text_response(*chunks: str, input_tokens: int = 10, output_tokens: int = 5) -> list:
    events = [
        MessageStart(TokenUsage(input_tokens=input_tokens), "msg", "claude-test"),
        ContentBlockStart(0, "text"),
    ]
    events += [ContentBlockDelta(0, TextDelta(c)) for c in chunks]
    events += [
        ContentBlockStop(0),
        MessageDelta("end_turn", TokenUsage(output_tokens=output_tokens)),
        MessageStop(),
    ]
    return events


def tool_response(name: str, tool_id: str = "toolu_1", json_parts: tuple[str, ...] = ("{}",)) -> list:
    events = [
        MessageStart(TokenUsage(input_tokens=20, cache_read_tokens=15), "msg", "claude-test"),
        ContentBlockStart(0, "tool_use", tool_id, name),
    ]
    events += [ContentBlockDelta(0, InputJSONDelta(p)) for p in json_parts]
    events += [
        ContentBlockStop(0),
        Ping(),
        MessageDelta("tool_use", TokenUsage(output_tokens=7)),
        MessageStop(),
    ]
    return events


class ScriptedClient:
    """Replays one scripted response per request; the last one repeats.

    A response is a list of stream events or an exception to raise.
    """

    def __init__(self, *responses) -> None:
        self._responses = list(responses)
        self.requests = []

    async def stream(self, request, cancel_event=None):
        self.requests.append(request)
        response = self._responses[min(len(self.requests), len(self._responses)) - 1]
        if isinstance(response, Exception):
            raise response
        for event in response:
            yield event


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clean_credentials(monkeypatch):
    """Real credentials in the environment must not leak into tests."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)


@pytest.fixture
def settings(tmp_path):
    """Settings with instruction lookups pointed at empty temp dirs."""
    (tmp_path / "global").mkdir()
    (tmp_path / "workspace").mkdir()
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        global_instructions_dir=str(tmp_path / "global"),
        workspace_dir=str(tmp_path / "workspace"),
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        max_tokens=1024,
    )


@pytest.fixture
def memory_store():
    return MemorySnapshotStore()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def sql_store(database):
    return SqlSnapshotStore(database)
