"""Tests for ConversationState -- transcript, volatile context, forking, persistence."""

import logging

import pytest

from parley.api.models import (
    VOLATILE_MARKER,
    Message,
    SystemBlock,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from parley.api.state import ConversationState
from parley.storage.snapshots import SnapshotRow


def _make_state(settings, session_id: str = "s1") -> ConversationState:
    state = ConversationState(settings, session_id, branch_id="b1")
    state.build_system_prompt(project="parley")
    return state


def _volatile_count(state: ConversationState) -> int:
    return sum(1 for b in state.system_blocks if b.text.startswith(VOLATILE_MARKER))


def _add_tool_turn(state: ConversationState, n: int) -> None:
    state.add_user_message(f"question {n}")
    state.add_assistant_response([ToolUseBlock(f"t{n}", "bash", {"command": "ls"})])
    state.add_tool_results([ToolResultBlock(f"t{n}", "a.txt")])
    state.add_assistant_response([TextBlock(f"answer {n}")])


# ---------------------------------------------------------------------------
# TestSystemBlocks
# ---------------------------------------------------------------------------


class TestSystemBlocks:
    def test_build_system_prompt_identity_cached(self, settings):
        state = _make_state(settings)
        assert state.system_blocks[0].cached
        assert "Active project: parley." in state.system_blocks[0].text

    def test_volatile_block_unique(self, settings):
        state = _make_state(settings)
        for i in range(5):
            state.append_kb_context(f"fact {i}")
            assert _volatile_count(state) == 1
        volatile = [b for b in state.system_blocks if b.is_volatile]
        assert volatile[0].text == VOLATILE_MARKER + "fact 4"
        assert not volatile[0].cached

    def test_empty_kb_context_removes_block(self, settings):
        state = _make_state(settings)
        state.append_kb_context("fact")
        state.append_kb_context("")
        assert _volatile_count(state) == 0

    def test_cached_blocks_untouched_by_kb(self, settings):
        state = _make_state(settings)
        cached = [b for b in state.system_blocks if b.cached]
        state.append_kb_context("fact")
        assert [b for b in state.system_blocks if b.cached] == cached


# ---------------------------------------------------------------------------
# TestTranscript
# ---------------------------------------------------------------------------


class TestTranscript:
    def test_each_add_appends_one_message(self, settings):
        state = _make_state(settings)
        _add_tool_turn(state, 1)
        assert [m.role for m in state.messages] == ["user", "assistant", "user", "assistant"]

    def test_tool_results_bundled(self, settings):
        state = _make_state(settings)
        state.add_tool_results([ToolResultBlock("a", "1"), ToolResultBlock("b", "2", is_error=True)])
        assert len(state.messages) == 1
        assert [r.tool_use_id for r in state.messages[0].tool_results] == ["a", "b"]
        assert state.messages[0].tool_results[1].is_error

    def test_large_tool_result_truncated(self, settings):
        state = _make_state(settings)
        state.add_tool_results([ToolResultBlock("a", "z" * 60_000)])
        content = state.messages[0].tool_results[0].content
        assert content.startswith("z" * 50_000)
        assert content.endswith("\n[Truncated: 60000 chars total]")
        assert len(content) < 50_100

    def test_messages_for_api_returns_copies(self, settings):
        state = _make_state(settings)
        state.add_user_message("hi")
        messages = state.messages_for_api()
        messages[0].content.append(TextBlock("mutated"))
        assert state.messages[0].content == [TextBlock("hi")]

    def test_messages_for_api_alternates(self, settings):
        state = _make_state(settings)
        state.add_assistant_response([TextBlock("stray")])
        state.add_user_message("one")
        state.add_user_message("two")
        messages = state.messages_for_api()
        assert [m.role for m in messages] == ["user"]
        assert messages[0].content == [TextBlock("one"), TextBlock("two")]

    def test_rollback(self, settings):
        state = _make_state(settings)
        _add_tool_turn(state, 1)
        state.rollback(1)
        assert len(state.messages) == 1
        state.rollback(5)
        assert len(state.messages) == 1

    def test_record_usage_additive(self, settings):
        state = _make_state(settings)
        state.record_usage(TokenUsage(input_tokens=10, output_tokens=2, turns=1))
        state.record_usage(TokenUsage(input_tokens=5, cache_read_tokens=7, turns=1))
        assert state.token_usage == TokenUsage(
            input_tokens=15, output_tokens=2, cache_read_tokens=7, turns=2
        )

    def test_estimate_tokens_grows(self, settings):
        state = _make_state(settings)
        before = state.estimate_tokens()
        state.add_user_message("x" * 350)
        assert state.estimate_tokens() > before


# ---------------------------------------------------------------------------
# TestFork
# ---------------------------------------------------------------------------


class TestFork:
    def test_fork_prefix_and_zero_usage(self, settings):
        parent = _make_state(settings)
        _add_tool_turn(parent, 1)
        _add_tool_turn(parent, 2)
        parent.record_usage(TokenUsage(input_tokens=100))

        child = ConversationState.fork(parent, 4, "child", "b2")
        assert child.messages == parent.messages[:4]
        assert child.system_blocks == parent.system_blocks
        assert child.token_usage == TokenUsage()
        assert child.session_id == "child"
        assert child.branch_id == "b2"

    def test_fork_independent(self, settings):
        parent = _make_state(settings)
        _add_tool_turn(parent, 1)
        child = ConversationState.fork(parent, 4, "child")

        child.add_user_message("only in child")
        child.messages[0].content[0] = TextBlock("rewritten")
        child.system_blocks.append(SystemBlock("child block"))

        assert len(parent.messages) == 4
        assert parent.messages[0].content[0] == TextBlock("question 1")
        assert all(b.text != "child block" for b in parent.system_blocks)

    @pytest.mark.parametrize("index,expected", [(-3, 0), (0, 0), (2, 2), (99, 4)])
    def test_fork_index_clamped(self, settings, index, expected):
        parent = _make_state(settings)
        _add_tool_turn(parent, 1)
        assert len(ConversationState.fork(parent, index, "c").messages) == expected


class TestBuildFromHistory:
    def test_text_only_and_system_skipped(self, settings):
        state = ConversationState(settings, "s1")
        state.build_from_history([
            ("system", "context injection"),
            ("user", "hello"),
            ("assistant", "hi there"),
        ])
        assert state.messages == [
            Message("user", [TextBlock("hello")]),
            Message("assistant", [TextBlock("hi there")]),
        ]
        assert state.system_blocks  # prompt built when missing


# ---------------------------------------------------------------------------
# TestPersistence
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trip(self, settings, memory_store):
        state = _make_state(settings)
        _add_tool_turn(state, 1)
        state.add_tool_results([ToolResultBlock("t9", "boom", is_error=True)])
        state.record_usage(TokenUsage(input_tokens=3, output_tokens=4, cache_creation_tokens=5, turns=1))
        await state.persist(memory_store)

        restored = await ConversationState.restore(settings, memory_store, "s1")
        assert restored is not None
        assert restored.messages == state.messages
        assert restored.system_blocks == state.system_blocks
        assert restored.token_usage == state.token_usage
        assert restored.branch_id == "b1"

    @pytest.mark.asyncio
    async def test_restore_missing_returns_none(self, settings, memory_store):
        assert await ConversationState.restore(settings, memory_store, "nope") is None

    @pytest.mark.asyncio
    async def test_restore_strips_volatile(self, settings, memory_store):
        state = _make_state(settings)
        state.append_kb_context("per-query fact")
        await state.persist(memory_store)

        restored = await ConversationState.restore(settings, memory_store, "s1")
        assert all(not b.is_volatile for b in restored.system_blocks)
        assert restored.system_blocks == [b for b in state.system_blocks if not b.is_volatile]

    @pytest.mark.asyncio
    async def test_persist_strips_volatile_when_too_many_blocks(self, settings, memory_store, caplog):
        state = _make_state(settings)
        state.system_blocks.extend(SystemBlock(f"extra {i}", cached=True) for i in range(9))
        state.system_blocks.append(SystemBlock(VOLATILE_MARKER + "a"))
        state.system_blocks.append(SystemBlock(VOLATILE_MARKER + "b"))
        assert len(state.system_blocks) > settings.max_system_blocks

        with caplog.at_level(logging.WARNING, logger="parley.api.state"):
            await state.persist(memory_store)

        saved = memory_store.rows["s1"].system_blocks
        assert all(not b["text"].startswith(VOLATILE_MARKER) for b in saved)
        assert "stripped 2 volatile" in caplog.text

    @pytest.mark.asyncio
    async def test_malformed_snapshot_decodes_leniently(self, settings, memory_store, caplog):
        memory_store.rows["bad"] = SnapshotRow(
            session_id="bad",
            branch_id=None,
            messages=[{"role": "user", "content": [{"type": "mystery"}]}],
            system_blocks=[{"type": "text", "text": "ok"}],
            token_usage="not a dict",
        )
        with caplog.at_level(logging.WARNING, logger="parley.api.state"):
            restored = await ConversationState.restore(settings, memory_store, "bad")
        assert restored.messages == []
        assert restored.system_blocks == [SystemBlock("ok")]
        assert restored.token_usage == TokenUsage()
        assert "malformed" in caplog.text

    def test_snapshot_wire_format(self, settings):
        state = _make_state(settings)
        state.add_tool_results([ToolResultBlock("t1", "fine")])
        snapshot = state.to_snapshot()
        assert "is_error" not in snapshot["messages"][0]["content"][0]
        assert snapshot["system_blocks"][0]["cache_control"] == {"type": "ephemeral"}
