"""Per-session conversation state.

Owns the transcript in API wire form, the system prompt blocks and the
cumulative token usage for one session.  The system prompt is split into
cached blocks (stable prefix) and at most one volatile knowledge block.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable
from typing import Any

from parley.api import prompt
from parley.api.compaction import ContextPruner, sanitize_messages
from parley.api.models import (
    VOLATILE_MARKER,
    ContentBlock,
    Message,
    SystemBlock,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
)
from parley.config import Settings
from parley.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


def _decode_list(raw: Any, decode, what: str, session_id: str) -> list:
    """Decode a list of JSON objects; anything malformed yields []."""
    try:
        return [decode(item) for item in raw or []]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Discarding malformed %s in snapshot %s: %s", what, session_id, e)
        return []


class ConversationState:
    """Transcript, system blocks and usage for one session."""

    def __init__(
        self,
        settings: Settings,
        session_id: str,
        branch_id: str | None = None,
    ) -> None:
        self._settings = settings
        self.session_id = session_id
        self.branch_id = branch_id
        self.messages: list[Message] = []
        self.system_blocks: list[SystemBlock] = []
        self.token_usage = TokenUsage()
        self._pruner = ContextPruner(settings)

    # ------------------------------------------------------------------
    # System prompt
    # ------------------------------------------------------------------

    def build_system_prompt(
        self,
        project: str | None = None,
        working_directory: str | None = None,
        project_metadata: dict[str, Any] | str | None = None,
        recent_context: str | None = None,
    ) -> list[SystemBlock]:
        """Replace the system blocks with a freshly built prompt."""
        self.system_blocks = prompt.build_system_prompt(
            self._settings,
            project=project,
            working_directory=working_directory,
            project_metadata=project_metadata,
            recent_context=recent_context,
        )
        return self.system_blocks

    def strip_volatile(self) -> int:
        """Remove every volatile knowledge block; returns how many were removed."""
        before = len(self.system_blocks)
        self.system_blocks = [b for b in self.system_blocks if not b.is_volatile]
        return before - len(self.system_blocks)

    def append_kb_context(self, text: str) -> None:
        """Replace the volatile knowledge block with ``text`` (or just remove it)."""
        self.strip_volatile()
        if text:
            self.system_blocks.append(SystemBlock(VOLATILE_MARKER + text, cached=False))

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def add_user_message(self, text: str) -> None:
        self.messages.append(Message(role="user", content=[TextBlock(text)]))

    def add_assistant_response(self, blocks: list[ContentBlock]) -> None:
        self.messages.append(Message(role="assistant", content=list(blocks)))

    def add_tool_results(self, results: Iterable[ToolResultBlock]) -> None:
        """Append all results of one model turn as a single user message."""
        limit = self._settings.tool_result_max_chars
        blocks: list[ContentBlock] = []
        for result in results:
            content = result.content
            if len(content) > limit:
                content = content[:limit] + f"\n[Truncated: {len(result.content)} chars total]"
            blocks.append(ToolResultBlock(result.tool_use_id, content, result.is_error))
        self.messages.append(Message(role="user", content=blocks))

    def messages_for_api(self) -> list[Message]:
        """Prune and sanitize the transcript, returning copies for a request."""
        self.messages = self._pruner.prune(self.system_blocks, self.messages)
        self.messages = sanitize_messages(self.messages)
        return copy.deepcopy(self.messages)

    def estimate_tokens(self) -> int:
        return self._pruner.estimator.estimate(self.system_blocks, self.messages)

    def record_usage(self, usage: TokenUsage) -> None:
        self.token_usage.add(usage)

    def rollback(self, count: int) -> None:
        """Truncate the transcript back to ``count`` messages."""
        if count < len(self.messages):
            del self.messages[count:]

    # ------------------------------------------------------------------
    # Forking and rebuilding
    # ------------------------------------------------------------------

    @classmethod
    def fork(
        cls,
        parent: ConversationState,
        up_to_index: int,
        new_session_id: str,
        new_branch_id: str | None = None,
    ) -> ConversationState:
        """New state sharing the parent's first ``up_to_index`` messages.

        The index is clamped to the parent's transcript.  The child owns deep
        copies and starts with zero usage.
        """
        index = max(0, min(up_to_index, len(parent.messages)))
        child = cls(parent._settings, new_session_id, new_branch_id)
        child.system_blocks = copy.deepcopy(parent.system_blocks)
        child.messages = copy.deepcopy(parent.messages[:index])
        return child

    def build_from_history(
        self,
        history: Iterable[tuple[str, str]],
        project: str | None = None,
        working_directory: str | None = None,
    ) -> None:
        """Rebuild a text-only transcript from stored ``(role, text)`` history.

        Used when no snapshot exists.  ``system`` entries are skipped.
        """
        if not self.system_blocks:
            self.build_system_prompt(project=project, working_directory=working_directory)
        self.messages = [
            Message(role=role, content=[TextBlock(text)])
            for role, text in history
            if role in ("user", "assistant")
        ]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "system_blocks": [b.to_dict() for b in self.system_blocks],
            "token_usage": self.token_usage.to_dict(),
        }

    @classmethod
    def from_snapshot(
        cls,
        settings: Settings,
        session_id: str,
        branch_id: str | None,
        snapshot: dict[str, Any],
    ) -> ConversationState:
        """Decode a snapshot leniently: a malformed part becomes empty."""
        state = cls(settings, session_id, branch_id)
        state.messages = _decode_list(snapshot.get("messages"), Message.from_dict, "messages", session_id)
        state.system_blocks = _decode_list(
            snapshot.get("system_blocks"), SystemBlock.from_dict, "system blocks", session_id
        )
        try:
            state.token_usage = TokenUsage.from_dict(snapshot.get("token_usage") or {})
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning("Discarding malformed token usage in snapshot %s: %s", session_id, e)
            state.token_usage = TokenUsage()
        return state

    async def persist(self, store: SnapshotStore) -> None:
        if len(self.system_blocks) > self._settings.max_system_blocks:
            removed = self.strip_volatile()
            logger.warning(
                "Session %s had %d system blocks; stripped %d volatile before persisting",
                self.session_id, len(self.system_blocks) + removed, removed,
            )
        snapshot = self.to_snapshot()
        await store.save(
            self.session_id,
            self.branch_id,
            snapshot["messages"],
            snapshot["system_blocks"],
            snapshot["token_usage"],
        )

    @classmethod
    async def restore(
        cls,
        settings: Settings,
        store: SnapshotStore,
        session_id: str,
        branch_id: str | None = None,
    ) -> ConversationState | None:
        """Load a persisted session, or None if nothing was saved.

        Volatile knowledge blocks never survive a restore.
        """
        row = await store.load(session_id)
        if row is None:
            return None
        state = cls.from_snapshot(
            settings,
            session_id,
            branch_id if branch_id is not None else row.branch_id,
            {
                "messages": row.messages,
                "system_blocks": row.system_blocks,
                "token_usage": row.token_usage,
            },
        )
        state.strip_volatile()
        logger.info("Restored session %s (%d messages)", session_id, len(state.messages))
        return state
