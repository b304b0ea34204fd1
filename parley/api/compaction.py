"""Context window management -- token estimation, tiered pruning, sanitization.

Pruning runs before every request and never calls the model:

  Tier 1: the most recent ``full_context_window`` turns, kept verbatim
  Tier 2: the window before that, with large tool results truncated
  Tier 3: anything older, reduced to short text only

If the transcript is still over budget, the oldest messages are dropped
until it fits or only ``min_messages`` remain.
"""

from __future__ import annotations

import copy
import json
import logging
import math

from parley.api.models import (
    ContentBlock,
    Message,
    SystemBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from parley.config import Settings

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Character-count heuristic for token usage.

    tokens = ceil(chars / chars_per_token * overhead_factor), where each
    message adds a fixed overhead for role and framing.  With the defaults
    this overestimates for English prose and code.
    """

    def __init__(
        self,
        chars_per_token: float = 3.5,
        overhead_factor: float = 1.15,
        message_overhead_chars: int = 12,
    ) -> None:
        self.chars_per_token = chars_per_token
        self.overhead_factor = overhead_factor
        self.message_overhead_chars = message_overhead_chars

    @staticmethod
    def block_chars(block: ContentBlock) -> int:
        if isinstance(block, TextBlock):
            return len(block.text)
        if isinstance(block, ToolUseBlock):
            return len(block.name) + len(json.dumps(block.input))
        return len(block.content)

    def count_chars(self, system_blocks: list[SystemBlock], messages: list[Message]) -> int:
        chars = sum(len(b.text) for b in system_blocks)
        for msg in messages:
            chars += self.message_overhead_chars
            chars += sum(self.block_chars(b) for b in msg.content)
        return chars

    def estimate(self, system_blocks: list[SystemBlock], messages: list[Message]) -> int:
        """Estimated input tokens for a request."""
        chars = self.count_chars(system_blocks, messages)
        return math.ceil(chars / self.chars_per_token * self.overhead_factor)


def is_turn_start(msg: Message) -> bool:
    """A turn begins with a user message carrying text (not only tool results)."""
    return msg.role == "user" and msg.has_text


def _is_tool_result_only(msg: Message) -> bool:
    return msg.role == "user" and bool(msg.content) and all(
        isinstance(b, ToolResultBlock) for b in msg.content
    )


# ------------------------------------------------------------------
# Pruner
# ------------------------------------------------------------------


class ContextPruner:
    """Keeps a transcript within the configured token budget."""

    def __init__(self, settings: Settings, estimator: TokenEstimator | None = None) -> None:
        self._settings = settings
        self.estimator = estimator or TokenEstimator(
            chars_per_token=settings.chars_per_token,
            overhead_factor=settings.token_overhead_factor,
        )

    def prune(self, system_blocks: list[SystemBlock], messages: list[Message]) -> list[Message]:
        """Return a transcript that fits the budget (or is at the floor).

        Old tool results and texts are reduced first.  Then, while over
        budget and above ``min_messages``, the oldest message is dropped
        and any assistant or tool-result-only messages left at the front go
        with it, so the transcript still opens on a user turn.  That cleanup
        can leave fewer than ``min_messages``: five messages may end as three.

        The input list is not modified; reduced messages are new objects.
        """
        budget = self._settings.max_context_tokens
        before = self.estimator.estimate(system_blocks, messages)
        if before <= budget:
            return list(messages)

        result = self._apply_tiers(messages)

        dropped = 0
        while (
            self.estimator.estimate(system_blocks, result) > budget
            and len(result) > self._settings.min_messages
        ):
            result.pop(0)
            dropped += 1
            dropped += self._drop_leading_non_turns(result)

        after = self.estimator.estimate(system_blocks, result)
        logger.info(
            "Pruned context: %d -> %d est. tokens, %d -> %d messages "
            "(dropped=%d, budget=%d)",
            before, after, len(messages), len(result), dropped, budget,
        )
        if after > budget:
            logger.warning(
                "Context still over budget after pruning (%d > %d) at %d messages",
                after, budget, len(result),
            )
        return result

    def _apply_tiers(self, messages: list[Message]) -> list[Message]:
        window = self._settings.full_context_window
        turn_starts = [i for i, m in enumerate(messages) if is_turn_start(m)]
        if len(turn_starts) <= window:
            return list(messages)

        tier1_start = turn_starts[-window]
        if len(turn_starts) > 2 * window:
            tier2_start = turn_starts[-2 * window]
        else:
            tier2_start = 0

        truncated = 0
        reduced = 0
        result: list[Message] = []
        for i, msg in enumerate(messages):
            if i >= tier1_start:
                result.append(msg)
            elif i >= tier2_start:
                new_msg, n = self._truncate_tool_results(msg)
                truncated += n
                result.append(new_msg)
            else:
                result.append(self._reduce_to_text(msg))
                reduced += 1

        logger.info(
            "Tiered context: %d turns (tier2 tool results truncated=%d, tier3 messages reduced=%d)",
            len(turn_starts), truncated, reduced,
        )
        return result

    def _truncate_tool_results(self, msg: Message) -> tuple[Message, int]:
        limit = self._settings.tier2_tool_result_chars
        preview = self._settings.tier2_preview_chars
        count = 0
        blocks: list[ContentBlock] = []
        for block in msg.content:
            if isinstance(block, ToolResultBlock) and len(block.content) > limit:
                blocks.append(ToolResultBlock(
                    tool_use_id=block.tool_use_id,
                    content=f"[Truncated: {len(block.content)} chars] {block.content[:preview]}...",
                    is_error=block.is_error,
                ))
                count += 1
            else:
                blocks.append(block)
        if not count:
            return msg, 0
        return Message(role=msg.role, content=blocks), count

    def _reduce_to_text(self, msg: Message) -> Message:
        limit = self._settings.tier3_text_chars
        texts: list[ContentBlock] = []
        for block in msg.content:
            if isinstance(block, TextBlock) and block.text:
                text = block.text if len(block.text) <= limit else block.text[:limit] + "..."
                texts.append(TextBlock(text=text))
        if texts:
            return Message(role=msg.role, content=texts)

        if msg.role == "assistant":
            names = [b.name for b in msg.tool_uses]
            placeholder = f"[used tools: {', '.join(names)}]" if names else "[earlier response]"
        else:
            placeholder = "[earlier context]"
        return Message(role=msg.role, content=[TextBlock(text=placeholder)])

    @staticmethod
    def _drop_leading_non_turns(messages: list[Message]) -> int:
        """Drop leading assistant and tool-result-only messages in place."""
        dropped = 0
        while messages and (messages[0].role != "user" or _is_tool_result_only(messages[0])):
            messages.pop(0)
            dropped += 1
        return dropped


# ------------------------------------------------------------------
# Sanitization
# ------------------------------------------------------------------


def _repair_tool_pairs(messages: list[Message]) -> list[Message]:
    """Drop tool_use blocks with no answer and tool_result blocks with no call."""
    result: list[Message] = []
    for i, msg in enumerate(messages):
        if msg.role == "assistant":
            nxt = messages[i + 1] if i + 1 < len(messages) else None
            answered = {b.tool_use_id for b in nxt.tool_results} if nxt and nxt.role == "user" else set()
            content = [
                b for b in msg.content
                if not isinstance(b, ToolUseBlock) or b.id in answered
            ]
        else:
            prev = messages[i - 1] if i > 0 else None
            called = {b.id for b in prev.tool_uses} if prev and prev.role == "assistant" else set()
            content = [
                b for b in msg.content
                if not isinstance(b, ToolResultBlock) or b.tool_use_id in called
            ]
        result.append(Message(role=msg.role, content=content))
    return result


def _sanitize_pass(messages: list[Message]) -> list[Message]:
    repaired = _repair_tool_pairs(messages)
    non_empty = [m for m in repaired if m.content]

    merged: list[Message] = []
    for msg in non_empty:
        if merged and merged[-1].role == msg.role:
            merged[-1].content.extend(msg.content)
        else:
            merged.append(Message(role=msg.role, content=list(msg.content)))

    start = 0
    while start < len(merged) and merged[start].role != "user":
        start += 1
    return merged[start:]


def sanitize_messages(messages: list[Message]) -> list[Message]:
    """Return a structurally valid copy of a transcript.

    Afterwards no two adjacent messages share a role, the first message is
    from the user, and every tool_use is answered by a tool_result in the
    next message (and vice versa).  The input is not modified.
    """
    current = copy.deepcopy(messages)
    while True:
        cleaned = _sanitize_pass(current)
        if cleaned == current:
            break
        current = cleaned
    if len(current) != len(messages):
        logger.debug("Sanitized transcript: %d -> %d messages", len(messages), len(current))
    return current
