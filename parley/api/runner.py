"""Tool loop runner -- executes conversational turns against the Messages API.

Each turn streams a model response, dispatches any tool calls it asks
for, feeds the results back and repeats until the model stops asking for
tools or the iteration cap is reached.  Callers consume a stream of
TurnEvents.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from collections import OrderedDict
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Any

from parley.api import errors
from parley.api.client import AnthropicClient
from parley.api.fallback import CLIFallback
from parley.api.models import (
    ApiRequest,
    ContentBlock,
    TextBlock,
    TextChunk,
    TokenUsage,
    ToolFinished,
    ToolOutcome,
    ToolResultBlock,
    ToolStarted,
    ToolUseBlock,
    TurnDone,
    TurnEvent,
    TurnFailed,
)
from parley.api.sse import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJSONDelta,
    MessageDelta,
    MessageStart,
    StreamError,
    TextDelta,
)
from parley.api.state import ConversationState
from parley.api.tools import KnowledgeSource, ToolExecutor
from parley.config import Settings
from parley.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class _TurnCancelled(Exception):
    pass


def _parse_tool_input(parts: list[str]) -> dict[str, Any]:
    """Join streamed JSON fragments; empty or unparsable input becomes {}."""
    raw = "".join(parts)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparsable tool input JSON: %.200s", raw)
        return {}
    return value if isinstance(value, dict) else {}


class ToolLoopRunner:
    """Runs conversational turns with a bounded tool-use loop.

    Sessions are cached in an LRU map.  A per-session lock makes turns on
    the same session exclusive; ``cancel()`` sets a per-session flag that
    the turn checks between stream events and between tool calls.
    """

    def __init__(
        self,
        settings: Settings,
        client: AnthropicClient,
        executor: ToolExecutor,
        store: SnapshotStore,
        knowledge: KnowledgeSource | None = None,
        fallback: CLIFallback | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._executor = executor
        self._store = store
        self._knowledge = knowledge
        self._fallback = fallback
        self._states: OrderedDict[str, ConversationState] = OrderedDict()
        # Kept for the runner's lifetime; queued turns may still be waiting on them.
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _cancel_event(self, session_id: str) -> asyncio.Event:
        event = self._cancel_events.get(session_id)
        if event is None:
            event = self._cancel_events[session_id] = asyncio.Event()
        return event

    def _cache(self, state: ConversationState) -> None:
        """Insert a state with LRU eviction."""
        self._states[state.session_id] = state
        self._states.move_to_end(state.session_id)
        while len(self._states) > self._settings.max_sessions:
            evicted, _ = self._states.popitem(last=False)
            logger.debug("Evicted session %s from cache", evicted)

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def get_state(self, session_id: str) -> ConversationState | None:
        """Cached state for a session, if any."""
        return self._states.get(session_id)

    async def _load(self, session_id: str, branch_id: str | None = None) -> ConversationState | None:
        state = self._states.get(session_id)
        if state is not None:
            self._states.move_to_end(session_id)
            return state
        state = await ConversationState.restore(self._settings, self._store, session_id, branch_id)
        if state is not None:
            self._cache(state)
        return state

    async def _resolve_state(
        self,
        session_id: str,
        branch_id: str | None,
        project: str | None,
        working_directory: str | None,
        parent_session_id: str | None,
    ) -> ConversationState:
        """Cached -> restored -> forked from parent -> fresh."""
        state = await self._load(session_id, branch_id)
        if state is not None:
            return state

        if parent_session_id:
            parent = await self._load(parent_session_id)
            if parent is not None:
                state = ConversationState.fork(parent, len(parent.messages), session_id, branch_id)
                state.strip_volatile()
                logger.info(
                    "Forked session %s from %s (%d messages)",
                    session_id, parent_session_id, len(state.messages),
                )
                self._cache(state)
                return state
            logger.warning("Parent session %s not found; starting fresh", parent_session_id)

        state = ConversationState(self._settings, session_id, branch_id)
        state.build_system_prompt(project=project, working_directory=working_directory)
        logger.info("Started session %s", session_id)
        self._cache(state)
        return state

    async def fork_session(
        self,
        parent_session_id: str,
        up_to_index: int,
        new_session_id: str | None = None,
        new_branch_id: str | None = None,
    ) -> ConversationState:
        """Fork a session at a message index and persist the child.

        Raises:
            KeyError: if the parent session is unknown.
        """
        async with self._lock(parent_session_id):
            parent = await self._load(parent_session_id)
        if parent is None:
            raise KeyError(parent_session_id)

        child = ConversationState.fork(
            parent, up_to_index, new_session_id or str(uuid.uuid4()), new_branch_id
        )
        child.strip_volatile()
        await child.persist(self._store)
        self._cache(child)
        logger.info(
            "Forked session %s -> %s at index %d (%d messages)",
            parent_session_id, child.session_id, up_to_index, len(child.messages),
        )
        return child

    def cancel(self, session_id: str) -> bool:
        """Request cancellation of the session's in-flight turn.

        Returns True if a turn was running.
        """
        lock = self._locks.get(session_id)
        running = lock is not None and lock.locked()
        if running:
            self._cancel_event(session_id).set()
            if self._fallback is not None:
                self._fallback.cancel(session_id)
            logger.info("Cancellation requested for session %s", session_id)
        return running

    async def end_session(self, session_id: str, delete: bool = False) -> None:
        """Drop a session from the cache (and optionally its snapshot)."""
        self.cancel(session_id)
        async with self._lock(session_id):
            self._states.pop(session_id, None)
            if delete:
                await self._store.delete(session_id)
        logger.info("Ended session %s (deleted=%s)", session_id, delete)

    async def _knowledge_context(self, message: str, kb_context: str | None) -> str:
        if kb_context is None and self._knowledge is not None:
            try:
                kb_context = await self._knowledge.search(message)
            except Exception as e:
                logger.warning("Knowledge lookup failed: %s", e)
                kb_context = ""
        kb_context = kb_context or ""
        limit = self._settings.kb_context_max_chars
        return kb_context[:limit]

    # ------------------------------------------------------------------
    # Streaming turn
    # ------------------------------------------------------------------

    async def stream_turn(
        self,
        session_id: str,
        message: str,
        *,
        branch_id: str | None = None,
        kb_context: str | None = None,
        project: str | None = None,
        working_directory: str | None = None,
        parent_session_id: str | None = None,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run one user turn, yielding events as they happen.

        Ends with TurnDone on success, TurnFailed on API errors, and
        without a terminal event when cancelled.
        """
        async with self._lock(session_id):
            cancel_event = self._cancel_event(session_id)
            cancel_event.clear()

            if not self._settings.has_credentials and self._fallback is not None:
                async for event in self._fallback.stream_turn(
                    session_id,
                    message,
                    project=project,
                    working_directory=working_directory,
                    parent_session_id=parent_session_id,
                    cancel_event=cancel_event,
                ):
                    yield event
                return

            state = await self._resolve_state(
                session_id, branch_id, project, working_directory, parent_session_id
            )
            state.append_kb_context(await self._knowledge_context(message, kb_context))
            state.add_user_message(message)

            turn_usage = TokenUsage(turns=1)
            try:
                for iteration in range(self._settings.max_tool_iterations):
                    checkpoint = len(state.messages)
                    if cancel_event.is_set():
                        raise _TurnCancelled()

                    request = ApiRequest(
                        model=self._settings.model,
                        max_tokens=self._settings.max_tokens,
                        system=list(state.system_blocks),
                        tools=self._executor.tool_definitions(),
                        messages=state.messages_for_api(),
                    )
                    checkpoint = len(state.messages)

                    text_parts: list[str] = []
                    tool_calls: list[ToolUseBlock] = []
                    block_accumulators: dict[int, dict[str, Any]] = {}
                    stop_reason: str | None = None

                    async with aclosing(self._client.stream(request, cancel_event)) as stream:
                        async for event in stream:
                            if isinstance(event, MessageStart):
                                turn_usage.add(event.usage)

                            elif isinstance(event, ContentBlockStart):
                                if event.block_type == "tool_use":
                                    block_accumulators[event.index] = {
                                        "id": event.tool_id,
                                        "name": event.tool_name,
                                        "input_parts": [],
                                    }

                            elif isinstance(event, ContentBlockDelta):
                                if isinstance(event.delta, TextDelta):
                                    text_parts.append(event.delta.text)
                                    yield TextChunk(event.delta.text)
                                elif isinstance(event.delta, InputJSONDelta):
                                    acc = block_accumulators.get(event.index)
                                    if acc is not None:
                                        acc["input_parts"].append(event.delta.partial_json)

                            elif isinstance(event, ContentBlockStop):
                                acc = block_accumulators.pop(event.index, None)
                                if acc is not None:
                                    tool_calls.append(ToolUseBlock(
                                        id=acc["id"],
                                        name=acc["name"],
                                        input=_parse_tool_input(acc["input_parts"]),
                                    ))

                            elif isinstance(event, MessageDelta):
                                stop_reason = event.stop_reason
                                turn_usage.output_tokens += event.usage.output_tokens

                            elif isinstance(event, StreamError):
                                raise errors.StreamError(event.error_type, event.message)

                            if cancel_event.is_set():
                                break

                    if cancel_event.is_set():
                        raise _TurnCancelled()

                    blocks: list[ContentBlock] = []
                    text = "".join(text_parts)
                    if text:
                        blocks.append(TextBlock(text))
                    blocks.extend(tool_calls)
                    if blocks:
                        state.add_assistant_response(blocks)

                    if stop_reason != "tool_use" or not tool_calls:
                        break

                    # All results of this model turn go into one user message
                    results: list[ToolResultBlock] = []
                    for call in tool_calls:
                        if cancel_event.is_set():
                            raise _TurnCancelled()
                        yield ToolStarted(name=call.name, input=call.input)
                        outcome = await self._execute_tool(call)
                        yield ToolFinished(
                            name=call.name,
                            result_preview=outcome.content[:self._settings.tool_result_preview_chars],
                            is_error=outcome.is_error,
                        )
                        results.append(ToolResultBlock(call.id, outcome.content, outcome.is_error))
                    state.add_tool_results(results)
                    logger.debug(
                        "Session %s iteration %d: %d tool calls", session_id, iteration + 1, len(results)
                    )
                else:
                    logger.warning(
                        "Tool loop reached max_tool_iterations=%d (session %s)",
                        self._settings.max_tool_iterations, session_id,
                    )

            except _TurnCancelled:
                state.rollback(checkpoint)
                state.record_usage(turn_usage)
                await state.persist(self._store)
                logger.info("Turn cancelled for session %s", session_id)
                return

            except errors.ApiError as e:
                state.rollback(checkpoint)
                state.record_usage(turn_usage)
                logger.error("API error in session %s: %s", session_id, e.message)
                yield TurnFailed(
                    message=e.message,
                    kind=e.kind,
                    retry_after=getattr(e, "retry_after", None),
                )
                return

            state.record_usage(turn_usage)
            await state.persist(self._store)
            yield TurnDone(usage=copy.copy(state.token_usage))

    async def _execute_tool(self, call: ToolUseBlock) -> ToolOutcome:
        try:
            return await self._executor.execute(call.name, call.input)
        except Exception as e:
            logger.exception("Tool executor failed for %s", call.name)
            return ToolOutcome(f"Tool error: {e}", is_error=True)
