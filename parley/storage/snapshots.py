"""Snapshot stores -- persist conversation state keyed by session id.

A snapshot holds JSON-ready structures only; encoding and decoding of
messages happens in ConversationState.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import delete

from parley.storage.database import Database
from parley.storage.models import ConversationSnapshot

logger = logging.getLogger(__name__)


@dataclass
class SnapshotRow:
    session_id: str
    branch_id: str | None
    messages: Any
    system_blocks: Any
    token_usage: Any
    updated_at: datetime | None = field(default=None)


class SnapshotStore(Protocol):
    async def save(
        self,
        session_id: str,
        branch_id: str | None,
        messages: list[dict[str, Any]],
        system_blocks: list[dict[str, Any]],
        token_usage: dict[str, int],
    ) -> None: ...

    async def load(self, session_id: str) -> SnapshotRow | None: ...

    async def delete(self, session_id: str) -> None: ...


class SqlSnapshotStore:
    """Snapshot store backed by the conversation_snapshots table.

    Saves are upserts (last writer wins).  Writes to the same session are
    serialized by a per-session lock.
    """

    def __init__(self, database: Database) -> None:
        self._db = database
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def save(
        self,
        session_id: str,
        branch_id: str | None,
        messages: list[dict[str, Any]],
        system_blocks: list[dict[str, Any]],
        token_usage: dict[str, int],
    ) -> None:
        async with self._lock(session_id):
            async with self._db.session() as session:
                row = await session.get(ConversationSnapshot, session_id)
                if row is None:
                    row = ConversationSnapshot(session_id=session_id)
                    session.add(row)
                row.branch_id = branch_id
                row.messages = messages
                row.system_blocks = system_blocks
                row.token_usage = token_usage
                row.updated_at = datetime.now(UTC)
                await session.commit()
        logger.debug("Saved snapshot %s (%d messages)", session_id, len(messages))

    async def load(self, session_id: str) -> SnapshotRow | None:
        async with self._db.session() as session:
            row = await session.get(ConversationSnapshot, session_id)
            if row is None:
                return None
            return SnapshotRow(
                session_id=row.session_id,
                branch_id=row.branch_id,
                messages=row.messages,
                system_blocks=row.system_blocks,
                token_usage=row.token_usage,
                updated_at=row.updated_at,
            )

    async def delete(self, session_id: str) -> None:
        async with self._lock(session_id):
            async with self._db.session() as session:
                await session.execute(
                    delete(ConversationSnapshot).where(ConversationSnapshot.session_id == session_id)
                )
                await session.commit()
        self._locks.pop(session_id, None)


class MemorySnapshotStore:
    """Dict-backed store for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self.rows: dict[str, SnapshotRow] = {}

    async def save(
        self,
        session_id: str,
        branch_id: str | None,
        messages: list[dict[str, Any]],
        system_blocks: list[dict[str, Any]],
        token_usage: dict[str, int],
    ) -> None:
        self.rows[session_id] = SnapshotRow(
            session_id=session_id,
            branch_id=branch_id,
            messages=copy.deepcopy(messages),
            system_blocks=copy.deepcopy(system_blocks),
            token_usage=dict(token_usage),
            updated_at=datetime.now(UTC),
        )

    async def load(self, session_id: str) -> SnapshotRow | None:
        row = self.rows.get(session_id)
        return copy.deepcopy(row) if row is not None else None

    async def delete(self, session_id: str) -> None:
        self.rows.pop(session_id, None)
