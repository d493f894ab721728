"""
Chat Store
==========
Append-only persistence of chat notes per session.

Backends:
- PostgresChatStore: asyncpg pool; notes live as a JSON list in one column
  of the sessions table and are rewritten whole on every append
- InMemoryChatStore: process-local dict, used when no database URL is set

Both raise ChatStoreError on failure. Callers decide whether a failure is
fatal (the relay never treats it as such).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import asyncpg

from ..core.exceptions import ChatSessionNotFoundError, ChatStoreError
from ..core.logger import StructuredLogger, get_logger
from ..infrastructure.config.settings import DatabaseSettings


class ChatStore(ABC):
    """Interface of the chat history store."""

    async def connect(self) -> None:
        """Acquire backend resources (no-op by default)."""

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""

    @abstractmethod
    async def load_notes(self, session_id: str) -> List[Any]:
        """Ordered notes of a session; absent or empty history is []."""

    @abstractmethod
    async def append_note(self, session_id: str, note: Any) -> None:
        """Append one note to the end of the session's history."""


class InMemoryChatStore(ChatStore):
    """Process-local chat store. History is lost on restart."""

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self._notes: Dict[str, List[Any]] = {}
        self.logger = logger

    async def load_notes(self, session_id: str) -> List[Any]:
        return list(self._notes.get(session_id, []))

    async def append_note(self, session_id: str, note: Any) -> None:
        notes = list(self._notes.get(session_id, []))
        notes.append(note)
        self._notes[session_id] = notes

        if self.logger:
            self.logger.debug("chat_store.note_appended", {
                "session_id": session_id,
                "total_notes": len(notes)
            })


class PostgresChatStore(ChatStore):
    """
    asyncpg-backed chat store.

    Schema expectation: ``<notes_table>(id, notes)`` where ``notes`` holds a
    JSON-serialised list (text, json or jsonb). NULL or empty means no notes.

    Each append is one transaction that locks the session row
    (``SELECT ... FOR UPDATE``), appends, and writes the full list back.
    """

    def __init__(self, config: DatabaseSettings, logger: Optional[StructuredLogger] = None):
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = logger or get_logger(__name__)

        table = config.notes_table
        self._select_sql = f"SELECT notes FROM {table} WHERE id = $1"
        self._select_for_update_sql = f"SELECT notes FROM {table} WHERE id = $1 FOR UPDATE"
        self._update_sql = f"UPDATE {table} SET notes = $1 WHERE id = $2"

    async def connect(self):
        """Initialize connection pool"""
        if self.pool is not None:
            self.logger.warning("chat_store.pool_already_exists")
            return

        try:
            self.pool = await asyncpg.create_pool(
                self.config.url,
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
                command_timeout=self.config.command_timeout
            )
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("chat_store.connect_failed", {
                "error": str(e),
                "error_type": type(e).__name__
            })
            raise

        self.logger.info("chat_store.connected", {
            "table": self.config.notes_table,
            "min_pool_size": self.config.min_pool_size,
            "max_pool_size": self.config.max_pool_size
        })

    async def close(self):
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("chat_store.disconnected")

    def _require_pool(self, session_id: str) -> asyncpg.Pool:
        if self.pool is None:
            raise ChatStoreError(session_id, "store not connected")
        return self.pool

    def _parse_notes(self, session_id: str, raw: Any) -> List[Any]:
        if raw is None or raw == "":
            return []
        if isinstance(raw, list):
            return list(raw)
        try:
            notes = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise ChatStoreError(session_id, f"stored notes are not valid JSON: {e}") from e
        if notes is None:
            return []
        if not isinstance(notes, list):
            raise ChatStoreError(session_id, f"stored notes are a {type(notes).__name__}, expected a list")
        return notes

    async def load_notes(self, session_id: str) -> List[Any]:
        pool = self._require_pool(session_id)
        try:
            async with pool.acquire() as conn:
                raw = await conn.fetchval(self._select_sql, session_id)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise ChatStoreError(session_id, f"{type(e).__name__}: {e}") from e
        return self._parse_notes(session_id, raw)

    async def append_note(self, session_id: str, note: Any) -> None:
        pool = self._require_pool(session_id)
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(self._select_for_update_sql, session_id)
                    if row is None:
                        raise ChatSessionNotFoundError(session_id)

                    notes = self._parse_notes(session_id, row["notes"])
                    notes.append(note)
                    await conn.execute(self._update_sql, json.dumps(notes), session_id)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise ChatStoreError(session_id, f"{type(e).__name__}: {e}") from e

        self.logger.debug("chat_store.note_appended", {
            "session_id": session_id,
            "total_notes": len(notes)
        })


def create_chat_store(config: DatabaseSettings, logger: Optional[StructuredLogger] = None) -> ChatStore:
    """Postgres store when a URL is configured, in-memory store otherwise."""
    if config.url:
        return PostgresChatStore(config, logger=logger)
    return InMemoryChatStore(logger=logger)
