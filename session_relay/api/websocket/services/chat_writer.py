"""
Chat Writer - Per-Session Serialised Chat Persistence
=====================================================
Stores are read-modify-write: two appends racing on the same session could
drop a note. ChatWriter runs at most one append per session at a time while
appends for different sessions proceed in parallel (no global lock).

Each append runs as its own task. Callers await it through asyncio.shield,
so a connection closing mid-append does not abort the write; ``drain()``
waits for everything still in flight and is called on shutdown.
"""

import asyncio
from typing import Any, Dict, Optional, Set

from ....core.logger import StructuredLogger, get_logger
from ....database.chat_store import ChatStore


class ChatWriter:
    """
    Serialises chat appends per session.

    Usage:
        writer = ChatWriter(store)
        await writer.append("session_1", "hello")   # raises ChatStoreError on failure
        await writer.drain()                        # on shutdown
    """

    def __init__(self, store: ChatStore, logger: Optional[StructuredLogger] = None):
        """
        Args:
            store: Chat store receiving the appends
            logger: Optional structured logger instance
        """
        self.store = store
        self.logger = logger or get_logger(__name__)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._in_flight: Set[asyncio.Task] = set()

        # Metrics
        self.total_appends = 0
        self.total_failures = 0

    async def append(self, session_id: str, note: Any) -> None:
        """
        Append one note, serialised behind earlier appends for the same session.

        If the caller is cancelled while waiting, the append still completes
        and the caller unwinds only after it has.

        Raises:
            ChatStoreError: the store rejected the append
        """
        task = asyncio.create_task(self._append_serialised(session_id, note))
        self._in_flight.add(task)
        task.add_done_callback(self._on_append_done)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                await asyncio.wait({task})
            raise

    async def _append_serialised(self, session_id: str, note: Any) -> None:
        lock = self._acquire_session_lock(session_id)
        try:
            async with lock:
                await self.store.append_note(session_id, note)
                self.total_appends += 1
        finally:
            self._release_session_lock(session_id)

    def _acquire_session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        return lock

    def _release_session_lock(self, session_id: str):
        remaining = self._lock_users.get(session_id, 1) - 1
        if remaining <= 0:
            self._lock_users.pop(session_id, None)
            self._locks.pop(session_id, None)
        else:
            self._lock_users[session_id] = remaining

    def _on_append_done(self, task: asyncio.Task):
        self._in_flight.discard(task)
        if task.cancelled():
            return
        # Retrieve the exception so a caller that went away does not leave it unobserved
        error = task.exception()
        if error is not None:
            self.total_failures += 1
            self.logger.debug("chat_writer.append_failed", {
                "error": str(error),
                "error_type": type(error).__name__
            })

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def active_sessions(self) -> int:
        """Sessions with an append running or queued."""
        return len(self._locks)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for in-flight appends to finish.

        Returns:
            Number of appends still pending when the timeout expired
        """
        pending_tasks = set(self._in_flight)
        if not pending_tasks:
            return 0

        self.logger.info("chat_writer.draining", {"in_flight": len(pending_tasks)})
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)

        if pending:
            self.logger.warning("chat_writer.drain_timeout", {
                "pending": len(pending),
                "timeout_seconds": timeout
            })
        return len(pending)
