"""
Connection Registry
===================
Tracks live WebSocket connections keyed by (user_id, session_id).

A session is not stored separately: it is the set of registered connections
sharing a session_id, derived on demand by ``list_by_session``.

All map operations run under one asyncio.Lock, so a broadcast reading a
session snapshot never observes a half-applied register/deregister.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional
import time

from starlette.websockets import WebSocketDisconnect
from websockets.exceptions import ConnectionClosed

from ..core.logger import StructuredLogger


class ConnectionState(str, Enum):
    """Transport state of one connection; leaves OPEN exactly once"""
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class RegistryKey(NamedTuple):
    """Exact composite identity of a connection."""
    user_id: str
    session_id: str

    def __str__(self) -> str:
        return f"{self.user_id}-{self.session_id}"


@dataclass(eq=False)
class Connection:
    """One live socket bound to exactly one session and one user"""

    websocket: Any  # starlette WebSocket
    session_id: str
    user_id: str
    state: ConnectionState = ConnectionState.OPEN
    connected_at: datetime = field(default_factory=datetime.now)

    # Performance tracking
    messages_sent: int = 0
    messages_received: int = 0

    # Connection health
    consecutive_errors: int = 0
    last_error_time: Optional[float] = None
    is_healthy: bool = True
    max_consecutive_errors: int = 5

    # Set once the leave path has run for this connection
    departed: bool = False

    # Serialises writes to the underlying socket
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def key(self) -> RegistryKey:
        return RegistryKey(self.user_id, self.session_id)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def mark_closing(self) -> bool:
        """Move OPEN -> CLOSING. Returns False if the connection already left OPEN."""
        if self.state is not ConnectionState.OPEN:
            return False
        self.state = ConnectionState.CLOSING
        return True

    def mark_closed(self):
        self.state = ConnectionState.CLOSED

    def record_message_received(self):
        self.messages_received += 1

    def record_error(self):
        """Record send failure for health monitoring"""
        self.consecutive_errors += 1
        self.last_error_time = time.time()
        if self.consecutive_errors >= self.max_consecutive_errors:
            self.is_healthy = False

    def reset_error_count(self):
        self.consecutive_errors = 0
        self.is_healthy = True

    def get_connection_age_seconds(self) -> float:
        return time.time() - self.connected_at.timestamp()

    async def send(self, frame: str) -> bool:
        """
        Send one text frame.

        Returns False without touching the socket when the connection is not
        OPEN. A peer that has already gone away marks the connection CLOSED
        and also returns False. Any other transport error propagates to the
        caller.
        """
        if not self.is_open:
            return False

        async with self._send_lock:
            if not self.is_open:
                return False
            try:
                await self.websocket.send_text(frame)
            except (WebSocketDisconnect, ConnectionClosed):
                self.mark_closed()
                return False

        self.messages_sent += 1
        self.reset_error_count()
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the socket once; later calls are no-ops."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSING
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, WebSocketDisconnect, ConnectionClosed):
            # Starlette raises RuntimeError when a close frame was already sent
            pass
        finally:
            self.mark_closed()


class ConnectionRegistry:
    """
    In-memory map of live connections.

    Features:
    - Exact (user_id, session_id) keys, never prefix matching
    - Last writer wins on re-registration (user reconnecting)
    - Idempotent deregistration
    - Session-scoped snapshots for broadcast
    """

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self._connections: Dict[RegistryKey, Connection] = {}
        self._lock = asyncio.Lock()

        # Metrics
        self.total_registered = 0
        self.total_deregistered = 0
        self.total_replaced = 0
        self.peak_connections = 0

        self.logger = logger

    async def register(self, connection: Connection) -> Optional[Connection]:
        """
        Insert or overwrite the entry for ``connection.key``.

        Returns:
            The connection that was replaced, or None
        """
        key = connection.key
        async with self._lock:
            replaced = self._connections.get(key)
            self._connections[key] = connection
            self.total_registered += 1
            if replaced is not None and replaced is not connection:
                self.total_replaced += 1
            else:
                replaced = None

            current_count = len(self._connections)
            if current_count > self.peak_connections:
                self.peak_connections = current_count

        if self.logger:
            self.logger.info("connection_registry.registered", {
                "key": str(key),
                "session_id": connection.session_id,
                "user_id": connection.user_id,
                "replaced_existing": replaced is not None,
                "total_connections": current_count
            })

        return replaced

    async def deregister(self, key: RegistryKey, connection: Optional[Connection] = None) -> bool:
        """
        Remove the entry for ``key`` if present.

        Args:
            key: Registry key to remove
            connection: When given, remove only if the stored entry is this
                exact connection (a superseded socket must not evict its
                replacement)

        Returns:
            True if an entry was removed, False otherwise
        """
        async with self._lock:
            current = self._connections.get(key)
            if current is None:
                return False
            if connection is not None and current is not connection:
                return False

            del self._connections[key]
            self.total_deregistered += 1
            remaining = len(self._connections)

        if self.logger:
            self.logger.info("connection_registry.deregistered", {
                "key": str(key),
                "duration_seconds": current.get_connection_age_seconds(),
                "messages_sent": current.messages_sent,
                "messages_received": current.messages_received,
                "remaining_connections": remaining
            })

        return True

    async def list_by_session(self, session_id: str) -> List[Connection]:
        """Snapshot of all connections in a session. Order is undefined."""
        async with self._lock:
            return [conn for conn in self._connections.values() if conn.session_id == session_id]

    async def find_by_user(self, user_id: str, session_id: Optional[str] = None) -> Optional[Connection]:
        """
        First connection whose user_id equals ``user_id`` exactly.

        Args:
            user_id: User to look up
            session_id: Optional session to restrict the lookup to
        """
        async with self._lock:
            if session_id is not None:
                return self._connections.get(RegistryKey(user_id, session_id))
            for conn in self._connections.values():
                if conn.user_id == user_id:
                    return conn
        return None

    async def get(self, key: RegistryKey) -> Optional[Connection]:
        async with self._lock:
            return self._connections.get(key)

    async def count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def close_all(self, code: int, reason: str) -> int:
        """
        Close every registered socket (used on shutdown).

        Entries are left in place; each connection's own lifecycle
        deregisters it when its receive loop ends.
        """
        async with self._lock:
            connections = list(self._connections.values())

        for conn in connections:
            await conn.close(code, reason)

        if self.logger and connections:
            self.logger.info("connection_registry.closed_all", {
                "closed_connections": len(connections),
                "close_code": code
            })
        return len(connections)

    def get_stats(self) -> Dict[str, Any]:
        """Connection statistics snapshot (not lock-protected)"""
        sessions = {conn.session_id for conn in self._connections.values()}
        return {
            "current_connections": len(self._connections),
            "active_sessions": len(sessions),
            "peak_connections": self.peak_connections,
            "total_registered": self.total_registered,
            "total_deregistered": self.total_deregistered,
            "total_replaced": self.total_replaced
        }
