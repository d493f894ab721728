"""
ConnectionLifecycle - WebSocket Connection Management
=====================================================
Orchestrates one relay connection from join to leave.

Responsibilities:
- Validate sessionId/userId and reject incomplete connections (1008)
- Register the connection and announce ``participant-joined``
- Process inbound frames: decode, persist chat, route to session peers
- Deregister exactly once on close or transport error and announce
  ``participant-left``

This is an orchestrator that coordinates:
- ConnectionRegistry (connection tracking)
- SessionRouter (fan-out to session peers)
- ChatWriter (per-session serialised chat persistence)
- MessageCodec (wire decoding)
"""

import asyncio
from typing import Any, Dict, Optional, Tuple, Union

from ...connection_registry import Connection, ConnectionRegistry
from ..broadcasters.session_router import SessionRouter
from ..services.chat_writer import ChatWriter
from ..utils.message_codec import MessageCodec, MessageType, SignalEnvelope, SIGNALING_TYPES
from ....core.exceptions import ChatStoreError, DecodeError, MissingIdentifiersError
from ....core.logger import StructuredLogger


class ConnectionLifecycle:
    """
    Orchestrates WebSocket connection lifecycle.

    Lifecycle stages:
    1. Connecting: read identifiers from the query string, reject if missing
    2. Joined: register, announce join, then loop over inbound frames
    3. Closed: deregister once, announce leave

    Dependencies:
    - registry: Connection tracking
    - router: Session-scoped routing
    - chat_writer: Chat persistence
    - logger: Diagnostics logging
    """

    SESSION_PARAM = "sessionId"
    USER_PARAM = "userId"
    REPLACED_CLOSE_CODE = 1000

    def __init__(self,
                 registry: ConnectionRegistry,
                 router: SessionRouter,
                 chat_writer: ChatWriter,
                 policy_violation_code: int = 1008,
                 max_consecutive_send_errors: int = 5,
                 logger: Optional[StructuredLogger] = None):
        """
        Initialize connection lifecycle orchestrator.

        Args:
            registry: ConnectionRegistry for connection tracking
            router: SessionRouter for fan-out
            chat_writer: ChatWriter for chat persistence
            policy_violation_code: Close code for connections missing identifiers
            max_consecutive_send_errors: Send failures before a connection counts as degraded
            logger: Optional logger for diagnostics
        """
        self.registry = registry
        self.router = router
        self.chat_writer = chat_writer
        self.policy_violation_code = policy_violation_code
        self.max_consecutive_send_errors = max_consecutive_send_errors
        self.logger = logger

        # Statistics
        self.total_connections_handled = 0
        self.total_connections_rejected = 0
        self.total_messages_processed = 0
        self.total_decode_errors = 0

    def _extract_identifiers(self, websocket: Any) -> Tuple[str, str]:
        """
        Read sessionId and userId from the upgrade request's query string.

        Raises:
            MissingIdentifiersError: either identifier missing or empty
        """
        params = getattr(websocket, "query_params", None) or {}
        session_id = params.get(self.SESSION_PARAM)
        user_id = params.get(self.USER_PARAM)

        if not session_id or not user_id:
            raise MissingIdentifiersError(session_id, user_id)
        return session_id, user_id

    async def handle_client_connection(self, websocket: Any):
        """
        Handle one accepted WebSocket connection until it closes.

        Args:
            websocket: Accepted starlette WebSocket
        """
        try:
            session_id, user_id = self._extract_identifiers(websocket)
        except MissingIdentifiersError as e:
            self.total_connections_rejected += 1
            if self.logger:
                self.logger.warning("connection_lifecycle.missing_identifiers", {
                    "session_id": e.session_id,
                    "user_id": e.user_id
                })
            await websocket.close(code=self.policy_violation_code, reason=e.message)
            return

        connection = Connection(
            websocket=websocket,
            session_id=session_id,
            user_id=user_id,
            max_consecutive_errors=self.max_consecutive_send_errors
        )

        replaced = await self.registry.register(connection)
        self.total_connections_handled += 1

        if self.logger:
            self.logger.info("connection_lifecycle.client_joined", {
                "key": str(connection.key),
                "session_id": session_id,
                "user_id": user_id,
                "replaced_existing": replaced is not None
            })

        close_reason = "closed"
        try:
            if replaced is not None:
                await replaced.close(self.REPLACED_CLOSE_CODE, "Replaced by new connection")
            await self.router.route(session_id, user_id, MessageCodec.participant_joined(user_id))
            await self._handle_client_messages(connection)
        except asyncio.CancelledError:
            close_reason = "cancelled"
            raise
        except Exception as e:
            # Transport errors end the connection exactly like a close
            close_reason = "error"
            if self.logger:
                self.logger.error("connection_lifecycle.transport_error", {
                    "key": str(connection.key),
                    "error": str(e),
                    "error_type": type(e).__name__
                })
        finally:
            await self._leave(connection, close_reason)

    async def _handle_client_messages(self, connection: Connection):
        """Receive frames until the client disconnects."""
        websocket = connection.websocket
        while True:
            message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                if self.logger:
                    self.logger.info("connection_lifecycle.client_disconnected", {
                        "key": str(connection.key),
                        "close_code": message.get("code")
                    })
                return

            # Closed by the relay (replaced or degraded); frames still in flight are dropped
            if not connection.is_open:
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue

            await self._process_message(connection, raw)

    async def _process_message(self, connection: Connection, raw: Union[str, bytes]):
        """
        Process a single inbound frame.

        - Signaling types are forwarded unmodified
        - Chat is persisted, then forwarded even if persistence failed
        - Unknown types are ignored
        - Undecodable frames are logged and dropped
        """
        connection.record_message_received()

        try:
            envelope = MessageCodec.decode(raw)
        except DecodeError as e:
            self.total_decode_errors += 1
            if self.logger:
                self.logger.warning("connection_lifecycle.decode_error", {
                    "key": str(connection.key),
                    "error": e.reason,
                    "raw_preview": e.raw_preview
                })
            return

        message_type = envelope.message_type

        if message_type in SIGNALING_TYPES:
            await self.router.route(connection.session_id, connection.user_id, envelope)
        elif message_type is MessageType.CHAT:
            await self._persist_chat(connection, envelope)
            await self.router.route(connection.session_id, connection.user_id, envelope)
        else:
            if self.logger:
                self.logger.debug("connection_lifecycle.message_ignored", {
                    "key": str(connection.key),
                    "type": envelope.type
                })
            return

        self.total_messages_processed += 1

    async def _persist_chat(self, connection: Connection, envelope: SignalEnvelope):
        """Append the chat payload; failures are logged, never raised."""
        try:
            await self.chat_writer.append(connection.session_id, envelope.get("message"))
        except ChatStoreError as e:
            if self.logger:
                self.logger.warning("connection_lifecycle.chat_persist_failed", {
                    "key": str(connection.key),
                    "session_id": e.session_id,
                    "reason": e.reason
                })
        except Exception as e:
            if self.logger:
                self.logger.error("connection_lifecycle.chat_persist_failed", {
                    "key": str(connection.key),
                    "error": str(e),
                    "error_type": type(e).__name__
                }, exc_info=True)

    async def _leave(self, connection: Connection, reason: str):
        """
        Deregister and announce departure, at most once per connection.

        A connection superseded by a reconnect under the same key is not
        in the registry any more; its user is still present, so no
        ``participant-left`` is sent for it.
        """
        if connection.departed:
            return
        connection.departed = True
        connection.mark_closing()

        removed = await self.registry.deregister(connection.key, connection)
        connection.mark_closed()

        if self.logger:
            self.logger.info("connection_lifecycle.client_left", {
                "key": str(connection.key),
                "reason": reason,
                "deregistered": removed
            })

        if not removed:
            return

        await self.router.route(
            connection.session_id,
            connection.user_id,
            MessageCodec.participant_left(connection.user_id)
        )

    def get_stats(self) -> Dict[str, Any]:
        """
        Get connection lifecycle statistics.

        Returns:
            Statistics dict with connection and message counts
        """
        return {
            "total_connections_handled": self.total_connections_handled,
            "total_connections_rejected": self.total_connections_rejected,
            "total_messages_processed": self.total_messages_processed,
            "total_decode_errors": self.total_decode_errors
        }
