"""
Session Router
==============
Fans an envelope out to the other live connections of a session.

Routing is exclusion based ("everyone in the session but the sender"), so
nothing here assumes a session holds exactly two participants. When the
sender is alone, the sender gets a ``no-participant`` envelope instead of
silence.

Delivery is best effort: recipients that are not OPEN are skipped, and a
failed send is neither queued nor retried. Stale offers and candidates are
useless to a peer that reconnects later.
"""

import asyncio
from typing import Any, Dict, Optional, Union, TYPE_CHECKING

from ..utils.message_codec import MessageCodec, SignalEnvelope

if TYPE_CHECKING:
    from ...connection_registry import Connection, ConnectionRegistry

from ....core.logger import StructuredLogger, get_logger


class SessionRouter:
    """
    Routes envelopes to the peers of a session.

    Usage:
        router = SessionRouter(registry)
        await router.route("s1", "u1", MessageCodec.participant_joined("u1"))
    """

    DEGRADED_CLOSE_CODE = 1011

    def __init__(
        self,
        registry: "ConnectionRegistry",
        logger: Optional[StructuredLogger] = None
    ):
        """
        Initialize SessionRouter.

        Args:
            registry: Registry holding the live connections
            logger: Optional structured logger instance
        """
        self.registry = registry
        self.logger = logger or get_logger(__name__)

        # Metrics
        self.total_routed = 0
        self.total_delivered = 0
        self.total_skipped = 0
        self.total_failures = 0
        self.total_no_participant = 0
        self.total_encode_failures = 0

    async def route(
        self,
        session_id: str,
        sender_user_id: str,
        envelope: Union[SignalEnvelope, Dict[str, Any]]
    ) -> int:
        """
        Deliver ``envelope`` to every other OPEN connection in the session.

        Args:
            session_id: Session to route within
            sender_user_id: Originating user, excluded from the recipients
            envelope: Envelope forwarded verbatim

        Returns:
            Number of recipients the envelope was delivered to
        """
        self.total_routed += 1

        session_connections = await self.registry.list_by_session(session_id)
        recipients = [conn for conn in session_connections if conn.user_id != sender_user_id]

        if not recipients:
            await self._notify_sender_alone(session_id, sender_user_id)
            return 0

        try:
            frame = MessageCodec.encode(envelope)
        except (ValueError, TypeError) as e:
            # Unencodable payload is the sender's fault, never the recipients'
            self.total_encode_failures += 1
            self.logger.warning("session_router.encode_failed", {
                "session_id": session_id,
                "sender_user_id": sender_user_id,
                "error": str(e),
                "error_type": type(e).__name__
            })
            return 0

        open_recipients = [conn for conn in recipients if conn.is_open]
        skipped = len(recipients) - len(open_recipients)
        self.total_skipped += skipped

        results = await asyncio.gather(*(self._deliver(conn, frame) for conn in open_recipients))
        delivered = sum(1 for sent in results if sent)
        self.total_delivered += delivered

        self.logger.debug("session_router.routed", {
            "session_id": session_id,
            "sender_user_id": sender_user_id,
            "type": envelope.type if isinstance(envelope, SignalEnvelope) else envelope.get("type"),
            "recipients": len(recipients),
            "delivered": delivered,
            "skipped_not_open": skipped
        })

        return delivered

    async def send_to(self, connection: "Connection", envelope: Union[SignalEnvelope, Dict[str, Any]]) -> bool:
        """Send one envelope to a single connection."""
        if not connection.is_open:
            return False
        return await self._deliver(connection, MessageCodec.encode(envelope))

    async def _notify_sender_alone(self, session_id: str, sender_user_id: str):
        sender = await self.registry.find_by_user(sender_user_id, session_id)
        if sender is None or not sender.is_open:
            return

        if await self._deliver(sender, MessageCodec.encode(MessageCodec.no_participant())):
            self.total_no_participant += 1
            self.logger.debug("session_router.no_participant", {
                "session_id": session_id,
                "user_id": sender_user_id
            })

    async def _deliver(self, connection: "Connection", frame: str) -> bool:
        """Send one frame, absorbing transport failures (best effort)."""
        try:
            return await connection.send(frame)
        except UnicodeEncodeError as e:
            # Bad frame, healthy socket: not counted against the recipient
            self.total_encode_failures += 1
            self.logger.warning("session_router.encode_failed", {
                "key": str(connection.key),
                "error": str(e),
                "error_type": type(e).__name__
            })
            return False
        except Exception as e:
            connection.record_error()
            self.total_failures += 1
            self.logger.warning("session_router.send_failed", {
                "key": str(connection.key),
                "error": str(e),
                "error_type": type(e).__name__,
                "consecutive_errors": connection.consecutive_errors
            })
            if not connection.is_healthy:
                await connection.close(self.DEGRADED_CLOSE_CODE, "Connection degraded")
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_routed": self.total_routed,
            "total_delivered": self.total_delivered,
            "total_skipped": self.total_skipped,
            "total_failures": self.total_failures,
            "total_no_participant": self.total_no_participant,
            "total_encode_failures": self.total_encode_failures
        }
