"""
Core Exceptions - Session Relay
===============================
Centralized exception definitions for the signaling relay.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for relay operations."""
    pass


class DecodeError(RelayError):
    """
    Raised when an inbound frame cannot be decoded into a signal envelope.

    Recoverable and connection-local: the frame is discarded and the
    connection stays joined.
    """
    def __init__(self, reason: str, raw_preview: Optional[str] = None):
        self.reason = reason
        self.raw_preview = raw_preview
        self.message = f"Cannot decode frame: {reason}"
        super().__init__(self.message)


class MissingIdentifiersError(RelayError):
    """
    Raised when a connection attempt lacks sessionId or userId.

    WebSocket close code: 1008 Policy Violation
    """
    def __init__(self, session_id: Optional[str], user_id: Optional[str]):
        self.session_id = session_id
        self.user_id = user_id
        self.message = "Missing sessionId or userId"
        super().__init__(self.message)


class ChatStoreError(RelayError):
    """
    Raised when the chat store cannot load or append notes.

    Chat delivery to peers is never gated on this error.
    """
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        self.message = f"Chat store failure for session {session_id}: {reason}"
        super().__init__(self.message)


class ChatSessionNotFoundError(ChatStoreError):
    """Raised when no session row exists to append a note to."""
    def __init__(self, session_id: str):
        super().__init__(session_id, "session not found")
