"""
WebSocket Broadcasters
======================
Session-scoped fan-out of relay envelopes.
"""

from .session_router import SessionRouter

__all__ = ["SessionRouter"]
