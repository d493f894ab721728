"""
WebSocket API Module
====================
Signaling relay internals with separation of concerns.

Architecture:
- broadcasters/: Session-scoped fan-out (SessionRouter)
- lifecycle/: Connection lifecycle (join, message loop, leave)
- services/: Chat persistence serialisation (ChatWriter)
- utils/: Wire codec
"""

__all__ = []
