"""
WebSocket Services
==================
Services for WebSocket functionality.

Modules:
- chat_writer: Per-session serialised chat persistence
"""

from .chat_writer import ChatWriter

__all__ = ['ChatWriter']
