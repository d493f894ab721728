"""
WebSocket Connection Lifecycle Management
=========================================
Components for managing relay connections from join to leave.

Components:
- ConnectionLifecycle: Identifier validation, message loop, cleanup
"""

from .connection_lifecycle import ConnectionLifecycle

__all__ = ["ConnectionLifecycle"]
