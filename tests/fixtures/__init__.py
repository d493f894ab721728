"""
Shared test doubles for the relay test suite.
"""

from tests.fixtures.relay_doubles import (
    FailingChatStore,
    GatedChatStore,
    MockWebSocket,
    make_connection,
)

__all__ = [
    'FailingChatStore',
    'GatedChatStore',
    'MockWebSocket',
    'make_connection',
]
