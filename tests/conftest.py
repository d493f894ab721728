"""
Shared pytest fixtures for relay tests
======================================

Ready-wired registry, router, chat writer and lifecycle instances sharing
one mock logger.
"""

from unittest.mock import MagicMock

import pytest

from session_relay.api.connection_registry import ConnectionRegistry
from session_relay.api.websocket.broadcasters.session_router import SessionRouter
from session_relay.api.websocket.lifecycle.connection_lifecycle import ConnectionLifecycle
from session_relay.api.websocket.services.chat_writer import ChatWriter
from session_relay.database.chat_store import InMemoryChatStore


@pytest.fixture
def mock_logger():
    """Create mock logger"""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger


@pytest.fixture
def registry(mock_logger):
    return ConnectionRegistry(logger=mock_logger)


@pytest.fixture
def router(registry, mock_logger):
    return SessionRouter(registry, logger=mock_logger)


@pytest.fixture
def chat_store():
    return InMemoryChatStore()


@pytest.fixture
def chat_writer(chat_store, mock_logger):
    return ChatWriter(chat_store, logger=mock_logger)


@pytest.fixture
def lifecycle(registry, router, chat_writer, mock_logger):
    return ConnectionLifecycle(
        registry=registry,
        router=router,
        chat_writer=chat_writer,
        logger=mock_logger
    )
