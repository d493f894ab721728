"""
Dependency Injection Container - Composition Root Pattern
========================================================
Assembles the relay's objects from AppSettings.

CRITICAL RULES:
- NO global access (no get_container() function)
- NO business logic (only object assembly and resource lifecycle)
- Constructor injection only
- Created once at application startup
"""

from typing import Any, Callable, Dict, Optional

from ..api.connection_registry import ConnectionRegistry
from ..api.websocket.broadcasters.session_router import SessionRouter
from ..api.websocket.lifecycle.connection_lifecycle import ConnectionLifecycle
from ..api.websocket.services.chat_writer import ChatWriter
from ..core.logger import StructuredLogger
from ..database.chat_store import ChatStore, create_chat_store
from .config.settings import AppSettings


class Container:
    """
    Pure Dependency Injection Container.

    Every ``create_*`` method returns the same instance on repeated calls, so
    the registry shared by router and lifecycle is one object.
    """

    def __init__(self, settings: AppSettings, logger: StructuredLogger, chat_store: Optional[ChatStore] = None):
        """
        Initialize container with core dependencies.

        Args:
            settings: Application settings (single source of truth)
            logger: Structured logger instance
            chat_store: Optional pre-built chat store (tests inject one)
        """
        self.settings = settings
        self.logger = logger
        self._singleton_services: Dict[str, Any] = {}
        self._is_started = False

        if chat_store is not None:
            self._singleton_services["chat_store"] = chat_store

    def _get_or_create_singleton(self, service_name: str, factory_func: Callable[[], Any]) -> Any:
        existing_service = self._singleton_services.get(service_name)
        if existing_service is not None:
            return existing_service

        try:
            service = factory_func()
        except Exception as e:
            self.logger.error("container.service_creation_failed", {
                "service": service_name,
                "error": str(e),
                "error_type": type(e).__name__
            })
            raise RuntimeError(f"Failed to create service '{service_name}': {str(e)}") from e

        self._singleton_services[service_name] = service
        self.logger.debug("container.service_created", {
            "service": service_name,
            "type": service.__class__.__name__
        })
        return service

    def create_chat_store(self) -> ChatStore:
        return self._get_or_create_singleton(
            "chat_store",
            lambda: create_chat_store(self.settings.database, logger=self.logger)
        )

    def create_connection_registry(self) -> ConnectionRegistry:
        return self._get_or_create_singleton(
            "connection_registry",
            lambda: ConnectionRegistry(logger=self.logger)
        )

    def create_session_router(self) -> SessionRouter:
        return self._get_or_create_singleton(
            "session_router",
            lambda: SessionRouter(self.create_connection_registry(), logger=self.logger)
        )

    def create_chat_writer(self) -> ChatWriter:
        return self._get_or_create_singleton(
            "chat_writer",
            lambda: ChatWriter(self.create_chat_store(), logger=self.logger)
        )

    def create_connection_lifecycle(self) -> ConnectionLifecycle:
        ws_settings = self.settings.websocket
        return self._get_or_create_singleton(
            "connection_lifecycle",
            lambda: ConnectionLifecycle(
                registry=self.create_connection_registry(),
                router=self.create_session_router(),
                chat_writer=self.create_chat_writer(),
                policy_violation_code=ws_settings.policy_violation_code,
                max_consecutive_send_errors=ws_settings.max_consecutive_send_errors,
                logger=self.logger
            )
        )

    async def startup(self):
        """Open backend resources."""
        if self._is_started:
            return
        await self.create_chat_store().connect()
        self.create_connection_lifecycle()
        self._is_started = True

        self.logger.info("container.started", {
            "chat_store": self.create_chat_store().__class__.__name__
        })

    async def shutdown(self, drain_timeout: Optional[float] = 10.0):
        """
        Close live sockets, wait for in-flight chat appends, close the store.
        """
        if not self._is_started:
            return
        self._is_started = False

        registry = self.create_connection_registry()
        closed = await registry.close_all(self.settings.websocket.shutdown_close_code, "Server shutting down")
        pending = await self.create_chat_writer().drain(timeout=drain_timeout)
        await self.create_chat_store().close()

        self.logger.info("container.shutdown_completed", {
            "closed_connections": closed,
            "undrained_appends": pending,
            "registry": registry.get_stats(),
            "router": self.create_session_router().get_stats(),
            "lifecycle": self.create_connection_lifecycle().get_stats()
        })
