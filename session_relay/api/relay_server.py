"""
Relay HTTP + WebSocket Server
=============================
FastAPI application serving:
- WebSocket upgrades on any path (``?sessionId=...&userId=...``)
- ``GET /health`` liveness probe
- plain-text 404 for every other HTTP request
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.logger import StructuredLogger
from ..database.chat_store import ChatStore
from ..infrastructure.config.settings import AppSettings
from ..infrastructure.container import Container


def create_relay_app(settings: Optional[AppSettings] = None, chat_store: Optional[ChatStore] = None) -> FastAPI:
    """
    Creates the relay FastAPI application.

    Args:
        settings: Application settings; read from the environment when omitted
        chat_store: Optional chat store overriding the one built from settings
    """
    settings = settings or AppSettings()
    logger = StructuredLogger("RelayServer", settings.logging)
    container = Container(settings, logger, chat_store=chat_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("relay_server.startup", {
            "host": settings.host,
            "port": settings.port
        })
        await container.startup()

        yield

        logger.info("relay_server.shutdown_started")
        await container.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )
    app.state.container = container

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        # Unknown paths and wrong methods on /health both answer 404
        if exc.status_code in (404, 405):
            return PlainTextResponse("Not Found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.get("/health")
    async def health():
        """Liveness probe"""
        return JSONResponse({"status": "ok"})

    @app.websocket("/{path:path}")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        lifecycle = container.create_connection_lifecycle()
        await lifecycle.handle_client_connection(websocket)

    return app
