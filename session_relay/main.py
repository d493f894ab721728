"""
Relay entry point: ``python -m session_relay``.

Listens on ``PORT`` (default 3001) for both health checks and WebSocket
upgrades.
"""

import uvicorn

from .api.relay_server import create_relay_app
from .infrastructure.config.settings import AppSettings


def main():
    settings = AppSettings()
    app = create_relay_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.logging.level.value.lower()
    )


if __name__ == "__main__":
    main()
