"""
Infrastructure Configuration
============================
Single source of truth for all application configuration.

AppSettings is created once in main.py and passed through the container.
"""

from .settings import AppSettings, DatabaseSettings, LoggingSettings, WebSocketSettings

__all__ = ['AppSettings', 'DatabaseSettings', 'LoggingSettings', 'WebSocketSettings']
