"""
Relay Configuration Settings - Single Source of Truth
=====================================================
All application configuration using Pydantic Settings.
Values come from the environment and an optional ``.env`` file.
"""

import re
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


_SQL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class LogLevel(str, Enum):
    """Logging levels"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


# === SYSTEM CONFIGURATION ===

class LoggingSettings(BaseSettings):
    """Logging configuration"""
    level: LogLevel = Field(default=LogLevel.INFO)
    file_enabled: bool = Field(default=False)
    console_enabled: bool = Field(default=True)
    structured_logging: bool = Field(default=True)
    log_dir: str = Field(default="logs")
    max_file_size_mb: int = Field(default=100)
    backup_count: int = Field(default=5)

    class Config:
        env_prefix = "LOG_"
        extra = "ignore"


# === PERSISTENCE CONFIGURATION ===

class DatabaseSettings(BaseSettings):
    """Chat history database configuration"""
    url: str = Field(default="", description="PostgreSQL DSN; empty selects the in-memory chat store")
    min_pool_size: int = Field(default=1)
    max_pool_size: int = Field(default=10)
    command_timeout: float = Field(default=30.0)
    notes_table: str = Field(default="mentorship_sessions", description="Table holding the per-session notes column")

    @field_validator('notes_table')
    @classmethod
    def validate_notes_table(cls, v):
        """Table name is interpolated into SQL, so only plain identifiers are allowed."""
        if not _SQL_IDENTIFIER.match(v):
            raise ValueError(f"Invalid table name: '{v}'. Expected an SQL identifier such as 'mentorship_sessions'")
        return v

    @field_validator('max_pool_size')
    @classmethod
    def validate_pool_size(cls, v):
        if v < 1:
            raise ValueError("max_pool_size must be at least 1")
        return v

    class Config:
        env_prefix = "POSTGRES_"
        extra = "ignore"


# === WEBSOCKET CONFIGURATION ===

class WebSocketSettings(BaseSettings):
    """WebSocket relay configuration"""
    policy_violation_code: int = Field(default=1008, description="Close code for connections missing identifiers")
    shutdown_close_code: int = Field(default=1001, description="Close code sent to live sockets on shutdown")
    max_consecutive_send_errors: int = Field(default=5, description="Send failures before a connection is dropped as degraded")

    class Config:
        env_prefix = "WS_"
        extra = "ignore"


# === MAIN APPLICATION SETTINGS ===

class AppSettings(BaseSettings):
    """Main application settings - single source of truth"""

    app_name: str = Field(default="Session Relay")
    version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, description="Listening port for HTTP and WebSocket traffic")

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"  # Allows DATABASE__URL=...
        case_sensitive = False
        extra = "ignore"
