"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the onboarding
engine. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from pathlib import Path
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_BACKEND_ROOT = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        database_path: SQLite file for the event store. ``:memory:`` selects
            the process-local in-memory store.
        templates_dir: Directory holding task template YAML files.
        agent_timeout_seconds: Upper bound for a single agent call.
        agent_retry_attempts: Retries for agent calls that raise a transient error.
        agent_retry_delay_seconds: Base delay for agent retry backoff.
        store_retry_attempts: Retries for store reads that raise a transient error.
        store_retry_delay_seconds: Base delay for store retry backoff.
        ui_request_timeout_seconds: Default expiry for a pause point.
        pause_sweep_interval_seconds: How often expired pauses are swept (0 disables the sweep).
        sse_heartbeat_seconds: Idle interval between SSE heartbeat comments.
        recover_tasks_on_startup: Resume interrupted contexts when the app starts.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Persistence
    database_path: str = "./data/onboarding.db"
    templates_dir: str = str(_BACKEND_ROOT / "task_templates")

    # Agent execution
    agent_timeout_seconds: float = 30.0
    agent_retry_attempts: int = 2
    agent_retry_delay_seconds: float = 0.5

    # Store access
    store_retry_attempts: int = 3
    store_retry_delay_seconds: float = 0.2

    # Pause points and streaming
    ui_request_timeout_seconds: int = 86400
    pause_sweep_interval_seconds: float = 60.0
    sse_heartbeat_seconds: float = 15.0

    # Lifecycle
    recover_tasks_on_startup: bool = True

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
