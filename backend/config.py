"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the
orchestration backend. All settings can be overridden via environment
variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        agent_api_key: API key for the external coding-agent service.
        agent_api_base_url: Base URL of the coding-agent REST API.
        agent_request_timeout_seconds: Timeout for a single outbound call.
        webhook_secret: Shared secret used to sign inbound webhooks. Also
            registered on every agent we create.
        public_base_url: Externally reachable base URL of this server. When
            set, agents are created with a webhook pointing back at us.
        polling_enabled: If True, every agent run is also tracked by a
            bounded poll loop (fallback when webhooks are not delivered).
        poll_interval_seconds: Delay between two poll ticks.
        poll_max_attempts: Number of ticks before a poll loop times out.
        broadcast_plan_events_to_all: Send question/plan events to every
            connected client instead of the orchestration owner only.
        database_path: SQLite database file.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Agent service
    agent_api_key: str = ""
    agent_api_base_url: str = "https://api.cursor.com/v0"
    agent_request_timeout_seconds: float = 30.0

    # Webhooks
    webhook_secret: str = ""
    public_base_url: str | None = None

    # Polling
    polling_enabled: bool = True
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 120

    # Event fan-out
    broadcast_plan_events_to_all: bool = False

    # Database Configuration
    database_path: str = "./data/orchestrations.db"

    # Server Configuration
    backend_port: int = 8000
    frontend_port: int = 3000
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

    @field_validator("public_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: Any) -> Any:
        """Normalize the public base URL so paths can be appended directly."""
        if isinstance(v, str):
            v = v.strip().rstrip("/")
            return v or None
        return v

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def webhook_url(self) -> str | None:
        """URL agents should deliver webhooks to, or None if not reachable."""
        if not self.public_base_url or not self.webhook_secret:
            return None
        return f"{self.public_base_url}/api/webhooks/agents"


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
