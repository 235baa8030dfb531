"""
API configuration module.

Defines the server configuration, loaded from environment variables (and a
``.env`` file if present) with defaults suited to local use.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from ralph import __version__
from ralph.registry import default_registry_path

# Load environment variables from .env file if it exists
load_dotenv()


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class APIConfig(BaseModel):
    """
    API configuration model with environment variable support.
    """

    title: str = Field(default="Ralph API", description="API title displayed in documentation")
    version: str = Field(default=__version__, description="API version")

    host: str = Field(
        default_factory=lambda: os.getenv("RALPH_HOST", "127.0.0.1"),
        description="Host to bind the API server",
    )
    port: int = Field(
        default_factory=lambda: int(os.getenv("RALPH_PORT", "3001")),
        description="Port to bind the API server",
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"),
        description="Logging level for the API server",
    )
    environment: str = Field(
        default_factory=lambda: os.getenv("RALPH_ENV", "production"),
        description="Deployment environment (development, production)",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: _env_list("RALPH_CORS_ORIGINS", "*"),
        description="List of allowed origins for CORS",
    )
    registry_path: Path = Field(
        default_factory=default_registry_path,
        description="Location of the plan registry file",
    )
    poll_interval: float = Field(
        default_factory=lambda: float(os.getenv("RALPH_POLL_INTERVAL", "1.0")),
        description="Seconds between state watcher polls",
    )
    heartbeat_interval: float = Field(
        default=15.0, description="Seconds between SSE keepalive comments"
    )

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"
