"""
HTTP settings for the backup server.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ApiSettings(BaseSettings):
    """HTTP configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Progress stream
    keepalive_seconds: float = Field(
        default=15.0, gt=0, description="Idle seconds before an SSE keepalive comment"
    )
    subscriber_queue_size: int = Field(
        default=256, ge=2, description="Events buffered per progress subscriber"
    )

    graceful_shutdown_seconds: int = Field(
        default=5, description="Seconds uvicorn waits for open connections on shutdown"
    )

    model_config = {"env_prefix": "BACKUP_API_"}
