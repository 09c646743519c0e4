"""Configuration management for AI Studio.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the AISTUDIO_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (AISTUDIO_* prefix)
2. .env file in the project root
3. Default values defined in StudioConfig

Example .env file:
    AISTUDIO_DATA_DIR=data
    AISTUDIO_UPLOADS_DIR=uploads
    AISTUDIO_OVERLOAD_PROBABILITY=0.0
    AISTUDIO_SERVER_PORT=4000

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
It is only the *default* handed to :func:`aistudio.api.main.create_app`;
tests and embedders build their own instance and pass it explicitly.

Simulation Settings
-------------------
The generation endpoint does not run a model.  It sleeps for a random delay
between ``delay_min_ms`` and ``delay_max_ms`` and fails with a 503 with
probability ``overload_probability``.  Set the probability to ``0.0`` and the
delays to ``0`` for deterministic local runs.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StudioConfig(BaseSettings):
    """Main configuration for AI Studio.

    Values are loaded from environment variables with the AISTUDIO_ prefix,
    with fallback to defaults defined here.  Directory fields are created on
    initialisation if they don't exist.

    Attributes
    ----------
    Paths:
        data_dir : Path
            Directory holding the SQLite database
        uploads_dir : Path
            Root of the per-user image partitions
        database_path : Path | None
            SQLite file; defaults to ``data_dir / "aistudio.db"``

    Uploads:
        uploads_url_prefix : str
            URL prefix under which stored images are exposed
        uploads_require_auth : bool
            Require a bearer token owned by the image's user to read it
        max_upload_bytes : int
            Maximum decoded size of an uploaded image
        max_image_width : int
            Images wider than this are downscaled before storage
        jpeg_quality : int
            Quality used when re-encoding images to JPEG

    Simulation:
        delay_min_ms, delay_max_ms : int
            Bounds of the artificial generation latency
        overload_probability : float
            Probability of answering 503 "Model overloaded"

    Auth:
        token_ttl_hours : int
            Lifetime of issued bearer tokens

    History:
        history_default_limit, history_max_limit : int
            Default and maximum number of entries for ``GET /generations``

    Server:
        server_host, server_port, cors_origins, log_level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AISTUDIO_",
        case_sensitive=False,
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the SQLite database",
    )
    uploads_dir: Path = Field(
        default=Path("uploads"),
        description="Root directory for per-user image storage",
    )
    database_path: Path | None = Field(
        default=None,
        description="SQLite database file (defaults to data_dir/aistudio.db)",
    )

    # Uploads
    uploads_url_prefix: str = Field(
        default="/uploads",
        description="URL prefix for stored images",
    )
    uploads_require_auth: bool = Field(
        default=True,
        description="Only the owning user may read /uploads/{user_id}/... files",
    )
    max_upload_bytes: int = Field(
        default=12 * 1024 * 1024,
        description="Maximum decoded image size in bytes",
        ge=1,
    )
    max_image_width: int = Field(
        default=1920,
        description="Images wider than this are downscaled (aspect preserved)",
        ge=1,
    )
    jpeg_quality: int = Field(default=90, ge=1, le=100)

    # Simulation
    delay_min_ms: int = Field(
        default=1000,
        description="Lower bound of the simulated generation latency",
        ge=0,
    )
    delay_max_ms: int = Field(
        default=2000,
        description="Upper bound (exclusive) of the simulated generation latency",
        ge=0,
    )
    overload_probability: float = Field(
        default=0.2,
        description="Probability of a simulated 503 'Model overloaded' response",
        ge=0.0,
        le=1.0,
    )

    # Auth
    token_ttl_hours: int = Field(
        default=7 * 24,
        description="Bearer token lifetime in hours",
        ge=1,
    )

    # History
    history_default_limit: int = Field(default=5, ge=1)
    history_max_limit: int = Field(default=50, ge=1)

    # Server
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=4000,
        description="Server port",
        ge=1024,
        le=65535,
    )
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)

        Raises:
            ValueError: If ``delay_max_ms`` is smaller than ``delay_min_ms``.
        """
        super().__init__(**kwargs)

        if self.delay_max_ms < self.delay_min_ms:
            raise ValueError(
                f"delay_max_ms ({self.delay_max_ms}) must be >= delay_min_ms ({self.delay_min_ms})"
            )

        if self.database_path is None:
            self.database_path = self.data_dir / "aistudio.db"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance, loaded from AISTUDIO_* variables and .env.
config = StudioConfig()
