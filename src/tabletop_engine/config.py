"""
Runtime settings for the tabletop engine server.

Values come from environment variables (a ``.env`` file is loaded by
``python-dotenv`` in ``main``) and are validated by pydantic.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


ENV_PREFIX = "TABLETOP_"


class EngineSettings(BaseModel):
    """Settings for storage, grid defaults and logging."""

    storage_dir: Path = Field(
        default=Path("tabletop_data"),
        description="Directory where encounter JSON files are stored"
    )
    default_grid_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Default maximum x/y coordinate for new encounter grids (squares)"
    )
    log_level: str = Field(
        default="DEBUG",
        description="Logging level for the tabletop-engine logger"
    )
    history_limit: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Default number of action log entries returned by history queries"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"log_level must be a standard logging level, got {v!r}")
        return level

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineSettings":
        """Build settings from ``TABLETOP_*`` environment variables.

        Unset or empty variables fall back to the field defaults.
        """
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw:
                values[name] = raw
        return cls(**values)
