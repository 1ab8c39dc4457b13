"""Pydantic configuration schema for Sender Notes.

This module defines the configuration schema that mirrors config.yaml.
All configuration is validated against these models when loaded.

Usage:
    from sendernotes.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

DEFAULT_TEMPLATES = [
    "Important client - always respond within 24 hours! 🔥",
    "VIP customer - handle with care ⭐",
    "Potential spam - verify before responding ⚠️",
    "Slow payer - request upfront payment 💰",
    "Old colleague / friend 👋",
    "Newsletter - low priority 📰",
]


class StorageConfig(BaseModel):
    """Where notes are persisted."""

    backend: Literal["sqlite", "memory"] = Field(
        default="sqlite",
        description="Storage backend: 'sqlite' for a local file, 'memory' for no persistence",
    )
    db_path: str = Field(
        default="data/sender_notes.db",
        description="Path to the SQLite database file",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Log output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )
    json_output: bool = Field(
        default=True,
        description="Emit JSON log lines (False for human-readable console output)",
    )

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v


class TemplatesConfig(BaseModel):
    """Quick note templates."""

    defaults: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TEMPLATES),
        description="Templates offered until the user edits the template list",
    )

    @field_validator("defaults")
    @classmethod
    def validate_defaults(cls, v: list[str]) -> list[str]:
        """Reject blank default templates."""
        for i, text in enumerate(v):
            if not text.strip():
                raise ValueError(f"Default template {i} is empty")
        return v


class MigrationsConfig(BaseModel):
    """Data migration policy at startup."""

    require_all: bool = Field(
        default=False,
        description="Refuse to start when a data migration fails (default: log and continue)",
    )


class AppConfig(BaseModel):
    """Root configuration model."""

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version",
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)
    migrations: MigrationsConfig = Field(default_factory=MigrationsConfig)
