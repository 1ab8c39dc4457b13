"""Configuration loader.

Loads configuration from YAML and validates it against the Pydantic schema.

Usage:
    from sendernotes.config import get_config

    # Get current config (singleton)
    config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from sendernotes.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from sendernotes.core.errors import ConfigLoadError, ConfigValidationError
from sendernotes.core.logging import get_logger

logger = get_logger(__name__)

# Default config path - can be overridden via environment variable
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "SENDER_NOTES_CONFIG_PATH"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None


def get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages.

    Args:
        error: Pydantic ValidationError

    Returns:
        Formatted error message with specific field errors
    """
    messages = []
    for err in error.errors():
        # Build field path (e.g., "templates.defaults.0")
        field_path = ".".join(str(loc) for loc in err["loc"])
        if err["type"] == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        elif err["type"] == "extra_forbidden":
            messages.append(f"  - Unknown field '{field_path}'")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse YAML file.

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against the Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade Sender Notes or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    This always loads fresh from disk. For cached access use get_config().

    Args:
        path: Optional path to config file. If not provided, uses
              SENDER_NOTES_CONFIG_PATH or the default path.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or get_config_path()

    logger.debug("Loading configuration", path=str(config_path))

    config = _validate_config(_load_yaml(config_path), config_path)

    logger.info(
        "Configuration loaded successfully",
        path=str(config_path),
        schema_version=config.schema_version,
        backend=config.storage.backend,
        default_templates=len(config.templates.defaults),
    )
    return config


def get_config(path: Path | None = None) -> AppConfig:
    """Get the configuration singleton, loading it on first call.

    Args:
        path: Config file to load on first call (ignored once loaded)

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config

    with _config_lock:
        if _current_config is None:
            _current_config = load_config(path)
        return _current_config


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without loading it into the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    location = config.storage.db_path if config.storage.backend == "sqlite" else "in memory"
    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - storage: {config.storage.backend} ({location})\n"
        f"  - {len(config.templates.defaults)} default templates\n"
        f"  - log level: {config.logging.level}",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config
    with _config_lock:
        _current_config = None
