"""Pytest fixtures and configuration for Sender Notes tests.

Provides common fixtures for configuration, storage adapters and the
repository.
"""

import os
from collections.abc import AsyncIterator, Generator
from pathlib import Path
from typing import Any

import pytest

from sendernotes.config import CONFIG_PATH_ENV, reset_config
from sendernotes.config_schema import AppConfig
from sendernotes.db.adapter import StorageAdapter
from sendernotes.db.memory_adapter import MemoryAdapter
from sendernotes.db.sqlite_adapter import SQLiteAdapter
from sendernotes.repository import NotesRepository

DEFAULT_TEMPLATES = ["Important client", "VIP customer", "Potential spam"]


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "storage": {"backend": "sqlite", "db_path": str(data_dir / "notes.db")},
        "logging": {"level": "INFO", "json_output": True},
        "templates": {"defaults": list(DEFAULT_TEMPLATES)},
        "migrations": {"require_all": False},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1

storage:
  backend: sqlite
  db_path: "{data_dir / 'notes.db'}"

templates:
  defaults:
    - "Important client"
    - "VIP customer"
    - "Potential spam"
"""


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml, encoding="utf-8")
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the SENDER_NOTES_CONFIG_PATH environment variable."""
    old_value = os.environ.get(CONFIG_PATH_ENV)
    os.environ[CONFIG_PATH_ENV] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV]
    else:
        os.environ[CONFIG_PATH_ENV] = old_value


@pytest.fixture
def db_path(data_dir: Path) -> Path:
    """Path for a test database file."""
    return data_dir / "test.db"


@pytest.fixture(params=["sqlite", "memory"])
async def adapter(request: pytest.FixtureRequest, db_path: Path) -> AsyncIterator[StorageAdapter]:
    """A fresh storage adapter, once per backend."""
    backend: StorageAdapter
    if request.param == "sqlite":
        backend = SQLiteAdapter(db_path)
    else:
        backend = MemoryAdapter()
    yield backend
    await backend.close()


@pytest.fixture
async def sqlite_adapter(db_path: Path) -> AsyncIterator[SQLiteAdapter]:
    """A SQLite adapter on a temporary file."""
    backend = SQLiteAdapter(db_path)
    yield backend
    await backend.close()


@pytest.fixture
def repository(adapter: StorageAdapter) -> NotesRepository:
    """A repository with three default templates, once per backend."""
    return NotesRepository(adapter, default_templates_provider=lambda: DEFAULT_TEMPLATES)
