"""Tests for configuration loading and validation."""

from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from sendernotes.config import (
    get_config,
    get_config_path,
    load_config,
    reset_config,
    validate_config_file,
)
from sendernotes.config_schema import DEFAULT_TEMPLATES, AppConfig
from sendernotes.core.errors import ConfigLoadError, ConfigValidationError


class TestConfigSchema:
    """Tests for the Pydantic models."""

    def test_defaults(self) -> None:
        config = AppConfig()

        assert config.schema_version == 1
        assert config.storage.backend == "sqlite"
        assert config.storage.db_path == "data/sender_notes.db"
        assert config.logging.level == "INFO"
        assert config.templates.defaults == DEFAULT_TEMPLATES
        assert config.migrations.require_all is False

    def test_sample_config(self, sample_config: AppConfig) -> None:
        assert sample_config.templates.defaults == [
            "Important client",
            "VIP customer",
            "Potential spam",
        ]

    def test_path_traversal_rejected(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["storage"]["db_path"] = "../outside/notes.db"

        with pytest.raises(ValidationError, match="path traversal"):
            AppConfig(**sample_config_dict)

    def test_unknown_backend_rejected(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["storage"]["backend"] = "indexeddb"

        with pytest.raises(ValidationError):
            AppConfig(**sample_config_dict)

    def test_blank_default_template_rejected(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["templates"]["defaults"] = ["ok", "   "]

        with pytest.raises(ValidationError, match="Default template 1 is empty"):
            AppConfig(**sample_config_dict)

    def test_log_level_case_insensitive(self, sample_config_dict: dict[str, Any]) -> None:
        sample_config_dict["logging"]["level"] = "debug"

        assert AppConfig(**sample_config_dict).logging.level == "DEBUG"


class TestLoadConfig:
    """Tests for load_config and the singleton."""

    def test_load_valid_file(self, config_file: Path, data_dir: Path) -> None:
        config = load_config(config_file)

        assert config.storage.db_path == str(data_dir / "notes.db")
        assert len(config.templates.defaults) == 3

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("storage: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigLoadError, match="parse YAML"):
            load_config(path)

    def test_non_mapping(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigLoadError, match="mapping"):
            load_config(path)

    def test_empty_file_uses_defaults(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config(path).storage.backend == "sqlite"

    def test_validation_error_names_field(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("storage:\n  backend: floppy\n", encoding="utf-8")

        with pytest.raises(ConfigValidationError, match="storage.backend"):
            load_config(path)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n", encoding="utf-8")

        with pytest.raises(ConfigValidationError, match="newer"):
            load_config(path)

    def test_env_var_path(self, set_config_env: None, config_file: Path) -> None:
        assert get_config_path() == config_file
        assert get_config().templates.defaults[0] == "Important client"

    def test_singleton(self, config_file: Path) -> None:
        first = get_config(config_file)

        assert get_config() is first
        reset_config()
        assert get_config(config_file) is not first


class TestValidateConfigFile:
    """Tests for validate_config_file."""

    def test_valid(self, config_file: Path) -> None:
        is_valid, message = validate_config_file(config_file)

        assert is_valid
        assert "3 default templates" in message

    def test_invalid(self, tmp_path: Path) -> None:
        is_valid, message = validate_config_file(tmp_path / "missing.yaml")

        assert not is_valid
        assert message.startswith("Load error")

    def test_example_config_is_valid(self) -> None:
        example = Path(__file__).parent.parent / "config" / "config.yaml.example"

        is_valid, message = validate_config_file(example)

        assert is_valid, message
        assert "6 default templates" in message
