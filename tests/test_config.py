"""
Tests for configuration loading (.aidp/aidp.yml and .env)
"""

import os
from pathlib import Path

import pytest

from aidp.config import (
    AidpConfig,
    ConfigError,
    LoggingConfig,
    ProcessorConfig,
    load_config,
    load_yaml_config,
    setup_logging,
)
from conftest import read_log


def write_config(project: Path, content: str) -> Path:
    config_path = project / ".aidp" / "aidp.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(content)
    return config_path


class TestLoadConfig:
    """Test YAML loading and validation."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path)

        assert isinstance(config, AidpConfig)
        assert config.logging.max_size_mb == 10
        assert config.logging.max_backups == 5
        assert config.parallel.retry_attempts == 2
        assert config.parallel.timeout == 300
        assert config.parallel.max_workers == (os.cpu_count() or 1) * 2
        print("[PASS] Defaults loaded")

    def test_logging_and_parallel_sections(self, tmp_path):
        write_config(tmp_path, (
            "logging:\n"
            "  level: WARNING\n"
            "  json: true\n"
            "  max_backups: 2\n"
            "parallel:\n"
            "  max_workers: 3\n"
            "  retry_backoff: 0\n"
        ))

        config = load_config(tmp_path)

        assert config.logging.level == "warn"
        assert config.logging.json_format is True
        assert config.logging.max_backups == 2
        assert config.parallel.max_workers == 3
        assert config.parallel.retry_backoff == 0

    def test_empty_file_gives_defaults(self, tmp_path):
        write_config(tmp_path, "")
        assert load_config(tmp_path).logging.level is None

    def test_malformed_yaml_raises(self, tmp_path):
        write_config(tmp_path, "logging: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_non_mapping_document_raises(self, tmp_path):
        path = write_config(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_yaml_config(path)

    def test_invalid_values_raise(self, tmp_path):
        write_config(tmp_path, "parallel:\n  resource_wait_interval: 0.5\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_env_file_is_loaded_without_override(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("AIDP_TEST_FROM_DOTENV=loaded\nAIDP_TEST_PRESET=from_file\n")
        monkeypatch.setenv("AIDP_TEST_PRESET", "from_environment")

        try:
            load_config(tmp_path)
            assert os.environ.get("AIDP_TEST_FROM_DOTENV") == "loaded"
            assert os.environ["AIDP_TEST_PRESET"] == "from_environment"
        finally:
            os.environ.pop("AIDP_TEST_FROM_DOTENV", None)


class TestModels:
    """Test pydantic model validation."""

    def test_logging_level_rejects_unknown(self):
        with pytest.raises(ValueError):
            LoggingConfig(level="verbose")

    def test_logging_json_alias(self):
        assert LoggingConfig.model_validate({"json": True}).json_format is True
        assert LoggingConfig(json_format=True).model_dump(by_alias=True)["json"] is True

    def test_logging_requires_at_least_one_backup(self):
        with pytest.raises(ValueError):
            LoggingConfig(max_backups=0)

    def test_processor_requires_positive_workers(self):
        with pytest.raises(ValueError):
            ProcessorConfig(max_workers=0)


class TestSetupLogging:
    """Test logger setup from configuration."""

    def test_setup_logging_uses_config(self, tmp_path):
        write_config(tmp_path, "logging:\n  level: debug\n")

        logger = setup_logging(tmp_path)

        assert logger.level == "debug"
        assert "aidp logging initialized" in read_log(logger)

    def test_setup_logging_falls_back_on_bad_config(self, tmp_path):
        print("\n=== Test: Fallback To Default Logging ===")
        write_config(tmp_path, "logging: [unclosed\n")

        logger = setup_logging(tmp_path)

        assert logger.level == "info"
        assert "Failed to load logging config, using defaults" in read_log(logger)
        print("[PASS]")
