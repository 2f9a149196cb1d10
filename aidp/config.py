"""
Configuration
=============

Typed configuration for aidp, loaded from ``.aidp/aidp.yml``.

Sections:
- logging: level, json, file, max_size_mb, max_backups
- parallel: worker pool, retry and resource limits for ParallelProcessor

A ``.env`` file in the project directory is loaded first (without
overriding variables already present), so AIDP_LOG_LEVEL / AIDP_LOG_FILE
can be provided there.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging
import os

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from aidp.logger import AidpLogger, setup_logger

logger = logging.getLogger(__name__)

CONFIG_DIR = ".aidp"
CONFIG_FILE = "aidp.yml"


class ConfigError(Exception):
    """Raised when a configuration file cannot be parsed or validated."""
    pass


def _default_max_workers() -> int:
    return (os.cpu_count() or 1) * 2


class LoggingConfig(BaseModel):
    """Options recognized by AidpLogger."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    level: Optional[str] = None
    json_format: bool = Field(default=False, alias="json")
    file: Optional[str] = None
    max_size_mb: float = 10
    max_backups: int = 5

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized == "warning":
            normalized = "warn"
        if normalized not in {"debug", "info", "warn", "error"}:
            raise ValueError("logging.level must be one of debug, info, warn, error")
        return normalized

    @field_validator("max_size_mb")
    @classmethod
    def _validate_max_size(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("logging.max_size_mb must be > 0")
        return value

    @field_validator("max_backups")
    @classmethod
    def _validate_max_backups(cls, value: int) -> int:
        if value < 1:
            raise ValueError("logging.max_backups must be >= 1")
        return value


class ProcessorConfig(BaseModel):
    """Worker pool, retry and resource settings for ParallelProcessor."""

    model_config = ConfigDict(extra="ignore")

    max_workers: int = Field(default_factory=_default_max_workers)
    chunk_size: int = 10
    timeout: float = 300
    retry_attempts: int = 2
    retry_backoff: float = 2.0
    memory_limit: int = 1024 * 1024 * 1024
    cpu_limit: float = 0.8
    resource_wait_interval: float = 1.0
    max_resource_waits: int = 30

    @field_validator("max_workers", "retry_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("resource_wait_interval")
    @classmethod
    def _minimum_wait(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("resource_wait_interval must be >= 1 second")
        return value


class AidpConfig(BaseModel):
    """Top-level ``aidp.yml`` document (unknown sections are ignored)."""

    model_config = ConfigDict(extra="ignore")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    parallel: ProcessorConfig = Field(default_factory=ProcessorConfig)


def config_file(project_dir: Union[str, Path, None] = None) -> Path:
    return Path(project_dir or os.getcwd()) / CONFIG_DIR / CONFIG_FILE


def load_yaml_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a YAML document into a dict.

    Returns an empty dict when the file is missing or empty.

    Raises:
        ConfigError: If the file cannot be read or is not a YAML mapping
    """
    path = Path(path)
    if not path.exists():
        return {}

    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load configuration file {path}: {e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    return document


def load_config(project_dir: Union[str, Path, None] = None) -> AidpConfig:
    """
    Load ``.env`` and ``.aidp/aidp.yml`` for a project.

    Args:
        project_dir: Project root (defaults to cwd)

    Returns:
        Validated AidpConfig

    Raises:
        ConfigError: If the YAML is malformed or fails validation
    """
    root = Path(project_dir or os.getcwd())
    env_file = root / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)

    document = load_yaml_config(config_file(root))
    try:
        return AidpConfig.model_validate(document)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file(root)}: {e}") from e


def setup_logging(project_dir: Union[str, Path, None] = None) -> AidpLogger:
    """
    Configure the process-wide logger from the project's ``aidp.yml``.

    Falls back to default logging options (and logs a warning) when the
    configuration cannot be loaded.
    """
    root = str(project_dir or os.getcwd())
    try:
        config = load_config(root)
    except ConfigError as e:
        logger.debug(f"Falling back to default logging config: {e}")
        aidp_logger = setup_logger(root, LoggingConfig())
        aidp_logger.warn("config", "Failed to load logging config, using defaults", error=str(e))
        return aidp_logger

    aidp_logger = setup_logger(root, config.logging)
    aidp_logger.info("config", "aidp logging initialized", log_level=aidp_logger.level)
    return aidp_logger
