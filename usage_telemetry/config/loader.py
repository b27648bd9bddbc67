"""
Configuration management and loading.

Handles pipeline settings loaded from YAML.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class StorageConfig:
    """Where the ledger lives and how long to wait on it."""
    db_path: str = "usage_telemetry.db"
    timeout_seconds: float = 5.0

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class AggregationConfig:
    """Bucketing policy shared by ingest and rebuild."""
    bucket_minutes: int = 60

    def __post_init__(self):
        if self.bucket_minutes <= 0:
            raise ValueError("bucket_minutes must be > 0")

    @property
    def bucket_width(self) -> timedelta:
        return timedelta(minutes=self.bucket_minutes)


@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff for storage writes."""
    max_attempts: int = 5
    initial_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_seconds < 0:
            raise ValueError("initial_backoff_seconds cannot be negative")
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= initial_backoff_seconds")

    def backoff_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(
            self.initial_backoff_seconds * (2 ** (attempt - 1)),
            self.max_backoff_seconds
        )


@dataclass(frozen=True)
class PipelineConfig:
    """Per-batch behaviour of the ingestion pipeline."""
    batch_size: int = 100
    identity_field: str = "identity"

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if not self.identity_field:
            raise ValueError("identity_field cannot be empty")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None

    def __post_init__(self):
        if self.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"level must be one of: {sorted(_LOG_LEVELS)}")


@dataclass(frozen=True)
class Settings:
    """Complete service configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = {
    "storage": StorageConfig,
    "aggregation": AggregationConfig,
    "retry": RetryConfig,
    "pipeline": PipelineConfig,
    "logging": LoggingConfig,
}

_FIELD_TYPES = {
    "db_path": str,
    "timeout_seconds": (int, float),
    "bucket_minutes": int,
    "max_attempts": int,
    "initial_backoff_seconds": (int, float),
    "max_backoff_seconds": (int, float),
    "batch_size": int,
    "identity_field": str,
    "level": str,
    "file": (str, type(None)),
}


def default_settings() -> Settings:
    return Settings()


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown
    sections and keys are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, section_type in _SECTIONS.items():
        data = raw_config.get(name) or {}
        sections[name] = _parse_section(section_type, data, name)

    return Settings(**sections)


def _parse_section(section_type: type, data: Any, path: str):
    """Build one config section, checking keys and value types.

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = set(section_type.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = _FIELD_TYPES[key]
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ValueError(f"'{path}.{key}' has invalid type {type(value).__name__}")
        values[key] = value

    if "level" in values:
        values["level"] = values["level"].upper()

    return section_type(**values)
