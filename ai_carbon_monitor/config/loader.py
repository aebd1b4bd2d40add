"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import logging
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

ENV_DB_PATH = "AI_CARBON_MONITOR_DB_PATH"
ENV_INTERVAL = "AI_CARBON_MONITOR_INTERVAL"
ENV_LOG_LEVEL = "AI_CARBON_MONITOR_LOG_LEVEL"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite usage database."""
    path: str = "./data/usage.db"

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class CollectorConfig:
    """Settings for the periodic collection cycle."""
    command: str = "claude-monitor --view daily"
    output_dir: str = "logs"
    interval_seconds: float = 300.0
    interrupt_after_seconds: float = 3.0
    settle_delay_seconds: float = 0.1
    sample_size: int = 5

    def __post_init__(self):
        """Validate collector values."""
        if not self.command or not self.command.strip():
            raise ValueError("collector command cannot be empty")
        if not math.isfinite(self.interval_seconds) or self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.interrupt_after_seconds < 0:
            raise ValueError("interrupt_after_seconds must be >= 0")
        if self.settle_delay_seconds < 0:
            raise ValueError("settle_delay_seconds must be >= 0")
        if self.sample_size <= 0:
            raise ValueError("sample_size must be > 0")


@dataclass(frozen=True)
class NotificationConfig:
    """Settings for subscriber notifications."""
    heartbeat_interval_seconds: float = 30.0
    max_subscribers: int = 50

    def __post_init__(self):
        if not math.isfinite(self.heartbeat_interval_seconds) or self.heartbeat_interval_seconds <= 0:
            raise ValueError("heartbeat_interval_seconds must be > 0")
        if self.max_subscribers <= 0:
            raise ValueError("max_subscribers must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self):
        if self.level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(VALID_LOG_LEVELS)}")

    @property
    def numeric_level(self) -> int:
        return getattr(logging, self.level.upper())


@dataclass(frozen=True)
class MonitorConfig:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTION_SCHEMAS = {
    "database": (DatabaseConfig, {"path": str}),
    "collector": (CollectorConfig, {
        "command": str,
        "output_dir": str,
        "interval_seconds": float,
        "interrupt_after_seconds": float,
        "settle_delay_seconds": float,
        "sample_size": int,
    }),
    "notifications": (NotificationConfig, {
        "heartbeat_interval_seconds": float,
        "max_subscribers": int,
    }),
    "logging": (LoggingConfig, {"level": str}),
}


def load_monitor_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> MonitorConfig:
    """Load and validate configuration from an optional YAML file.

    Every section and key is optional; missing values use defaults.
    Environment variables override file values.

    Args:
        path: Path to YAML configuration file, or None for defaults
        environ: Environment mapping, defaults to os.environ

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_SCHEMAS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config.get(name))
        for name in _SECTION_SCHEMAS
    }
    config = MonitorConfig(**sections)
    return apply_env_overrides(config, os.environ if environ is None else environ)


def _parse_section(name: str, data: Any):
    """Parse one configuration section against its schema.

    Raises:
        ValueError: If the section has unknown keys or wrongly typed values
    """
    section_cls, schema = _SECTION_SCHEMAS[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = schema[key]
        if expected is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {name} must be a number")
            value = float(value)
        elif expected is int:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' in {name} must be an integer")
        elif not isinstance(value, str):
            raise ValueError(f"'{key}' in {name} must be a string")
        values[key] = value

    return section_cls(**values)


def apply_env_overrides(config: MonitorConfig, environ: Mapping[str, str]) -> MonitorConfig:
    """Apply environment variable overrides on top of a loaded config.

    Raises:
        ValueError: If an override has an invalid value
    """
    if environ.get(ENV_DB_PATH):
        config = replace(config, database=DatabaseConfig(path=environ[ENV_DB_PATH]))

    if environ.get(ENV_INTERVAL):
        try:
            interval = float(environ[ENV_INTERVAL])
        except ValueError:
            raise ValueError(f"{ENV_INTERVAL} must be a number of seconds")
        config = replace(
            config,
            collector=replace(config.collector, interval_seconds=interval)
        )

    if environ.get(ENV_LOG_LEVEL):
        config = replace(config, logging=LoggingConfig(level=environ[ENV_LOG_LEVEL]))

    return config
