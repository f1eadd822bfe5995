"""
Configuration management for envorchestra.

Loads and validates config.yaml from the envorchestra home directory
($ENVORCHESTRA_HOME, default ~/.config/envorchestra):

    definitions_dir: ~/.config/envorchestra/environments
    runs_dir: ~/.config/envorchestra/runs
    env_file: ~/.config/envorchestra/.env
    max_workers: 1
    max_probe_errors: 3
    command_timeout: 30m
    retry:
      max_attempts: 3
      initial_delay: 10s
      backoff_multiplier: 2
      max_delay: 2m
    logging:
      level: INFO
      format: pretty
      file: ~/.config/envorchestra/logs/envorchestra-{date}.log

The env_file is loaded with python-dotenv; descriptor commands resolve
credentials, profile and region from the process environment.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from envorchestra.schemas import RetryPolicy
from envorchestra.utils import parse_duration

CONFIG_FILENAME = "config.yaml"


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_envorchestra_home() -> Path:
    """Home directory: $ENVORCHESTRA_HOME or ~/.config/envorchestra."""
    home = os.environ.get("ENVORCHESTRA_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".config" / "envorchestra"


def default_config_data(home: Optional[Path] = None) -> dict[str, Any]:
    """Default config.yaml contents written by `envorchestra init`."""
    home = home or get_envorchestra_home()
    return {
        "definitions_dir": str(home / "environments"),
        "runs_dir": str(home / "runs"),
        "env_file": str(home / ".env"),
        "max_workers": 1,
        "max_probe_errors": 3,
        "command_timeout": "30m",
        "retry": RetryPolicy().to_dict(),
        "logging": {
            "level": "INFO",
            "format": "pretty",
            "file": None,
        },
    }


class EnvorchestraConfig:
    """Complete envorchestra configuration."""

    def __init__(self, data: Optional[dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        home = get_envorchestra_home()
        data = data or {}
        self.raw_config = data

        self.definitions_dir = _path(data.get("definitions_dir")) or home / "environments"
        self.runs_dir = _path(data.get("runs_dir")) or home / "runs"
        self.env_file = _path(data.get("env_file"))

        try:
            self.max_workers = int(data.get("max_workers", 1))
            self.max_probe_errors = int(data.get("max_probe_errors", 3))
            timeout = data.get("command_timeout")
            self.command_timeout = parse_duration(timeout) if timeout is not None else None
            self.retry = RetryPolicy.from_dict(data.get("retry") or {})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        # Logging
        self.logging = data.get("logging") or {}

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation, if file logging is enabled."""
        log_output = self.logging.get("file")
        if not log_output:
            return None
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.max_workers < 1:
            raise ConfigError("max_workers must be >= 1")
        if self.max_probe_errors < 0:
            raise ConfigError("max_probe_errors must be >= 0")
        if self.get_log_format() not in ("structured", "pretty"):
            raise ConfigError(
                f"logging.format must be 'structured' or 'pretty', got '{self.get_log_format()}'"
            )

    def load_env_file(self) -> bool:
        """Load env_file into the process environment (existing variables win)."""
        if self.env_file and self.env_file.exists():
            return load_dotenv(self.env_file, override=False)
        return False

    def __repr__(self) -> str:
        return (
            f"EnvorchestraConfig(definitions_dir={self.definitions_dir}, "
            f"runs_dir={self.runs_dir}, max_workers={self.max_workers})"
        )


def _path(value: Optional[str]) -> Optional[Path]:
    return Path(value).expanduser() if value else None


def load_config(config_path: Optional[Path] = None) -> EnvorchestraConfig:
    """
    Load envorchestra configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml

    Returns:
        EnvorchestraConfig instance (env_file already loaded)

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_envorchestra_home() / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"envorchestra config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping at top level")

    config = EnvorchestraConfig(data, config_path)
    config.validate()
    config.load_env_file()
    return config
