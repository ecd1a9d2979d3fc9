"""
Configuration management for Fleetstat.

Supports configuration via YAML files, environment variables, and programmatic access.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from fleetstat.errors import ConfigurationError

DEFAULT_CONFIG_PATHS = [
    Path("/etc/fleetstat/config.yaml"),
    Path.home() / ".config" / "fleetstat" / "config.yaml",
    Path("fleetstat.yaml"),
]

# Failure classes accepted by ``give_up_on``
FAILURE_CLASSES = ("unreachable", "handshake", "authentication", "command")

# Nested YAML keys that do not match a field name once flattened
_NESTED_ALIASES = {
    ("schedule", "interval"): "interval",
    ("retry", "delay"): "retry_delay",
    ("retry", "backoff"): "retry_backoff",
    ("retry", "max_delay"): "retry_max_delay",
    ("retry", "give_up_on"): "give_up_on",
    ("ssh", "connect_timeout"): "connect_timeout",
    ("ssh", "command_timeout"): "command_timeout",
    ("ssh", "auto_add_host_keys"): "auto_add_host_keys",
    ("ssh", "config_path"): "ssh_config_path",
    ("ssh", "bootstrap_key"): "bootstrap_key",
    ("output", "dir"): "output_dir",
    ("collection", "collectors_file"): "collectors_file",
    ("logging", "level"): "log_level",
    ("logging", "file"): "log_file",
}


@dataclass
class Config:
    """
    Configuration container for Fleetstat.

    Priority (highest to lowest):
    1. Programmatic values passed to __init__
    2. Environment variables (prefixed with FLEETSTAT_)
    3. Config file values
    4. Default values
    """

    # Scheduling
    interval: float = 5.0

    # Reconnect policy
    retry_delay: float = 15.0
    retry_backoff: float = 1.0
    retry_max_delay: float = 300.0
    give_up_on: list[str] = field(default_factory=list)

    # SSH settings
    connect_timeout: float = 30.0
    command_timeout: float | None = 60.0
    auto_add_host_keys: bool = True
    ssh_config_path: str = str(Path.home() / ".ssh" / "config")
    bootstrap_key: str = "bootstrap.key"

    # Collection settings
    collectors_file: str | None = None

    # Output settings
    output_dir: str = "."
    time_series_dir: str = "timeSeries"
    collections_dir: str = "collections"

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_file(cls, path: str | Path) -> Config:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create config from a dictionary."""
        # Flatten nested structure if present
        flat = {}
        for key, value in data.items():
            if isinstance(value, dict):
                for subkey, subvalue in value.items():
                    flat[_NESTED_ALIASES.get((key, subkey), subkey)] = subvalue
            else:
                flat[key] = value

        # Filter to only known fields
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in flat.items() if k in known_fields}

        return cls(**filtered)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """
        Load configuration with full resolution order.

        Args:
            config_path: Explicit path to config file. If None, searches
                        default locations.

        Returns:
            Fully resolved Config instance.
        """
        base_config: dict[str, Any] = {}

        # Find and load config file
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    base_config = yaml.safe_load(f) or {}
        else:
            for path in DEFAULT_CONFIG_PATHS:
                if path.exists():
                    with open(path) as f:
                        base_config = yaml.safe_load(f) or {}
                    break

        # Create config from file
        config = cls.from_dict(base_config) if base_config else cls()

        # Override with environment variables
        config._apply_env_overrides()

        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        env_mappings = {
            "FLEETSTAT_INTERVAL": "interval",
            "FLEETSTAT_RETRY_DELAY": "retry_delay",
            "FLEETSTAT_RETRY_BACKOFF": "retry_backoff",
            "FLEETSTAT_RETRY_MAX_DELAY": "retry_max_delay",
            "FLEETSTAT_GIVE_UP_ON": "give_up_on",
            "FLEETSTAT_CONNECT_TIMEOUT": "connect_timeout",
            "FLEETSTAT_COMMAND_TIMEOUT": "command_timeout",
            "FLEETSTAT_AUTO_ADD_HOST_KEYS": "auto_add_host_keys",
            "FLEETSTAT_SSH_CONFIG": "ssh_config_path",
            "FLEETSTAT_COLLECTORS_FILE": "collectors_file",
            "FLEETSTAT_OUTPUT_DIR": "output_dir",
            "FLEETSTAT_LOG_LEVEL": "log_level",
            "FLEETSTAT_LOG_FILE": "log_file",
        }

        for env_var, attr in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                # Type coercion
                current = getattr(self, attr)
                if isinstance(current, bool):
                    setattr(self, attr, value.lower() in ("true", "1", "yes"))
                elif isinstance(current, (int, float)) or attr == "command_timeout":
                    setattr(self, attr, float(value))
                elif isinstance(current, list):
                    setattr(self, attr, [v.strip() for v in value.split(",") if v.strip()])
                else:
                    setattr(self, attr, value)

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigurationError: If any value is out of range.
        """
        if self.interval <= 0:
            raise ConfigurationError(f"interval must be positive, got {self.interval}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"retry_delay must not be negative, got {self.retry_delay}")
        if self.retry_backoff < 1:
            raise ConfigurationError(f"retry_backoff must be at least 1, got {self.retry_backoff}")
        if self.retry_max_delay < self.retry_delay:
            raise ConfigurationError("retry_max_delay must not be smaller than retry_delay")
        if self.connect_timeout <= 0:
            raise ConfigurationError(
                f"connect_timeout must be positive, got {self.connect_timeout}"
            )
        if self.command_timeout is not None and self.command_timeout < 0:
            raise ConfigurationError(
                f"command_timeout must not be negative, got {self.command_timeout}"
            )
        unknown = [name for name in self.give_up_on if name not in FAILURE_CLASSES]
        if unknown:
            raise ConfigurationError(
                f"Unknown failure class(es) in give_up_on: {', '.join(unknown)}. "
                f"Expected any of: {', '.join(FAILURE_CLASSES)}"
            )

    @property
    def effective_command_timeout(self) -> float | None:
        """Command timeout in seconds, or None when disabled."""
        if not self.command_timeout:
            return None
        return self.command_timeout

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "schedule": {
                "interval": self.interval,
            },
            "retry": {
                "delay": self.retry_delay,
                "backoff": self.retry_backoff,
                "max_delay": self.retry_max_delay,
                "give_up_on": self.give_up_on,
            },
            "ssh": {
                "connect_timeout": self.connect_timeout,
                "command_timeout": self.command_timeout,
                "auto_add_host_keys": self.auto_add_host_keys,
                "config_path": self.ssh_config_path,
                "bootstrap_key": self.bootstrap_key,
            },
            "collection": {
                "collectors_file": self.collectors_file,
            },
            "output": {
                "dir": self.output_dir,
                "time_series_dir": self.time_series_dir,
                "collections_dir": self.collections_dir,
            },
            "logging": {
                "level": self.log_level,
                "file": self.log_file,
            },
        }

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
