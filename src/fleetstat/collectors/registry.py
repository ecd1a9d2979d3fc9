"""
Collector definitions and the registry that holds them.

A collector is a named remote command. The registry keeps them in
configuration order and is shared read-only by every host worker.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from fleetstat.collectors.values import ValueKind
from fleetstat.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataCollector:
    """A named remote command that contributes one snapshot entry."""

    name: str
    command: str
    kind: ValueKind = ValueKind.TEXT
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataCollector:
        """
        Build a collector from a ``{name, command[, type, description]}`` record.

        Raises:
            ConfigurationError: If a required field is missing or the type is unknown.
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"Collector definition must be a mapping, got: {data!r}")

        name = data.get("name")
        command = data.get("command")
        if not name or not isinstance(name, str):
            raise ConfigurationError(f"Collector definition is missing a name: {data!r}")
        if not command or not isinstance(command, str):
            raise ConfigurationError(f"Collector '{name}' is missing a command")

        raw_kind = data.get("type", ValueKind.TEXT.value)
        try:
            kind = ValueKind(raw_kind)
        except ValueError:
            choices = ", ".join(k.value for k in ValueKind)
            raise ConfigurationError(
                f"Collector '{name}' has unknown type {raw_kind!r} (expected one of: {choices})"
            ) from None

        return cls(name=name, command=command, kind=kind, description=data.get("description", ""))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "command": self.command}
        if self.kind is not ValueKind.TEXT:
            data["type"] = self.kind.value
        if self.description:
            data["description"] = self.description
        return data


class CollectorRegistry:
    """
    Ordered, immutable set of collectors.

    Names must be unique; execution order is definition order.
    """

    def __init__(self, collectors: list[DataCollector] | tuple[DataCollector, ...] = ()):
        seen: set[str] = set()
        duplicates = []
        for collector in collectors:
            if collector.name in seen:
                duplicates.append(collector.name)
            seen.add(collector.name)
        if duplicates:
            raise ConfigurationError(
                f"Duplicate collector name(s): {', '.join(sorted(set(duplicates)))}"
            )
        self._collectors = tuple(collectors)

    @classmethod
    def from_records(cls, records: list[dict[str, Any]]) -> CollectorRegistry:
        """Create a registry from a list of ``{name, command}`` records."""
        return cls([DataCollector.from_dict(record) for record in records])

    @classmethod
    def from_file(cls, path: str | Path) -> CollectorRegistry:
        """
        Load collectors from a YAML file.

        The file holds either a list of records or a mapping with a
        ``collectors`` key holding that list. An empty file yields an
        empty registry.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the file is not valid YAML or a record is invalid.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Collectors file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse collectors file {path}: {e}") from e

        if data is None:
            records = []
        elif isinstance(data, dict) and "collectors" in data:
            records = data["collectors"] or []
        elif isinstance(data, list):
            records = data
        else:
            raise ConfigurationError(
                f"Collectors file {path} must contain a list of collector definitions"
            )

        registry = cls.from_records(records)
        logger.debug(f"Loaded {len(registry)} collectors from {path}")
        return registry

    @classmethod
    def load(cls, path: str | Path | None) -> CollectorRegistry:
        """Load from a file, or return an empty registry when no path is given."""
        if path is None:
            logger.debug("No collectors file configured; snapshots will be empty")
            return cls()
        return cls.from_file(path)

    def __iter__(self) -> Iterator[DataCollector]:
        return iter(self._collectors)

    def __len__(self) -> int:
        return len(self._collectors)

    def __contains__(self, name: object) -> bool:
        return any(c.name == name for c in self._collectors)

    def get(self, name: str) -> DataCollector | None:
        """Get a specific collector by name."""
        for collector in self._collectors:
            if collector.name == name:
                return collector
        return None

    def names(self) -> list[str]:
        """List collector names in execution order."""
        return [c.name for c in self._collectors]
