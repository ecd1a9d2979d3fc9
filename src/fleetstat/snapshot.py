"""
Snapshot model and its JSON encoding.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fleetstat import __version__
from fleetstat.collectors.values import CollectedValue
from fleetstat.errors import SerializationError


class SnapshotMode(str, Enum):
    """How a snapshot was taken."""

    TIME_SERIES = "time_series"
    NAMED = "named"


@dataclass
class Snapshot:
    """
    One collection result for a single host.

    The identifier is a unix timestamp in time-series mode and the
    user-supplied label in named mode.
    """

    identifier: str
    hostname: str
    mode: SnapshotMode
    timestamp: str
    entries: dict[str, CollectedValue] = field(default_factory=dict)

    @classmethod
    def time_series(cls, hostname: str, now: datetime | None = None) -> Snapshot:
        """Start a snapshot identified by the current unix time."""
        now = now or datetime.now(timezone.utc)
        return cls(
            identifier=str(int(now.timestamp())),
            hostname=hostname,
            mode=SnapshotMode.TIME_SERIES,
            timestamp=now.isoformat(),
        )

    @classmethod
    def named(cls, label: str, hostname: str, now: datetime | None = None) -> Snapshot:
        """Start a snapshot identified by a label."""
        now = now or datetime.now(timezone.utc)
        return cls(
            identifier=label,
            hostname=hostname,
            mode=SnapshotMode.NAMED,
            timestamp=now.isoformat(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert snapshot to dictionary for serialization."""
        return {
            "meta": {
                "identifier": self.identifier,
                "hostname": self.hostname,
                "mode": self.mode.value,
                "timestamp": self.timestamp,
                "fleetstat_version": __version__,
            },
            "entries": {name: value.to_dict() for name, value in self.entries.items()},
        }

    def to_json(self, indent: int = 2) -> str:
        """
        Serialize snapshot to an indented JSON string.

        Raises:
            SerializationError: If an entry holds a value JSON cannot encode.
        """
        try:
            return json.dumps(self.to_dict(), indent=indent, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Cannot encode snapshot {self.identifier} for {self.hostname}: {e}"
            ) from e

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        """
        Rebuild a snapshot from its dictionary form.

        Raises:
            SerializationError: If required fields are missing or malformed.
        """
        try:
            meta = data["meta"]
            entries = {
                name: CollectedValue.from_dict(value)
                for name, value in data.get("entries", {}).items()
            }
            return cls(
                identifier=str(meta["identifier"]),
                hostname=meta["hostname"],
                mode=SnapshotMode(meta["mode"]),
                timestamp=meta["timestamp"],
                entries=entries,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SerializationError(f"Invalid snapshot data: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> Snapshot:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Snapshot is not valid JSON: {e}") from e
        return cls.from_dict(data)
