"""
Remote collector definitions for Fleetstat.

Collectors are loaded from configuration rather than discovered in code:
each one is a name and the shell command that produces its value.
"""

from __future__ import annotations

from fleetstat.collectors.registry import CollectorRegistry, DataCollector
from fleetstat.collectors.values import CollectedValue, ValueKind

__all__ = [
    "CollectedValue",
    "CollectorRegistry",
    "DataCollector",
    "ValueKind",
]
