"""
Typed collector output.

Each collector's raw output is decoded into a CollectedValue tagged with the
kind of data it holds.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from fleetstat.errors import SerializationError


class ValueKind(str, Enum):
    """Shape of a collected value."""

    TEXT = "text"
    NUMERIC = "numeric"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class CollectedValue:
    """A collector result: raw text, a number, or parsed JSON data."""

    kind: ValueKind
    value: Any

    @classmethod
    def text(cls, value: str) -> CollectedValue:
        return cls(ValueKind.TEXT, value)

    @classmethod
    def numeric(cls, value: int | float) -> CollectedValue:
        return cls(ValueKind.NUMERIC, value)

    @classmethod
    def structured(cls, value: Any) -> CollectedValue:
        return cls(ValueKind.STRUCTURED, value)

    @classmethod
    def parse(cls, kind: ValueKind, output: bytes) -> CollectedValue:
        """
        Decode raw command output as the given kind.

        Raises:
            ValueError: If the output does not match the requested kind.
        """
        text = output.decode("utf-8", errors="replace")
        if kind is ValueKind.TEXT:
            return cls.text(text)

        if kind is ValueKind.NUMERIC:
            stripped = text.strip()
            try:
                return cls.numeric(int(stripped))
            except ValueError:
                pass
            try:
                return cls.numeric(float(stripped))
            except ValueError:
                raise ValueError(f"output is not a number: {_preview(stripped)}") from None

        try:
            return cls.structured(json.loads(text))
        except json.JSONDecodeError as e:
            raise ValueError(f"output is not valid JSON: {e}") from None
        except RecursionError:
            raise ValueError("output JSON is nested too deeply to decode") from None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CollectedValue:
        try:
            return cls(ValueKind(data["kind"]), data["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Invalid collected value: {data!r}") from e


def _preview(text: str, max_length: int = 40) -> str:
    if len(text) <= max_length:
        return repr(text)
    return repr(text[: max_length - 3] + "...")
