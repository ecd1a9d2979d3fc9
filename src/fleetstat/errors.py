"""
Exception types raised by Fleetstat.

Library code raises these; only the scheduler loop and the CLI catch them.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetstat.targets import HostTarget


class FleetstatError(Exception):
    """Base class for all Fleetstat errors."""

    pass


class ConfigurationError(FleetstatError):
    """Raised for invalid configuration or collector definitions."""

    pass


class TargetError(FleetstatError):
    """Raised when a host target string cannot be parsed or resolved."""

    pass


class ConnectFailure(str, Enum):
    """Why a connection attempt failed."""

    UNREACHABLE = "unreachable"
    HANDSHAKE = "handshake"
    AUTHENTICATION = "authentication"


class ConnectError(FleetstatError):
    """Raised when a session to a host cannot be established."""

    def __init__(
        self,
        target: HostTarget,
        reason: ConnectFailure,
        cause: BaseException | str | None = None,
    ):
        self.target = target
        self.reason = reason
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{reason.value} failure connecting to {target.address}{detail}")


class CommandError(FleetstatError):
    """Raised when a remote command exits non-zero or its channel fails."""

    def __init__(
        self,
        command: str,
        exit_status: int | None = None,
        stderr: str = "",
        cause: BaseException | str | None = None,
    ):
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        self.cause = cause

        if exit_status is not None:
            message = f"Command '{command}' exited with status {exit_status}"
            first_line = stderr.strip().split("\n")[0] if stderr.strip() else ""
            if first_line:
                message += f" (stderr: {first_line})"
        else:
            message = f"Command '{command}' failed: {cause}"
        super().__init__(message)


class CollectorFailure(FleetstatError):
    """Raised by the engine when a collector aborts a collection cycle."""

    def __init__(self, collector_name: str, error: CommandError):
        self.collector_name = collector_name
        self.error = error
        super().__init__(f"Collector '{collector_name}' failed: {error}")


class SerializationError(FleetstatError):
    """Raised when a snapshot cannot be encoded or decoded."""

    pass


class PersistenceError(FleetstatError):
    """Raised when an encoded snapshot cannot be written to disk."""

    pass


class BootstrapError(FleetstatError):
    """Raised when the bootstrap key pair is missing or cannot be created."""

    pass
