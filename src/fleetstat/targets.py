"""
Host target parsing and resolution.

Turns ``[user@]host[:port]`` strings into fully resolved HostTarget records,
filling missing fields from the SSH client config and then from defaults.
"""

from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass
from pathlib import Path

import paramiko

from fleetstat.errors import TargetError

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22


@dataclass(frozen=True)
class HostTarget:
    """Resolved connection descriptor for one monitored host."""

    hostname: str
    port: int = DEFAULT_SSH_PORT
    username: str = "root"
    identity_file: str | None = None

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"

    def __str__(self) -> str:
        return f"{self.username}@{self.hostname}:{self.port}"


@dataclass(frozen=True)
class ResolutionContext:
    """
    Local user details used to fill in target defaults.

    Passed explicitly into resolution so nothing depends on process globals.
    """

    username: str
    home: Path

    @classmethod
    def current(cls) -> ResolutionContext:
        """Build a context for the user running this process."""
        return cls(username=getpass.getuser(), home=Path.home())

    @property
    def default_identity_file(self) -> Path:
        return self.home / ".ssh" / "id_rsa"

    @property
    def default_ssh_config(self) -> Path:
        return self.home / ".ssh" / "config"


def parse_target(spec: str) -> tuple[str | None, str, int | None]:
    """
    Split a ``[user@]host[:port]`` string.

    Returns:
        Tuple of (username or None, host, port or None).

    Raises:
        TargetError: If the string is malformed or the port is out of range.
    """
    spec = spec.strip()
    username = None
    address = spec

    if "@" in spec:
        username, _, address = spec.partition("@")
        if not username:
            raise TargetError(f"Empty username in target: {spec!r}")

    if not address:
        raise TargetError(f"Missing host in target: {spec!r}")

    host = address
    port = None
    parts = address.split(":")
    if len(parts) == 2:
        host, port_str = parts
        try:
            port = int(port_str)
        except ValueError:
            raise TargetError(f"Bad port in target {spec!r}: {port_str!r}") from None
        if port <= 0 or port >= 65536:
            raise TargetError(f"Bad port in target {spec!r}: {port}")
    elif len(parts) > 2:
        raise TargetError(f"Malformed target: {spec!r}")

    if not host:
        raise TargetError(f"Missing host in target: {spec!r}")

    return username, host, port


def _load_ssh_config(path: Path) -> paramiko.SSHConfig | None:
    """Parse an OpenSSH client config, or return None if unavailable."""
    if not path.exists():
        return None
    try:
        return paramiko.SSHConfig.from_path(str(path))
    except (OSError, paramiko.SSHException) as e:
        logger.warning(f"Could not parse SSH config {path}: {e}")
        return None


def resolve_target(
    spec: str,
    context: ResolutionContext,
    identity_file: str | None = None,
    ssh_config_path: str | Path | None = None,
) -> HostTarget:
    """
    Resolve a target string into a HostTarget.

    Precedence for each field: explicit value > SSH config entry > defaults
    (port 22, the context user, ``~/.ssh/id_rsa`` if present).

    Args:
        spec: ``[user@]host[:port]`` string.
        context: Local user details used for defaults.
        identity_file: Explicit private key path (e.g. from ``-i``).
        ssh_config_path: SSH client config to consult. Defaults to
                         ``<home>/.ssh/config``.
    """
    username, host, port = parse_target(spec)
    key = identity_file

    config_path = (
        Path(ssh_config_path).expanduser() if ssh_config_path else context.default_ssh_config
    )
    ssh_config = _load_ssh_config(config_path)
    if ssh_config is not None:
        entry = ssh_config.lookup(host)
        host = entry.get("hostname") or host
        if port is None and entry.get("port"):
            port = int(entry["port"])
        if not username and entry.get("user"):
            username = entry["user"]
        if not key and entry.get("identityfile"):
            key = str(Path(entry["identityfile"][0]).expanduser())
        logger.debug(f"After SSH config: {host} {port} {username} {key}")

    if port is None:
        port = DEFAULT_SSH_PORT
    if not username:
        username = context.username
    if not key and context.default_identity_file.exists():
        key = str(context.default_identity_file)

    return HostTarget(hostname=host, port=port, username=username, identity_file=key)


def resolve_targets(
    specs: list[str] | tuple[str, ...],
    context: ResolutionContext,
    identity_file: str | None = None,
    ssh_config_path: str | Path | None = None,
) -> list[HostTarget]:
    """Resolve several target strings with the same options."""
    return [resolve_target(spec, context, identity_file, ssh_config_path) for spec in specs]
