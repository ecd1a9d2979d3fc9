"""
SSH session management.

Opens, uses, and closes one paramiko connection per host. Every successful
``connect`` must be paired with exactly one ``close``; ``session()`` wraps
that pairing in a context manager.
"""

from __future__ import annotations

import logging
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import paramiko

from fleetstat.errors import CommandError, ConnectError, ConnectFailure
from fleetstat.targets import HostTarget

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 32768
POLL_INTERVAL = 0.01


@dataclass
class SessionHandle:
    """A live connection to one host, owned by a single worker."""

    target: HostTarget
    client: Any
    alive: bool = True
    opened_at: float = field(default_factory=time.time)

    @property
    def is_alive(self) -> bool:
        """True while the handle is open and its transport is still active."""
        if not self.alive or self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()


class SessionManager:
    """
    Creates SSH sessions and runs commands on them.

    Holds no per-host state, so one instance can be shared by all workers.
    """

    def __init__(
        self,
        connect_timeout: float = 30.0,
        command_timeout: float | None = 60.0,
        auto_add_host_keys: bool = True,
    ):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.auto_add_host_keys = auto_add_host_keys

    def connect(self, target: HostTarget) -> SessionHandle:
        """
        Open an authenticated session to a host.

        Raises:
            ConnectError: If the host is unreachable, the handshake fails,
                          or authentication is rejected.
        """
        client = paramiko.SSHClient()
        if self.auto_add_host_keys:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

        connect_params: dict[str, Any] = {
            "hostname": target.hostname,
            "port": target.port,
            "username": target.username,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
        }
        if target.identity_file:
            connect_params["key_filename"] = target.identity_file
            logger.debug(f"Using SSH key: {target.identity_file}")

        logger.info(f"Connecting to {target}")
        try:
            client.connect(**connect_params)
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConnectError(target, ConnectFailure.AUTHENTICATION, e) from e
        except paramiko.SSHException as e:
            client.close()
            raise ConnectError(target, ConnectFailure.HANDSHAKE, e) from e
        except OSError as e:
            # DNS and socket-level failures
            client.close()
            raise ConnectError(target, ConnectFailure.UNREACHABLE, e) from e

        logger.info(f"SSH connection established to {target.address}")
        return SessionHandle(target=target, client=client)

    def run(self, session: SessionHandle, command: str) -> bytes:
        """
        Run one command to completion and return its standard output.

        Raises:
            CommandError: On a non-zero exit status, a timeout, or a
                          transport failure.
        """
        if not session.alive or session.client is None:
            raise CommandError(command, cause="session is closed")

        start_time = time.perf_counter()
        try:
            stdin, stdout, stderr = session.client.exec_command(
                command, timeout=self.command_timeout, get_pty=False
            )
            stdin.close()
            output, error = self._drain(stdout.channel)
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise CommandError(
                command, cause=f"timed out after {self.command_timeout}s"
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            session.alive = False
            raise CommandError(command, cause=e) from e

        duration = (time.perf_counter() - start_time) * 1000
        if exit_status != 0:
            raise CommandError(
                command,
                exit_status=exit_status,
                stderr=error.decode("utf-8", errors="replace"),
            )

        logger.debug(
            f"[{session.target.hostname}] '{_truncate(command)}' completed in {duration:.2f}ms"
        )
        return output

    def _drain(self, channel: Any) -> tuple[bytes, bytes]:
        """
        Read stdout and stderr together until the command exits.

        Both streams are polled in turn so a command that fills its stderr
        window cannot stall while stdout is still open.

        Raises:
            socket.timeout: If the command runs longer than ``command_timeout``.
        """
        deadline = None
        if self.command_timeout:
            deadline = time.monotonic() + self.command_timeout

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        while True:
            finished = channel.exit_status_ready()
            received = False
            if channel.recv_ready():
                stdout_chunks.append(channel.recv(READ_CHUNK_SIZE))
                received = True
            if channel.recv_stderr_ready():
                stderr_chunks.append(channel.recv_stderr(READ_CHUNK_SIZE))
                received = True
            if received:
                continue
            # Data that arrived before the exit status has been read above
            if finished:
                break
            if deadline is not None and time.monotonic() > deadline:
                raise socket.timeout()
            time.sleep(POLL_INTERVAL)

        return b"".join(stdout_chunks), b"".join(stderr_chunks)

    def close(self, session: SessionHandle | None) -> None:
        """Close a session. Safe to call more than once."""
        if session is None or session.client is None:
            return
        try:
            session.client.close()
        finally:
            session.client = None
            session.alive = False
            logger.debug(f"SSH connection closed to {session.target.address}")

    @contextmanager
    def session(self, target: HostTarget) -> Iterator[SessionHandle]:
        """Connect to a host for the duration of a ``with`` block."""
        handle = self.connect(target)
        try:
            yield handle
        finally:
            self.close(handle)


def _truncate(command: str, max_length: int = 80) -> str:
    """Truncate a command for logging if it's too long."""
    if len(command) <= max_length:
        return command
    return command[: max_length - 3] + "..."
