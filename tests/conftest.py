"""
Pytest fixtures and configuration for Fleetstat tests.

Provides a scripted stand-in for the SSH session manager, sample collector
definitions, and temporary output directories.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager

import pytest

from fleetstat.collectors import CollectorRegistry, DataCollector
from fleetstat.config import Config
from fleetstat.errors import CommandError, ConnectError, ConnectFailure
from fleetstat.session import SessionHandle
from fleetstat.store import SnapshotStore
from fleetstat.targets import HostTarget


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Undo root logger changes made by CLI invocations (setup_logging)."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class FakeClient:
    """Stands in for a paramiko client and doubles as its transport."""

    def __init__(self, active: bool = True):
        self.active = active

    def get_transport(self):
        return self

    def is_active(self) -> bool:
        return self.active


class FakeSessionManager:
    """
    Session manager that never touches the network.

    Outputs are looked up by (hostname, command) first, then by command.
    Hosts listed in ``unreachable`` fail to connect; commands listed in
    ``failing_commands`` exit with status 1. Sessions to hosts listed in
    ``dropped`` open with a transport that is already inactive.
    """

    def __init__(
        self,
        outputs: dict | None = None,
        unreachable: dict[str, ConnectFailure] | set[str] | None = None,
        failing_commands: set[str] | None = None,
        dropped: set[str] | None = None,
    ):
        self.outputs = outputs or {}
        if isinstance(unreachable, dict):
            self.unreachable = unreachable
        else:
            self.unreachable = {h: ConnectFailure.UNREACHABLE for h in (unreachable or ())}
        self.failing_commands = failing_commands or set()
        self.dropped = dropped or set()

        self.lock = threading.Lock()
        self.connect_calls: list[tuple[str, float]] = []
        self.run_calls: list[tuple[str, str]] = []
        self.opened = 0
        self.closed = 0

    def connect(self, target: HostTarget) -> SessionHandle:
        with self.lock:
            self.connect_calls.append((target.hostname, time.monotonic()))
        reason = self.unreachable.get(target.hostname)
        if reason is not None:
            raise ConnectError(target, reason, OSError("No route to host"))
        with self.lock:
            self.opened += 1
        return SessionHandle(
            target=target, client=FakeClient(active=target.hostname not in self.dropped)
        )

    def run(self, session: SessionHandle, command: str) -> bytes:
        host = session.target.hostname
        with self.lock:
            self.run_calls.append((host, command))
        if command in self.failing_commands:
            raise CommandError(command, exit_status=1, stderr="command failed")
        output = self.outputs.get((host, command), self.outputs.get(command, b""))
        return output(host) if callable(output) else output

    def close(self, session: SessionHandle | None) -> None:
        if session is None or session.client is None:
            return
        session.client = None
        session.alive = False
        with self.lock:
            self.closed += 1

    @contextmanager
    def session(self, target: HostTarget):
        handle = self.connect(target)
        try:
            yield handle
        finally:
            self.close(handle)

    def connects_for(self, hostname: str) -> list[float]:
        with self.lock:
            return [t for h, t in self.connect_calls if h == hostname]


@pytest.fixture
def fake_manager():
    """Session manager returning scripted uptime output."""
    return FakeSessionManager(outputs={"cat /proc/uptime": b"12345.67 89.01\n"})


@pytest.fixture
def target():
    """A resolved host target."""
    return HostTarget(hostname="web1", port=22, username="monitor", identity_file=None)


@pytest.fixture
def uptime_registry():
    """Registry with the single uptime collector."""
    return CollectorRegistry([DataCollector(name="uptime", command="cat /proc/uptime")])


@pytest.fixture
def store(tmp_path):
    """Snapshot store writing below a temporary directory."""
    return SnapshotStore(tmp_path)


@pytest.fixture
def sample_collectors_file(tmp_path):
    """Collector definitions in YAML."""
    path = tmp_path / "collectors.yaml"
    path.write_text(
        """
- name: uptime
  command: cat /proc/uptime
- name: load
  command: cut -d' ' -f1 /proc/loadavg
  type: numeric
- name: disks
  command: lsblk --json
  type: structured
  description: Block devices
"""
    )
    return path


@pytest.fixture
def fast_config(tmp_path):
    """Config with short timings for scheduler tests."""
    return Config(
        interval=0.02,
        retry_delay=0.05,
        output_dir=str(tmp_path),
    )


@pytest.fixture
def cli_config(tmp_path):
    """Config file for CLI runs: output below tmp_path, no SSH config, quiet logs."""
    path = tmp_path / "fleetstat.yaml"
    Config(
        ssh_config_path=str(tmp_path / "no_ssh_config"),
        bootstrap_key=str(tmp_path / "bootstrap.key"),
        output_dir=str(tmp_path / "out"),
        log_level="ERROR",
    ).save(path)
    return path


@pytest.fixture
def make_manager():
    """Factory for FakeSessionManager with custom scripting."""
    return FakeSessionManager


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "cli: marks tests as CLI tests")
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
