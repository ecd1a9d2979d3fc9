"""
Per-host scheduling for Fleetstat.

Each host gets its own HostScheduler running on its own thread. A scheduler
either collects continuously on a fixed interval, reconnecting after any
failure, or performs a single named collection and stops. The only state
shared between hosts is the read-only collector registry and a stop event.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from fleetstat.errors import (
    CollectorFailure,
    ConnectError,
    ConnectFailure,
    FleetstatError,
    PersistenceError,
    SerializationError,
)
from fleetstat.snapshot import Snapshot

if TYPE_CHECKING:
    from fleetstat.config import Config
    from fleetstat.engine import CollectionEngine
    from fleetstat.session import SessionHandle, SessionManager
    from fleetstat.store import SnapshotStore
    from fleetstat.targets import HostTarget

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """Lifecycle states of a host scheduler."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    COLLECTING = "collecting"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Reconnect timing and failure classification.

    The default retries every failure class forever with a fixed delay.
    """

    delay: float = 15.0
    backoff: float = 1.0
    max_delay: float = 300.0
    give_up_on: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        return cls(
            delay=config.retry_delay,
            backoff=config.retry_backoff,
            max_delay=config.retry_max_delay,
            give_up_on=frozenset(config.give_up_on),
        )

    def next_delay(self, failures: int) -> float:
        """Delay before the next connect after ``failures`` consecutive failures."""
        if failures <= 1:
            return self.delay
        return min(self.delay * self.backoff ** (failures - 1), max(self.max_delay, self.delay))

    @staticmethod
    def classify(error: Exception) -> str:
        """Map an error to its failure class name."""
        if isinstance(error, ConnectError):
            return error.reason.value
        return "command"

    def should_retry(self, error: Exception) -> bool:
        return self.classify(error) not in self.give_up_on


@dataclass
class CycleOutcome:
    """Result of one connect-collect-persist attempt."""

    target: HostTarget
    snapshot: Snapshot | None = None
    path: Path | None = None
    error: FleetstatError | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.path is not None


class HostScheduler:
    """
    State machine driving collection for a single host.

    States: DISCONNECTED -> CONNECTING -> CONNECTED -> COLLECTING ->
    (CONNECTED on success | DISCONNECTED on error) -> TERMINATED.
    """

    def __init__(
        self,
        target: HostTarget,
        manager: SessionManager,
        engine: CollectionEngine,
        store: SnapshotStore,
        interval: float = 5.0,
        retry_policy: RetryPolicy | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target = target
        self.manager = manager
        self.engine = engine
        self.store = store
        self.interval = interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

        self.state = WorkerState.DISCONNECTED
        self.connect_attempts = 0
        self.snapshots_written = 0
        self.last_error: Exception | None = None
        self._consecutive_failures = 0

    def _set_state(self, state: WorkerState) -> None:
        if state is not self.state:
            logger.debug(f"[{self.target.hostname}] {self.state.value} -> {state.value}")
            self.state = state

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def run_continuous(self) -> None:
        """
        Collect on every interval tick until stopped.

        Any connect or collector failure, a lost session, or an unexpected
        exception closes the session and schedules a reconnect after the
        retry delay. The host is only abandoned when the retry policy says
        so for that failure class.
        """
        host = self.target.hostname
        logger.info(f"[{host}] Starting continuous collection every {self.interval}s")

        while not self.stopping:
            try:
                error = self._connected_phase()
            except Exception as e:
                logger.exception(f"[{host}] Unexpected error during collection: {e}")
                error = e
            if error is None or self.stopping:
                break

            self.last_error = error
            self._consecutive_failures += 1
            if not self.retry_policy.should_retry(error):
                logger.error(
                    f"[{host}] Giving up after {self.retry_policy.classify(error)} failure: {error}"
                )
                break

            delay = self.retry_policy.next_delay(self._consecutive_failures)
            logger.info(f"[{host}] Reconnecting in {delay:.0f}s")
            if self.stop_event.wait(delay):
                break

        self._set_state(WorkerState.TERMINATED)
        logger.info(f"[{host}] Worker terminated")

    def _connected_phase(self) -> FleetstatError | None:
        """
        Connect and collect until an error ends the session.

        The session's transport is checked before every cycle, so a dropped
        connection is repaired even when no collector would notice it.

        Returns:
            The error that ended the session, or None if stopped.
        """
        session = self._connect()
        if session is None:
            return self.last_error

        self._consecutive_failures = 0
        try:
            self._set_state(WorkerState.CONNECTED)
            next_tick = self.clock() + self.interval
            while not self.stop_event.wait(max(0.0, next_tick - self.clock())):
                next_tick += self.interval
                if next_tick <= self.clock():
                    # Drop ticks missed while a slow cycle was running
                    next_tick = self.clock() + self.interval

                if not session.is_alive:
                    logger.warning(f"[{self.target.hostname}] Session to {self.target.address} lost")
                    return ConnectError(
                        self.target, ConnectFailure.UNREACHABLE, "session is no longer active"
                    )

                self._set_state(WorkerState.COLLECTING)
                outcome = self._run_cycle(session, Snapshot.time_series(self.target.hostname))
                if isinstance(outcome.error, CollectorFailure):
                    return outcome.error
                self._set_state(WorkerState.CONNECTED)
            return None
        finally:
            self.manager.close(session)
            if not self.stopping:
                self._set_state(WorkerState.DISCONNECTED)

    def _connect(self) -> SessionHandle | None:
        self._set_state(WorkerState.CONNECTING)
        self.connect_attempts += 1
        try:
            return self.manager.connect(self.target)
        except ConnectError as e:
            logger.warning(f"[{self.target.hostname}] Connection failed: {e}")
            self.last_error = e
            self._set_state(WorkerState.DISCONNECTED)
            return None

    def _run_cycle(self, session: SessionHandle, snapshot: Snapshot) -> CycleOutcome:
        """
        Collect into a snapshot and persist it.

        Collector failures are returned without writing anything. Write
        failures are logged and returned but leave the session usable.
        """
        outcome = CycleOutcome(target=self.target)
        try:
            outcome.snapshot = self.engine.collect(session, snapshot)
        except CollectorFailure as e:
            logger.warning(f"[{self.target.hostname}] Collection cycle aborted: {e}")
            outcome.error = e
            return outcome

        try:
            outcome.path = self.store.write(outcome.snapshot)
            self.snapshots_written += 1
        except (SerializationError, PersistenceError) as e:
            logger.error(f"[{self.target.hostname}] Snapshot not saved: {e}")
            outcome.error = e
        return outcome

    def run_once(self, label: str) -> CycleOutcome:
        """
        Perform a single named collection and terminate.

        There is no retry: whatever happens, the scheduler ends TERMINATED.
        """
        host = self.target.hostname
        logger.info(f"[{host}] Collecting named snapshot '{label}'")

        session = self._connect()
        if session is None:
            self._set_state(WorkerState.TERMINATED)
            return CycleOutcome(target=self.target, error=self.last_error)

        try:
            self._set_state(WorkerState.COLLECTING)
            outcome = self._run_cycle(session, Snapshot.named(label, host))
        finally:
            self.manager.close(session)
            self._set_state(WorkerState.TERMINATED)

        if outcome.error is not None:
            self.last_error = outcome.error
        return outcome


class Fleet:
    """
    Runs one HostScheduler per target.

    Workers are daemon threads coordinated only through a shared stop
    event; stopping does not wait for in-flight cycles to finish.
    """

    def __init__(
        self,
        targets: list[HostTarget],
        manager: SessionManager,
        engine: CollectionEngine,
        store: SnapshotStore,
        interval: float = 5.0,
        retry_policy: RetryPolicy | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.targets = list(targets)
        self.stop_event = stop_event or threading.Event()
        self.schedulers = [
            HostScheduler(
                target,
                manager,
                engine,
                store,
                interval=interval,
                retry_policy=retry_policy,
                stop_event=self.stop_event,
            )
            for target in self.targets
        ]
        self.threads: list[threading.Thread] = []

    @classmethod
    def from_config(
        cls,
        config: Config,
        targets: list[HostTarget],
        manager: SessionManager,
        engine: CollectionEngine,
        store: SnapshotStore,
    ) -> Fleet:
        return cls(
            targets,
            manager,
            engine,
            store,
            interval=config.interval,
            retry_policy=RetryPolicy.from_config(config),
        )

    def start(self) -> None:
        """Start a continuous-collection thread for every host."""
        for scheduler in self.schedulers:
            thread = threading.Thread(
                target=scheduler.run_continuous,
                name=f"fleetstat-{scheduler.target.hostname}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)
        logger.info(f"Started {len(self.threads)} host workers")

    def stop(self) -> None:
        """Signal every worker to stop."""
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        """Wait for workers to exit, up to ``timeout`` seconds each."""
        for thread in self.threads:
            thread.join(timeout)

    def run_forever(self) -> None:
        """
        Start all workers and block until SIGINT or SIGTERM.

        Returns as soon as the stop event is set; workers that are blocked
        in a network call are abandoned.
        """
        self._install_signal_handlers()
        self.start()
        while not self.stop_event.wait(1.0):
            pass
        logger.info("Shutting down")

    def _install_signal_handlers(self) -> None:
        def _handle(signum, frame):
            logger.info(f"Received signal {signum}")
            self.stop()

        for name in ("SIGINT", "SIGTERM", "SIGQUIT"):
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, _handle)

    def collect_named(self, label: str) -> list[CycleOutcome]:
        """
        Take one named snapshot of every host in parallel.

        Returns:
            One outcome per target, in target order.
        """
        if not self.schedulers:
            return []
        with ThreadPoolExecutor(max_workers=len(self.schedulers)) as executor:
            return list(executor.map(lambda s: s.run_once(label), self.schedulers))
