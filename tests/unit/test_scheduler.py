"""
Unit tests for HostScheduler and Fleet.

Schedulers run against the scripted session manager from conftest with
short intervals, so every test finishes in well under a second.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from fleetstat.collectors import CollectorRegistry, DataCollector, ValueKind
from fleetstat.engine import CollectionEngine
from fleetstat.errors import (
    CollectorFailure,
    ConnectError,
    ConnectFailure,
    PersistenceError,
)
from fleetstat.scheduler import CycleOutcome, Fleet, HostScheduler, RetryPolicy, WorkerState
from fleetstat.targets import HostTarget

FAST_RETRY = RetryPolicy(delay=0.05)


def _run_for(scheduler: HostScheduler, seconds: float) -> threading.Thread:
    thread = threading.Thread(target=scheduler.run_continuous, daemon=True)
    thread.start()
    time.sleep(seconds)
    scheduler.stop_event.set()
    thread.join(2)
    assert not thread.is_alive()
    return thread


class TestHostSchedulerContinuous:
    """Test the continuous collection loop."""

    def test_writes_time_series_snapshots(self, fake_manager, uptime_registry, store, target):
        """Test that one session serves every tick until stopped."""
        scheduler = HostScheduler(
            target,
            fake_manager,
            CollectionEngine(fake_manager, uptime_registry),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.2)

        assert scheduler.snapshots_written >= 2
        assert len(store.list_time_series("web1")) >= 1
        assert scheduler.state is WorkerState.TERMINATED
        # One session for the whole run, closed on stop
        assert fake_manager.opened == 1
        assert fake_manager.closed == 1

    def test_no_collection_before_first_tick(self, fake_manager, uptime_registry, store, target):
        """Test that nothing runs before the first interval elapses."""
        scheduler = HostScheduler(
            target,
            fake_manager,
            CollectionEngine(fake_manager, uptime_registry),
            store,
            interval=10,
        )

        _run_for(scheduler, 0.1)

        assert fake_manager.run_calls == []
        assert scheduler.snapshots_written == 0

    def test_reconnects_after_connect_failure(self, make_manager, uptime_registry, store, target):
        """Test reconnect attempts spaced by the retry delay."""
        manager = make_manager(unreachable={"web1"})
        scheduler = HostScheduler(
            target,
            manager,
            CollectionEngine(manager, uptime_registry),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.3)

        attempts = manager.connects_for("web1")
        assert len(attempts) >= 3
        gaps = [b - a for a, b in zip(attempts, attempts[1:])]
        assert all(gap >= 0.04 for gap in gaps)
        assert isinstance(scheduler.last_error, ConnectError)
        assert scheduler.snapshots_written == 0

    def test_collector_failure_closes_session_and_reconnects(
        self, make_manager, uptime_registry, store, target
    ):
        """Test that a collector failure replaces the session."""
        manager = make_manager(failing_commands={"cat /proc/uptime"})
        scheduler = HostScheduler(
            target,
            manager,
            CollectionEngine(manager, uptime_registry),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.3)

        assert manager.opened >= 2
        assert manager.opened == manager.closed
        assert isinstance(scheduler.last_error, CollectorFailure)
        assert store.list_time_series("web1") == []

    def test_gives_up_on_configured_failure_class(
        self, make_manager, uptime_registry, store, target
    ):
        """Test that a give-up failure class ends the worker."""
        manager = make_manager(unreachable={"web1": ConnectFailure.AUTHENTICATION})
        scheduler = HostScheduler(
            target,
            manager,
            CollectionEngine(manager, uptime_registry),
            store,
            interval=0.02,
            retry_policy=RetryPolicy(delay=0.01, give_up_on=frozenset({"authentication"})),
        )

        scheduler.run_continuous()

        assert scheduler.connect_attempts == 1
        assert scheduler.state is WorkerState.TERMINATED

    def test_write_failure_keeps_session(self, fake_manager, uptime_registry, store, target):
        """Test that write failures do not close the session."""
        calls = []

        def failing_write(snapshot):
            calls.append(snapshot)
            raise PersistenceError("disk full")

        store.write = failing_write
        scheduler = HostScheduler(
            target,
            fake_manager,
            CollectionEngine(fake_manager, uptime_registry),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.15)

        assert len(calls) >= 2
        assert fake_manager.opened == 1

    def test_deeply_nested_json_does_not_kill_worker(self, make_manager, store, target):
        """Test that structured output too deep to decode is a retried collector failure."""
        nested = b"[" * 100000 + b"]" * 100000
        manager = make_manager(outputs={"lsblk --json": nested})
        registry = CollectorRegistry(
            [DataCollector("disks", "lsblk --json", ValueKind.STRUCTURED)]
        )
        scheduler = HostScheduler(
            target,
            manager,
            CollectionEngine(manager, registry),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.3)

        assert len(manager.connects_for("web1")) >= 2
        assert isinstance(scheduler.last_error, CollectorFailure)
        assert scheduler.state is WorkerState.TERMINATED

    def test_unexpected_exception_closes_session_and_reconnects(
        self, fake_manager, uptime_registry, store, target
    ):
        """Test that an unexpected error in a cycle goes through the retry path."""
        engine = CollectionEngine(fake_manager, uptime_registry)
        scheduler = HostScheduler(
            target,
            fake_manager,
            engine,
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        with patch.object(engine, "collect", side_effect=RuntimeError("boom")):
            _run_for(scheduler, 0.3)

        assert fake_manager.opened >= 2
        assert fake_manager.opened == fake_manager.closed
        assert isinstance(scheduler.last_error, RuntimeError)
        assert scheduler.snapshots_written == 0
        assert scheduler.state is WorkerState.TERMINATED

    def test_unexpected_exception_respects_give_up(
        self, fake_manager, uptime_registry, store, target
    ):
        """Test that unexpected errors are classed as command failures."""
        engine = CollectionEngine(fake_manager, uptime_registry)
        scheduler = HostScheduler(
            target,
            fake_manager,
            engine,
            store,
            interval=0.01,
            retry_policy=RetryPolicy(delay=0.01, give_up_on=frozenset({"command"})),
        )

        with patch.object(engine, "collect", side_effect=RuntimeError("boom")):
            scheduler.run_continuous()

        assert scheduler.connect_attempts == 1
        assert fake_manager.closed == 1
        assert scheduler.state is WorkerState.TERMINATED

    def test_lost_session_is_reconnected_with_empty_registry(
        self, make_manager, store, target
    ):
        """Test that a dead transport is replaced even when no collector runs."""
        manager = make_manager(dropped={"web1"})
        scheduler = HostScheduler(
            target,
            manager,
            CollectionEngine(manager, CollectorRegistry()),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.3)

        assert len(manager.connects_for("web1")) >= 2
        assert manager.opened == manager.closed
        assert scheduler.snapshots_written == 0
        assert isinstance(scheduler.last_error, ConnectError)
        assert scheduler.last_error.reason is ConnectFailure.UNREACHABLE

    def test_live_session_with_empty_registry_is_kept(
        self, fake_manager, store, target
    ):
        """Test that a healthy session is reused for every empty cycle."""
        scheduler = HostScheduler(
            target,
            fake_manager,
            CollectionEngine(fake_manager, CollectorRegistry()),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        _run_for(scheduler, 0.15)

        assert fake_manager.opened == 1
        assert scheduler.snapshots_written >= 2
        assert scheduler.last_error is None

    def test_stop_during_retry_wait(self, make_manager, uptime_registry, store, target):
        """Test that stopping interrupts a long retry delay."""
        manager = make_manager(unreachable={"web1"})
        scheduler = HostScheduler(
            target,
            manager,
            CollectionEngine(manager, uptime_registry),
            store,
            retry_policy=RetryPolicy(delay=60),
        )

        start = time.monotonic()
        _run_for(scheduler, 0.05)

        assert time.monotonic() - start < 2
        assert scheduler.connect_attempts == 1


class TestHostSchedulerRunOnce:
    """Test single named collections."""

    def test_run_once_writes_named_snapshot(
        self, fake_manager, uptime_registry, store, target, tmp_path
    ):
        """Test a single named collection."""
        scheduler = HostScheduler(
            target, fake_manager, CollectionEngine(fake_manager, uptime_registry), store
        )

        outcome = scheduler.run_once("baseline")

        assert outcome.success
        assert outcome.path == tmp_path / "collections" / "baseline-web1.json"
        assert outcome.snapshot.entries["uptime"].value == "12345.67 89.01\n"
        assert scheduler.state is WorkerState.TERMINATED
        assert fake_manager.closed == 1

    def test_run_once_connect_failure_does_not_retry(
        self, make_manager, uptime_registry, store, target
    ):
        """Test that a named collection never reconnects."""
        manager = make_manager(unreachable={"web1"})
        scheduler = HostScheduler(
            target, manager, CollectionEngine(manager, uptime_registry), store
        )

        outcome = scheduler.run_once("baseline")

        assert not outcome.success
        assert isinstance(outcome.error, ConnectError)
        assert len(manager.connects_for("web1")) == 1
        assert scheduler.state is WorkerState.TERMINATED

    def test_run_once_collector_failure_writes_nothing(
        self, make_manager, uptime_registry, store, target, tmp_path
    ):
        """Test that a failed named collection writes no file."""
        manager = make_manager(failing_commands={"cat /proc/uptime"})
        scheduler = HostScheduler(
            target, manager, CollectionEngine(manager, uptime_registry), store
        )

        outcome = scheduler.run_once("baseline")

        assert isinstance(outcome.error, CollectorFailure)
        assert outcome.path is None
        assert not (tmp_path / "collections").exists()
        assert manager.closed == 1


class TestFleet:
    """Test running several hosts together."""

    def test_collect_named_returns_outcomes_in_target_order(
        self, make_manager, uptime_registry, store
    ):
        """Test outcome order for a parallel named collection."""
        manager = make_manager(
            outputs={"cat /proc/uptime": b"1 1\n"}, unreachable={"down"}
        )
        targets = [HostTarget("a"), HostTarget("down"), HostTarget("c")]
        fleet = Fleet(targets, manager, CollectionEngine(manager, uptime_registry), store)

        outcomes = fleet.collect_named("snap")

        assert [o.target.hostname for o in outcomes] == ["a", "down", "c"]
        assert [o.success for o in outcomes] == [True, False, True]

    def test_collect_named_without_targets(self, fake_manager, uptime_registry, store):
        """Test a named collection with no hosts."""
        fleet = Fleet([], fake_manager, CollectionEngine(fake_manager, uptime_registry), store)
        assert fleet.collect_named("snap") == []

    def test_failing_host_does_not_affect_others(self, make_manager, uptime_registry, store):
        """Test that an unreachable host does not stop the others."""
        manager = make_manager(outputs={"cat /proc/uptime": b"1 1\n"}, unreachable={"down"})
        fleet = Fleet(
            [HostTarget("up"), HostTarget("down")],
            manager,
            CollectionEngine(manager, uptime_registry),
            store,
            interval=0.02,
            retry_policy=FAST_RETRY,
        )

        fleet.start()
        time.sleep(0.2)
        fleet.stop()
        fleet.join(2)

        assert len(store.list_time_series("up")) >= 1
        assert store.list_time_series("down") == []
        assert all(s.state is WorkerState.TERMINATED for s in fleet.schedulers)
        assert [t.name for t in fleet.threads] == ["fleetstat-up", "fleetstat-down"]

    def test_from_config(self, fast_config, fake_manager, uptime_registry, store, target):
        """Test building a fleet from config values."""
        fleet = Fleet.from_config(
            fast_config,
            [target],
            fake_manager,
            CollectionEngine(fake_manager, uptime_registry),
            store,
        )

        scheduler = fleet.schedulers[0]
        assert scheduler.interval == 0.02
        assert scheduler.retry_policy.delay == 0.05
        assert scheduler.stop_event is fleet.stop_event


def test_cycle_outcome_success_requires_path(target):
    """Test that an outcome without a written file is not a success."""
    assert not CycleOutcome(target=target).success


@pytest.mark.parametrize(
    "reason", [ConnectFailure.UNREACHABLE, ConnectFailure.HANDSHAKE, ConnectFailure.AUTHENTICATION]
)
def test_retry_policy_classifies_connect_errors(reason, target):
    """Test that connect errors classify by their reason."""
    assert RetryPolicy.classify(ConnectError(target, reason)) == reason.value
