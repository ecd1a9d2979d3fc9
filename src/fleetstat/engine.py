"""
Collection engine for Fleetstat.

Runs every registered collector against a live session and assembles the
results into a Snapshot. The first failing collector aborts the cycle.
"""

from __future__ import annotations

import logging
import time

from fleetstat.collectors.registry import CollectorRegistry
from fleetstat.collectors.values import CollectedValue
from fleetstat.errors import CollectorFailure, CommandError
from fleetstat.session import SessionHandle, SessionManager
from fleetstat.snapshot import Snapshot

logger = logging.getLogger(__name__)


class CollectionEngine:
    """
    Executes collectors over a session.

    Collectors run sequentially in registry order. There is no partial
    result mode: a snapshot is either returned complete or not at all.
    """

    def __init__(self, manager: SessionManager, registry: CollectorRegistry):
        self.manager = manager
        self.registry = registry

    def collect(self, session: SessionHandle, snapshot: Snapshot) -> Snapshot:
        """
        Run all collectors and fill the snapshot's entries.

        Args:
            session: Open session to the host.
            snapshot: Empty snapshot carrying the identifier for this cycle.

        Returns:
            The same snapshot with one entry per collector.

        Raises:
            CollectorFailure: Naming the first collector whose command failed.
                              The snapshot's entries are left untouched.
        """
        host = session.target.hostname
        logger.debug(f"[{host}] Running {len(self.registry)} collectors")

        entries: dict[str, CollectedValue] = {}
        cycle_start = time.perf_counter()

        for collector in self.registry:
            start = time.perf_counter()
            try:
                output = self.manager.run(session, collector.command)
                try:
                    entries[collector.name] = CollectedValue.parse(collector.kind, output)
                except ValueError as e:
                    raise CommandError(collector.command, cause=e) from e
            except CommandError as e:
                logger.warning(f"[{host}] Collector '{collector.name}' failed: {e}")
                raise CollectorFailure(collector.name, e) from e

            duration = (time.perf_counter() - start) * 1000
            logger.debug(f"[{host}] Collector '{collector.name}' completed in {duration:.2f}ms")

        snapshot.entries = entries
        duration = (time.perf_counter() - cycle_start) * 1000
        logger.debug(f"[{host}] Snapshot {snapshot.identifier} assembled in {duration:.2f}ms")
        return snapshot
