"""
Snapshot persistence.

Layout under the output directory:

    timeSeries/<hostname>/<unix timestamp>.json   continuous snapshots
    collections/<label>-<hostname>.json           named snapshots
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from fleetstat.errors import PersistenceError
from fleetstat.snapshot import Snapshot, SnapshotMode

if TYPE_CHECKING:
    from fleetstat.config import Config

logger = logging.getLogger(__name__)


class SnapshotStore:
    """
    Writes snapshots as indented JSON files.

    Directories are created on first use. Each host writes to its own
    files, so workers never contend for the same path.
    """

    def __init__(
        self,
        output_dir: str | Path = ".",
        time_series_dir: str = "timeSeries",
        collections_dir: str = "collections",
    ):
        self.output_dir = Path(output_dir)
        self.time_series_root = self.output_dir / time_series_dir
        self.collections_root = self.output_dir / collections_dir

    @classmethod
    def from_config(cls, config: Config) -> SnapshotStore:
        return cls(config.output_dir, config.time_series_dir, config.collections_dir)

    def path_for(self, snapshot: Snapshot) -> Path:
        """
        Return the file a snapshot is written to.

        Raises:
            PersistenceError: If the identifier or hostname would escape the
                              output directory.
        """
        for part in (snapshot.identifier, snapshot.hostname):
            if not part or "/" in part or "\\" in part or part in (".", ".."):
                raise PersistenceError(f"Unsafe path component in snapshot: {part!r}")

        if snapshot.mode is SnapshotMode.TIME_SERIES:
            return self.time_series_root / snapshot.hostname / f"{snapshot.identifier}.json"
        return self.collections_root / f"{snapshot.identifier}-{snapshot.hostname}.json"

    def write(self, snapshot: Snapshot) -> Path:
        """
        Serialize and write a snapshot.

        The file is written to a temporary sibling and moved into place, so
        a failed write never leaves a partial snapshot on disk.

        Returns:
            Path of the written file.

        Raises:
            SerializationError: If the snapshot cannot be encoded.
            PersistenceError: If the file cannot be written.
        """
        path = self.path_for(snapshot)
        content = snapshot.to_json()

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create directory {path.parent}: {e}") from e

        tmp_path = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp_path.chmod(0o644)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Cannot write snapshot to {path}: {e}") from e

        logger.info(f"[{snapshot.hostname}] Snapshot written to {path}")
        return path

    def load(self, path: str | Path) -> Snapshot:
        """
        Read a snapshot file back.

        Raises:
            PersistenceError: If the file cannot be read.
            SerializationError: If the file is not a valid snapshot.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot read snapshot {path}: {e}") from e
        return Snapshot.from_json(text)

    def list_time_series(self, hostname: str) -> list[Path]:
        """List a host's continuous snapshot files, oldest first."""
        host_dir = self.time_series_root / hostname
        if not host_dir.is_dir():
            return []
        return sorted(host_dir.glob("*.json"), key=lambda p: int(p.stem) if p.stem.isdigit() else 0)

