"""Restore marker store.

The marker ``<data_dir>/.restored_<db>`` records that a database was restored
into this data volume.  Its existence is what matters; the JSON body notes
when and from which backup the restore completed.

``claim()`` takes an exclusive, non-blocking ``flock`` on
``<data_dir>/.restoring_<db>.lock`` for the whole check-restore-write
sequence, so two runs against the same volume cannot both restore.
"""

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from db_restore.restore.models import MarkerRecord, validate_database_name

logger = logging.getLogger(__name__)


class RestoreInProgressError(Exception):
    """Raised when another run holds the restore lock for the same database."""

    pass


class RestoreMarker:
    """Marker file for one database under one data directory."""

    def __init__(self, data_dir: Path, database: str) -> None:
        self.data_dir = data_dir
        self.database = validate_database_name(database)

    @property
    def path(self) -> Path:
        return self.data_dir / f".restored_{self.database}"

    @property
    def lock_path(self) -> Path:
        return self.data_dir / f".restoring_{self.database}.lock"

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> MarkerRecord | None:
        """Marker body, or ``None`` when absent or written by an older tool.

        Markers created with ``touch`` are empty; they still count as present.
        """
        if not self.path.exists():
            return None
        try:
            return MarkerRecord.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError):
            logger.debug("Marker %s has no readable body", self.path)
            return None

    def write(self, backup: str, kind: str = "plain") -> MarkerRecord:
        """Write the marker atomically (temp file in the same directory, then rename)."""
        record = MarkerRecord(
            database=self.database,
            backup=backup,
            restored_at=datetime.now(timezone.utc),
            kind=kind,
        )
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".restored_{self.database}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Restore marker written to %s", self.path)
        return record

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("Restore marker removed: %s", self.path)

    @contextmanager
    def claim(self) -> Iterator["RestoreMarker"]:
        """Hold the restore lock for this database.

        Raises:
            RestoreInProgressError: If another process holds the lock.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with self.lock_path.open("a+") as lock_handle:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise RestoreInProgressError(
                    f"Restore of '{self.database}' already in progress ({self.lock_path})"
                ) from exc
            try:
                lock_handle.seek(0)
                lock_handle.truncate()
                lock_handle.write(json.dumps({"pid": os.getpid()}))
                lock_handle.flush()
                yield self
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
