"""
Pre-migration database snapshots.

Snapshots are taken with SQLite's online backup API, so they are consistent
even while other connections hold the database open in WAL mode. Backup
failures fail closed: the migration that needed the snapshot is never run.
"""

import re
import sqlite3
from datetime import timezone
from pathlib import Path
from typing import Iterable, List, Optional
import logging

from expense_app.lib.utils.time_utils import now_in
from .errors import MigrationSystemError
from .utils import get_database_path

DEFAULT_RETENTION = 10

_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")
_TIMESTAMP_PATTERN = re.compile(r"_backup_(\d{8}_\d{6}_\d{6})")


def _backup_sort_key(path: Path) -> tuple:
    match = _TIMESTAMP_PATTERN.search(path.name)
    return (match.group(1) if match else "", path.name)


class BackupManager:
    """
    Creates and prunes database backups.

    Backup files are named {db_stem}_backup_{YYYYmmdd_HHMMSS_ffffff}[_{label}]{suffix}
    and written to backup_dir.
    """

    def __init__(
        self,
        backup_dir: Path,
        retention: int = DEFAULT_RETENTION,
        tz: Optional[timezone] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            backup_dir: Directory receiving backup files (created on demand)
            retention: Number of backups to keep per database, 0 keeps all
            tz: Fixed timezone used for the timestamp in file names
            logger: Optional logger instance
        """
        self.backup_dir = Path(backup_dir)
        self.retention = retention
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)

    def _backup_name(self, db_path: Path, label: Optional[str]) -> str:
        timestamp = now_in(self.tz).strftime("%Y%m%d_%H%M%S_%f")
        name = f"{db_path.stem}_backup_{timestamp}"
        if label:
            name += "_" + _LABEL_PATTERN.sub("_", label).strip("_")
        return name + (db_path.suffix or ".db")

    def create_backup(self, conn: sqlite3.Connection, label: Optional[str] = None) -> Path:
        """
        Snapshot the database behind a connection.

        Args:
            conn: Open connection, not inside a write transaction
            label: Optional suffix, usually the migration name

        Returns:
            Path to the backup file, verified to exist and be non-empty

        Raises:
            MigrationSystemError: If the snapshot cannot be written or verified
        """
        db_path = get_database_path(conn)
        if db_path is None:
            raise MigrationSystemError(
                "Cannot back up an in-memory database",
                details="the connection has no database file",
            )

        backup_path = self.backup_dir / self._backup_name(db_path, label)

        self.logger.info(f"Creating database backup: {backup_path}")
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target = sqlite3.connect(str(backup_path))
            try:
                conn.backup(target)
            finally:
                target.close()

            if not backup_path.exists() or backup_path.stat().st_size == 0:
                raise MigrationSystemError(
                    "Backup file is missing or empty after backup",
                    details=str(backup_path),
                )
        except MigrationSystemError:
            self._discard(backup_path)
            raise
        except (sqlite3.Error, OSError) as e:
            self._discard(backup_path)
            raise MigrationSystemError(
                f"Failed to create backup of {db_path.name}",
                details=str(e),
            ) from e

        self.logger.debug(f"Backup written ({backup_path.stat().st_size} bytes)")
        return backup_path

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning(f"Could not remove incomplete backup {path}: {e}")

    def list_backups(self, db_stem: Optional[str] = None) -> List[Path]:
        """
        List backup files, newest first.

        Args:
            db_stem: Only return backups of this database (file stem)
        """
        if not self.backup_dir.exists():
            return []
        pattern = f"{db_stem}_backup_*" if db_stem else "*_backup_*"
        backups = [p for p in self.backup_dir.glob(pattern) if p.is_file()]
        return sorted(backups, key=_backup_sort_key, reverse=True)

    def cleanup_old_backups(
        self,
        keep: Optional[int] = None,
        protect: Iterable[Path] = (),
        db_stem: Optional[str] = None,
    ) -> List[Path]:
        """
        Delete all but the newest `keep` backups.

        Args:
            keep: Number of backups to keep (defaults to the configured
                retention, 0 keeps everything)
            protect: Backups that must survive regardless of age
            db_stem: Only consider backups of this database

        Returns:
            Paths that were deleted
        """
        keep = self.retention if keep is None else keep
        if keep <= 0:
            return []

        protected = {Path(p).resolve() for p in protect}
        removed = []
        for path in self.list_backups(db_stem)[keep:]:
            if path.resolve() in protected:
                continue
            try:
                path.unlink()
                removed.append(path)
            except OSError as e:
                self.logger.warning(f"Failed to remove old backup {path}: {e}")

        if removed:
            self.logger.info(f"Removed {len(removed)} old backup(s), keeping {keep}")
        return removed
