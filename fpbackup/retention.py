"""Retention manager for fpbackup.

This module provides the RetentionManager class that expires backups older
than a retention window. It never removes every backup in one run, and it
only prunes per-backup snapshot files once their backup is gone.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from pathlib import Path
from typing import List, Optional
import logging
import shutil

from fpbackup.archive import Archiver, ZipArchiver
from fpbackup.errors import ParseError, SafetyAbort
from fpbackup.fingerprint import STATE_DIRECTORY, list_named_snapshots, snapshot_file
from fpbackup.logger import ErrorCode, log_structured
from fpbackup.metadata import backup_name, list_backup_locations, read_metadata
from fpbackup.timestamps import format_timestamp, utc_now


# Logger for retention operations
logger = logging.getLogger(__name__)

_WILDCARDS = set("*?[")


@dataclass
class RetentionCandidate:
    """A backup considered for expiry."""
    name: str
    location: Path
    created_at: datetime


@dataclass
class RetentionSelection:
    """Output of expiry evaluation."""
    backup_directory: Path
    cutoff_date: datetime
    candidates: List[RetentionCandidate] = field(default_factory=list)
    expired: List[RetentionCandidate] = field(default_factory=list)
    to_delete: List[RetentionCandidate] = field(default_factory=list)
    safety_abort: bool = False


@dataclass
class RetentionResult:
    """Result of applying a retention selection."""
    deleted_count: int = 0
    freed_bytes: int = 0
    deleted: List[str] = field(default_factory=list)
    safety_abort: bool = False
    orphans_pruned: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "deleted_count": self.deleted_count,
            "freed_bytes": self.freed_bytes,
            "deleted": self.deleted,
            "safety_abort": self.safety_abort,
            "orphans_pruned": self.orphans_pruned,
        }


def matches_name_filter(name: str, name_filter: Optional[str]) -> bool:
    """
    Match a backup name against a retention filter.

    Filters containing *, ? or [ are globs; anything else is a substring.
    Both forms ignore case.
    """
    if not name_filter:
        return True
    if _WILDCARDS & set(name_filter):
        return fnmatchcase(name.casefold(), name_filter.casefold())
    return name_filter.casefold() in name.casefold()


class RetentionManager:
    """
    Expires backups older than a fixed number of days.

    Safety invariant: a selection in which every candidate has expired is
    aborted, so a skewed clock or a zero-day window cannot wipe the whole
    backup history.
    """

    def __init__(self, archiver: Optional[Archiver] = None):
        self.archiver = archiver or ZipArchiver()

    def _creation_time(self, location: Path) -> datetime:
        """Metadata timestamp, falling back to filesystem mtime."""
        try:
            return read_metadata(location, self.archiver).created_at
        except ParseError as e:
            logger.debug(f"{location.name}: {e}; using modification time")
            return datetime.fromtimestamp(location.stat().st_mtime, tz=timezone.utc)

    def select_expired(
        self,
        backup_directory: Path,
        retention_days: int,
        name_filter: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RetentionSelection:
        """
        Select backups older than the retention window.

        Args:
            backup_directory: Directory holding backups
            retention_days: Backups created before now - retention_days expire
            name_filter: Substring or glob limiting which backups are considered
            now: Reference instant (defaults to the current UTC time)

        Returns:
            RetentionSelection; to_delete is empty when safety_abort is set
        """
        backup_directory = Path(backup_directory)
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        selection = RetentionSelection(backup_directory=backup_directory, cutoff_date=cutoff)

        for location in list_backup_locations(backup_directory, self.archiver):
            name = backup_name(location, self.archiver)
            if not matches_name_filter(name, name_filter):
                continue
            candidate = RetentionCandidate(
                name=name,
                location=location,
                created_at=self._creation_time(location),
            )
            selection.candidates.append(candidate)
            if candidate.created_at < cutoff:
                selection.expired.append(candidate)

        selection.candidates.sort(key=lambda c: c.created_at)
        selection.expired.sort(key=lambda c: c.created_at)

        if selection.candidates and len(selection.expired) == len(selection.candidates):
            selection.safety_abort = True
            log_structured(
                logger,
                "WARNING",
                f"All {len(selection.candidates)} backup(s) are older than "
                f"{format_timestamp(cutoff)}; refusing to delete every backup",
                ErrorCode.RETENTION_SAFETY_ABORT,
                {"backup_directory": str(backup_directory), "retention_days": retention_days},
            )
        else:
            selection.to_delete = list(selection.expired)

        return selection

    def _check_safety(self, selection: RetentionSelection) -> None:
        if selection.safety_abort:
            raise SafetyAbort("Selection was marked as a safety abort")
        if selection.candidates and len(selection.to_delete) >= len(selection.candidates):
            raise SafetyAbort(
                f"Refusing to delete all {len(selection.candidates)} backup(s)"
            )

    def apply(self, selection: RetentionSelection) -> RetentionResult:
        """
        Delete the selected backups, then prune orphaned named snapshots.

        Returns:
            RetentionResult; a selection violating the safety invariant deletes
            nothing and reports safety_abort
        """
        result = RetentionResult()

        try:
            self._check_safety(selection)
        except SafetyAbort as e:
            log_structured(logger, "WARNING", str(e), ErrorCode.RETENTION_SAFETY_ABORT)
            result.safety_abort = True
            return result

        for candidate in selection.to_delete:
            size = self._get_size(candidate.location)
            try:
                if candidate.location.is_dir():
                    shutil.rmtree(candidate.location)
                else:
                    candidate.location.unlink()
            except OSError as e:
                log_structured(
                    logger,
                    "ERROR",
                    f"Could not delete {candidate.name}: {e}",
                    ErrorCode.RETENTION_DELETE_FAILED,
                )
                continue
            result.deleted.append(candidate.name)
            result.deleted_count += 1
            result.freed_bytes += size
            logger.info(f"Deleted expired backup {candidate.name}")

        if result.deleted_count:
            result.orphans_pruned = self.prune_orphaned_snapshots(selection.backup_directory)

        return result

    def prune_orphaned_snapshots(self, backup_directory: Path) -> List[str]:
        """
        Remove named snapshot files whose backup no longer exists.

        latest and previous are never touched.

        Returns:
            Names of pruned snapshots
        """
        backup_directory = Path(backup_directory)
        state_directory = backup_directory / STATE_DIRECTORY
        existing = {
            backup_name(location, self.archiver).casefold()
            for location in list_backup_locations(backup_directory, self.archiver)
        }

        pruned = []
        for name in list_named_snapshots(state_directory):
            if name.casefold() in existing:
                continue
            try:
                snapshot_file(state_directory, name).unlink()
            except OSError as e:
                logger.warning(f"Could not remove orphaned snapshot {name}: {e}")
                continue
            pruned.append(name)
            logger.debug(f"Pruned orphaned snapshot {name}")
        return pruned

    def _get_size(self, path: Path) -> int:
        """
        Calculate total size of a backup directory or archive in bytes.

        Symlinks are not followed.
        """
        if path.is_file():
            return path.stat().st_size
        total_size = 0
        for root, dirs, files in path.walk():
            for f in files:
                try:
                    total_size += (root / f).lstat().st_size
                except OSError:
                    pass
        return total_size


def apply_retention(
    backup_directory: Path,
    retention_days: int,
    name_filter: Optional[str] = None,
    archiver: Optional[Archiver] = None,
) -> RetentionResult:
    """Select and delete expired backups in one call."""
    manager = RetentionManager(archiver=archiver)
    return manager.apply(manager.select_expired(backup_directory, retention_days, name_filter))
