"""Backup orchestration for fpbackup.

This module ties the engine components together for one backup run:
- Validate source and destination
- Fingerprint the source (reusing hashes from the latest snapshot)
- Decide between Full and Incremental, falling back to Full when needed
- Copy the selected files and write backup metadata
- Optionally pack the backup into a single archive
- Rotate and save snapshot state

It also provides config-driven wrappers for verify, restore, cleanup and
listing, used by the CLI and the MCP server.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional
import logging
import shutil
import threading
import time

from fpbackup.archive import Archiver, ZipArchiver
from fpbackup.changes import diff
from fpbackup.config import Configuration
from fpbackup.copier import FileCopier
from fpbackup.errors import (
    NotFoundError,
    ParseError,
    ScanCancelled,
    TraversalRejected,
    ValidationError,
)
from fpbackup.fingerprint import (
    LATEST,
    ROTATING_SNAPSHOTS,
    STATE_DIRECTORY,
    FingerprintStore,
    load_snapshot,
    snapshot_file,
)
from fpbackup.logger import (
    ErrorCode,
    log_backup_completion,
    log_backup_error,
    log_backup_start,
    log_structured,
)
from fpbackup.metadata import (
    BackupMetadata,
    BackupType,
    normalize_backup_type,
    write_metadata,
)
from fpbackup.paths import path_key
from fpbackup.restore import ResolvedBackup, RestoreChainResolver, RestoreResult, restore_latest
from fpbackup.retention import RetentionManager, RetentionResult
from fpbackup.timestamps import format_timestamp, utc_now
from fpbackup.verify import VerificationResult, verify_backup


logger = logging.getLogger(__name__)


# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_SOURCE_ERROR = 2
EXIT_DESTINATION_ERROR = 3
EXIT_BACKUP_ERROR = 4
EXIT_NOT_FOUND = 5
EXIT_PARSE_ERROR = 6
EXIT_RESTORE_ERROR = 7

FALLBACK_NO_BASE_SNAPSHOT = "no_base_snapshot"
FALLBACK_UNREADABLE_BASE_SNAPSHOT = "unreadable_base_snapshot"
FALLBACK_SOURCE_ROOT_MISMATCH = "source_root_mismatch"


@dataclass
class BackupResult:
    """Result of a backup run."""
    success: bool
    exit_code: int
    requested_type: Optional[BackupType] = None
    backup_type: Optional[BackupType] = None
    backup_name: Optional[str] = None
    backup_path: Optional[Path] = None
    files_backed_up: int = 0
    files_deleted: int = 0
    total_size: int = 0
    no_changes: bool = False
    fell_back_to_full: bool = False
    fallback_reason: Optional[str] = None
    changes: dict = field(default_factory=dict)
    duration_seconds: float = 0.0
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "requested_type": self.requested_type.value if self.requested_type else None,
            "backup_type": self.backup_type.value if self.backup_type else None,
            "backup_name": self.backup_name,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "files_backed_up": self.files_backed_up,
            "files_deleted": self.files_deleted,
            "total_size": self.total_size,
            "no_changes": self.no_changes,
            "fell_back_to_full": self.fell_back_to_full,
            "fallback_reason": self.fallback_reason,
            "changes": self.changes,
            "duration_seconds": round(self.duration_seconds, 3),
            "error_message": self.error_message,
        }


def _backup_exists(destination: Path, name: str, archiver: Archiver) -> bool:
    return (
        (destination / name).exists()
        or (destination / f"{name}{archiver.suffix}").exists()
        or snapshot_file(destination / STATE_DIRECTORY, name).exists()
    )


def generate_backup_name(
    destination: Path,
    prefix: str,
    backup_type: BackupType,
    moment: datetime,
    archiver: Optional[Archiver] = None,
) -> str:
    """
    Build a backup name of the form {prefix}_{Type}_{YYYYMMDD_HHMMSS}.

    A two-digit sequence suffix (-01, -02, ...) is appended when a backup or
    named snapshot with the same name already exists.
    """
    archiver = archiver or ZipArchiver()
    destination = Path(destination)
    base = f"{prefix}_{backup_type.value}_{moment.strftime('%Y%m%d_%H%M%S')}"
    if not _backup_exists(destination, base, archiver):
        return base

    sequence = 1
    while _backup_exists(destination, f"{base}-{sequence:02d}", archiver):
        sequence += 1
    return f"{base}-{sequence:02d}"


def _validate_backup_name(destination: Path, name: str, archiver: Archiver) -> None:
    snapshot_file(destination, name)
    if name in ROTATING_SNAPSHOTS:
        raise ValidationError(f"Backup name '{name}' is reserved")
    if name.startswith("."):
        raise ValidationError(f"Backup name '{name}' must not start with '.'")
    if _backup_exists(destination, name, archiver):
        raise ValidationError(f"Backup '{name}' already exists in {destination}")


def run_backup(
    config: Configuration,
    backup_type: str = "incremental",
    name: Optional[str] = None,
    archiver: Optional[Archiver] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BackupResult:
    """
    Run one backup.

    An Incremental falls back to Full when there is no usable latest snapshot
    or the latest snapshot was taken from a different source root; the
    fallback is reported on the result. An Incremental with nothing changed,
    added or deleted writes nothing and leaves snapshot state untouched.

    Args:
        config: Loaded configuration
        backup_type: "full" or "incremental" (aliases accepted)
        name: Explicit backup name; generated when None
        archiver: Archiver used when archive.enabled is set
        cancel_event: Set to abort the fingerprint scan

    Returns:
        BackupResult with success status and exit code
    """
    start_time = time.time()
    archiver = archiver or ZipArchiver()

    try:
        requested = normalize_backup_type(backup_type)
    except ParseError as e:
        return BackupResult(success=False, exit_code=EXIT_CONFIG_ERROR, error_message=str(e))

    result = BackupResult(success=False, exit_code=EXIT_BACKUP_ERROR, requested_type=requested)
    source = Path(config.source_directory).absolute()
    destination = Path(config.backup_destination)
    state_directory = config.state_directory

    if not source.is_dir():
        error = ValidationError(f"Source directory does not exist: {source}")
        log_backup_error(logger, error, "source validation", ErrorCode.SOURCE_NOT_FOUND)
        result.exit_code = EXIT_SOURCE_ERROR
        result.error_message = str(error)
        return result

    try:
        destination.mkdir(parents=True, exist_ok=True)
        if name is not None:
            _validate_backup_name(destination, name, archiver)
    except OSError as e:
        log_backup_error(logger, e, "destination validation", ErrorCode.DESTINATION_UNWRITABLE)
        result.exit_code = EXIT_DESTINATION_ERROR
        result.error_message = str(e)
        return result
    except ValidationError as e:
        result.exit_code = EXIT_CONFIG_ERROR
        result.error_message = str(e)
        return result

    log_backup_start(logger, source, destination, requested.value)

    latest = None
    unreadable = False
    try:
        latest = load_snapshot(state_directory, LATEST)
    except ParseError as e:
        log_structured(
            logger,
            "WARNING",
            f"Latest snapshot is unreadable: {e}",
            ErrorCode.SNAPSHOT_PARSE_FAILED,
        )
        unreadable = True

    store = FingerprintStore(
        algorithm=config.fingerprint.algorithm,
        max_workers=config.fingerprint.max_workers,
        exclude_patterns=config.exclude_patterns,
    )
    try:
        current = store.compute_fingerprints(
            source,
            recursive=config.recursive,
            prior_snapshot=latest,
            cancel_event=cancel_event,
        )
    except (ScanCancelled, NotFoundError) as e:
        log_backup_error(logger, e, "fingerprinting")
        result.error_message = str(e)
        return result

    effective = requested
    if requested is BackupType.INCREMENTAL:
        if latest is None:
            result.fallback_reason = (
                FALLBACK_UNREADABLE_BASE_SNAPSHOT if unreadable else FALLBACK_NO_BASE_SNAPSHOT
            )
        elif path_key(str(Path(latest.source_root))) != path_key(str(source)):
            result.fallback_reason = FALLBACK_SOURCE_ROOT_MISMATCH
        if result.fallback_reason is not None:
            logger.info(f"Falling back to a Full backup ({result.fallback_reason})")
            effective = BackupType.FULL
            result.fell_back_to_full = True
    result.backup_type = effective

    if effective is BackupType.INCREMENTAL:
        changes = diff(latest, current, config.exclude_patterns)
        result.changes = changes.summary()
        to_copy = changes.to_copy
        deleted = changes.deleted_paths
        if not changes.has_changes and not deleted:
            logger.info("No changes since the last backup; nothing written")
            result.success = True
            result.exit_code = EXIT_SUCCESS
            result.no_changes = True
            result.duration_seconds = time.time() - start_time
            return result
    else:
        to_copy = current
        deleted = []

    moment = utc_now()
    if latest is not None and moment <= latest.created_at:
        moment = latest.created_at + timedelta(milliseconds=1)
    if name is None:
        name = generate_backup_name(destination, config.backup_prefix, effective, moment, archiver)
    backup_directory = destination / name
    unreadable_keys = set()

    def skip_unreadable(relative: str, error: OSError) -> None:
        log_structured(
            logger,
            "WARNING",
            f"Skipping {relative}: could not copy file: {error}",
            ErrorCode.SOURCE_FILE_UNREADABLE,
            {"file": relative},
        )
        unreadable_keys.add(path_key(relative))

    try:
        copied = FileCopier().copy_files(
            source,
            [r.relative_path for r in to_copy],
            backup_directory,
            on_unreadable=skip_unreadable,
        )
        if unreadable_keys:
            to_copy = [r for r in to_copy if r.key not in unreadable_keys]
            current = [r for r in current if r.key not in unreadable_keys]

        metadata = BackupMetadata(
            backup_type=effective,
            source_root=str(source),
            timestamp=format_timestamp(moment),
            files_backed_up=copied,
        )
        if effective is BackupType.INCREMENTAL:
            metadata.base_backup_timestamp = latest.timestamp
            metadata.included_files = [r.relative_path for r in to_copy]
            metadata.deleted_files = list(deleted)
        write_metadata(metadata, backup_directory)

        backup_path = backup_directory
        if config.archive.enabled:
            backup_path = archiver.pack(backup_directory)

        store.save_snapshot(source, state_directory, name=name, files=current, moment=moment)
    except (OSError, TraversalRejected, ValidationError) as e:
        log_backup_error(
            logger,
            e,
            "writing backup",
            ErrorCode.DESTINATION_UNWRITABLE if isinstance(e, OSError) else None,
        )
        shutil.rmtree(backup_directory, ignore_errors=True)
        (destination / f"{name}{archiver.suffix}").unlink(missing_ok=True)
        result.exit_code = EXIT_DESTINATION_ERROR if isinstance(e, OSError) else EXIT_BACKUP_ERROR
        result.error_message = str(e)
        return result

    result.success = True
    result.exit_code = EXIT_SUCCESS
    result.backup_name = name
    result.backup_path = backup_path
    result.files_backed_up = copied
    result.files_deleted = len(deleted)
    result.total_size = sum(r.size for r in to_copy)
    result.duration_seconds = time.time() - start_time

    log_backup_completion(
        logger,
        duration_seconds=result.duration_seconds,
        files_backed_up=result.files_backed_up,
        total_size=result.total_size,
        backup_path=backup_path,
    )
    return result


def list_backups(config: Configuration, archiver: Optional[Archiver] = None) -> List[ResolvedBackup]:
    """List backups in the destination, oldest first."""
    return RestoreChainResolver(archiver=archiver).resolve(config.backup_destination)


def run_verify(
    config: Configuration,
    backup_name: Optional[str] = None,
    archiver: Optional[Archiver] = None,
) -> VerificationResult:
    """
    Verify one backup; the newest backup when backup_name is None.

    Raises:
        NotFoundError: If there is no such backup or no recorded snapshot
        ParseError: If metadata or the snapshot file is malformed
    """
    if backup_name is None:
        backups = list_backups(config, archiver)
        if not backups:
            raise NotFoundError(f"No backups found in {config.backup_destination}")
        backup_name = backups[-1].name

    return verify_backup(
        config.backup_destination,
        backup_name,
        archiver=archiver,
        max_workers=config.fingerprint.max_workers,
    )


def run_restore(
    config: Configuration,
    restore_directory: Path,
    archiver: Optional[Archiver] = None,
) -> RestoreResult:
    """
    Restore the latest backed-up state into restore_directory.

    Raises:
        NotFoundError: If there is no Full backup
        ParseError: If a backup's metadata is invalid
        ValidationError: If the restore chain is inconsistent
    """
    return restore_latest(config.backup_destination, restore_directory, archiver=archiver)


def run_cleanup(
    config: Configuration,
    retention_days: Optional[int] = None,
    name_filter: Optional[str] = None,
    archiver: Optional[Archiver] = None,
) -> RetentionResult:
    """Expire old backups using the configured (or overridden) retention."""
    days = config.retention.days if retention_days is None else retention_days
    name_filter = name_filter if name_filter is not None else config.retention.name_filter

    manager = RetentionManager(archiver=archiver)
    selection = manager.select_expired(config.backup_destination, days, name_filter)
    result = manager.apply(selection)

    if result.deleted_count:
        logger.info(
            f"Retention applied: deleted {result.deleted_count} backup(s), "
            f"freed {result.freed_bytes} bytes"
        )
    else:
        logger.debug("Retention applied: no backups deleted")
    return result
