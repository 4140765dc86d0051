"""Restore chain resolution and application.

A restore starts from the newest Full backup in a directory and replays every
Incremental taken after it, oldest first. Each generation's files are copied
over the restore directory and the paths it recorded as deleted are removed.
"""

from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional
import logging
import os

from fpbackup.archive import Archiver, ZipArchiver
from fpbackup.copier import FileCopier
from fpbackup.errors import NotFoundError, ParseError, TraversalRejected, ValidationError
from fpbackup.logger import ErrorCode, log_structured
from fpbackup.metadata import (
    METADATA_FILENAME,
    BackupMetadata,
    backup_name,
    list_backup_locations,
    read_metadata,
)
from fpbackup.paths import path_key, relative_to_root, safe_join


logger = logging.getLogger(__name__)


@dataclass
class ResolvedBackup:
    """A backup discovered on disk. Rebuilt on every scan, never persisted."""
    location: Path
    is_archive: bool
    metadata: BackupMetadata
    name: str = ""

    @property
    def timestamp(self) -> datetime:
        return self.metadata.created_at

    @property
    def is_incremental(self) -> bool:
        return self.metadata.is_incremental

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "location": str(self.location),
            "is_archive": self.is_archive,
            "backup_type": self.metadata.backup_type.value,
            "timestamp": self.metadata.timestamp,
            "files_backed_up": self.metadata.files_backed_up,
        }


@dataclass
class RestoreChain:
    """One Full anchor followed by the Incrementals taken after it."""
    anchor: ResolvedBackup
    incrementals: List[ResolvedBackup] = field(default_factory=list)

    @property
    def generations(self) -> List[ResolvedBackup]:
        return [self.anchor] + self.incrementals


@dataclass
class RestoreResult:
    """Result of applying a restore chain."""
    success: bool
    restore_directory: Path
    full_backup: Optional[str] = None
    incrementals_applied: int = 0
    files_restored: int = 0
    files_deleted: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "restore_directory": str(self.restore_directory),
            "full_backup": self.full_backup,
            "incrementals_applied": self.incrementals_applied,
            "files_restored": self.files_restored,
            "files_deleted": self.files_deleted,
            "error_message": self.error_message,
        }


class RestoreChainResolver:
    """Discovers backups, orders the restore chain and applies it."""

    def __init__(self, archiver: Optional[Archiver] = None, copier: Optional[FileCopier] = None):
        self.archiver = archiver or ZipArchiver()
        self.copier = copier or FileCopier()

    def resolve(self, backup_directory: Path) -> List[ResolvedBackup]:
        """
        Read the metadata of every backup in a directory.

        Returns:
            ResolvedBackup list sorted by timestamp

        Raises:
            NotFoundError: If backup_directory does not exist
            ParseError: If any candidate lacks valid metadata
        """
        backup_directory = Path(backup_directory)
        if not backup_directory.is_dir():
            raise NotFoundError(f"Backup directory not found: {backup_directory}")

        resolved = []
        for location in list_backup_locations(backup_directory, self.archiver):
            try:
                metadata = read_metadata(location, self.archiver)
            except ParseError as e:
                raise ParseError(f"{location.name}: {e}") from e
            resolved.append(ResolvedBackup(
                location=location,
                is_archive=self.archiver.is_archive(location),
                metadata=metadata,
                name=backup_name(location, self.archiver),
            ))

        resolved.sort(key=lambda r: r.timestamp)
        return resolved

    def build_chain(self, resolved: List[ResolvedBackup]) -> RestoreChain:
        """
        Select the newest Full backup and every Incremental strictly newer.

        Incrementals older than the anchor are superseded and left out. Each
        Incremental's base timestamp must name the generation just before it
        in the chain.

        Raises:
            NotFoundError: If there is no Full backup
            ValidationError: If an Incremental's base does not name the
                generation before it
        """
        fulls = [r for r in resolved if not r.is_incremental]
        if not fulls:
            log_structured(
                logger,
                "ERROR",
                "No Full backup available to restore from",
                ErrorCode.RESTORE_NO_FULL_BACKUP,
                {"backups": len(resolved)},
            )
            raise NotFoundError("No Full backup available to restore from")

        anchor = max(fulls, key=lambda r: r.timestamp)
        incrementals = sorted(
            (r for r in resolved if r.is_incremental and r.timestamp > anchor.timestamp),
            key=lambda r: r.timestamp,
        )

        previous = anchor
        for incremental in incrementals:
            base = incremental.metadata.base_created_at
            if base is None:
                raise ValidationError(f"Incremental {incremental.name} has no base timestamp")
            if base >= incremental.timestamp:
                raise ValidationError(
                    f"Incremental {incremental.name} has base timestamp "
                    f"{incremental.metadata.base_backup_timestamp} not older than itself"
                )
            if base != previous.timestamp:
                raise ValidationError(
                    f"Incremental {incremental.name} is based on "
                    f"{incremental.metadata.base_backup_timestamp}, but the backup before it "
                    f"is {previous.name} ({previous.metadata.timestamp})"
                )
            previous = incremental

        logger.debug(
            f"Restore chain: {anchor.name} + {len(incrementals)} incremental(s)"
        )
        return RestoreChain(anchor=anchor, incrementals=incrementals)

    def apply(self, chain: RestoreChain, restore_directory: Path) -> RestoreResult:
        """
        Apply a restore chain oldest to newest.

        Scratch directories used for archives are removed once the whole
        chain has been applied, and the metadata file is stripped from the
        restored tree.

        Returns:
            RestoreResult; success is False when copying fails or a recorded
            deletion would escape the restore directory
        """
        restore_directory = Path(restore_directory)
        result = RestoreResult(
            success=False,
            restore_directory=restore_directory,
            full_backup=chain.anchor.name,
        )

        try:
            restore_directory.mkdir(parents=True, exist_ok=True)
            with ExitStack() as stack:
                for generation in chain.generations:
                    if generation.is_archive:
                        source = stack.enter_context(self.archiver.extracted(generation.location))
                    else:
                        source = generation.location

                    result.files_restored += self._copy_generation(source, restore_directory)
                    result.files_deleted += self._apply_deletions(generation, restore_directory)
                    if generation is not chain.anchor:
                        result.incrementals_applied += 1

            (restore_directory / METADATA_FILENAME).unlink(missing_ok=True)
            result.success = True
        except TraversalRejected as e:
            log_structured(logger, "ERROR", str(e), ErrorCode.RESTORE_TRAVERSAL_REJECTED)
            result.error_message = str(e)
        except (OSError, ParseError) as e:
            log_structured(logger, "ERROR", f"Restore failed: {e}", ErrorCode.RESTORE_FAILED)
            result.error_message = str(e)

        if result.success:
            logger.info(
                f"Restored {chain.anchor.name} + {result.incrementals_applied} incremental(s) "
                f"into {restore_directory}"
            )
        return result

    def _copy_generation(self, source: Path, restore_directory: Path) -> int:
        relative_paths = []
        for dirpath, _, filenames in os.walk(source):
            for filename in filenames:
                relative = relative_to_root(source, Path(dirpath) / filename)
                if path_key(relative) == path_key(METADATA_FILENAME):
                    continue
                relative_paths.append(relative)
        return self.copier.copy_files(source, sorted(relative_paths), restore_directory)

    def _apply_deletions(self, generation: ResolvedBackup, restore_directory: Path) -> int:
        deleted = 0
        root = restore_directory.resolve()
        for relative in generation.metadata.deleted_files:
            target = safe_join(restore_directory, relative)
            if not (target.is_file() or target.is_symlink()):
                continue
            target.unlink()
            deleted += 1

            # Drop directories the deletion left empty
            parent = target.parent
            while parent != root and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent
        return deleted


def restore_latest(
    backup_directory: Path,
    restore_directory: Path,
    archiver: Optional[Archiver] = None,
) -> RestoreResult:
    """
    Reconstruct the latest backed-up state into restore_directory.

    Raises:
        NotFoundError: If there is no Full backup
        ParseError: If a backup's metadata is invalid
        ValidationError: If the chain links do not line up
    """
    resolver = RestoreChainResolver(archiver=archiver)
    chain = resolver.build_chain(resolver.resolve(backup_directory))
    return resolver.apply(chain, restore_directory)
