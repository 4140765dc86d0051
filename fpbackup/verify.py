"""Integrity verification for fpbackup backups.

This module provides the IntegrityVerifier class, which re-fingerprints a
materialized backup and compares it against the snapshot recorded when the
backup was taken. Findings (corrupted, missing, extra) are returned as data;
a backup that fails verification is a successful verification run carrying
bad news.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import logging

from fpbackup.archive import Archiver, ZipArchiver
from fpbackup.errors import NotFoundError, ParseError
from fpbackup.fingerprint import STATE_DIRECTORY, FingerprintStore, Snapshot, hash_file, load_snapshot
from fpbackup.logger import log_verification_result
from fpbackup.metadata import METADATA_FILENAME, BackupType, read_metadata
from fpbackup.paths import path_key


logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Result of verifying one backup against its recorded snapshot."""
    backup_location: Path
    verified_count: int = 0
    corrupted: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    backup_type: Optional[BackupType] = None

    @property
    def is_intact(self) -> bool:
        """True only when nothing is corrupted, missing or unexpected."""
        return not self.corrupted and not self.missing and not self.extra

    def to_dict(self) -> dict:
        return {
            "backup": str(self.backup_location),
            "backup_type": self.backup_type.value if self.backup_type else None,
            "is_intact": self.is_intact,
            "verified_count": self.verified_count,
            "corrupted": self.corrupted,
            "missing": self.missing,
            "extra": self.extra,
        }


def locate_backup(destination: Path, backup_name: str, archiver: Optional[Archiver] = None) -> Path:
    """
    Find a backup by name as a directory or single-file archive.

    Raises:
        NotFoundError: If neither form exists
    """
    archiver = archiver or ZipArchiver()
    directory = Path(destination) / backup_name
    if directory.is_dir():
        return directory
    archive = Path(destination) / f"{backup_name}{archiver.suffix}"
    if archiver.is_archive(archive):
        return archive
    raise NotFoundError(f"Backup not found: {backup_name} in {destination}")


class IntegrityVerifier:
    """Verifies backups against recorded fingerprints."""

    def __init__(self, archiver: Optional[Archiver] = None, max_workers: Optional[int] = None):
        self.archiver = archiver or ZipArchiver()
        self.max_workers = max_workers

    def verify(self, backup_location: Path, expected_snapshot: Snapshot) -> VerificationResult:
        """
        Verify a backup directory or archive.

        Archives are extracted to a scratch directory which is removed on
        every exit path.

        Args:
            backup_location: Backup directory or archive file
            expected_snapshot: Snapshot recorded for this backup

        Returns:
            VerificationResult

        Raises:
            NotFoundError: If backup_location does not exist
        """
        backup_location = Path(backup_location)
        if not backup_location.exists():
            raise NotFoundError(f"Backup not found: {backup_location}")

        if self.archiver.is_archive(backup_location):
            with self.archiver.extracted(backup_location) as scratch:
                result = self._verify_directory(scratch, expected_snapshot, backup_location)
        else:
            result = self._verify_directory(backup_location, expected_snapshot, backup_location)

        log_verification_result(
            logger,
            backup_location,
            result.verified_count,
            result.corrupted,
            result.missing,
            result.extra,
        )
        return result

    def _verify_directory(
        self,
        directory: Path,
        expected_snapshot: Snapshot,
        label: Path,
    ) -> VerificationResult:
        try:
            metadata = read_metadata(directory)
        except ParseError as e:
            logger.warning(f"{label}: {e}; comparing against the full snapshot")
            metadata = None

        expected = expected_snapshot.by_key()
        result = VerificationResult(
            backup_location=label,
            backup_type=metadata.backup_type if metadata else None,
        )

        unrecorded = set()

        # An incremental only holds the files it copied
        if metadata is not None and metadata.is_incremental:
            restricted = {}
            for relative in metadata.included_files:
                record = expected.get(path_key(relative))
                if record is None:
                    logger.warning(f"{label}: {relative} is listed as included but has no recorded fingerprint")
                    result.missing.append(relative)
                    unrecorded.add(path_key(relative))
                else:
                    restricted[record.key] = record
            expected = restricted

        algorithm = next(iter(expected.values())).algorithm if expected else "SHA256"
        store = FingerprintStore(
            algorithm=algorithm,
            max_workers=self.max_workers,
            skip_paths={METADATA_FILENAME},
        )
        actual = {record.key: record for record in store.compute_fingerprints(directory)}

        for key, record in expected.items():
            found = actual.get(key)
            if found is None:
                result.missing.append(record.relative_path)
                continue
            digest = found.hash
            if record.algorithm != found.algorithm:
                digest = hash_file(directory / found.relative_path, record.algorithm)
            if digest != record.hash:
                result.corrupted.append(record.relative_path)
            else:
                result.verified_count += 1

        result.extra = [r.relative_path for k, r in actual.items() if k not in expected and k not in unrecorded]

        result.corrupted.sort(key=path_key)
        result.missing.sort(key=path_key)
        result.extra.sort(key=path_key)
        return result


def verify_backup(
    destination: Path,
    backup_name: str,
    archiver: Optional[Archiver] = None,
    max_workers: Optional[int] = None,
) -> VerificationResult:
    """
    Verify a named backup against its per-backup snapshot in states/.

    Raises:
        NotFoundError: If the backup or its snapshot is absent
        ParseError: If the snapshot file is malformed
    """
    archiver = archiver or ZipArchiver()
    location = locate_backup(destination, backup_name, archiver)
    snapshot = load_snapshot(Path(destination) / STATE_DIRECTORY, backup_name)
    if snapshot is None:
        raise NotFoundError(f"No recorded snapshot for backup {backup_name}")
    return IntegrityVerifier(archiver=archiver, max_workers=max_workers).verify(location, snapshot)
