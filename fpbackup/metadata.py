"""Self-describing metadata embedded in every materialized backup."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
import json

from fpbackup.errors import ParseError, TraversalRejected
from fpbackup.fingerprint import STATE_DIRECTORY
from fpbackup.paths import validate_relative_path
from fpbackup.timestamps import parse_timestamp


METADATA_FILENAME = ".backup-metadata.json"


class BackupType(Enum):
    FULL = "Full"
    INCREMENTAL = "Incremental"


_TYPE_ALIASES = {
    "full": BackupType.FULL,
    "incremental": BackupType.INCREMENTAL,
    "incr": BackupType.INCREMENTAL,
    "inc": BackupType.INCREMENTAL,
}


def normalize_backup_type(value) -> BackupType:
    """
    Map a stored or user-supplied backup type onto Full/Incremental.

    Raises:
        ParseError: If the value is not a recognised backup type
    """
    if isinstance(value, BackupType):
        return value
    if isinstance(value, str):
        backup_type = _TYPE_ALIASES.get(value.strip().lower())
        if backup_type is not None:
            return backup_type
    raise ParseError(f"Unknown backup type: {value!r}")


@dataclass
class BackupMetadata:
    """Metadata record written once when a backup is materialized."""
    backup_type: BackupType
    source_root: str
    timestamp: str
    files_backed_up: int
    base_backup_timestamp: Optional[str] = None
    included_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)

    @property
    def is_incremental(self) -> bool:
        return self.backup_type is BackupType.INCREMENTAL

    @property
    def created_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @property
    def base_created_at(self) -> Optional[datetime]:
        if self.base_backup_timestamp is None:
            return None
        return parse_timestamp(self.base_backup_timestamp, "baseBackupTimestamp")

    def to_dict(self) -> dict:
        data = {
            "backupType": self.backup_type.value,
            "sourceRoot": self.source_root,
            "timestamp": self.timestamp,
            "filesBackedUp": self.files_backed_up,
        }
        if self.is_incremental:
            data["baseBackupTimestamp"] = self.base_backup_timestamp
            data["includedFiles"] = list(self.included_files)
            data["deletedFiles"] = list(self.deleted_files)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "BackupMetadata":
        """
        Parse metadata, rejecting records without timestamp or backup type.

        Included and deleted paths are validated so that none can escape the
        backup or restore root.
        """
        if not isinstance(data, dict):
            raise ParseError("Backup metadata must be a JSON object")
        for key in ("backupType", "timestamp"):
            if key not in data or data[key] in (None, ""):
                raise ParseError(f"Backup metadata missing required field '{key}'")

        backup_type = normalize_backup_type(data["backupType"])
        parse_timestamp(data["timestamp"])

        try:
            included = [validate_relative_path(p) for p in data.get("includedFiles") or []]
            deleted = [validate_relative_path(p) for p in data.get("deletedFiles") or []]
        except (TraversalRejected, TypeError) as e:
            raise ParseError(f"Backup metadata lists an invalid path: {e}")

        base = data.get("baseBackupTimestamp")
        if base is not None:
            parse_timestamp(base, "baseBackupTimestamp")

        files_backed_up = data.get("filesBackedUp", len(included))
        if isinstance(files_backed_up, bool) or not isinstance(files_backed_up, int):
            raise ParseError(f"Backup metadata has a non-integer filesBackedUp: {files_backed_up!r}")

        return cls(
            backup_type=backup_type,
            source_root=data.get("sourceRoot", ""),
            timestamp=data["timestamp"],
            files_backed_up=files_backed_up,
            base_backup_timestamp=base,
            included_files=included,
            deleted_files=deleted,
        )

    @classmethod
    def from_json(cls, text) -> "BackupMetadata":
        """Parse metadata from JSON text or UTF-8 bytes."""
        try:
            if isinstance(text, bytes):
                text = text.decode("utf-8")
            return cls.from_dict(json.loads(text))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Malformed backup metadata: {e}")


def write_metadata(metadata: BackupMetadata, backup_directory: Path) -> Path:
    """Write metadata into a backup directory."""
    path = Path(backup_directory) / METADATA_FILENAME
    path.write_text(json.dumps(metadata.to_dict(), indent=2), encoding="utf-8")
    return path


def read_metadata(location: Path, archiver=None) -> BackupMetadata:
    """
    Read metadata from a backup directory or single-file archive.

    Archives are read through the archiver without a full extraction.

    Raises:
        ParseError: If metadata is absent or malformed
    """
    location = Path(location)

    if location.is_dir():
        path = location / METADATA_FILENAME
        if not path.is_file():
            raise ParseError(f"Backup {location} has no {METADATA_FILENAME}")
        return BackupMetadata.from_json(path.read_bytes())

    if archiver is None:
        raise ParseError(f"Cannot read metadata from {location} without an archiver")

    raw = archiver.read_member(location, METADATA_FILENAME)
    if raw is None:
        raise ParseError(f"Archive {location} has no {METADATA_FILENAME}")
    return BackupMetadata.from_json(raw)


def list_backup_locations(backup_directory: Path, archiver=None) -> List[Path]:
    """
    List candidate backups: immediate subdirectories and archive files.

    The states/ directory and hidden entries are skipped.
    """
    backup_directory = Path(backup_directory)
    if not backup_directory.is_dir():
        return []

    locations = []
    for entry in sorted(backup_directory.iterdir()):
        if entry.name.startswith(".") or entry.name == STATE_DIRECTORY:
            continue
        if entry.is_dir():
            locations.append(entry)
        elif archiver is not None and archiver.is_archive(entry):
            locations.append(entry)
    return locations


def backup_name(location: Path, archiver=None) -> str:
    """Backup name for a location (the archive suffix is dropped)."""
    location = Path(location)
    if archiver is not None and archiver.suffix and location.name.lower().endswith(archiver.suffix):
        return location.name[: -len(archiver.suffix)]
    return location.name
