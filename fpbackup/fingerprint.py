"""Fingerprint store for fpbackup.

This module computes per-file content fingerprints for a source tree and
persists them as snapshot files under a state directory:

    states/latest.json      most recent snapshot
    states/previous.json    the snapshot before it (one step of history)
    states/{name}.json      durable per-backup snapshot used for verification

Hashing runs on a bounded thread pool. A prior snapshot acts as a read-only
cache: a file whose relative path, size and modified time are unchanged reuses
the recorded hash instead of being read again.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple
import hashlib
import json
import logging
import os
import shutil
import threading

from fpbackup.config import HASH_ALGORITHMS, normalize_algorithm
from fpbackup.errors import NotFoundError, ParseError, ScanCancelled, TraversalRejected, ValidationError
from fpbackup.logger import ErrorCode, log_structured
from fpbackup.paths import is_excluded, path_key, relative_to_root, validate_relative_path
from fpbackup.timestamps import format_mtime, format_timestamp, parse_timestamp, utc_now


logger = logging.getLogger(__name__)

STATE_DIRECTORY = "states"
LATEST = "latest"
PREVIOUS = "previous"
ROTATING_SNAPSHOTS = (LATEST, PREVIOUS)
SNAPSHOT_SUFFIX = ".json"

CHUNK_SIZE = 64 * 1024


def hash_file(
    path: Path,
    algorithm: str = "SHA256",
    cancel_event: Optional[threading.Event] = None,
) -> str:
    """
    Calculate the hex digest of a file.

    Args:
        path: File to hash
        algorithm: Canonical algorithm name
        cancel_event: Checked between chunks; when set the read stops

    Raises:
        OSError: If the file cannot be read
        ScanCancelled: If cancel_event is set while hashing
    """
    hasher = hashlib.new(HASH_ALGORITHMS[normalize_algorithm(algorithm)])

    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            if cancel_event is not None and cancel_event.is_set():
                raise ScanCancelled(f"Fingerprint scan cancelled while hashing {path}")
            hasher.update(chunk)

    return hasher.hexdigest()


@dataclass
class FileRecord:
    """Fingerprint of a single file."""
    relative_path: str
    hash: str
    algorithm: str
    size: int
    modified_time: str
    path: str = ""

    @property
    def key(self) -> str:
        return path_key(self.relative_path)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "relativePath": self.relative_path,
            "hash": self.hash,
            "algorithm": self.algorithm,
            "size": self.size,
            "modifiedTime": self.modified_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileRecord":
        try:
            record = cls(
                relative_path=validate_relative_path(data["relativePath"]),
                hash=data["hash"],
                algorithm=normalize_algorithm(data["algorithm"]),
                size=int(data["size"]),
                modified_time=data["modifiedTime"],
                path=data.get("path", ""),
            )
        except (KeyError, TypeError, ValueError, AttributeError, ValidationError, TraversalRejected) as e:
            raise ParseError(f"Invalid file record {data!r}: {e}")
        if record.size < 0:
            raise ParseError(f"Negative size in file record for {record.relative_path}")
        return record


def sort_records(records: List[FileRecord]) -> List[FileRecord]:
    """Sort records by relative path, independent of completion order."""
    return sorted(records, key=lambda r: (r.key, r.relative_path))


@dataclass
class Snapshot:
    """One generation's fingerprint set."""
    timestamp: str
    source_root: str
    file_count: int
    total_size: int
    files: List[FileRecord] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        source_root: Path,
        files: List[FileRecord],
        moment: Optional[datetime] = None,
    ) -> "Snapshot":
        """Build a snapshot stamped with moment (now when None)."""
        files = sort_records(files)
        return cls(
            timestamp=format_timestamp(moment or utc_now()),
            source_root=str(Path(source_root).absolute()),
            file_count=len(files),
            total_size=sum(r.size for r in files),
            files=files,
        )

    @property
    def created_at(self):
        return parse_timestamp(self.timestamp)

    def by_key(self) -> Dict[str, FileRecord]:
        """Map case-insensitive relative path -> record."""
        return {record.key: record for record in self.files}

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "sourceRoot": self.source_root,
            "fileCount": self.file_count,
            "totalSize": self.total_size,
            "files": [r.to_dict() for r in sort_records(self.files)],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        if not isinstance(data, dict):
            raise ParseError("Snapshot must be a JSON object")
        try:
            timestamp = data["timestamp"]
            source_root = data["sourceRoot"]
            raw_files = data.get("files", [])
        except KeyError as e:
            raise ParseError(f"Snapshot missing required field {e}")

        parse_timestamp(timestamp)
        if not isinstance(raw_files, list):
            raise ParseError("Snapshot 'files' must be a list")

        files = [FileRecord.from_dict(item) for item in raw_files]
        seen: Set[str] = set()
        for record in files:
            if record.key in seen:
                raise ParseError(f"Duplicate relative path in snapshot: {record.relative_path}")
            seen.add(record.key)

        return cls(
            timestamp=timestamp,
            source_root=source_root,
            file_count=data.get("fileCount", len(files)),
            total_size=data.get("totalSize", sum(r.size for r in files)),
            files=sort_records(files),
        )


def snapshot_file(state_directory: Path, name: str) -> Path:
    """Return the path of a named snapshot file, rejecting unsafe names."""
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"Invalid snapshot name: {name!r}")
    return Path(state_directory) / f"{name}{SNAPSHOT_SUFFIX}"


def load_snapshot(state_directory: Path, name: str) -> Optional[Snapshot]:
    """
    Load a snapshot by name ("latest", "previous" or a backup name).

    Returns:
        The Snapshot, or None when the file does not exist

    Raises:
        ParseError: If the file exists but is malformed
    """
    path = snapshot_file(state_directory, name)
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Malformed snapshot file {path}: {e}")

    return Snapshot.from_dict(data)


def write_snapshot(snapshot: Snapshot, state_directory: Path, name: str) -> Path:
    """Write a snapshot file and return its path."""
    path = snapshot_file(state_directory, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(snapshot.to_json(), encoding="utf-8")
    return path


def list_named_snapshots(state_directory: Path) -> List[str]:
    """List per-backup snapshot names, excluding latest/previous."""
    state_directory = Path(state_directory)
    if not state_directory.is_dir():
        return []
    names = []
    for entry in state_directory.iterdir():
        if not entry.is_file() or entry.suffix != SNAPSHOT_SUFFIX:
            continue
        if entry.stem in ROTATING_SNAPSHOTS:
            continue
        names.append(entry.stem)
    return sorted(names)


class FingerprintStore:
    """
    Computes and persists per-file fingerprints for a source tree.

    Per-file read failures are logged and the file is left out of the result
    rather than aborting the scan.
    """

    def __init__(
        self,
        algorithm: str = "SHA256",
        max_workers: Optional[int] = None,
        exclude_patterns: Optional[List[str]] = None,
        skip_paths: Optional[Set[str]] = None,
    ):
        """
        Initialize the fingerprint store.

        Args:
            algorithm: Hash algorithm (SHA256, SHA1 or MD5)
            max_workers: Hashing threads; None or 0 uses one per CPU core
            exclude_patterns: Patterns for files that are never fingerprinted
            skip_paths: Exact relative paths (matched case-insensitively) to leave out
        """
        self.algorithm = normalize_algorithm(algorithm)
        self.max_workers = max_workers or os.cpu_count() or 1
        self.exclude_patterns = list(exclude_patterns or [])
        self.skip_paths = {path_key(p) for p in (skip_paths or set())}

    def _enumerate(self, root: Path, recursive: bool) -> Iterator[Tuple[Path, str]]:
        """Yield (full_path, relative_path) for every tracked file under root."""
        for dirpath, dirnames, filenames in os.walk(root):
            if recursive:
                kept = []
                for dirname in sorted(dirnames):
                    rel_dir = relative_to_root(root, Path(dirpath) / dirname)
                    if not is_excluded(rel_dir + "/", self.exclude_patterns):
                        kept.append(dirname)
                dirnames[:] = kept
            else:
                dirnames[:] = []

            for filename in sorted(filenames):
                full_path = Path(dirpath) / filename
                relative = relative_to_root(root, full_path)
                if path_key(relative) in self.skip_paths:
                    continue
                if is_excluded(relative, self.exclude_patterns):
                    continue
                yield full_path, relative

    def _build_cache(self, prior_snapshot: Optional[Snapshot]) -> Dict[Tuple[str, int, str], str]:
        """Build the (key, size, modified_time) -> hash map from a prior snapshot."""
        if prior_snapshot is None:
            return {}
        return {
            (record.key, record.size, record.modified_time): record.hash
            for record in prior_snapshot.files
            if record.algorithm == self.algorithm
        }

    def _fingerprint_file(
        self,
        full_path: Path,
        relative: str,
        cache: Dict[Tuple[str, int, str], str],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[Optional[FileRecord], bool]:
        """Fingerprint one file; returns (record or None, cache_hit)."""
        if cancel_event is not None and cancel_event.is_set():
            raise ScanCancelled("Fingerprint scan cancelled")

        try:
            stat = full_path.stat()
            modified_time = format_mtime(stat.st_mtime)
            cached = cache.get((path_key(relative), stat.st_size, modified_time))
            if cached is not None:
                digest, hit = cached, True
            else:
                digest, hit = hash_file(full_path, self.algorithm, cancel_event), False
        except OSError as e:
            log_structured(
                logger,
                "WARNING",
                f"Skipping {relative}: could not fingerprint file: {e}",
                ErrorCode.FINGERPRINT_FILE_FAILED,
                {"file": relative},
            )
            return None, False

        record = FileRecord(
            relative_path=relative,
            hash=digest,
            algorithm=self.algorithm,
            size=stat.st_size,
            modified_time=modified_time,
            path=str(full_path),
        )
        return record, hit

    def compute_fingerprints(
        self,
        root: Path,
        recursive: bool = True,
        prior_snapshot: Optional[Snapshot] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[FileRecord]:
        """
        Fingerprint every tracked file under root.

        Blocks until all files are processed. The result is sorted by relative
        path regardless of the order in which workers finish.

        Args:
            root: Directory to scan
            recursive: Descend into subdirectories
            prior_snapshot: Snapshot whose hashes may be reused
            cancel_event: Set to stop the scan early

        Returns:
            Sorted list of FileRecord

        Raises:
            NotFoundError: If root is not a directory
            ScanCancelled: If cancel_event is set before the scan finishes
        """
        root = Path(root)
        if not root.is_dir():
            raise NotFoundError(f"Directory not found: {root}")

        candidates = list(self._enumerate(root, recursive))
        cache = self._build_cache(prior_snapshot)
        results: List[Optional[FileRecord]] = [None] * len(candidates)
        cache_hits = 0

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._fingerprint_file, full, rel, cache, cancel_event): index
                for index, (full, rel) in enumerate(candidates)
            }
            try:
                for future in as_completed(futures):
                    record, hit = future.result()
                    results[futures[future]] = record
                    cache_hits += int(hit)
            except ScanCancelled:
                for future in futures:
                    future.cancel()
                raise

        records = sort_records([r for r in results if r is not None])

        unique: List[FileRecord] = []
        for record in records:
            if unique and unique[-1].key == record.key:
                logger.warning(
                    f"Skipping {record.relative_path}: path differs only in case "
                    f"from {unique[-1].relative_path}"
                )
                continue
            unique.append(record)

        logger.debug(
            f"Fingerprinted {len(unique)} file(s) under {root} "
            f"({cache_hits} reused, {len(candidates) - len(records)} skipped)"
        )
        return unique

    def save_snapshot(
        self,
        root: Path,
        state_directory: Path,
        name: Optional[str] = None,
        files: Optional[List[FileRecord]] = None,
        recursive: bool = True,
        moment: Optional[datetime] = None,
    ) -> Snapshot:
        """
        Build a snapshot for root and persist it.

        The current latest file is copied over previous before latest is
        rewritten. Copy-then-overwrite is not atomic: a crash between the two
        steps can leave previous stale.

        Args:
            root: Source root the snapshot describes
            state_directory: Directory holding snapshot files
            name: Backup name for an additional durable copy
            files: Precomputed fingerprints; computed (with latest as cache) if None
            recursive: Passed to compute_fingerprints when files is None
            moment: Snapshot timestamp; a backup passes its own timestamp so
                the snapshot and the backup metadata agree

        Returns:
            The saved Snapshot
        """
        root = Path(root)
        state_directory = Path(state_directory)

        if name is not None and name in ROTATING_SNAPSHOTS:
            raise ValidationError(f"Backup name '{name}' is reserved")

        if files is None:
            prior = None
            try:
                prior = load_snapshot(state_directory, LATEST)
            except ParseError as e:
                logger.warning(f"Ignoring unreadable latest snapshot as hash cache: {e}")
            files = self.compute_fingerprints(root, recursive=recursive, prior_snapshot=prior)

        snapshot = Snapshot.build(root, files, moment)

        state_directory.mkdir(parents=True, exist_ok=True)
        latest_path = snapshot_file(state_directory, LATEST)
        if latest_path.exists():
            shutil.copyfile(latest_path, snapshot_file(state_directory, PREVIOUS))

        write_snapshot(snapshot, state_directory, LATEST)
        if name is not None:
            write_snapshot(snapshot, state_directory, name)

        logger.debug(
            f"Saved snapshot of {snapshot.file_count} file(s) to {state_directory}"
            + (f" as {name}" if name else "")
        )
        return snapshot
