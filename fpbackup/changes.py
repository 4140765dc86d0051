"""Change detection between two fingerprint sets."""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

from fpbackup.fingerprint import FileRecord, Snapshot, sort_records
from fpbackup.paths import is_excluded


@dataclass
class ChangeSet:
    """Result of diffing a previous snapshot against current fingerprints."""
    changed: List[FileRecord] = field(default_factory=list)
    added: List[FileRecord] = field(default_factory=list)
    deleted: List[FileRecord] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        """False when nothing was changed or added (deletions alone don't count)."""
        return len(self.changed) + len(self.added) > 0

    @property
    def to_copy(self) -> List[FileRecord]:
        """Changed and added records, sorted by relative path."""
        return sort_records(self.changed + self.added)

    @property
    def deleted_paths(self) -> List[str]:
        return [r.relative_path for r in self.deleted]

    def summary(self) -> dict:
        return {
            "changed": len(self.changed),
            "added": len(self.added),
            "deleted": len(self.deleted),
            "has_changes": self.has_changes,
        }


def filter_excluded(records: Iterable[FileRecord], patterns: Optional[List[str]]) -> List[FileRecord]:
    """Drop records matching any exclusion pattern."""
    if not patterns:
        return list(records)
    return [r for r in records if not is_excluded(r.relative_path, patterns)]


def diff(
    previous: Union[Snapshot, Iterable[FileRecord]],
    current: Iterable[FileRecord],
    exclude_patterns: Optional[List[str]] = None,
) -> ChangeSet:
    """
    Diff previous fingerprints against current ones.

    A path absent from previous is added, a path whose hash differs is
    changed, and a previous path absent from current is deleted. Paths are
    compared case-insensitively. Exclusion patterns are applied to both sides
    first so an excluded file never shows up as a deletion.

    Args:
        previous: Earlier Snapshot (or its records)
        current: Current fingerprints
        exclude_patterns: Optional exclusion patterns

    Returns:
        ChangeSet whose three lists are pairwise disjoint
    """
    previous_records = previous.files if isinstance(previous, Snapshot) else list(previous)
    previous_records = filter_excluded(previous_records, exclude_patterns)
    current_records = filter_excluded(current, exclude_patterns)

    previous_hashes = {record.key: record.hash for record in previous_records}
    current_keys = set()
    result = ChangeSet()

    for record in current_records:
        current_keys.add(record.key)
        known = previous_hashes.get(record.key)
        if known is None:
            result.added.append(record)
        elif known != record.hash:
            result.changed.append(record)

    result.deleted = [r for r in previous_records if r.key not in current_keys]

    result.changed = sort_records(result.changed)
    result.added = sort_records(result.added)
    result.deleted = sort_records(result.deleted)
    return result
