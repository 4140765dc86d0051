"""Tests for change detection between fingerprint sets.

**Properties:**
- changed, added and deleted are pairwise disjoint and together cover every
  key present on either side whose content differs
- diffing a set against itself reports nothing
"""

from typing import Dict

from hypothesis import given
from hypothesis import strategies as st

from fpbackup.changes import ChangeSet, diff
from fpbackup.fingerprint import FileRecord, Snapshot


def record(path: str, digest: str) -> FileRecord:
    return FileRecord(
        relative_path=path,
        hash=digest,
        algorithm="SHA256",
        size=len(digest),
        modified_time="2025-01-01T00:00:00.000Z",
    )


def records(mapping: Dict[str, str]):
    return [record(path, digest) for path, digest in mapping.items()]


class TestDiff:
    """Unit tests for diff."""

    def test_classifies_changes(self):
        previous = records({"same.txt": "1", "edit.txt": "2", "gone.txt": "3"})
        current = records({"same.txt": "1", "edit.txt": "9", "new.txt": "4"})

        changes = diff(previous, current)

        assert [r.relative_path for r in changes.changed] == ["edit.txt"]
        assert [r.relative_path for r in changes.added] == ["new.txt"]
        assert changes.deleted_paths == ["gone.txt"]
        assert changes.has_changes

    def test_accepts_snapshot(self):
        snapshot = Snapshot.build("/src", records({"a.txt": "1"}))
        changes = diff(snapshot, records({"a.txt": "1"}))
        assert not changes.has_changes

    def test_case_only_rename_is_not_a_change(self):
        changes = diff(records({"Docs/A.txt": "1"}), records({"docs/a.TXT": "1"}))
        assert changes == ChangeSet()

    def test_deletion_only_has_no_changes(self):
        changes = diff(records({"a.txt": "1", "b.txt": "2"}), records({"a.txt": "1"}))
        assert not changes.has_changes
        assert changes.deleted_paths == ["b.txt"]

    def test_excluded_files_never_reported_deleted(self):
        previous = records({"a.txt": "1", "build/out.o": "2", "x.tmp": "3"})
        current = records({"a.txt": "1"})

        changes = diff(previous, current, exclude_patterns=["build/", "*.tmp"])

        assert changes.deleted == []

    def test_to_copy_sorted(self):
        changes = diff(records({"b.txt": "1"}), records({"c.txt": "3", "b.txt": "2", "a.txt": "1"}))
        assert [r.relative_path for r in changes.to_copy] == ["a.txt", "b.txt", "c.txt"]

    def test_summary(self):
        changes = diff([], records({"a.txt": "1"}))
        assert changes.summary() == {"changed": 0, "added": 1, "deleted": 0, "has_changes": True}


fingerprint_sets = st.dictionaries(
    keys=st.text(alphabet="abcde/", min_size=1, max_size=6).filter(
        lambda p: not p.startswith("/") and not p.endswith("/") and "//" not in p
    ),
    values=st.sampled_from(["h1", "h2", "h3"]),
    max_size=10,
)


class TestDiffPartitionProperty:
    """Property tests for diff."""

    @given(previous=fingerprint_sets, current=fingerprint_sets)
    def test_partition(self, previous, current):
        changes = diff(records(previous), records(current))

        changed = {r.relative_path for r in changes.changed}
        added = {r.relative_path for r in changes.added}
        deleted = {r.relative_path for r in changes.deleted}

        assert not (changed & added) and not (changed & deleted) and not (added & deleted)
        assert added == set(current) - set(previous)
        assert deleted == set(previous) - set(current)
        assert changed == {p for p in set(previous) & set(current) if previous[p] != current[p]}

    @given(fingerprints=fingerprint_sets)
    def test_self_diff_is_empty(self, fingerprints):
        changes = diff(records(fingerprints), records(fingerprints))
        assert changes == ChangeSet()
        assert not changes.has_changes
