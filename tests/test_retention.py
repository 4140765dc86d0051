"""Unit and property tests for RetentionManager.

Tests for:
- Cutoff selection using metadata timestamps with mtime fallback
- Name filters (substring and glob)
- The never-delete-everything safety invariant
- Orphaned snapshot pruning
"""

import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fpbackup.archive import ZipArchiver
from fpbackup.logger import ErrorCode
from fpbackup.metadata import METADATA_FILENAME
from fpbackup.retention import RetentionManager, apply_retention, matches_name_filter
from fpbackup.timestamps import format_timestamp
from tests.helpers import write_backup, write_tree


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def days_ago(days: int) -> str:
    return format_timestamp(NOW - timedelta(days=days))


def make_backups(destination: Path, ages: dict) -> None:
    """Create Full backups named by key, aged by value (days)."""
    for name, age in ages.items():
        write_backup(destination, name, "Full", days_ago(age), {"f.txt": name})
        states = destination / "states"
        states.mkdir(exist_ok=True)
        (states / f"{name}.json").write_text("{}")


class TestSelectExpired:
    """Tests for select_expired."""

    def test_selects_only_old_backups(self, tmp_path: Path):
        make_backups(tmp_path, {"old1": 40, "old2": 35, "new": 1})

        selection = RetentionManager().select_expired(tmp_path, 30, now=NOW)

        assert [c.name for c in selection.candidates] == ["old1", "old2", "new"]
        assert [c.name for c in selection.to_delete] == ["old1", "old2"]
        assert not selection.safety_abort
        assert selection.cutoff_date == NOW - timedelta(days=30)

    def test_mtime_fallback_without_metadata(self, tmp_path: Path):
        make_backups(tmp_path, {"new": 1})
        legacy = write_tree(tmp_path / "legacy", {"f.txt": "x"})
        old = (NOW - timedelta(days=90)).timestamp()
        os.utime(legacy, (old, old))

        selection = RetentionManager().select_expired(tmp_path, 30, now=NOW)

        assert [c.name for c in selection.to_delete] == ["legacy"]

    @pytest.mark.parametrize("content", [
        b'{"backupType": "Full", "timestamp": "2025-01-01T00:00:00.000Z", "filesBackedUp": "many"}',
        b"\xff\xfe not utf-8",
    ])
    def test_mtime_fallback_for_malformed_metadata(self, tmp_path: Path, content):
        make_backups(tmp_path, {"new": 1})
        damaged = write_tree(tmp_path / "damaged", {"f.txt": "x"})
        (damaged / METADATA_FILENAME).write_bytes(content)
        old = (NOW - timedelta(days=90)).timestamp()
        os.utime(damaged, (old, old))

        selection = RetentionManager().select_expired(tmp_path, 30, now=NOW)

        assert [c.name for c in selection.to_delete] == ["damaged"]

    def test_name_filter_substring_and_glob(self, tmp_path: Path):
        make_backups(tmp_path, {"Docs_Full_1": 40, "Photos_Full_1": 40, "Docs_Full_2": 1})

        substring = RetentionManager().select_expired(tmp_path, 30, name_filter="docs", now=NOW)
        glob = RetentionManager().select_expired(tmp_path, 30, name_filter="Docs_*_1", now=NOW)

        assert [c.name for c in substring.candidates] == ["Docs_Full_1", "Docs_Full_2"]
        assert [c.name for c in substring.to_delete] == ["Docs_Full_1"]
        assert [c.name for c in glob.candidates] == ["Docs_Full_1"]
        assert glob.safety_abort

    def test_matches_name_filter(self):
        assert matches_name_filter("Backup_Full_1", None)
        assert matches_name_filter("Backup_Full_1", "full")
        assert matches_name_filter("Backup_Full_1", "backup_*")
        assert not matches_name_filter("Backup_Full_1", "Inc")


class TestSafetyAbort:
    """Every candidate expired: nothing is deleted."""

    def test_all_expired_deletes_nothing(self, tmp_path: Path, caplog):
        make_backups(tmp_path, {"a": 40, "b": 50, "c": 60})
        manager = RetentionManager()

        with caplog.at_level(logging.WARNING):
            selection = manager.select_expired(tmp_path, 30, now=NOW)
            result = manager.apply(selection)

        assert selection.safety_abort
        assert len(selection.expired) == 3
        assert selection.to_delete == []
        assert result.deleted_count == 0
        assert result.safety_abort
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a", "b", "c", "states"]
        assert ErrorCode.RETENTION_SAFETY_ABORT.value in caplog.text

    def test_apply_rechecks_tampered_selection(self, tmp_path: Path):
        make_backups(tmp_path, {"a": 40, "b": 1})
        manager = RetentionManager()
        selection = manager.select_expired(tmp_path, 30, now=NOW)
        selection.to_delete = list(selection.candidates)

        result = manager.apply(selection)

        assert result.safety_abort
        assert result.deleted_count == 0
        assert (tmp_path / "a").exists() and (tmp_path / "b").exists()

    def test_empty_directory(self, tmp_path: Path):
        result = apply_retention(tmp_path, 30)
        assert result.deleted_count == 0
        assert not result.safety_abort

    @given(ages=st.lists(st.integers(min_value=31, max_value=400), min_size=1, max_size=6))
    def test_retention_safety_property(self, ages):
        with tempfile.TemporaryDirectory() as tmp:
            destination = Path(tmp)
            make_backups(destination, {f"b{i}": age for i, age in enumerate(ages)})
            manager = RetentionManager()

            result = manager.apply(manager.select_expired(destination, 30, now=NOW))

            assert result.deleted_count == 0
            assert len(list_dirs(destination)) == len(ages)


def list_dirs(destination: Path):
    return [p for p in destination.iterdir() if p.is_dir() and p.name != "states"]


class TestApply:
    """Deletion and orphan pruning."""

    def test_deletes_and_prunes_orphans(self, tmp_path: Path):
        make_backups(tmp_path, {"old": 40, "new": 1})
        states = tmp_path / "states"
        (states / "latest.json").write_text("{}")
        (states / "previous.json").write_text("{}")
        manager = RetentionManager()

        result = manager.apply(manager.select_expired(tmp_path, 30, now=NOW))

        assert result.deleted == ["old"]
        assert result.deleted_count == 1
        assert result.freed_bytes > 0
        assert result.orphans_pruned == ["old"]
        assert sorted(p.name for p in states.iterdir()) == ["latest.json", "new.json", "previous.json"]

    def test_archives_deleted(self, tmp_path: Path):
        archiver = ZipArchiver()
        archiver.pack(write_backup(tmp_path, "old", "Full", days_ago(40), {"f.txt": "x"}))
        write_backup(tmp_path, "new", "Full", days_ago(1), {"f.txt": "y"})
        manager = RetentionManager(archiver=archiver)

        result = manager.apply(manager.select_expired(tmp_path, 30, now=NOW))

        assert result.deleted == ["old"]
        assert not (tmp_path / "old.zip").exists()

    def test_nothing_deleted_leaves_snapshots_alone(self, tmp_path: Path):
        make_backups(tmp_path, {"new": 1})
        (tmp_path / "states" / "orphan.json").write_text("{}")
        manager = RetentionManager()

        result = manager.apply(manager.select_expired(tmp_path, 30, now=NOW))

        assert result.orphans_pruned == []
        assert (tmp_path / "states" / "orphan.json").exists()
