"""Tests for ZipArchiver and FileCopier."""

import zipfile
from pathlib import Path

import pytest

from fpbackup.archive import ZipArchiver, scratch_directory
from fpbackup.copier import FileCopier
from fpbackup.errors import ParseError, TraversalRejected
from tests.helpers import read_tree, write_tree


class TestZipArchiver:
    """Pack, unpack and member reads."""

    def test_pack_and_unpack(self, tmp_path: Path):
        files = {"a.txt": "alpha", "nested/deeper/b.txt": "beta"}
        directory = write_tree(tmp_path / "Backup_Full_1", files)
        archiver = ZipArchiver()

        archive = archiver.pack(directory)
        out = archiver.unpack(archive, tmp_path / "out")

        assert archive == tmp_path / "Backup_Full_1.zip"
        assert archiver.is_archive(archive)
        assert not directory.exists()
        assert read_tree(out) == files

    def test_pack_keeps_source_when_asked(self, tmp_path: Path):
        directory = write_tree(tmp_path / "b", {"a.txt": "a"})
        ZipArchiver().pack(directory, remove_source=False)
        assert directory.is_dir()

    def test_read_member(self, tmp_path: Path):
        archive = ZipArchiver().pack(write_tree(tmp_path / "b", {"a.txt": "alpha"}))

        assert ZipArchiver().read_member(archive, "a.txt") == b"alpha"
        assert ZipArchiver().read_member(archive, "absent.txt") is None

    def test_corrupt_archive(self, tmp_path: Path):
        bogus = tmp_path / "broken.zip"
        bogus.write_bytes(b"not a zip file")

        with pytest.raises(ParseError):
            ZipArchiver().unpack(bogus, tmp_path / "out")
        with pytest.raises(ParseError):
            ZipArchiver().read_member(bogus, "a.txt")

    def test_traversal_member_rejected(self, tmp_path: Path):
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escaped.txt", "gotcha")

        with pytest.raises(TraversalRejected):
            ZipArchiver().unpack(archive, tmp_path / "out")
        assert not (tmp_path / "escaped.txt").exists()

    def test_extracted_scratch_removed(self, tmp_path: Path):
        archive = ZipArchiver().pack(write_tree(tmp_path / "b", {"a.txt": "a"}))

        with ZipArchiver().extracted(archive) as scratch:
            assert (scratch / "a.txt").read_text() == "a"
        assert not scratch.exists()

    def test_scratch_removed_on_error(self):
        with pytest.raises(RuntimeError):
            with scratch_directory() as scratch:
                (scratch / "f").write_text("x")
                raise RuntimeError("boom")
        assert not scratch.exists()


class TestFileCopier:
    """Bulk copies preserving relative structure."""

    def test_copies_and_overwrites(self, tmp_path: Path):
        source = write_tree(tmp_path / "src", {"a.txt": "new", "d/b.txt": "b"})
        destination = write_tree(tmp_path / "dst", {"a.txt": "old"})

        copied = FileCopier().copy_files(source, ["a.txt", "d/b.txt"], destination)

        assert copied == 2
        assert read_tree(destination) == {"a.txt": "new", "d/b.txt": "b"}

    @pytest.mark.parametrize("relative", ["../outside.txt", "/etc/passwd"])
    def test_traversal_rejected(self, tmp_path: Path, relative):
        source = write_tree(tmp_path / "src", {"a.txt": "a"})
        with pytest.raises(TraversalRejected):
            FileCopier().copy_files(source, [relative], tmp_path / "dst")

    def test_missing_source_file(self, tmp_path: Path):
        source = write_tree(tmp_path / "src", {})
        with pytest.raises(OSError):
            FileCopier().copy_files(source, ["gone.txt"], tmp_path / "dst")

    def test_missing_source_file_reported_and_skipped(self, tmp_path: Path):
        source = write_tree(tmp_path / "src", {"a.txt": "a"})
        skipped = []

        copied = FileCopier().copy_files(
            source,
            ["gone.txt", "a.txt"],
            tmp_path / "dst",
            on_unreadable=lambda relative, error: skipped.append((relative, type(error))),
        )

        assert copied == 1
        assert skipped == [("gone.txt", FileNotFoundError)]
        assert read_tree(tmp_path / "dst") == {"a.txt": "a"}

    def test_destination_failure_still_raises(self, tmp_path: Path):
        source = write_tree(tmp_path / "src", {"a.txt": "a"})
        destination = write_tree(tmp_path / "dst", {})
        (destination / "a.txt" / "a.txt").mkdir(parents=True)

        with pytest.raises(OSError):
            FileCopier().copy_files(source, ["a.txt"], destination, on_unreadable=lambda *_: None)
