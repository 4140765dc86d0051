"""Single-file archive support.

The engine only needs pack/unpack; ZipArchiver implements them with the
standard library zipfile module. Extraction always targets a freshly created,
uniquely named scratch directory so concurrent verify/restore runs never
collide.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
import logging
import shutil
import tempfile
import zipfile

from fpbackup.errors import ParseError
from fpbackup.paths import safe_join


logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "fpbackup_scratch_"


@contextmanager
def scratch_directory(prefix: str = SCRATCH_PREFIX) -> Iterator[Path]:
    """Create a unique temporary directory removed on every exit path."""
    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Removed scratch directory {path}")


class Archiver:
    """Packs a backup directory into one file and back."""

    suffix = ""

    def is_archive(self, path: Path) -> bool:
        return Path(path).is_file() and Path(path).suffix.lower() == self.suffix

    def pack(self, directory: Path) -> Path:
        raise NotImplementedError

    def unpack(self, archive_file: Path, destination: Path) -> Path:
        raise NotImplementedError

    def read_member(self, archive_file: Path, name: str) -> Optional[bytes]:
        raise NotImplementedError

    @contextmanager
    def extracted(self, archive_file: Path) -> Iterator[Path]:
        """Unpack into a scratch directory that is removed afterwards."""
        with scratch_directory() as scratch:
            yield self.unpack(archive_file, scratch)


class ZipArchiver(Archiver):
    """Archiver producing <directory>.zip files."""

    suffix = ".zip"

    def pack(self, directory: Path, remove_source: bool = True) -> Path:
        """
        Pack a directory into a sibling .zip file.

        Args:
            directory: Directory to pack
            remove_source: Delete the directory once the archive is written

        Returns:
            Path to the archive
        """
        directory = Path(directory)
        archive_path = directory.with_name(directory.name + self.suffix)

        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for file_path in sorted(directory.rglob("*")):
                if file_path.is_file():
                    zf.write(file_path, file_path.relative_to(directory).as_posix())

        if remove_source:
            shutil.rmtree(directory)

        logger.debug(f"Packed {directory} into {archive_path}")
        return archive_path

    def unpack(self, archive_file: Path, destination: Path) -> Path:
        """
        Extract an archive into destination.

        Raises:
            ParseError: If the archive is unreadable
            TraversalRejected: If a member would land outside destination
        """
        destination = Path(destination)
        try:
            with zipfile.ZipFile(archive_file) as zf:
                for member in zf.infolist():
                    if member.is_dir():
                        continue
                    target = safe_join(destination, member.filename)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(member) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
        except zipfile.BadZipFile as e:
            raise ParseError(f"Unreadable archive {archive_file}: {e}")
        return destination

    def read_member(self, archive_file: Path, name: str) -> Optional[bytes]:
        """Read a single member's bytes, or None when absent."""
        try:
            with zipfile.ZipFile(archive_file) as zf:
                try:
                    return zf.read(name)
                except KeyError:
                    return None
        except zipfile.BadZipFile as e:
            raise ParseError(f"Unreadable archive {archive_file}: {e}")
