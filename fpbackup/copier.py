"""Bulk file copy preserving relative structure."""

from pathlib import Path
from typing import Callable, Iterable, Optional
import logging
import os
import shutil

from fpbackup.paths import safe_join, validate_relative_path


logger = logging.getLogger(__name__)


class FileCopier:
    """Copies a list of relative paths from one root into another."""

    def copy_files(
        self,
        source_root: Path,
        relative_paths: Iterable[str],
        destination: Path,
        on_unreadable: Optional[Callable[[str, OSError], None]] = None,
    ) -> int:
        """
        Copy files, overwriting existing targets.

        Args:
            source_root: Root the relative paths are resolved against
            relative_paths: Files to copy
            destination: Root receiving the copies
            on_unreadable: Called with (relative_path, error) when a source
                file is gone or unreadable; that file is skipped. Without it
                the error propagates.

        Returns:
            Number of files copied

        Raises:
            TraversalRejected: If a path escapes either root
            OSError: If a copy fails
        """
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        copied = 0

        for relative in relative_paths:
            # Source entries may be symlinks pointing outside the tree, so
            # only the relative path itself is checked on that side.
            source = Path(source_root) / validate_relative_path(relative)
            target = safe_join(destination, relative)
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copy2(source, target)
            except OSError as e:
                if on_unreadable is None or _is_readable(source):
                    raise
                target.unlink(missing_ok=True)
                on_unreadable(relative, e)
                continue
            copied += 1

        logger.debug(f"Copied {copied} file(s) from {source_root} to {destination}")
        return copied


def _is_readable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)
