"""Relative path handling for tracked roots.

Relative paths are forward-slash normalized, keep their on-disk casing and are
compared case-insensitively.
"""

import fnmatch
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, Union

from fpbackup.errors import TraversalRejected, ValidationError


PathLike = Union[str, os.PathLike]


def path_key(relative_path: str) -> str:
    """Return the comparison key for a relative path (case-insensitive)."""
    return relative_path.casefold()


def _normalize_prefix(path: PathLike) -> str:
    text = os.path.abspath(os.fspath(path)).replace("\\", "/")
    return text.rstrip("/") + "/"


def relative_to_root(root: PathLike, full_path: PathLike) -> str:
    """
    Strip the root prefix from a full path.

    The prefix comparison ignores case and trailing slashes, but the returned
    relative path keeps the casing found on disk.

    Args:
        root: Tracked root directory
        full_path: Path to a file under root

    Returns:
        Forward-slash relative path

    Raises:
        ValidationError: If full_path does not lie under root
    """
    prefix = _normalize_prefix(root)
    full = os.path.abspath(os.fspath(full_path)).replace("\\", "/")

    if not full.casefold().startswith(prefix.casefold()):
        raise ValidationError(f"Path {full_path} is not under root {root}")

    relative = full[len(prefix):]
    if not relative:
        raise ValidationError(f"Path {full_path} is the root itself")
    return relative


def validate_relative_path(relative_path: str) -> str:
    """
    Normalize a stored relative path and reject anything that escapes.

    Raises:
        TraversalRejected: For non-string values, absolute paths, drive
            letters or '..' segments
    """
    if not isinstance(relative_path, str):
        raise TraversalRejected("<root>", repr(relative_path))

    normalized = relative_path.replace("\\", "/")
    pure = PurePosixPath(normalized)

    if (
        not normalized
        or pure.is_absolute()
        or ".." in pure.parts
        or (len(normalized) > 1 and normalized[1] == ":")
    ):
        raise TraversalRejected("<root>", relative_path)

    return str(pure)


def safe_join(root: PathLike, relative_path: str) -> Path:
    """
    Resolve a relative path under root.

    Args:
        root: Directory the result must stay inside
        relative_path: Path relative to root

    Returns:
        Resolved absolute path under root

    Raises:
        TraversalRejected: If the resolved target lands outside root
    """
    try:
        normalized = validate_relative_path(relative_path)
    except TraversalRejected:
        raise TraversalRejected(root, relative_path)

    root_resolved = Path(root).resolve()
    target = (root_resolved / normalized).resolve()

    if target == root_resolved or root_resolved not in target.parents:
        raise TraversalRejected(root, relative_path)

    return target


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    """
    Check a relative path against exclusion patterns.

    Patterns ending in '/' match any directory segment of the path. Other
    patterns are matched against the file name and the full relative path.
    Matching is case-insensitive.
    """
    key = path_key(relative_path)
    parts = key.split("/")
    name = parts[-1]
    directories = parts[:-1]

    for pattern in patterns:
        pattern = pattern.casefold()
        if pattern.endswith("/"):
            dir_pattern = pattern.rstrip("/")
            if any(fnmatch.fnmatchcase(d, dir_pattern) for d in directories):
                return True
            continue
        if fnmatch.fnmatchcase(name, pattern) or fnmatch.fnmatchcase(key, pattern):
            return True

    return False
