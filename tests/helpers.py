"""Filesystem helpers shared by the fpbackup tests."""

import json
from pathlib import Path
from typing import Dict, Optional

from fpbackup.metadata import METADATA_FILENAME


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Create files under root from a {relative_path: content} map."""
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


def read_tree(root: Path) -> Dict[str, str]:
    """Read every file under root into a {relative_path: content} map."""
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def write_backup(
    destination: Path,
    name: str,
    backup_type: str,
    timestamp: str,
    files: Optional[Dict[str, str]] = None,
    base: Optional[str] = None,
    deleted: Optional[list] = None,
) -> Path:
    """Materialize a backup directory with hand-written metadata."""
    directory = write_tree(destination / name, files or {})
    metadata = {
        "backupType": backup_type,
        "sourceRoot": "/src",
        "timestamp": timestamp,
        "filesBackedUp": len(files or {}),
    }
    if backup_type.lower().startswith("inc"):
        metadata["baseBackupTimestamp"] = base
        metadata["includedFiles"] = sorted(files or {})
        metadata["deletedFiles"] = deleted or []
    (directory / METADATA_FILENAME).write_text(json.dumps(metadata))
    return directory
