"""Logging configuration for fpbackup.

This module provides logging setup and utility functions for the backup system.
Supports DEBUG, INFO, WARNING and ERROR log levels with separate log and error
files, automatic log rotation with gzip compression, and structured JSON log
entries carrying error codes for diagnostic purposes.
"""

import gzip
import json
import logging
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from fpbackup.config import LoggingConfig


# Logger name for the fpbackup package
LOGGER_NAME = "fpbackup"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class ErrorCode(Enum):
    """Error codes for structured logging and troubleshooting."""
    # Configuration errors (1xxx)
    CONFIG_NOT_FOUND = "E1001"
    CONFIG_INVALID = "E1002"

    # Source / destination errors (2xxx)
    SOURCE_NOT_FOUND = "E2001"
    DESTINATION_UNWRITABLE = "E2002"
    SOURCE_FILE_UNREADABLE = "E2003"

    # Fingerprint errors (3xxx)
    FINGERPRINT_FILE_FAILED = "E3001"
    SNAPSHOT_PARSE_FAILED = "E3002"
    SNAPSHOT_NOT_FOUND = "E3003"

    # Verification errors (4xxx)
    VERIFY_CORRUPTED = "E4001"
    VERIFY_MISSING = "E4002"
    VERIFY_EXTRA = "E4003"

    # Restore errors (5xxx)
    RESTORE_NO_FULL_BACKUP = "E5001"
    RESTORE_METADATA_INVALID = "E5002"
    RESTORE_TRAVERSAL_REJECTED = "E5003"
    RESTORE_FAILED = "E5004"

    # Retention errors (6xxx)
    RETENTION_SAFETY_ABORT = "E6001"
    RETENTION_DELETE_FAILED = "E6002"

    # General errors (0xxx)
    UNKNOWN_ERROR = "E0001"


ERROR_GUIDANCE: Dict[ErrorCode, str] = {
    ErrorCode.CONFIG_NOT_FOUND: "No configuration file found. Run `fpbackup init` to create one.",
    ErrorCode.CONFIG_INVALID: "The configuration file is invalid. Check key names and value types.",

    ErrorCode.SOURCE_NOT_FOUND: "The source directory doesn't exist. Check source_directory in the configuration.",
    ErrorCode.DESTINATION_UNWRITABLE: "The backup destination can't be written. Check the drive and its permissions.",
    ErrorCode.SOURCE_FILE_UNREADABLE: "A source file could not be read while copying. It was left out of this backup.",

    ErrorCode.FINGERPRINT_FILE_FAILED: "A file could not be read while fingerprinting. It was left out of this backup.",
    ErrorCode.SNAPSHOT_PARSE_FAILED: "A snapshot file in states/ is damaged. Run a Full backup to write a fresh one.",
    ErrorCode.SNAPSHOT_NOT_FOUND: "No recorded fingerprints exist for this backup, so it can't be verified.",

    ErrorCode.VERIFY_CORRUPTED: "Some backed-up files no longer match their fingerprints. Take a new Full backup.",
    ErrorCode.VERIFY_MISSING: "Some files recorded for this backup are gone from it.",
    ErrorCode.VERIFY_EXTRA: "The backup contains files that were never recorded for it.",

    ErrorCode.RESTORE_NO_FULL_BACKUP: "No Full backup exists to restore from. Incrementals need a Full backup as their starting point.",
    ErrorCode.RESTORE_METADATA_INVALID: "A backup's metadata file is missing or damaged.",
    ErrorCode.RESTORE_TRAVERSAL_REJECTED: "A backup listed a path outside the restore folder. The entry was refused.",
    ErrorCode.RESTORE_FAILED: "Restore failed. Try restoring to a different location.",

    ErrorCode.RETENTION_SAFETY_ABORT: "Every backup is older than the retention window, so nothing was deleted. Check the system clock and retention.days.",
    ErrorCode.RETENTION_DELETE_FAILED: "An expired backup could not be deleted. Check destination permissions.",

    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Check the logs for more details.",
}


@dataclass
class StructuredLogEntry:
    """A structured log entry serialized as one JSON line."""
    timestamp: str
    level: str
    message: str
    error_code: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    guidance: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to JSON string for logging."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, default=str)

    @classmethod
    def create(
        cls,
        level: str,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "StructuredLogEntry":
        """Create a structured log entry with automatic timestamp and guidance."""
        return cls(
            timestamp=datetime.now().isoformat(),
            level=level,
            message=message,
            error_code=error_code.value if error_code else None,
            context=context,
            guidance=ERROR_GUIDANCE.get(error_code) if error_code else None,
        )


def get_error_guidance(error_code: ErrorCode) -> str:
    """Get troubleshooting guidance for an error code."""
    return ERROR_GUIDANCE.get(error_code, ERROR_GUIDANCE[ErrorCode.UNKNOWN_ERROR])


class LoggingError(Exception):
    """Raised when log files cannot be opened or the level is unknown."""
    pass


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    RotatingFileHandler whose rolled-over files are gzip-compressed.

    fpbackup.log.1 becomes fpbackup.log.1.gz. If compression fails the file is
    rotated uncompressed.
    """

    def rotation_filename(self, default_name: str) -> str:
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        source_path = Path(source)
        if not source_path.exists():
            return

        try:
            with source_path.open("rb") as plain, gzip.open(dest, "wb") as packed:
                shutil.copyfileobj(plain, packed)
            source_path.unlink()
        except OSError:
            if source_path.exists():
                try:
                    source_path.rename(dest.removesuffix(".gz"))
                except OSError:
                    pass  # rotation must not break logging


def _resolve_level(name: str) -> int:
    normalized = name.upper()
    if normalized not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{normalized}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, normalized)


def _file_handler(
    path: Path,
    level: int,
    max_bytes: int,
    backup_count: int,
    formatter: logging.Formatter,
) -> GzipRotatingFileHandler:
    """Open a gzip-rotating handler, creating the log directory first."""
    path = path.expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = GzipRotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    except OSError as e:
        raise LoggingError(f"Cannot open log file {path}: {e}")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    config: Optional[LoggingConfig] = None,
    log_file: Optional[Path] = None,
    error_log_file: Optional[Path] = None,
    level: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    console: bool = True,
) -> logging.Logger:
    """
    Configure the fpbackup package logger.

    Three handlers are attached to the "fpbackup" logger:
    - the main log at the configured level
    - the error log, ERROR and above only
    - stderr at the configured level (skipped when console is False)

    Both files rotate by size and rotated files are gzip-compressed. Calling
    this again replaces the previous handlers.

    Args:
        config: LoggingConfig; when given, its paths, level and rotation
            settings are used and the individual arguments only fill gaps
        log_file: Main log path when config is None
        error_log_file: Error log path when config is None
        level: Level name when config is None
        max_bytes: Rotation size (default 10MB)
        backup_count: Rotated files kept (default 5)
        console: Also log to stderr

    Returns:
        The package logger

    Raises:
        LoggingError: If a log file cannot be opened or the level is unknown
    """
    defaults = config or LoggingConfig()
    if config is not None:
        log_file, error_log_file, level = config.log_file, config.error_log_file, config.level

    threshold = _resolve_level(level or defaults.level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    rotation = {
        "max_bytes": max_bytes if max_bytes is not None else defaults.log_max_bytes,
        "backup_count": backup_count if backup_count is not None else defaults.log_backup_count,
    }

    handlers = [
        _file_handler(Path(log_file or defaults.log_file), threshold, formatter=formatter, **rotation),
        _file_handler(
            Path(error_log_file or defaults.error_log_file), logging.ERROR, formatter=formatter, **rotation
        ),
    ]
    if console:
        stream = logging.StreamHandler()
        stream.setLevel(threshold)
        stream.setFormatter(formatter)
        handlers.append(stream)

    package_logger = logging.getLogger(LOGGER_NAME)
    for old in list(package_logger.handlers):
        package_logger.removeHandler(old)
        old.close()
    package_logger.setLevel(logging.DEBUG)
    for handler in handlers:
        package_logger.addHandler(handler)
    return package_logger


def get_logger() -> logging.Logger:
    """Get the fpbackup package logger."""
    return logging.getLogger(LOGGER_NAME)


def _format_size(total_size: int) -> str:
    if total_size >= 1024 * 1024 * 1024:
        return f"{total_size / (1024 * 1024 * 1024):.2f} GB"
    if total_size >= 1024 * 1024:
        return f"{total_size / (1024 * 1024):.2f} MB"
    if total_size >= 1024:
        return f"{total_size / 1024:.2f} KB"
    return f"{total_size} bytes"


def log_backup_start(
    logger: logging.Logger,
    source_directory: Path,
    destination: Path,
    backup_type: str,
) -> None:
    """Log the start of a backup operation."""
    logger.info(f"{backup_type} backup started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Source directory: {source_directory}")
    logger.info(f"Destination: {destination}")


def log_backup_completion(
    logger: logging.Logger,
    duration_seconds: float,
    files_backed_up: int,
    total_size: int,
    backup_path: Optional[Path] = None,
) -> None:
    """Log the completion of a backup operation."""
    logger.info("Backup completed successfully")
    logger.info(f"Duration: {duration_seconds:.2f} seconds")
    logger.info(f"Files backed up: {files_backed_up}")
    logger.info(f"Total size: {_format_size(total_size)}")
    if backup_path:
        logger.info(f"Backup: {backup_path}")


def log_backup_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
    error_code: Optional[ErrorCode] = None,
) -> StructuredLogEntry:
    """
    Log a backup error as a structured entry.

    The error code is derived from the exception type unless given.
    """
    message = f"Backup failed during {context}: {error}" if context else f"Backup failed: {error}"
    return log_structured(
        logger,
        "ERROR",
        message,
        error_code or map_exception_to_error_code(error),
        {"exception": type(error).__name__},
    )


def log_structured(
    logger: logging.Logger,
    level: str,
    message: str,
    error_code: Optional[ErrorCode] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """
    Log a structured entry as a JSON line.

    Returns:
        The StructuredLogEntry that was logged
    """
    entry = StructuredLogEntry.create(
        level=level,
        message=message,
        error_code=error_code,
        context=context,
    )
    logger.log(getattr(logging, level.upper(), logging.INFO), entry.to_json())
    return entry


def log_verification_result(
    logger: logging.Logger,
    backup_location: Path,
    verified_count: int,
    corrupted: list,
    missing: list,
    extra: list,
) -> Optional[StructuredLogEntry]:
    """
    Log the outcome of a verification.

    An intact backup is logged at INFO. Findings are logged as a structured
    WARNING carrying the most severe finding's error code.
    """
    if not corrupted and not missing and not extra:
        logger.info(f"Backup {backup_location} verified: {verified_count} file(s) intact")
        return None

    if corrupted:
        code = ErrorCode.VERIFY_CORRUPTED
    elif missing:
        code = ErrorCode.VERIFY_MISSING
    else:
        code = ErrorCode.VERIFY_EXTRA

    return log_structured(
        logger,
        "WARNING",
        f"Backup {backup_location} failed verification",
        error_code=code,
        context={
            "verified": verified_count,
            "corrupted": corrupted,
            "missing": missing,
            "extra": extra,
        },
    )


def map_exception_to_error_code(exception: Exception) -> ErrorCode:
    """Map an exception to the most appropriate error code."""
    type_mappings = {
        "ConfigNotFoundError": ErrorCode.CONFIG_NOT_FOUND,
        "ConfigurationError": ErrorCode.CONFIG_INVALID,
        "ValidationError": ErrorCode.CONFIG_INVALID,
        "NotFoundError": ErrorCode.SNAPSHOT_NOT_FOUND,
        "ParseError": ErrorCode.RESTORE_METADATA_INVALID,
        "TraversalRejected": ErrorCode.RESTORE_TRAVERSAL_REJECTED,
        "SafetyAbort": ErrorCode.RETENTION_SAFETY_ABORT,
        "FileNotFoundError": ErrorCode.SOURCE_NOT_FOUND,
        "PermissionError": ErrorCode.DESTINATION_UNWRITABLE,
    }
    return type_mappings.get(type(exception).__name__, ErrorCode.UNKNOWN_ERROR)
