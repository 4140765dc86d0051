"""Configuration management for fpbackup.

This module provides dataclasses for configuration and functions for
parsing/formatting TOML configuration files. The resulting Configuration is
built once by the caller and passed explicitly into every entry point.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import tomllib

from fpbackup.errors import FingerprintBackupError, ValidationError


class ConfigurationError(FingerprintBackupError):
    """Raised when configuration file is missing or malformed."""
    pass


class ConfigNotFoundError(ConfigurationError):
    """Raised when the configuration file does not exist."""
    pass


# Default exclude patterns
DEFAULT_EXCLUDES: List[str] = [
    "node_modules/",
    ".git/",
    "__pycache__/",
    "*.pyc",
    ".pytest_cache/",
    "*.tmp",
    "*.log",
    ".DS_Store",
    "Thumbs.db",
]

# Canonical algorithm name -> hashlib name
HASH_ALGORITHMS: Dict[str, str] = {
    "SHA256": "sha256",
    "SHA1": "sha1",
    "MD5": "md5",
}


def normalize_algorithm(name: str) -> str:
    """
    Return the canonical name for a hash algorithm ("sha-256" -> "SHA256").

    Raises:
        ValidationError: If the algorithm is not supported
    """
    canonical = name.upper().replace("-", "").replace("_", "")
    if canonical not in HASH_ALGORITHMS:
        raise ValidationError(
            f"Unsupported hash algorithm '{name}'. "
            f"Must be one of: {', '.join(HASH_ALGORITHMS)}"
        )
    return canonical


@dataclass
class FingerprintConfig:
    """Configuration for fingerprint computation."""
    algorithm: str = "SHA256"
    max_workers: int = 0  # 0 = one worker per CPU core


@dataclass
class ArchiveConfig:
    """Configuration for single-file archive backups."""
    enabled: bool = False


@dataclass
class RetentionConfig:
    """Configuration for backup expiry."""
    days: int = 30
    name_filter: Optional[str] = None


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/fpbackup.log"
    )
    error_log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/fpbackup.err"
    )
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass
class Configuration:
    """Main configuration for fpbackup."""
    backup_destination: Path
    source_directory: Path
    exclude_patterns: List[str] = field(
        default_factory=lambda: DEFAULT_EXCLUDES.copy()
    )
    recursive: bool = True
    backup_prefix: str = "Backup"
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def state_directory(self) -> Path:
        """Directory holding latest/previous/named snapshot files."""
        return self.backup_destination / "states"


# Default config file path
DEFAULT_CONFIG_PATH = Path.home() / ".config/fpbackup/config.toml"

# Required keys in configuration
REQUIRED_KEYS = ["backup_destination", "source_directory"]


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int; reject it where an int is expected
    if expected_type is int and isinstance(value, bool):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected int, got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _expand(path_str: str) -> Path:
    return Path(os.path.expanduser(path_str))


def _parse_fingerprint_config(data: Dict[str, Any]) -> FingerprintConfig:
    """Parse fingerprint configuration from dict."""
    fp_data = data.get("fingerprint", {})

    algorithm = fp_data.get("algorithm", "SHA256")
    _validate_type(algorithm, str, "fingerprint.algorithm")
    try:
        algorithm = normalize_algorithm(algorithm)
    except ValidationError as e:
        raise ValidationError(f"Key 'fingerprint.algorithm': {e}")

    max_workers = fp_data.get("max_workers", 0)
    _validate_type(max_workers, int, "fingerprint.max_workers")
    if max_workers < 0:
        raise ValidationError("Key 'fingerprint.max_workers' must be >= 0")

    return FingerprintConfig(algorithm=algorithm, max_workers=max_workers)


def _parse_archive_config(data: Dict[str, Any]) -> ArchiveConfig:
    """Parse archive configuration from dict."""
    archive_data = data.get("archive", {})

    enabled = archive_data.get("enabled", False)
    _validate_type(enabled, bool, "archive.enabled")

    return ArchiveConfig(enabled=enabled)


def _parse_retention_config(data: Dict[str, Any]) -> RetentionConfig:
    """Parse retention configuration from dict."""
    retention_data = data.get("retention", {})

    days = retention_data.get("days", 30)
    _validate_type(days, int, "retention.days")
    if days < 0:
        raise ValidationError("Key 'retention.days' must be >= 0")

    name_filter = retention_data.get("name_filter", "")
    _validate_type(name_filter, str, "retention.name_filter")

    return RetentionConfig(days=days, name_filter=name_filter or None)


_LOGGING_KEYS = {
    "level": str,
    "log_file": str,
    "error_log_file": str,
    "log_max_size_mb": int,
    "log_backup_count": int,
}


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse the [logging] section; absent keys keep LoggingConfig defaults."""
    section = data.get("logging", {})
    values = {}
    for key, expected in _LOGGING_KEYS.items():
        if key not in section:
            continue
        _validate_type(section[key], expected, f"logging.{key}")
        values[key] = section[key]

    for key in ("log_file", "error_log_file"):
        if key in values:
            values[key] = Path(values[key])
    for key in ("log_max_size_mb", "log_backup_count"):
        if values.get(key, 0) < 0:
            raise ValidationError(f"Key 'logging.{key}' must be >= 0")

    return LoggingConfig(**values)


def parse_config_string(toml_content: str) -> Configuration:
    """
    Parse TOML string into Configuration object.

    Args:
        toml_content: TOML formatted string

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If TOML is invalid or a required key is missing
        ValidationError: If value has wrong type
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    # Main section may be nested under [main] or at root
    main_data = data.get("main", data)

    for key in REQUIRED_KEYS:
        if key not in main_data:
            raise ConfigurationError(f"Missing required configuration key: '{key}'")

    backup_dest = main_data["backup_destination"]
    _validate_type(backup_dest, str, "backup_destination")

    source_dir = main_data["source_directory"]
    _validate_type(source_dir, str, "source_directory")

    exclude_patterns = main_data.get("exclude_patterns", DEFAULT_EXCLUDES.copy())
    _validate_type(exclude_patterns, list, "exclude_patterns")
    for i, pattern in enumerate(exclude_patterns):
        _validate_type(pattern, str, f"exclude_patterns[{i}]")

    recursive = main_data.get("recursive", True)
    _validate_type(recursive, bool, "recursive")

    backup_prefix = main_data.get("backup_prefix", "Backup")
    _validate_type(backup_prefix, str, "backup_prefix")
    if not backup_prefix or "/" in backup_prefix or "\\" in backup_prefix:
        raise ValidationError("Key 'backup_prefix' must be a plain, non-empty name")

    return Configuration(
        backup_destination=_expand(backup_dest),
        source_directory=_expand(source_dir),
        exclude_patterns=exclude_patterns,
        recursive=recursive,
        backup_prefix=backup_prefix,
        fingerprint=_parse_fingerprint_config(data),
        archive=_parse_archive_config(data),
        retention=_parse_retention_config(data),
        logging=_parse_logging_config(data),
    )


def parse_config(config_path: Optional[Path] = None) -> Configuration:
    """
    Read and parse a configuration file.

    Args:
        config_path: Config file; ~/.config/fpbackup/config.toml when None

    Raises:
        ConfigurationError: If the file is absent, unreadable or incomplete
        ValidationError: If a value has the wrong type
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if not path.is_file():
        raise ConfigNotFoundError(f"Configuration file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}")

    return parse_config_string(content)


def _escape_toml_string(s: str) -> str:
    """Escape a string for TOML basic string format."""
    return s.replace("\\", "\\\\").replace('"', '\\"')


def _toml_bool(value: bool) -> str:
    return "true" if value else "false"


def format_config(config: Configuration) -> str:
    """
    Format Configuration object back to TOML string.

    Used for round-trip testing and config generation.
    """
    lines = []

    lines.append("[main]")
    lines.append(f'backup_destination = "{_escape_toml_string(str(config.backup_destination))}"')
    lines.append(f'source_directory = "{_escape_toml_string(str(config.source_directory))}"')
    lines.append(f"recursive = {_toml_bool(config.recursive)}")
    lines.append(f'backup_prefix = "{_escape_toml_string(config.backup_prefix)}"')

    if config.exclude_patterns:
        lines.append("exclude_patterns = [")
        for pattern in config.exclude_patterns:
            lines.append(f'    "{_escape_toml_string(pattern)}",')
        lines.append("]")
    else:
        lines.append("exclude_patterns = []")
    lines.append("")

    lines.append("[fingerprint]")
    lines.append(f'algorithm = "{config.fingerprint.algorithm}"')
    lines.append(f"max_workers = {config.fingerprint.max_workers}")
    lines.append("")

    lines.append("[archive]")
    lines.append(f"enabled = {_toml_bool(config.archive.enabled)}")
    lines.append("")

    lines.append("[retention]")
    lines.append(f"days = {config.retention.days}")
    lines.append(f'name_filter = "{_escape_toml_string(config.retention.name_filter or "")}"')
    lines.append("")

    lines.append("[logging]")
    lines.append(f'level = "{_escape_toml_string(config.logging.level)}"')
    lines.append(f'log_file = "{_escape_toml_string(str(config.logging.log_file))}"')
    lines.append(f'error_log_file = "{_escape_toml_string(str(config.logging.error_log_file))}"')
    lines.append(f"log_max_size_mb = {config.logging.log_max_size_mb}")
    lines.append(f"log_backup_count = {config.logging.log_backup_count}")

    return "\n".join(lines)


def create_default_config() -> str:
    """
    Generate default configuration TOML for `fpbackup init`.

    Returns:
        TOML formatted string with default configuration
    """
    template = '''# fpbackup configuration file

[main]
# Directory receiving backups and the states/ snapshot folder
backup_destination = "~/Backups/fpbackup"

# Directory tree to back up
source_directory = "~/Documents"
recursive = true

# Backup folder names look like <prefix>_Full_20250101_120000
backup_prefix = "Backup"

# Exclusion patterns ("name/" excludes a directory anywhere in the tree)
exclude_patterns = [
'''

    for pattern in DEFAULT_EXCLUDES:
        template += f'    "{pattern}",\n'

    template += ''']

[fingerprint]
# SHA256, SHA1 or MD5
algorithm = "SHA256"
# Hashing threads (0 = one per CPU core)
max_workers = 0

[archive]
# Pack each backup into a single .zip file
enabled = false

[retention]
# Backups older than this many days are expired by `fpbackup cleanup`
days = 30
# Only consider backups whose name contains this text (or matches this glob)
name_filter = ""

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
log_file = "~/.local/log/fpbackup.log"
error_log_file = "~/.local/log/fpbackup.err"
log_max_size_mb = 10
log_backup_count = 5
'''

    return template
