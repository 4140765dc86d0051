"""fpbackup - Content-fingerprint backups with verification, restore chains and safe retention."""

__version__ = "0.1.0"

from fpbackup.errors import (
    FingerprintBackupError,
    ValidationError,
    NotFoundError,
    ParseError,
    TraversalRejected,
    SafetyAbort,
    ScanCancelled,
)
from fpbackup.config import (
    ConfigNotFoundError,
    Configuration,
    ConfigurationError,
    parse_config,
    parse_config_string,
    format_config,
    create_default_config,
)
from fpbackup.logger import (
    ErrorCode,
    LoggingError,
    setup_logging,
    get_logger,
)
from fpbackup.fingerprint import (
    FileRecord,
    Snapshot,
    FingerprintStore,
    load_snapshot,
    list_named_snapshots,
)
from fpbackup.changes import ChangeSet, diff
from fpbackup.metadata import BackupMetadata, BackupType
from fpbackup.archive import Archiver, ZipArchiver
from fpbackup.copier import FileCopier
from fpbackup.verify import IntegrityVerifier, VerificationResult, verify_backup
from fpbackup.restore import (
    ResolvedBackup,
    RestoreChain,
    RestoreChainResolver,
    RestoreResult,
    restore_latest,
)
from fpbackup.retention import (
    RetentionManager,
    RetentionResult,
    RetentionSelection,
)
from fpbackup.backup import (
    BackupResult,
    run_backup,
    run_verify,
    run_restore,
    run_cleanup,
    list_backups,
    EXIT_SUCCESS,
    EXIT_CONFIG_ERROR,
    EXIT_SOURCE_ERROR,
    EXIT_DESTINATION_ERROR,
    EXIT_BACKUP_ERROR,
)

__all__ = [
    "FingerprintBackupError",
    "ValidationError",
    "NotFoundError",
    "ParseError",
    "TraversalRejected",
    "SafetyAbort",
    "ScanCancelled",
    "Configuration",
    "ConfigNotFoundError",
    "ConfigurationError",
    "parse_config",
    "parse_config_string",
    "format_config",
    "create_default_config",
    "ErrorCode",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "FileRecord",
    "Snapshot",
    "FingerprintStore",
    "load_snapshot",
    "list_named_snapshots",
    "ChangeSet",
    "diff",
    "BackupMetadata",
    "BackupType",
    "Archiver",
    "ZipArchiver",
    "FileCopier",
    "IntegrityVerifier",
    "VerificationResult",
    "verify_backup",
    "ResolvedBackup",
    "RestoreChain",
    "RestoreChainResolver",
    "RestoreResult",
    "restore_latest",
    "RetentionManager",
    "RetentionResult",
    "RetentionSelection",
    "BackupResult",
    "run_backup",
    "run_verify",
    "run_restore",
    "run_cleanup",
    "list_backups",
    "EXIT_SUCCESS",
    "EXIT_CONFIG_ERROR",
    "EXIT_SOURCE_ERROR",
    "EXIT_DESTINATION_ERROR",
    "EXIT_BACKUP_ERROR",
]
