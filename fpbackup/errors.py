"""Exception taxonomy for fpbackup.

Structural problems are raised and stop the operation. Integrity findings
(corrupted, missing or extra files) are never exceptions; they are returned
as data inside VerificationResult.
"""


class FingerprintBackupError(Exception):
    """Base exception for fpbackup errors."""
    pass


class ValidationError(FingerprintBackupError):
    """Raised when a required parameter is missing or invalid."""
    pass


class NotFoundError(FingerprintBackupError):
    """Raised when an expected path, backup or snapshot is absent."""
    pass


class ParseError(FingerprintBackupError):
    """Raised when a metadata or snapshot file is malformed."""
    pass


class TraversalRejected(FingerprintBackupError):
    """Raised when a copy or deletion target would escape its root."""

    def __init__(self, root, relative_path: str):
        super().__init__(
            f"Path '{relative_path}' escapes root directory {root}"
        )
        self.root = root
        self.relative_path = relative_path


class SafetyAbort(FingerprintBackupError):
    """Raised when retention would remove every backup in one run."""
    pass


class ScanCancelled(FingerprintBackupError):
    """Raised when an in-flight fingerprint scan is cancelled."""
    pass
