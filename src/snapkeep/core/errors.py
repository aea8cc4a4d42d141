"""Error types for Snapkeep"""


class SnapkeepError(Exception):
    """Base class for all fatal Snapkeep errors"""

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage


class ConfigError(SnapkeepError):
    """Settings file is unreadable or malformed"""


class PatternError(SnapkeepError):
    """A glob pattern has invalid syntax"""

    def __init__(self, pattern: str, reason: str):
        super().__init__(f"Invalid pattern '{pattern}': {reason}", stage="classifying")
        self.pattern = pattern


class EncryptionError(SnapkeepError):
    """Content could not be encrypted"""


class DecryptionError(EncryptionError):
    """Envelope is malformed, uses an unknown algorithm, or failed authentication"""


class BackupError(SnapkeepError):
    """Unrecoverable failure while creating a backup"""


class RestoreError(SnapkeepError):
    """Unrecoverable failure while restoring a backup"""

    def __init__(self, message: str, stage: str | None = None, files_written: bool = False):
        super().__init__(message, stage=stage)
        self.files_written = files_written


class BackupNotFoundError(RestoreError):
    """No archive or directory backup matches the identifier"""

    def __init__(self, backup_id: str, available: list[str] | None = None):
        super().__init__(f"Backup not found: {backup_id}", stage="locating")
        self.backup_id = backup_id
        self.available = list(available or [])


class ExtractionError(RestoreError):
    """Backup could not be unpacked into the staging area"""


class InvalidBackupError(RestoreError):
    """Backup has no readable manifest"""


class ProjectMismatchError(RestoreError):
    """Backup belongs to a different project"""

    def __init__(self, expected: str, actual: str | None):
        super().__init__(
            f"Backup project mismatch: expected {expected}, got {actual}",
            stage="validating",
        )
        self.expected = expected
        self.actual = actual
