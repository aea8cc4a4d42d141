"""Data models shared by the backup and restore engines"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

MANIFEST_FILE = "backup-metadata.json"
ENCRYPTED_SUFFIX = ".encrypted"

# Archive format -> tarfile write mode
ARCHIVE_FORMATS = {
    "tar.gz": "w:gz",
    "tar.bz2": "w:bz2",
    "tar.xz": "w:xz",
    "tar": "w",
}


def split_archive_name(filename: str) -> tuple[str, str | None]:
    """Split a retention-path entry name into (backup id, archive format or None)"""
    # Longest extensions first so 'x.tar.gz' is not read as format 'tar'
    for fmt in sorted(ARCHIVE_FORMATS, key=len, reverse=True):
        suffix = f".{fmt}"
        if filename.endswith(suffix) and len(filename) > len(suffix):
            return filename[: -len(suffix)], fmt
    return filename, None


@dataclass
class BackupManifest:
    """Metadata written into every backup; the only input restore validates against"""

    id: str
    project_name: str
    version: str
    timestamp: str
    runtime_version: str
    platform: str
    stats: dict[str, int]
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the manifest's JSON key names"""
        return {
            "id": self.id,
            "projectName": self.project_name,
            "version": self.version,
            "timestamp": self.timestamp,
            # Key name kept for compatibility with existing manifests
            "nodeVersion": self.runtime_version,
            "platform": self.platform,
            "stats": dict(self.stats),
            "config": self.config,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupManifest":
        """Create manifest from its JSON form

        Raises:
            KeyError: If id or projectName is missing
        """
        stats = data.get("stats") or {}
        return cls(
            id=data["id"],
            project_name=data["projectName"],
            version=str(data.get("version", "unknown")),
            timestamp=data.get("timestamp", ""),
            runtime_version=data.get("nodeVersion", ""),
            platform=data.get("platform", ""),
            stats={
                "regular": int(stats.get("regular", 0)),
                "encrypted": int(stats.get("encrypted", 0)),
            },
            config=data.get("config") or {},
        )


@dataclass
class BackupInfo:
    """One entry in the retention path"""

    id: str
    filename: str
    path: Path
    size: int
    created: datetime
    type: str  # 'archive' or 'directory'


@dataclass
class StagedFile:
    """A file to place in the staging tree, read from ``source``"""

    source: Path
    relative_path: Path


@dataclass
class FileOutcome:
    """Tagged result of one per-file operation"""

    path: Path
    success: bool
    error: str | None = None
    output: Path | None = None

    @classmethod
    def ok(cls, path: Path, output: Path | None = None) -> "FileOutcome":
        return cls(path=path, success=True, output=output)

    @classmethod
    def failed(cls, path: Path, error: str) -> "FileOutcome":
        return cls(path=path, success=False, error=error)


@dataclass
class BatchResult:
    """Aggregated outcomes of a bulk file phase"""

    succeeded: list[FileOutcome] = field(default_factory=list)
    failed: list[FileOutcome] = field(default_factory=list)

    def add(self, outcome: FileOutcome) -> None:
        if outcome.success:
            self.succeeded.append(outcome)
        else:
            self.failed.append(outcome)

    def extend(self, other: "BatchResult") -> None:
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)

    @property
    def count(self) -> int:
        return len(self.succeeded)

    def warnings(self) -> list[str]:
        return [f"{outcome.path}: {outcome.error}" for outcome in self.failed]


@dataclass
class BackupResult:
    """Result of a backup operation"""

    backup_id: str
    path: Path
    manifest: BackupManifest
    regular: BatchResult
    encrypted: BatchResult
    redacted: BatchResult

    @property
    def warnings(self) -> list[str]:
        return self.redacted.warnings() + self.encrypted.warnings() + self.regular.warnings()


@dataclass
class RestoreResult:
    """Result of a restore operation"""

    backup_id: str
    target: Path
    manifest: BackupManifest
    files: BatchResult
    decrypted: BatchResult = field(default_factory=BatchResult)
    warnings: list[str] = field(default_factory=list)
    configured_keys: list[str] = field(default_factory=list)

    @property
    def all_warnings(self) -> list[str]:
        return self.files.warnings() + self.decrypted.warnings() + self.warnings
