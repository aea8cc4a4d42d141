"""Core Backup Engine for Snapkeep"""

import json
import logging
import platform
import re
import secrets
import shutil
import sys
import tarfile
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..utils.progress import BackupStage, TaskRegistry
from ..utils.retention_manager import RetentionManager
from .config_manager import ConfigManager
from .encryption import ContentEncryptor
from .errors import BackupError, ConfigError, SnapkeepError
from .file_filter import FileBuckets, FileFilter
from .models import (
    ARCHIVE_FORMATS,
    ENCRYPTED_SUFFIX,
    MANIFEST_FILE,
    BackupInfo,
    BackupManifest,
    BackupResult,
    BatchResult,
    FileOutcome,
    StagedFile,
)
from .redactor import CredentialRedactor

# Directory names never written into an archive
VCS_DIRS = {".git", ".hg", ".svn"}


def format_backup_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced, millisecond precision"""
    moment = moment.astimezone(timezone.utc)
    return f"{moment:%Y-%m-%dT%H-%M-%S}-{moment.microsecond // 1000:03d}Z"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupEngine:
    """Main backup orchestrator for a project tree"""

    def __init__(
        self,
        config_manager: ConfigManager,
        encryptor: ContentEncryptor | None = None,
        registry: TaskRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config_manager
        self.project_root = self.config.project_root
        storage_paths = self.config.get_storage_paths()
        self.local_path: Path = storage_paths["local"]
        self.temp_path: Path = storage_paths["temp"]
        self.encryptor = encryptor or ContentEncryptor.from_key_file(self.config.key_file)
        self.registry = registry or TaskRegistry()
        self.clock = clock or _utcnow
        self.logger = logging.getLogger("BackupEngine")

        self._init_storage()
        self.retention = RetentionManager(self.local_path, self.config.get_max_backups())

    def _init_storage(self) -> None:
        """Initialize storage directories"""
        for path in (self.local_path, self.temp_path):
            path.mkdir(parents=True, exist_ok=True)

    def _validate_identifier(self, name: str, identifier_type: str = "name") -> bool:
        """Validate project names before they become file names"""
        # Allow alphanumeric, underscores, hyphens, and dots
        if not re.match(r"^[a-zA-Z0-9_\-\.]+$", name) or name in (".", ".."):
            raise ConfigError(
                f"Invalid {identifier_type}: '{name}'. Only alphanumeric characters, underscores, hyphens, and dots allowed."
            )
        return True

    def generate_backup_id(self, moment: datetime | None = None) -> str:
        """Backup identifier: <project>-<timestamp>-<random hex>"""
        moment = moment or self.clock()
        return f"{self.config.project_name}-{format_backup_timestamp(moment)}-{secrets.token_hex(4)}"

    def _skip_dirs(self) -> list[Path]:
        """Tool-owned directories that must never be classified as project files"""
        return [self.local_path, self.temp_path, self.config.config_dir]

    def _archive_format(self) -> str:
        fmt = str(self.config.get_setting("compression.format", "tar.gz"))
        if fmt not in ARCHIVE_FORMATS:
            raise ConfigError(f"Unsupported compression format '{fmt}' (choose from {', '.join(ARCHIVE_FORMATS)})")
        return fmt

    def _run_batch(self, func: Callable[[Any], FileOutcome], items: Iterable[Any]) -> BatchResult:
        """Apply a per-file operation, sequentially or on a bounded worker pool"""
        items = list(items)
        max_workers = max(1, self.config.get_int_setting("backup.max_workers", 1))
        result = BatchResult()

        if max_workers == 1 or len(items) <= 1:
            for item in items:
                result.add(func(item))
            return result

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for outcome in executor.map(func, items):
                result.add(outcome)
        return result

    def _encrypt_one(self, staging: Path, source: Path, relative_path: Path) -> FileOutcome:
        destination = staging / f"{relative_path.as_posix()}{ENCRYPTED_SUFFIX}"
        try:
            self.encryptor.encrypt_file(source, destination)
        except (OSError, SnapkeepError) as e:
            self.logger.warning(f"Could not encrypt {relative_path}: {e}")
            return FileOutcome.failed(relative_path, f"encryption failed: {e}")
        return FileOutcome.ok(relative_path, output=destination)

    def _copy_one(self, staging: Path, staged: StagedFile) -> FileOutcome:
        destination = staging / staged.relative_path
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(staged.source, destination)
        except OSError as e:
            self.logger.warning(f"Could not copy {staged.relative_path}: {e}")
            return FileOutcome.failed(staged.relative_path, f"copy failed: {e}")
        return FileOutcome.ok(staged.relative_path, output=destination)

    def _redact_routes(
        self, file_filter: FileFilter, buckets: FileBuckets, redactor: CredentialRedactor
    ) -> tuple[list[StagedFile], BatchResult]:
        """Swap route files in the regular set for redacted copies"""
        staged: list[StagedFile] = []
        redacted = BatchResult()

        for source in sorted(buckets.regular):
            relative_path = buckets.relative(source)
            if not file_filter.is_route_file(relative_path):
                staged.append(StagedFile(source=source, relative_path=relative_path))
                continue

            outcome = redactor.redact_file(source, relative_path)
            redacted.add(outcome)
            if outcome.success:
                staged.append(redactor.staged(outcome))

        return staged, redacted

    def _build_manifest(self, backup_id: str, moment: datetime, regular: int, encrypted: int) -> BackupManifest:
        return BackupManifest(
            id=backup_id,
            project_name=self.config.project_name,
            version=self.config.version,
            timestamp=moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            runtime_version=f"python-{platform.python_version()}",
            platform=sys.platform,
            stats={"regular": regular, "encrypted": encrypted},
            config=self.config.manifest_snapshot(),
        )

    def _write_manifest(self, staging: Path, manifest: BackupManifest) -> Path:
        manifest_path = staging / MANIFEST_FILE
        try:
            with open(manifest_path, "w", encoding="utf-8") as f:
                json.dump(manifest.to_dict(), f, indent=2)
        except (OSError, TypeError, ValueError) as e:
            raise BackupError(f"Failed to write backup manifest: {e}", stage=BackupStage.MANIFEST_WRITING.value) from e
        self.logger.info(f"Wrote manifest {manifest_path}")
        return manifest_path

    @staticmethod
    def _vcs_filter(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo | None:
        if any(part in VCS_DIRS for part in tarinfo.name.split("/")):
            return None
        return tarinfo

    def _create_archive(self, backup_id: str, staging: Path) -> Path:
        """Pack the staging directory into <local>/<backup id>.<format>, content nested under the id"""
        fmt = self._archive_format()
        archive_path = self.local_path / f"{backup_id}.{fmt}"
        try:
            with tarfile.open(archive_path, ARCHIVE_FORMATS[fmt]) as tar:
                tar.add(staging, arcname=backup_id, filter=self._vcs_filter)
        except (OSError, tarfile.TarError) as e:
            if archive_path.exists():
                try:
                    archive_path.unlink()
                    self.logger.info(f"Cleaned up partial archive: {archive_path.name}")
                except OSError as cleanup_err:
                    self.logger.warning(f"Could not remove partial archive {archive_path.name}: {cleanup_err}")
            raise BackupError(f"Failed to create archive: {e}", stage=BackupStage.ARCHIVING.value) from e

        archive_path.chmod(0o600)
        return archive_path

    def _move_backup(self, backup_id: str, staging: Path) -> Path:
        """Move the staging directory to <local>/<backup id>, replacing any existing entry"""
        final_path = self.local_path / backup_id
        try:
            if final_path.exists():
                shutil.rmtree(final_path)
            shutil.move(str(staging), str(final_path))
        except OSError as e:
            raise BackupError(f"Failed to move backup into storage: {e}", stage=BackupStage.MOVING.value) from e
        return final_path

    def create_backup(self, quick: bool = False, keep_staging_on_failure: bool | None = None) -> BackupResult:
        """Snapshot the project tree into a new backup

        Args:
            quick: Use the quick include set and store uncompressed
            keep_staging_on_failure: Leave the staging directory for inspection
                if the run fails (defaults to the backup.keep_staging_on_failure setting)

        Returns:
            BackupResult with the final location and per-file outcomes

        Raises:
            SnapkeepError: On any unrecoverable stage failure
        """
        if keep_staging_on_failure is None:
            keep_staging_on_failure = bool(self.config.get_setting("backup.keep_staging_on_failure", False))

        project_name = self.config.project_name
        task = self.registry.start("backup", project_name, BackupStage.INITIALIZING)
        stage = BackupStage.INITIALIZING
        staging: Path | None = None
        scratch: Path | None = None
        succeeded = False

        def advance(next_stage: BackupStage) -> None:
            nonlocal stage
            stage = next_stage
            self.registry.advance(task, next_stage)

        try:
            self._validate_identifier(project_name, "project name")
            moment = self.clock()
            backup_id = self.generate_backup_id(moment)
            staging = self.temp_path / backup_id
            scratch = self.temp_path / f"{backup_id}-redacted"
            try:
                staging.mkdir(parents=True)
            except FileExistsError as e:
                staging = None
                raise BackupError(f"Staging directory already exists for {backup_id}", stage=stage.value) from e
            self.logger.info(f"Starting backup {backup_id} of {self.project_root}{' (quick)' if quick else ''}")

            advance(BackupStage.CLASSIFYING)
            patterns = self.config.get_patterns(quick=quick)
            file_filter = FileFilter(
                patterns["include"], patterns["exclude"], patterns["encrypt"], self.config.get_route_patterns()
            )
            buckets = file_filter.classify(self.project_root, skip_dirs=self._skip_dirs())

            advance(BackupStage.REDACTING)
            staged_regular, redacted = self._redact_routes(file_filter, buckets, CredentialRedactor(scratch))

            advance(BackupStage.ENCRYPTING)
            encrypted = self._run_batch(
                lambda source: self._encrypt_one(staging, source, buckets.relative(source)),
                sorted(buckets.encrypted),
            )

            advance(BackupStage.COPYING)
            regular = self._run_batch(lambda staged: self._copy_one(staging, staged), staged_regular)

            advance(BackupStage.MANIFEST_WRITING)
            manifest = self._build_manifest(backup_id, moment, regular.count, encrypted.count)
            self._write_manifest(staging, manifest)

            compress = bool(self.config.get_setting("compression.enabled", True)) and not quick
            if compress:
                advance(BackupStage.ARCHIVING)
                final_path = self._create_archive(backup_id, staging)
                shutil.rmtree(staging, ignore_errors=True)
            else:
                advance(BackupStage.MOVING)
                final_path = self._move_backup(backup_id, staging)

            result = BackupResult(
                backup_id=backup_id,
                path=final_path,
                manifest=manifest,
                regular=regular,
                encrypted=encrypted,
                redacted=redacted,
            )
            for warning in result.warnings:
                self.registry.warn(task, warning)
            summary = f"Backup created: {final_path} ({regular.count} regular, {encrypted.count} encrypted)"
            self.registry.complete(task, BackupStage.DONE, summary)
            self.logger.info(summary)
            succeeded = True
            return result

        except SnapkeepError as e:
            if e.stage is None:
                e.stage = stage.value
            self.logger.error(f"Backup failed during {e.stage}: {e}")
            self.registry.fail(task, BackupStage.FAILED, str(e))
            raise
        except Exception as e:
            self.logger.error(f"Backup failed during {stage.value}: {e}", exc_info=True)
            self.registry.fail(task, BackupStage.FAILED, str(e))
            raise BackupError(f"Backup failed: {e}", stage=stage.value) from e

        finally:
            if scratch is not None and scratch.exists():
                shutil.rmtree(scratch, ignore_errors=True)
            if not succeeded and staging is not None and staging.exists():
                if keep_staging_on_failure:
                    self.logger.warning(f"Staging directory kept for diagnosis: {staging}")
                else:
                    shutil.rmtree(staging, ignore_errors=True)

    def list_backups(self) -> list[BackupInfo]:
        """All backups in the storage directory, newest first"""
        return self.retention.list_backups()

    def cleanup_old_backups(self, dry_run: bool = False) -> dict[str, Any]:
        """Apply the max_backups retention policy to the storage directory"""
        return self.retention.apply_retention(dry_run=dry_run)
