"""Restore Engine for Snapkeep

Restores a backup into a working tree: locate, extract to a staging area,
read and validate the manifest, merge regular files into the target, then run
the project's setup hooks and fill in requested secrets.
"""

import json
import logging
import os
import secrets
import shutil
import sys
import tarfile
from datetime import datetime
from pathlib import Path

from ..utils.progress import RestoreStage, TaskRegistry
from ..utils.retention_manager import RetentionManager
from ..utils.secret_provider import SecretProvider, SkipSecretProvider, update_env_file
from ..utils.setup_runner import SetupRunner
from .config_manager import ConfigManager
from .encryption import ContentEncryptor
from .errors import (
    BackupNotFoundError,
    ExtractionError,
    InvalidBackupError,
    ProjectMismatchError,
    RestoreError,
    SnapkeepError,
)
from .models import ARCHIVE_FORMATS, ENCRYPTED_SUFFIX, MANIFEST_FILE, BackupManifest, BatchResult, FileOutcome, RestoreResult


class RestoreEngine:
    """Restore orchestrator"""

    def __init__(
        self,
        config_manager: ConfigManager,
        encryptor: ContentEncryptor | None = None,
        registry: TaskRegistry | None = None,
        secret_provider: SecretProvider | None = None,
        setup_runner: SetupRunner | None = None,
    ):
        self.config = config_manager
        storage_paths = self.config.get_storage_paths()
        self.local_path: Path = storage_paths["local"]
        self.temp_path: Path = storage_paths["temp"]
        self._encryptor = encryptor
        self.registry = registry or TaskRegistry()
        self.secret_provider = secret_provider or SkipSecretProvider()
        self.setup_runner = setup_runner or SetupRunner.from_config(self.config)
        self.logger = logging.getLogger("RestoreEngine")

    @property
    def encryptor(self) -> ContentEncryptor:
        # Only the opt-in decrypt path needs the key
        if self._encryptor is None:
            self._encryptor = ContentEncryptor.from_key_file(self.config.key_file)
        return self._encryptor

    @staticmethod
    def _validate_backup_id(backup_id: str) -> None:
        """Ensure the identifier is a plain name that cannot escape the storage directory"""
        path = Path(backup_id)
        if not backup_id or path.name != backup_id or ".." in path.parts:
            raise RestoreError(
                f"Invalid backup id: '{backup_id}'. Must be a plain name with no path components.",
                stage=RestoreStage.LOCATING.value,
            )

    @staticmethod
    def _validate_restore_target(target_path: Path) -> None:
        """Validate that a restore target path is not a protected system directory"""
        resolved = target_path.resolve()
        protected_prefixes = ("/bin", "/sbin", "/usr", "/etc", "/boot", "/dev", "/proc", "/sys", "/lib", "/lib64")
        for prefix in protected_prefixes:
            if str(resolved) == prefix or str(resolved).startswith(prefix + "/"):
                raise RestoreError(
                    f"Restore target '{resolved}' is inside a protected system directory.",
                    stage=RestoreStage.VALIDATING.value,
                )

    @staticmethod
    def _safe_extractall(tar: tarfile.TarFile, path: str):
        """Safely extract all members from a tar archive, preventing path traversal

        Rejects members with absolute paths or '..' components that could write
        files outside the target directory.
        """
        target = Path(path).resolve()
        safe_members = []
        for member in tar.getmembers():
            if os.path.isabs(member.name) or ".." in Path(member.name).parts:
                raise ValueError(f"Tar member '{member.name}' would extract outside target directory")
            member_path = (target / member.name).resolve()
            if not str(member_path).startswith(str(target) + os.sep) and member_path != target:
                raise ValueError(f"Tar member '{member.name}' would extract outside target directory")
            safe_members.append(member)

        if sys.version_info >= (3, 12):
            tar.extractall(path, members=safe_members, filter="data")  # nosec B202
        else:
            tar.extractall(path, members=safe_members)  # noqa: S202  # nosec B202

    def list_backups(self):
        return RetentionManager(self.local_path, self.config.get_max_backups()).list_backups()

    def find_backup(self, backup_id: str) -> Path | None:
        """Archive or directory backup for ``backup_id``, archives first"""
        self._validate_backup_id(backup_id)
        for fmt in ARCHIVE_FORMATS:
            archive_path = self.local_path / f"{backup_id}.{fmt}"
            if archive_path.is_file():
                return archive_path

        dir_path = self.local_path / backup_id
        if dir_path.is_dir():
            return dir_path
        return None

    def _locate(self, backup_id: str) -> Path:
        backup_path = self.find_backup(backup_id)
        if backup_path is not None:
            return backup_path

        available = [b.id for b in self.list_backups()]
        if available:
            self.logger.info("Available backups: " + ", ".join(available))
        else:
            self.logger.info(f"No backups found in {self.local_path}")
        raise BackupNotFoundError(backup_id, available)

    def _extract(self, backup_path: Path) -> Path:
        """Unpack an archive, or copy a directory backup, into a fresh staging area"""
        extract_path = self.temp_path / f"restore-{datetime.now():%Y%m%d-%H%M%S}-{secrets.token_hex(3)}"
        extract_path.mkdir(parents=True)

        try:
            if backup_path.is_dir():
                shutil.copytree(backup_path, extract_path, dirs_exist_ok=True)
            else:
                with tarfile.open(backup_path, "r:*") as tar:
                    self._safe_extractall(tar, str(extract_path))
        except (OSError, tarfile.TarError, ValueError) as e:
            raise ExtractionError(
                f"Failed to extract backup {backup_path.name}: {e} (partial extraction kept at {extract_path})",
                stage=RestoreStage.EXTRACTING.value,
            ) from e

        self.logger.info(f"Extracted {backup_path.name} to {extract_path}")
        return extract_path

    @staticmethod
    def _find_content_root(extract_path: Path) -> Path | None:
        """Directory holding the manifest: the extraction root or one level below"""
        if (extract_path / MANIFEST_FILE).is_file():
            return extract_path
        for child in sorted(extract_path.iterdir()):
            if child.is_dir() and (child / MANIFEST_FILE).is_file():
                return child
        return None

    def read_manifest(self, content_root: Path | None) -> BackupManifest:
        if content_root is None:
            raise InvalidBackupError("Invalid backup: metadata not found", stage=RestoreStage.READING_MANIFEST.value)

        manifest_path = content_root / MANIFEST_FILE
        try:
            with open(manifest_path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("manifest is not a JSON object")
            return BackupManifest.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise InvalidBackupError(
                f"Invalid backup: failed to read backup metadata: {e}", stage=RestoreStage.READING_MANIFEST.value
            ) from e

    def validate_manifest(self, manifest: BackupManifest) -> None:
        expected = self.config.project_name
        if manifest.project_name != expected:
            raise ProjectMismatchError(expected, manifest.project_name)

        self.logger.info(
            f"Restoring backup {manifest.id} from {manifest.timestamp} (version {manifest.version}, "
            f"{manifest.stats.get('regular', 0)} regular, {manifest.stats.get('encrypted', 0)} encrypted)"
        )

    @staticmethod
    def _copy_file(source: Path, destination: Path) -> None:
        # copy2 would otherwise drop the file inside a same-named directory
        if destination.is_dir() and not destination.is_symlink():
            raise IsADirectoryError(f"{destination} is a directory")
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)

    def _copy_with_retry(self, source: Path, destination: Path, relative_path: Path) -> FileOutcome:
        """Copy one file; on failure remove the destination and try once more"""
        try:
            self._copy_file(source, destination)
            return FileOutcome.ok(relative_path, output=destination)
        except OSError as first_error:
            self.logger.debug(f"Copy of {relative_path} failed ({first_error}), retrying after removal")

        try:
            if destination.is_symlink() or destination.is_file():
                destination.unlink()
            self._copy_file(source, destination)
        except OSError as e:
            self.logger.warning(f"Could not restore {relative_path}: {e}")
            return FileOutcome.failed(relative_path, f"copy failed: {e}")
        return FileOutcome.ok(relative_path, output=destination)

    def _restore_tree(self, content_root: Path, target: Path) -> BatchResult:
        """Merge the extracted tree into ``target``, leaving encrypted files out"""
        skip_dirs = set(self.config.get_setting("restore.skip_dirs", []))
        result = BatchResult()

        def walk(src_dir: Path, top_level: bool) -> None:
            for entry in sorted(src_dir.iterdir()):
                if top_level and (entry.name == MANIFEST_FILE or entry.name in skip_dirs):
                    continue
                relative_path = entry.relative_to(content_root)
                if entry.is_dir():
                    walk(entry, top_level=False)
                elif not entry.name.endswith(ENCRYPTED_SUFFIX):
                    result.add(self._copy_with_retry(entry, target / relative_path, relative_path))

        walk(content_root, top_level=True)
        return result

    def _decrypt_tree(self, content_root: Path, target: Path) -> BatchResult:
        """Materialize every encrypted envelope into ``target`` under its original name"""
        skip_dirs = set(self.config.get_setting("restore.skip_dirs", []))
        result = BatchResult()

        for envelope in sorted(content_root.rglob(f"*{ENCRYPTED_SUFFIX}")):
            relative_envelope = envelope.relative_to(content_root)
            if relative_envelope.parts[0] in skip_dirs or not envelope.is_file():
                continue
            relative_path = relative_envelope.with_name(envelope.name[: -len(ENCRYPTED_SUFFIX)])
            try:
                self.encryptor.decrypt_file(envelope, target / relative_path)
            except (OSError, SnapkeepError) as e:
                self.logger.warning(f"Could not decrypt {relative_envelope}: {e}")
                result.add(FileOutcome.failed(relative_path, f"decryption failed: {e}"))
                continue
            result.add(FileOutcome.ok(relative_path, output=target / relative_path))
        return result

    def _configure_secrets(self, target: Path, result: RestoreResult) -> None:
        keys = self.config.get_setting("restore.require_user_input", []) or []
        env_file = target / self.config.get_setting("restore.env_file", ".env")

        for key in keys:
            value = self.secret_provider.get_secret(key)
            if not value:
                self.logger.info(f"Skipping {key} configuration (no value provided)")
                continue
            try:
                update_env_file(env_file, key, value)
            except OSError as e:
                self.logger.warning(f"Could not write {key} to {env_file}: {e}")
                result.warnings.append(f"Could not write {key} to {env_file.name}: {e}. Please add it manually")
                continue
            result.configured_keys.append(key)
            self.logger.info(f"Configured {key} in {env_file}")

    def _run_hooks(self, target: Path, result: RestoreResult, advance) -> None:
        if self.config.get_setting("restore.auto_install", True) and self.setup_runner.needs_install(target):
            advance(RestoreStage.INSTALLING_DEPENDENCIES)
            success, message = self.setup_runner.install_dependencies(target)
            if not success:
                result.warnings.append(message)

        if self.config.get_setting("restore.auto_migrate", True) and self.setup_runner.needs_schema_setup(target):
            advance(RestoreStage.SETTING_UP_SCHEMA)
            success, message = self.setup_runner.setup_schema(target)
            if not success:
                result.warnings.append(message)

    def restore(
        self,
        backup_id: str,
        target: Path | None = None,
        decrypt_secrets: bool = False,
        run_hooks: bool = True,
    ) -> RestoreResult:
        """Restore a backup into ``target`` (the project root by default)

        Raises:
            RestoreError: Subclass naming the failed stage; ``files_written``
                tells whether any target file had been touched
        """
        target = Path(target).resolve() if target else self.config.project_root
        task = self.registry.start("restore", backup_id, RestoreStage.LOCATING)
        stage = RestoreStage.LOCATING
        extract_path: Path | None = None
        files_written = False

        def advance(next_stage: RestoreStage) -> None:
            nonlocal stage
            stage = next_stage
            self.registry.advance(task, next_stage)

        try:
            backup_path = self._locate(backup_id)

            advance(RestoreStage.EXTRACTING)
            extract_path = self._extract(backup_path)

            advance(RestoreStage.READING_MANIFEST)
            content_root = self._find_content_root(extract_path)
            manifest = self.read_manifest(content_root)

            advance(RestoreStage.VALIDATING)
            self.validate_manifest(manifest)
            self._validate_restore_target(target)

            advance(RestoreStage.RESTORING_FILES)
            try:
                files_written = True
                target.mkdir(parents=True, exist_ok=True)
                files = self._restore_tree(content_root, target)
                result = RestoreResult(backup_id=backup_id, target=target, manifest=manifest, files=files)
                if decrypt_secrets:
                    advance(RestoreStage.DECRYPTING)
                    result.decrypted = self._decrypt_tree(content_root, target)
            finally:
                shutil.rmtree(extract_path, ignore_errors=True)
                extract_path = None

            if run_hooks:
                self._run_hooks(target, result, advance)

            advance(RestoreStage.CONFIGURING)
            self._configure_secrets(target, result)

            for warning in result.all_warnings:
                self.registry.warn(task, warning)
            summary = f"Restored {result.files.count} files from {backup_id} into {target}"
            self.registry.complete(task, RestoreStage.DONE, summary)
            self.logger.info(summary)
            return result

        except SnapkeepError as e:
            if e.stage is None:
                e.stage = stage.value
            if isinstance(e, RestoreError):
                e.files_written = e.files_written or files_written
            self._log_failure(e, extract_path)
            self.registry.fail(task, RestoreStage.FAILED, str(e))
            raise
        except Exception as e:
            error = RestoreError(f"Restore failed: {e}", stage=stage.value, files_written=files_written)
            self._log_failure(error, extract_path)
            self.registry.fail(task, RestoreStage.FAILED, str(error))
            raise error from e

    def _log_failure(self, error: SnapkeepError, extract_path: Path | None) -> None:
        self.logger.error(f"Restore failed during {error.stage}: {error}")
        if extract_path is not None and extract_path.exists():
            self.logger.warning(f"Extraction area kept for diagnosis: {extract_path}")
