"""Count-based retention for the backup storage directory"""

import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..core.models import BackupInfo, split_archive_name

# <project>-<YYYY-MM-DDTHH-MM-SS-mmmZ>-<8 hex>
BACKUP_ID_TIMESTAMP = re.compile(r"-(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3})Z-[0-9a-f]{8}$")


def parse_backup_timestamp(backup_id: str) -> datetime | None:
    """Creation time encoded in a backup identifier, if it has one"""
    match = BACKUP_ID_TIMESTAMP.search(backup_id)
    if not match:
        return None
    try:
        parsed = datetime.strptime(match.group(1), "%Y-%m-%dT%H-%M-%S-%f")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


class RetentionManager:
    """Keep the newest ``max_backups`` entries of a storage directory"""

    def __init__(self, storage_path: Path, max_backups: int):
        if max_backups < 1:
            raise ValueError(f"max_backups must be at least 1, got {max_backups}")
        self.storage_path = Path(storage_path)
        self.max_backups = max_backups
        self.logger = logging.getLogger("RetentionManager")

    def list_backups(self) -> list[BackupInfo]:
        """All archive and directory backups, newest first"""
        if not self.storage_path.exists():
            return []

        backups = []
        for entry in self.storage_path.iterdir():
            if entry.is_symlink():
                continue

            backup_id, archive_format = split_archive_name(entry.name)
            if entry.is_dir():
                backup_type = "directory"
            elif entry.is_file() and archive_format:
                backup_type = "archive"
            else:
                continue

            stat = entry.stat()
            created = parse_backup_timestamp(backup_id) or datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            backups.append(
                BackupInfo(
                    id=backup_id,
                    filename=entry.name,
                    path=entry,
                    size=stat.st_size if backup_type == "archive" else self._directory_size(entry),
                    created=created,
                    type=backup_type,
                )
            )

        backups.sort(key=lambda b: (b.created, b.filename), reverse=True)
        return backups

    @staticmethod
    def _directory_size(path: Path) -> int:
        total = 0
        for item in path.rglob("*"):
            try:
                if item.is_file():
                    total += item.stat().st_size
            except OSError:
                pass
        return total

    def apply_retention(self, dry_run: bool = False) -> dict[str, Any]:
        """Delete every backup beyond the newest ``max_backups``

        Args:
            dry_run: Preview without actually deleting

        Returns:
            Report of retention actions
        """
        backups = self.list_backups()
        keep_list = backups[: self.max_backups]
        delete_list = backups[self.max_backups :]

        deleted = []
        errors = []
        if not dry_run:
            for backup in delete_list:
                try:
                    if backup.type == "directory":
                        shutil.rmtree(backup.path)
                    else:
                        backup.path.unlink()
                    deleted.append(backup.filename)
                    self.logger.info(f"Deleted old backup: {backup.filename}")
                except OSError as e:
                    self.logger.error(f"Failed to delete {backup.filename}: {e}")
                    errors.append(f"{backup.filename}: {e}")

        return {
            "total_backups": len(backups),
            "max_backups": self.max_backups,
            "kept": [b.filename for b in keep_list],
            "to_delete": [b.filename for b in delete_list],
            "deleted": deleted,
            "errors": errors,
            "space_to_recover": sum(b.size for b in delete_list),
            "dry_run": dry_run,
        }
