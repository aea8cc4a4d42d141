"""Tests for the backup engine"""

import json
import os
import re
import stat
import tarfile
from datetime import datetime, timezone

import pytest

from snapkeep.core.backup_engine import BackupEngine, format_backup_timestamp
from snapkeep.core.errors import ConfigError, PatternError, SnapkeepError
from snapkeep.utils.progress import BackupStage, TaskRegistry

BACKUP_ID = re.compile(r"^myapp-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z-[0-9a-f]{8}$")


def archive_members(path):
    with tarfile.open(path, "r:*") as tar:
        return {member.name for member in tar.getmembers() if member.isfile()}


def read_member(path, name):
    with tarfile.open(path, "r:*") as tar:
        return tar.extractfile(name).read()


@pytest.fixture
def engine(config, clock):
    return BackupEngine(config, clock=clock)


def test_backup_id_format(engine, clock):
    backup_id = engine.generate_backup_id()
    assert BACKUP_ID.match(backup_id)
    assert format_backup_timestamp(clock()) == "2024-01-15T10-00-02-000Z"


def test_backup_ids_differ_within_one_millisecond(engine):
    moment = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
    ids = {engine.generate_backup_id(moment) for _ in range(100)}

    assert len(ids) == 100
    assert all(backup_id.startswith("myapp-2024-01-15T10-00-00-000Z-") for backup_id in ids)


def test_create_archive_backup(engine, project):
    result = engine.create_backup()
    backup_id = result.backup_id

    assert BACKUP_ID.match(backup_id)
    assert result.path == engine.local_path / f"{backup_id}.tar.gz"
    assert stat.S_IMODE(os.stat(result.path).st_mode) == 0o600

    members = archive_members(result.path)
    assert members == {
        f"{backup_id}/backup-metadata.json",
        f"{backup_id}/README.md",
        f"{backup_id}/src/index.js",
        f"{backup_id}/src/app/api/users/route.ts",
        f"{backup_id}/.env.encrypted",
    }
    assert result.regular.count == 3
    assert result.encrypted.count == 1
    assert result.redacted.count == 1
    assert result.warnings == []


def test_manifest_contents(engine):
    result = engine.create_backup()
    manifest = json.loads(read_member(result.path, f"{result.backup_id}/backup-metadata.json"))

    assert manifest["id"] == result.backup_id
    assert manifest["projectName"] == "myapp"
    assert manifest["version"] == "1.0.0"
    assert manifest["timestamp"].endswith("Z")
    assert manifest["nodeVersion"].startswith("python-")
    assert manifest["stats"] == {"regular": 3, "encrypted": 1}
    assert set(manifest["config"]) == {"project_name", "version", "backup", "compression", "restore"}


def test_route_files_are_redacted_in_backup_only(engine, project):
    original = (project / "src/app/api/users/route.ts").read_text()
    result = engine.create_backup()
    stored = read_member(result.path, f"{result.backup_id}/src/app/api/users/route.ts").decode()

    assert 'GITHUB_TOKEN=""' in stored
    assert "ghp_secret123" not in stored
    assert "export async function GET()" in stored
    assert (project / "src/app/api/users/route.ts").read_text() == original


def test_secret_files_only_stored_encrypted(engine, project):
    result = engine.create_backup()
    envelope = read_member(result.path, f"{result.backup_id}/.env.encrypted").decode()

    assert "abc123" not in envelope
    assert engine.encryptor.loads(envelope) == (project / ".env").read_bytes()


def test_key_and_storage_never_enter_backup(engine):
    first = engine.create_backup()
    second = engine.create_backup()

    members = archive_members(second.path)
    assert not any("/backups/" in m or "/.snapkeep/" in m for m in members)
    assert first.backup_id != second.backup_id


def test_quick_backup_is_uncompressed_directory(engine):
    result = engine.create_backup(quick=True)

    assert result.path.is_dir()
    assert result.path == engine.local_path / result.backup_id
    assert (result.path / "backup-metadata.json").is_file()
    assert (result.path / "src" / "index.js").is_file()
    assert (result.path / "README.md").is_file()
    assert not (result.path / ".env.encrypted").exists()


def test_compression_disabled_stores_directory(make_config, clock):
    engine = BackupEngine(make_config(compression={"enabled": False}), clock=clock)
    result = engine.create_backup()

    assert result.path.is_dir()
    assert (result.path / ".env.encrypted").is_file()
    assert not (result.path / ".env").exists()


@pytest.mark.parametrize("fmt", ["tar.bz2", "tar.xz", "tar"])
def test_other_archive_formats(make_config, clock, fmt):
    engine = BackupEngine(make_config(compression={"format": fmt}), clock=clock)
    result = engine.create_backup()

    assert result.path.name == f"{result.backup_id}.{fmt}"
    assert f"{result.backup_id}/README.md" in archive_members(result.path)


def test_unknown_archive_format(make_config, clock):
    engine = BackupEngine(make_config(compression={"format": "zip"}), clock=clock)
    with pytest.raises(SnapkeepError) as exc_info:
        engine.create_backup()
    assert "zip" in str(exc_info.value)


def test_vcs_directories_are_not_archived(make_config, clock, project):
    (project / ".git").mkdir()
    (project / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    engine = BackupEngine(make_config(backup={"exclude": []}), clock=clock)

    result = engine.create_backup()
    members = archive_members(result.path)
    assert not any("/.git/" in m for m in members)
    assert f"{result.backup_id}/node_modules/lib/index.js" in members


def test_unreadable_route_file_is_left_out(engine, project):
    (project / "src/app/api/users/route.ts").write_bytes(b"\xff\xfe not utf-8")

    result = engine.create_backup()

    assert result.redacted.count == 0
    assert len(result.redacted.failed) == 1
    assert result.regular.count == 2
    assert f"{result.backup_id}/src/app/api/users/route.ts" not in archive_members(result.path)
    assert any("route.ts" in warning for warning in result.warnings)


def test_worker_pool_gives_same_result(make_config, clock, project):
    for i in range(10):
        (project / "src" / f"module{i}.js").write_text(f"export const n = {i};\n")
        (project / f".env.service{i}").write_text(f"PASSWORD=p{i}\n")
    engine = BackupEngine(make_config(backup={"max_workers": 4}), clock=clock)

    result = engine.create_backup()

    assert result.regular.count == 13
    assert result.encrypted.count == 11


def test_invalid_pattern_fails_before_writing(make_config, clock):
    engine = BackupEngine(make_config(backup={"exclude": ["[unclosed"]}), clock=clock)

    with pytest.raises(PatternError) as exc_info:
        engine.create_backup()

    assert exc_info.value.stage == "classifying"
    assert list(engine.local_path.iterdir()) == []
    assert list(engine.temp_path.iterdir()) == []


def test_failed_backup_can_keep_staging(make_config, clock):
    engine = BackupEngine(make_config(backup={"exclude": ["[unclosed"]}), clock=clock)

    with pytest.raises(PatternError):
        engine.create_backup(keep_staging_on_failure=True)

    kept = list(engine.temp_path.iterdir())
    assert len(kept) == 1
    assert BACKUP_ID.match(kept[0].name)


def test_stage_history(config, clock):
    registry = TaskRegistry()
    engine = BackupEngine(config, registry=registry, clock=clock)
    engine.create_backup()

    (task,) = registry.get_all_tasks()
    assert task.history == [
        BackupStage.INITIALIZING,
        BackupStage.CLASSIFYING,
        BackupStage.REDACTING,
        BackupStage.ENCRYPTING,
        BackupStage.COPYING,
        BackupStage.MANIFEST_WRITING,
        BackupStage.ARCHIVING,
        BackupStage.DONE,
    ]


def test_failed_stage_is_recorded(make_config, clock):
    registry = TaskRegistry()
    engine = BackupEngine(make_config(backup={"include": ["{broken"]}), registry=registry, clock=clock)

    with pytest.raises(PatternError):
        engine.create_backup()

    (task,) = registry.get_all_tasks()
    assert task.stage is BackupStage.FAILED
    assert "{broken" in task.error_message


def test_retention_after_backups(make_config, clock):
    engine = BackupEngine(make_config(storage={"local": {"max_backups": 2}}), clock=clock)
    ids = [engine.create_backup().backup_id for _ in range(3)]

    report = engine.cleanup_old_backups()

    assert report["deleted"] == [f"{ids[0]}.tar.gz"]
    assert [b.id for b in engine.list_backups()] == [ids[2], ids[1]]


def test_invalid_project_name(make_config, clock):
    engine = BackupEngine(make_config(project_name="bad name/../x"), clock=clock)
    with pytest.raises(ConfigError):
        engine.create_backup()
