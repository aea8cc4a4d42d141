"""Tests for settings loading and defaults"""

import pytest
import yaml

from snapkeep.core.config_manager import ConfigManager
from snapkeep.core.errors import ConfigError
from snapkeep.utils.setup_runner import SetupRunner


def write_settings(project, data):
    settings_file = project / ".snapkeep" / "settings.yaml"
    settings_file.parent.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(yaml.dump(data) if not isinstance(data, str) else data)
    return settings_file


def test_defaults(project):
    config = ConfigManager(project)
    project = project.resolve()

    assert config.project_name == "myapp"
    assert config.get_setting("compression.format") == "tar.gz"
    assert config.get_max_backups() == 10
    assert config.get_storage_paths()["local"] == project / "backups"
    assert config.get_storage_paths()["temp"] == project / ".snapkeep" / "temp"
    assert config.key_file == project / ".snapkeep" / ".backup_key"
    assert config.get_log_file() == project / ".snapkeep" / "logs" / "snapkeep.log"


def test_settings_file_merges_over_defaults(project):
    write_settings(project, {"project_name": "renamed", "storage": {"local": {"max_backups": 3}}})
    config = ConfigManager(project)

    assert config.project_name == "renamed"
    assert config.get_max_backups() == 3
    assert config.get_setting("storage.local.path") == "backups"
    assert ".env" in config.get_patterns()["encrypt"]


def test_overrides_win_over_settings_file(project):
    write_settings(project, {"compression": {"format": "tar.bz2"}})
    config = ConfigManager(project, overrides={"compression": {"format": "tar.xz"}})
    assert config.get_setting("compression.format") == "tar.xz"
    assert config.get_setting("compression.enabled") is True


def test_get_setting_default_for_missing_key(project):
    config = ConfigManager(project)
    assert config.get_setting("does.not.exist", "fallback") == "fallback"
    assert config.get_setting("backup.include.nested", 5) == 5


def test_quick_patterns(project):
    config = ConfigManager(project)
    assert config.get_patterns(quick=True)["include"] == config.get_setting("backup.quick_include")


def test_malformed_yaml_raises(project):
    write_settings(project, "backup: [unclosed\n")
    with pytest.raises(ConfigError):
        ConfigManager(project)


def test_non_mapping_settings_raise(project):
    write_settings(project, "- just\n- a list\n")
    with pytest.raises(ConfigError):
        ConfigManager(project)


def test_max_backups_must_be_positive(project):
    config = ConfigManager(project, overrides={"storage": {"local": {"max_backups": 0}}})
    with pytest.raises(ConfigError):
        config.get_max_backups()


@pytest.mark.parametrize("value", ["ten", "3.5", 3.5, [3], True])
def test_max_backups_must_be_an_integer(project, value):
    config = ConfigManager(project, overrides={"storage": {"local": {"max_backups": value}}})
    with pytest.raises(ConfigError, match="max_backups must be an integer"):
        config.get_max_backups()


def test_numeric_string_max_backups_is_accepted(project):
    write_settings(project, "storage:\n  local:\n    max_backups: \"4\"\n")
    assert ConfigManager(project).get_max_backups() == 4


def test_command_timeout_must_be_an_integer(project):
    config = ConfigManager(project, overrides={"commands": {"timeout": "soon"}})
    with pytest.raises(ConfigError, match="commands.timeout"):
        SetupRunner.from_config(config)


def test_manifest_snapshot_is_allow_listed(project):
    config = ConfigManager(project, overrides={"storage": {"local": {"path": "/srv/private"}}})
    snapshot = config.manifest_snapshot()

    assert set(snapshot) == {"project_name", "version", "backup", "compression", "restore"}
    assert "storage" not in snapshot
    assert "commands" not in snapshot

    snapshot["backup"]["include"].append("mutated")
    assert "mutated" not in config.get_setting("backup.include")


def test_write_default_settings(project):
    config = ConfigManager(project)

    assert config.write_default_settings() is True
    assert config.write_default_settings() is False
    assert config.write_default_settings(force=True) is True

    reloaded = ConfigManager(project)
    assert reloaded.settings == config.settings
