"""Configuration Manager for Snapkeep"""

import copy
import logging
from pathlib import Path
from typing import Any, cast

import yaml

from .errors import ConfigError

CONFIG_DIR_NAME = ".snapkeep"
SETTINGS_FILE = "settings.yaml"
KEY_FILE = ".backup_key"

# Top-level settings persisted into a backup manifest. Anything else (storage
# locations, commands, logging, keys added later) stays out of backups.
MANIFEST_CONFIG_FIELDS = ("project_name", "version", "backup", "compression", "restore")

DEFAULT_SETTINGS: dict[str, Any] = {
    "version": "1.0.0",
    "backup": {
        "include": ["**/*"],
        "exclude": [
            "node_modules/**",
            ".git/**",
            ".next/**",
            "backups/**",
            "*.log",
            "__pycache__/**",
        ],
        "encrypt": [".env", ".env.*", "*.pem", "*.key"],
        "special_handling": {
            "routes": {
                "include": ["src/app/api/**/route.ts", "src/app/api/**/route.js"],
            },
        },
        "quick_include": [
            "src/**",
            "public/**",
            "prisma/**",
            "package.json",
            "package-lock.json",
            "tsconfig.json",
            "README.md",
            ".env.example",
        ],
        "max_workers": 1,
        "keep_staging_on_failure": False,
    },
    "compression": {"enabled": True, "format": "tar.gz"},
    "storage": {"local": {"path": "backups", "max_backups": 10}},
    "restore": {
        "auto_install": True,
        "auto_migrate": True,
        "require_user_input": ["GITHUB_TOKEN"],
        "env_file": ".env",
        "skip_dirs": [CONFIG_DIR_NAME, "backup-system"],
    },
    "commands": {
        "install": ["npm", "install"],
        "dependency_manifest": "package.json",
        "schema": [["npx", "prisma", "generate"], ["npm", "run", "db:push"]],
        "schema_dir": "prisma",
        "timeout": 1800,
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested mappings merge, everything else replaces"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigManager:
    """Manages all configuration for the backup system"""

    def __init__(
        self,
        project_root: str | Path | None = None,
        config_dir: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        self.project_root = Path(project_root or Path.cwd()).resolve()
        self.config_dir = Path(config_dir) if config_dir else self.project_root / CONFIG_DIR_NAME
        if not self.config_dir.is_absolute():
            self.config_dir = self.project_root / self.config_dir
        self.settings_file = self.config_dir / SETTINGS_FILE
        self.key_file = self.config_dir / KEY_FILE
        self.logger = logging.getLogger("ConfigManager")

        user_settings = self._load_yaml(self.settings_file)
        if overrides:
            user_settings = _deep_merge(user_settings, overrides)
        self.settings = _deep_merge(DEFAULT_SETTINGS, user_settings)
        self.settings.setdefault("project_name", self.project_root.name)

    def _load_yaml(self, file_path: Path) -> dict[str, Any]:
        """Load YAML configuration file"""
        if not file_path.exists():
            self.logger.debug(f"No settings file at {file_path}, using defaults")
            return {}

        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read settings file {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {file_path} must contain a mapping at the top level")
        return data

    def _save_yaml(self, data: dict[str, Any], file_path: Path) -> None:
        """Save configuration to YAML file"""
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def write_default_settings(self, force: bool = False) -> bool:
        """Write the effective settings to settings.yaml

        Returns:
            False if the file already exists and ``force`` is not set
        """
        if self.settings_file.exists() and not force:
            return False
        self._save_yaml(self.settings, self.settings_file)
        self.logger.info(f"Wrote settings to {self.settings_file}")
        return True

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value with optional default

        Args:
            key: Setting key (supports nested keys with dot notation, e.g., 'storage.local.path')
            default: Default value if setting not found

        Returns:
            Setting value or default
        """
        keys = key.split(".")
        value: Any = self.settings

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    @property
    def project_name(self) -> str:
        return str(self.settings["project_name"])

    @property
    def version(self) -> str:
        return str(self.get_setting("version", "1.0.0"))

    def _resolve(self, value: str | Path) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path

    def get_storage_paths(self) -> dict[str, Path]:
        """Get storage paths from settings

        Returns:
            Dict with 'local' (retention path) and 'temp' (staging root)
        """
        local = self._resolve(self.get_setting("storage.local.path", "backups"))
        temp_setting = self.get_setting("storage.temp_path")
        temp = self._resolve(temp_setting) if temp_setting else self.config_dir / "temp"
        return {"local": local, "temp": temp}

    def get_int_setting(self, key: str, default: int) -> int:
        """Integer setting; a value that is not a whole number is a ConfigError"""
        value = self.get_setting(key, default)
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from e

    def get_max_backups(self) -> int:
        value = self.get_int_setting("storage.local.max_backups", 10)
        if value < 1:
            raise ConfigError(f"storage.local.max_backups must be at least 1, got {value}")
        return value

    def get_patterns(self, quick: bool = False) -> dict[str, list[str]]:
        """Get include/exclude/encrypt pattern lists

        Args:
            quick: Use the quick include set instead of the full one
        """
        include_key = "backup.quick_include" if quick else "backup.include"
        return {
            "include": list(self.get_setting(include_key, [])),
            "exclude": list(self.get_setting("backup.exclude", [])),
            "encrypt": list(self.get_setting("backup.encrypt", [])),
        }

    def get_route_patterns(self) -> list[str]:
        return cast("list[str]", list(self.get_setting("backup.special_handling.routes.include", [])))

    def get_log_file(self) -> Path:
        log_file = self.get_setting("logging.file")
        return self._resolve(log_file) if log_file else self.config_dir / "logs" / "snapkeep.log"

    def manifest_snapshot(self) -> dict[str, Any]:
        """Configuration persisted into a manifest, restricted to the allow-listed fields"""
        return {key: copy.deepcopy(self.settings[key]) for key in MANIFEST_CONFIG_FIELDS if key in self.settings}
