"""Post-restore setup commands (dependency install, schema setup)"""

import logging
import subprocess
from pathlib import Path

DEFAULT_COMMAND_TIMEOUT = 1800  # 30 min


def _format(cmd: list[str]) -> str:
    return " ".join(cmd)


class SetupRunner:
    """Runs the project's own setup commands as opaque subprocesses

    Output is captured and only surfaced when a command fails. Failures are
    reported back to the caller, never raised.
    """

    def __init__(
        self,
        install_command: list[str] | None = None,
        schema_commands: list[list[str]] | None = None,
        dependency_manifest: str = "package.json",
        schema_dir: str = "prisma",
        timeout: int = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.install_command = list(install_command or [])
        self.schema_commands = [list(cmd) for cmd in schema_commands or []]
        self.dependency_manifest = dependency_manifest
        self.schema_dir = schema_dir
        self.timeout = timeout
        self.logger = logging.getLogger("SetupRunner")

    @classmethod
    def from_config(cls, config) -> "SetupRunner":
        return cls(
            install_command=config.get_setting("commands.install", []),
            schema_commands=config.get_setting("commands.schema", []),
            dependency_manifest=config.get_setting("commands.dependency_manifest", "package.json"),
            schema_dir=config.get_setting("commands.schema_dir", "prisma"),
            timeout=config.get_int_setting("commands.timeout", DEFAULT_COMMAND_TIMEOUT),
        )

    def _run(self, cmd: list[str], cwd: Path) -> tuple[bool, str]:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            return False, f"Command not found: {cmd[0]}"
        except subprocess.TimeoutExpired:
            return False, f"'{_format(cmd)}' timed out after {self.timeout}s"
        except OSError as e:
            return False, f"'{_format(cmd)}' could not be started: {e}"

        if result.returncode != 0:
            self.logger.debug(f"{_format(cmd)} stdout: {result.stdout}")
            self.logger.debug(f"{_format(cmd)} stderr: {result.stderr}")
            detail = (result.stderr or result.stdout).strip().splitlines()
            tail = detail[-1] if detail else "no output"
            return False, f"'{_format(cmd)}' exited with {result.returncode}: {tail}"
        return True, f"'{_format(cmd)}' completed"

    def needs_install(self, target: Path) -> bool:
        return bool(self.install_command) and (target / self.dependency_manifest).exists()

    def needs_schema_setup(self, target: Path) -> bool:
        return bool(self.schema_commands) and (target / self.schema_dir).is_dir()

    def install_dependencies(self, target: Path) -> tuple[bool, str]:
        """Run the dependency installer in ``target``"""
        self.logger.info(f"Installing dependencies: {_format(self.install_command)}")
        success, message = self._run(self.install_command, target)
        if not success:
            self.logger.warning(f"Could not install dependencies automatically: {message}")
            return False, f"{message}. Please run '{_format(self.install_command)}' manually"
        return True, "Dependencies installed successfully"

    def setup_schema(self, target: Path) -> tuple[bool, str]:
        """Run the schema/database setup commands in order, stopping at the first failure"""
        for cmd in self.schema_commands:
            self.logger.info(f"Schema setup: {_format(cmd)}")
            success, message = self._run(cmd, target)
            if not success:
                manual = " and ".join(f"'{_format(c)}'" for c in self.schema_commands)
                self.logger.warning(f"Could not set up database automatically: {message}")
                return False, f"{message}. Please run {manual} manually"
        return True, "Database setup completed"
