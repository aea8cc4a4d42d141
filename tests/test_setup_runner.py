"""Tests for post-restore setup commands"""

import subprocess

from snapkeep.utils import setup_runner as setup_runner_module
from snapkeep.utils.setup_runner import SetupRunner


def completed(cmd, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


def test_needs_install_requires_manifest(tmp_path):
    runner = SetupRunner(install_command=["npm", "install"])
    assert not runner.needs_install(tmp_path)

    (tmp_path / "package.json").write_text("{}")
    assert runner.needs_install(tmp_path)
    assert not SetupRunner(install_command=[]).needs_install(tmp_path)


def test_needs_schema_setup_requires_directory(tmp_path):
    runner = SetupRunner(schema_commands=[["npx", "prisma", "generate"]])
    assert not runner.needs_schema_setup(tmp_path)

    (tmp_path / "prisma").mkdir()
    assert runner.needs_schema_setup(tmp_path)


def test_install_success(tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs["cwd"]))
        return completed(cmd)

    monkeypatch.setattr(setup_runner_module.subprocess, "run", fake_run)
    success, message = SetupRunner(install_command=["npm", "install"]).install_dependencies(tmp_path)

    assert success
    assert calls == [(["npm", "install"], tmp_path)]


def test_install_failure_gives_manual_guidance(tmp_path, monkeypatch):
    monkeypatch.setattr(
        setup_runner_module.subprocess, "run", lambda cmd, **kwargs: completed(cmd, 1, stderr="npm ERR! boom\n")
    )
    success, message = SetupRunner(install_command=["npm", "install"]).install_dependencies(tmp_path)

    assert not success
    assert "npm ERR! boom" in message
    assert "Please run 'npm install' manually" in message


def test_schema_stops_at_first_failure(tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return completed(cmd, 1 if cmd[0] == "npx" else 0)

    monkeypatch.setattr(setup_runner_module.subprocess, "run", fake_run)
    runner = SetupRunner(schema_commands=[["npx", "prisma", "generate"], ["npm", "run", "db:push"]])
    success, message = runner.setup_schema(tmp_path)

    assert not success
    assert calls == [["npx", "prisma", "generate"]]
    assert "'npm run db:push'" in message


def test_timeout_is_reported(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(setup_runner_module.subprocess, "run", fake_run)
    success, message = SetupRunner(install_command=["npm", "install"], timeout=5).install_dependencies(tmp_path)

    assert not success
    assert "timed out after 5s" in message


def test_missing_executable(tmp_path):
    runner = SetupRunner(install_command=["snapkeep-no-such-command-xyz"])
    success, message = runner.install_dependencies(tmp_path)

    assert not success
    assert "Command not found" in message


def test_from_config(config):
    runner = SetupRunner.from_config(config)
    assert runner.install_command == []
    assert runner.dependency_manifest == "package.json"
    assert runner.timeout == 1800
