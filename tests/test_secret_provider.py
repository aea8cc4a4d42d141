"""Tests for secret providers and env-file updates"""

from snapkeep.utils import secret_provider
from snapkeep.utils.secret_provider import (
    PromptSecretProvider,
    SkipSecretProvider,
    StaticSecretProvider,
    update_env_file,
)


def test_append_to_missing_file(tmp_path):
    env_file = tmp_path / ".env"
    assert update_env_file(env_file, "GITHUB_TOKEN", "ghp_1234567890") is False
    assert env_file.read_text() == "GITHUB_TOKEN=ghp_1234567890\n"


def test_append_adds_missing_newline(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("API_KEY=abc")
    update_env_file(env_file, "GITHUB_TOKEN", "ghp_1234567890")
    assert env_file.read_text() == "API_KEY=abc\nGITHUB_TOKEN=ghp_1234567890\n"


def test_replace_existing_line_only(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("API_KEY=abc\nGITHUB_TOKEN=old\nMY_GITHUB_TOKEN=keep\n")

    assert update_env_file(env_file, "GITHUB_TOKEN", "new\\value$1") is True
    assert env_file.read_text() == "API_KEY=abc\nGITHUB_TOKEN=new\\value$1\nMY_GITHUB_TOKEN=keep\n"


def test_static_and_skip_providers():
    assert SkipSecretProvider().get_secret("GITHUB_TOKEN") is None
    provider = StaticSecretProvider({"GITHUB_TOKEN": "ghp_1234567890", "EMPTY": ""})
    assert provider.get_secret("GITHUB_TOKEN") == "ghp_1234567890"
    assert provider.get_secret("EMPTY") is None
    assert provider.get_secret("OTHER") is None


def test_prompt_rejects_short_values(monkeypatch):
    answers = iter(["short", "  ghp_1234567890  "])
    monkeypatch.setattr(secret_provider.click, "prompt", lambda *args, **kwargs: next(answers))
    monkeypatch.setattr(secret_provider.click, "echo", lambda *args, **kwargs: None)

    assert PromptSecretProvider().get_secret("GITHUB_TOKEN") == "ghp_1234567890"


def test_prompt_empty_answer_skips(monkeypatch):
    monkeypatch.setattr(secret_provider.click, "prompt", lambda *args, **kwargs: "")
    assert PromptSecretProvider().get_secret("GITHUB_TOKEN") is None
