"""Secret providers and environment-file updates used at the end of a restore"""

import logging
import re
from pathlib import Path
from typing import Protocol

import click

MIN_TOKEN_LENGTH = 10

logger = logging.getLogger("Secrets")


class SecretProvider(Protocol):
    """Supplies one secret value, or None to skip"""

    def get_secret(self, key: str) -> str | None: ...


class SkipSecretProvider:
    """Non-interactive contexts: never supplies anything"""

    def get_secret(self, key: str) -> str | None:
        return None


class StaticSecretProvider:
    """Values known up front (tests, environment passthrough)"""

    def __init__(self, values: dict[str, str]):
        self.values = dict(values)

    def get_secret(self, key: str) -> str | None:
        return self.values.get(key) or None


class PromptSecretProvider:
    """Asks on the terminal with hidden input; an empty answer skips"""

    def __init__(self, min_length: int = MIN_TOKEN_LENGTH):
        self.min_length = min_length

    def get_secret(self, key: str) -> str | None:
        while True:
            try:
                value = click.prompt(
                    f"Enter your {key} (optional, press Enter to skip)",
                    default="",
                    show_default=False,
                    hide_input=True,
                )
            except click.Abort:
                logger.warning(f"Prompt for {key} aborted, skipping")
                return None

            value = value.strip()
            if not value:
                return None
            if len(value) >= self.min_length:
                return value
            click.echo(f"Invalid {key} format (expected at least {self.min_length} characters)")


def update_env_file(env_file: Path, key: str, value: str) -> bool:
    """Set ``KEY=value`` in an env file, replacing an existing line or appending one

    Returns:
        True if an existing line was replaced
    """
    env_file = Path(env_file)
    content = env_file.read_text(encoding="utf-8") if env_file.exists() else ""

    line = f"{key}={value}"
    pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
    if pattern.search(content):
        content = pattern.sub(lambda _m: line, content, count=1)
        replaced = True
    else:
        if content and not content.endswith("\n"):
            content += "\n"
        content += line + "\n"
        replaced = False

    env_file.parent.mkdir(parents=True, exist_ok=True)
    env_file.write_text(content, encoding="utf-8")
    return replaced
