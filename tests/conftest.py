"""Shared fixtures: a small project tree and a config pointed at it"""

from datetime import datetime, timedelta, timezone

import pytest

from snapkeep.core.config_manager import ConfigManager

ROUTE_SOURCE = 'export const GITHUB_TOKEN = "ghp_secret123";\nexport async function GET() { return fetch(url); }\n'

# Setup hooks are disabled unless a test turns them on
NO_COMMANDS = {"commands": {"install": [], "schema": []}}


@pytest.fixture
def project(tmp_path):
    """Project tree with regular, secret, route, excluded and log files"""
    root = tmp_path / "myapp"
    files = {
        "README.md": "# My App\n",
        "src/index.js": "console.log('hello');\n",
        "src/app/api/users/route.ts": ROUTE_SOURCE,
        ".env": "API_KEY=abc123\nGITHUB_TOKEN=old-token-value\n",
        "node_modules/lib/index.js": "module.exports = {};\n",
        "debug.log": "noise\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def clock():
    """Deterministic clock advancing one second per call"""
    state = {"now": datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)}

    def tick():
        state["now"] += timedelta(seconds=1)
        return state["now"]

    return tick


@pytest.fixture
def make_config(project):
    def _make(**overrides):
        settings = {**NO_COMMANDS, **overrides}
        return ConfigManager(project, overrides=settings)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()
