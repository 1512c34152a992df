"""Pytest configuration and fixtures for toolrelay tests."""

import json
import sys
from pathlib import Path

import pytest

FAKE_PROVIDER = Path(__file__).parent / "fake_provider.py"


@pytest.fixture
def fake_provider_path() -> Path:
    """Path to the fake JSON-RPC provider script."""
    return FAKE_PROVIDER


@pytest.fixture
def provider_command():
    """Build (command, args) for launching the fake provider in a mode."""

    def build(*flags: str) -> tuple[str, list[str]]:
        return sys.executable, [str(FAKE_PROVIDER), *flags]

    return build


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a config document to a temp file and return its path."""

    def write(document: dict, name: str = ".toolrelay.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(document))
        return path

    return write


@pytest.fixture
def calc_config(write_config) -> Path:
    """Config with a single fake provider named 'calc'."""
    return write_config({
        "mcpServers": {
            "calc": {"command": sys.executable, "args": [str(FAKE_PROVIDER)]},
        },
        "settings": {"request_timeout": 5, "startup_timeout": 10},
    })


@pytest.fixture
def sample_large_content() -> str:
    """Generate large content for compaction testing."""
    return "This system relays tool calls between a client and its providers. " * 50
