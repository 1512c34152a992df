"""Provider configuration loading."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from toolrelay.errors import ConfigError
from toolrelay.schemas import DEFAULT_EXECUTE_TIMEOUT_MS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = ".toolrelay.json"

# Handshake and per-request bounds
DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
DEFAULT_STARTUP_TIMEOUT = 30.0  # seconds


class ProviderConfig(BaseModel):
    """How to launch one provider."""

    command: str = Field(..., min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None


class RelayConfig(BaseModel):
    """Loaded relay configuration."""

    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    config_dir: Path = Field(default_factory=Path.cwd)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    startup_timeout: float = Field(default=DEFAULT_STARTUP_TIMEOUT, gt=0)
    execute_timeout_ms: int = Field(default=DEFAULT_EXECUTE_TIMEOUT_MS, gt=0)


def _extract_servers(document: dict[str, Any]) -> dict[str, Any]:
    """Find the provider mapping in any of the accepted document shapes."""
    # {"config": {"mcpServers": {...}}}
    inner = document.get("config")
    if isinstance(inner, dict) and isinstance(inner.get("mcpServers"), dict):
        return inner["mcpServers"]
    # {"mcpServers": {...}}
    if isinstance(document.get("mcpServers"), dict):
        return document["mcpServers"]
    # Bare mapping of name -> {command, args}
    return {
        name: value
        for name, value in document.items()
        if isinstance(value, dict) and "command" in value
    }


def resolve_args(args: list[str], config_dir: Path) -> list[str]:
    """Resolve relative file arguments against the config file's directory.

    An argument is rewritten only when it is not a flag, not absolute, and
    names a file that exists under ``config_dir``.
    """
    resolved = []
    for arg in args:
        if arg.startswith("-") or Path(arg).is_absolute():
            resolved.append(arg)
            continue
        candidate = config_dir / arg
        if candidate.is_file():
            resolved.append(str(candidate.resolve()))
        else:
            resolved.append(arg)
    return resolved


def load_config(path: Path | str) -> RelayConfig:
    """Load and validate a provider configuration file.

    Args:
        path: Path to the JSON configuration document

    Returns:
        RelayConfig with provider arguments resolved

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path).expanduser().resolve()
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        document = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config {config_path}: {e}") from e

    if not isinstance(document, dict):
        raise ConfigError(f"Config {config_path} must be a JSON object")

    config_dir = config_path.parent
    providers: dict[str, ProviderConfig] = {}
    for name, raw in _extract_servers(document).items():
        try:
            provider = ProviderConfig.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid config for provider '{name}': {e}") from e
        providers[name] = provider.model_copy(
            update={"args": resolve_args(provider.args, config_dir)}
        )

    settings = document.get("settings", {})
    try:
        config = RelayConfig(providers=providers, config_dir=config_dir, **settings)
    except (PydanticValidationError, TypeError) as e:
        raise ConfigError(f"Invalid settings in {config_path}: {e}") from e

    logger.info(f"Loaded {len(providers)} provider(s) from {config_path}")
    return config
