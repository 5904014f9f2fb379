"""Configuration utilities for the docsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from pathlib import Path

from docsync.core.config import AgentConfig
from docsync.core.errors import ConfigError


def get_config_dir() -> Path:
    """Get the configuration directory for docsync.

    Returns:
        Path to ~/.docsync or equivalent.
    """
    return Path.home() / ".docsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_dir() -> Path:
    """Default directory for state files and the instance lock."""
    return get_config_dir() / "state"


def load_agent_config(config_file: Path | None = None) -> AgentConfig:
    """Load and validate the agent configuration.

    Args:
        config_file: Config file to read (default: ~/.docsync/config.json).

    Raises:
        ConfigError: If the file is missing, is not valid JSON or holds
            invalid settings.
    """
    config_file = config_file or get_config_file()
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_file}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_file}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must contain a JSON object")
    return AgentConfig.from_dict(data, default_state_dir=get_state_dir())
