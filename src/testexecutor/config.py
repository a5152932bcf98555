"""Configuration loading and management for testexecutor."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from testexecutor.models import AppConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".testexecutor"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure the config directory exists."""
    config_dir = config_dir or DEFAULT_CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "logs").mkdir(parents=True, exist_ok=True)
    return config_dir


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)

    # Standard environment variable expansion
    value = os.path.expandvars(value)

    return value


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    expanded = os.path.expanduser(path)
    expanded = expand_env_vars(expanded)
    return expanded


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the testexecutor configuration.

    A missing file yields the defaults. The executor command and working
    directory are expanded (``~``, ``$VAR``, ``${env:VAR}``) before
    validation.
    """
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return AppConfig()

    try:
        data = load_yaml_file(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    executor = data.get("executor")
    if isinstance(executor, dict):
        if executor.get("command"):
            executor["command"] = expand_env_vars(str(executor["command"]))
        if executor.get("cwd"):
            executor["cwd"] = expand_path(str(executor["cwd"]))

    try:
        config = AppConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def save_config(config: AppConfig, config_path: Path | None = None) -> Path:
    """Write a configuration to disk."""
    path = config_path or DEFAULT_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json"),
            f,
            default_flow_style=False,
            sort_keys=False,
        )

    logger.debug(f"Saved config to {path}")
    return path


def create_default_config(config_path: Path | None = None) -> bool:
    """Create the default configuration file if it doesn't exist.

    Returns:
        True if a file was written, False if one already existed
    """
    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists():
        return False

    ensure_config_dir(path.parent)
    save_config(AppConfig(), path)
    logger.info(f"Created default config at {path}")
    return True
