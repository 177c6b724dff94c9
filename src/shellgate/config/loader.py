"""Configuration loading with hierarchy support."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml

from shellgate.config.schemas import ShellGateConfig

ENV_PREFIX = "SHELLGATE_"

# Short environment names -> nested config keys
ENV_ALIASES: dict[str, tuple[str, ...]] = {
    "SHELLGATE_TIMEOUT_SECONDS": ("approval", "timeout_seconds"),
    "SHELLGATE_WORKSPACE_DIR": ("workspace_root",),
    "SHELLGATE_LOG_DIR": ("audit", "log_dir"),
    "SHELLGATE_PUSHOVER_USER": ("notification", "pushover_user"),
    "SHELLGATE_PUSHOVER_TOKEN": ("notification", "pushover_token"),
    "SHELLGATE_TELEGRAM_BOT_TOKEN": ("notification", "telegram_bot_token"),
    "SHELLGATE_TELEGRAM_CHAT_ID": ("notification", "telegram_chat_id"),
}

# Comma-separated command patterns that replace the configured list
ENV_RULE_LISTS: dict[str, tuple[str, ...]] = {
    "SHELLGATE_ALLOWLIST": ("rules", "allowlist", "commands"),
    "SHELLGATE_BLOCKLIST": ("rules", "blocklist", "commands"),
}

# Values that must stay strings even if they look numeric
_STRING_KEYS = {"SHELLGATE_TELEGRAM_CHAT_ID", "SHELLGATE_PUSHOVER_USER", "SHELLGATE_PUSHOVER_TOKEN"}


def get_default_config_path() -> Path:
    """Get the default user configuration path."""
    return Path.home() / ".shellgate" / "config.yaml"


def get_config_paths() -> list[Path]:
    """Get ordered list of configuration paths to check."""
    paths = []

    system_config = Path("/etc/shellgate/config.yaml")
    if system_config.exists():
        paths.append(system_config)

    user_config = get_default_config_path()
    if user_config.exists():
        paths.append(user_config)

    project_config = Path.cwd() / ".shellgate.yaml"
    if project_config.exists():
        paths.append(project_config)

    return paths


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    with open(path, "r") as f:
        content = yaml.safe_load(f) or {}
    return content


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _set_nested(target: dict[str, Any], keys: tuple[str, ...], value: Any) -> None:
    current = target
    for part in keys[:-1]:
        current = current.setdefault(part, {})
    current[keys[-1]] = value


def get_env_overrides() -> dict[str, Any]:
    """Get configuration overrides from environment variables.

    Three forms are recognised:
    - short aliases, e.g. SHELLGATE_TIMEOUT_SECONDS=120
    - rule lists, e.g. SHELLGATE_BLOCKLIST="docker rm *,/^kubectl delete/"
    - generic nested keys with double underscores, e.g.
      SHELLGATE_NOTIFICATION__METHOD=telegram -> {"notification": {"method": "telegram"}}
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        if key in ENV_RULE_LISTS:
            patterns = [item.strip() for item in value.split(",") if item.strip()]
            _set_nested(overrides, ENV_RULE_LISTS[key], patterns)
            continue

        if key in ENV_ALIASES:
            parsed = value if key in _STRING_KEYS else _parse_env_value(value)
            _set_nested(overrides, ENV_ALIASES[key], parsed)
            continue

        config_key = key[len(ENV_PREFIX):].lower()
        _set_nested(overrides, tuple(config_key.split("__")), _parse_env_value(value))

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse an environment variable value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def load_config(
    config_path: Optional[Path] = None,
    include_env: bool = True,
) -> ShellGateConfig:
    """Load configuration from all sources with proper hierarchy.

    Loading order (later overrides earlier):
    1. Default values (from schema)
    2. System config (/etc/shellgate/config.yaml)
    3. User config (~/.shellgate/config.yaml)
    4. Project config (.shellgate.yaml in cwd)
    5. Explicit config file (--config argument)
    6. Environment variables (SHELLGATE_*)

    Args:
        config_path: Optional explicit configuration file path
        include_env: Whether to include environment variable overrides

    Returns:
        Validated ShellGateConfig instance
    """
    merged_config: dict[str, Any] = {}

    for path in get_config_paths():
        try:
            merged_config = deep_merge(merged_config, load_yaml_config(path))
        except (OSError, yaml.YAMLError):
            # Unreadable ambient config files are skipped
            pass

    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        merged_config = deep_merge(merged_config, load_yaml_config(config_path))

    if include_env:
        merged_config = deep_merge(merged_config, get_env_overrides())

    return ShellGateConfig(**merged_config)
