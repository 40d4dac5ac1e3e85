# === NAVMAP v1 ===
# {
#   "module": "ThreadWatch.PageWatch.config.loader",
#   "purpose": "Configuration loading with file/env/CLI precedence",
#   "sections": [
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "merge-env-overrides", "name": "_merge_env_overrides", "anchor": "function-merge-env-overrides", "kind": "function"},
#     {"id": "merge-cli-overrides", "name": "_merge_cli_overrides", "anchor": "function-merge-cli-overrides", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Configuration Loading with File/Env/CLI Precedence

Implements three-level config composition:
1. **File level** (YAML/JSON): base configuration
2. **Environment level**: THREADWATCH_* prefixed variables override file
3. **CLI level**: programmatic overrides win

Environment variables use double-underscore notation:
  THREADWATCH_HTTP__USER_AGENT="Custom UA"   →  http.user_agent="Custom UA"
  THREADWATCH_WATCH__CHECK_INTERVAL_S=120    →  watch.check_interval_s=120

JSON values are automatically parsed; anything else stays a string.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import ThreadWatchConfig

__all__ = ["ENV_PREFIX", "export_config_schema", "load_config"]

_LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "THREADWATCH_"

# Read by the CLI itself, never merged into the config.
_RESERVED_ENV_KEYS = frozenset({"CONFIG"})

# ============================================================================
# Helpers
# ============================================================================


def _read_file(path: str) -> dict[str, Any]:
    """
    Read YAML or JSON config file.

    Args:
        path: File path (suffix determines format: .yaml/.yml or .json)

    Returns:
        Parsed config dictionary

    Raises:
        ValueError: If file cannot be read or parsed
    """
    p = Path(path)
    if not p.exists():
        raise ValueError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e

    suffix = p.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
    elif suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e
    else:
        raise ValueError(f"Unsupported file format: {suffix}. Use .yaml or .json")

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def _assign_nested(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    keys = dotted_key.split(".")
    current = data
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


def _coerce_env_value(value: str) -> Any:
    """Parse JSON scalars/collections; fall back to the raw string."""
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


def _merge_env_overrides(data: dict[str, Any], env_prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Overlay environment variables onto config dict.

    Args:
        data: Base config dict (will be modified)
        env_prefix: Environment variable prefix (default: THREADWATCH_)

    Returns:
        Modified data dict
    """
    for env_key, env_value in os.environ.items():
        if not env_key.startswith(env_prefix):
            continue
        if env_key[len(env_prefix) :] in _RESERVED_ENV_KEYS:
            continue
        dotted_key = env_key[len(env_prefix) :].lower().replace("__", ".")
        coerced_value = _coerce_env_value(env_value)
        _assign_nested(data, dotted_key, coerced_value)
        _LOGGER.debug(f"Environment override: {env_key} → {dotted_key} = {coerced_value!r}")
    return data


def _merge_cli_overrides(
    data: dict[str, Any], cli_overrides: Optional[Mapping[str, Any]]
) -> dict[str, Any]:
    """Recursively merge CLI overrides into the config dict; later values win."""
    if not cli_overrides:
        return data

    for key, value in cli_overrides.items():
        if isinstance(value, Mapping) and isinstance(data.get(key), dict):
            data[key] = _merge_cli_overrides(data[key], value)
        else:
            data[key] = dict(value) if isinstance(value, Mapping) else value
        _LOGGER.debug(f"CLI override: {key} = {value!r}")

    return data


# ============================================================================
# Public API
# ============================================================================


def load_config(
    path: Optional[str] = None,
    env_prefix: str = ENV_PREFIX,
    cli_overrides: Optional[Mapping[str, Any]] = None,
) -> ThreadWatchConfig:
    """
    Load ThreadWatchConfig from file, environment, and CLI with proper precedence.

    **Precedence:** file < environment < CLI

    Args:
        path: Path to YAML/JSON config file (optional)
        env_prefix: Environment variable prefix (default: THREADWATCH_)
        cli_overrides: Nested CLI overrides dict (optional)

    Returns:
        Validated ThreadWatchConfig instance

    Raises:
        ValueError: If the file cannot be read or the merged config is invalid
    """
    data: dict[str, Any] = {}

    if path:
        try:
            data = _read_file(path)
            _LOGGER.info(f"Loaded config from {path}")
        except ValueError as e:
            _LOGGER.error(f"Failed to load config: {e}")
            raise

    data = _merge_env_overrides(data, env_prefix)
    data = _merge_cli_overrides(data, cli_overrides)

    try:
        config = ThreadWatchConfig.model_validate(data)
    except ValueError as e:
        _LOGGER.error(f"Configuration validation failed: {e}")
        raise
    _LOGGER.debug(f"Configuration validated. Config hash: {config.config_hash()[:8]}...")
    return config


def export_config_schema() -> dict[str, Any]:
    """Export the JSON Schema for ThreadWatchConfig."""
    return ThreadWatchConfig.model_json_schema()
