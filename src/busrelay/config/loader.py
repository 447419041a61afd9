"""Config loading."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

# Env var -> (section, key) in the config dict; section None means top level
_ENV_KEYS: dict[str, tuple[str | None, str]] = {
    "BUSRELAY_SOURCE_BUS": ("source", "bus"),
    "BUSRELAY_SOURCE_SERVICE": ("source", "service"),
    "BUSRELAY_SOURCE_OBJECT_PATH": ("source", "object_path"),
    "BUSRELAY_TARGET_BUS": ("target", "bus"),
    "BUSRELAY_PROXY_NAME": ("target", "name"),
    "BUSRELAY_CALL_TIMEOUT_MS": (None, "call_timeout_ms"),
    "BUSRELAY_PRESERVE_ERROR_NAMES": (None, "preserve_error_names"),
    "BUSRELAY_VERBOSE": (None, "verbose"),
    "BUSRELAY_LOG_FILE": (None, "log_file"),
}


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_update(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: str | Path) -> dict[str, Any]:
    """Load config from YAML file. Use SafeLoader. Returns raw dict."""
    path = Path(path)
    if not path.exists():
        logger.warning("Config file not found: {}", path)
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning("Config file {} has invalid structure (expected dict)", path)
            return {}
        return data
    except yaml.YAMLError as exc:
        logger.error("Failed to parse config {}: {}", path, exc)
        raise


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Config fragment built from BUSRELAY_* env vars (empty values ignored)."""
    env = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for var, (section, key) in _ENV_KEYS.items():
        value = env.get(var, "")
        if not value:
            continue
        if section is None:
            result[key] = value
        else:
            result.setdefault(section, {})[key] = value
    return result


def load_config_with_env(path: str | Path) -> dict[str, Any]:
    """Load config from YAML and overlay env-derived values."""
    from dotenv import load_dotenv

    load_dotenv()
    return _deep_update(load_config(path), env_overrides())
