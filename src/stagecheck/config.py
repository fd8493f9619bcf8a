from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict

import yaml


class ConfigError(ValueError):
    pass


DEFAULTS: Dict[str, Any] = {
    "api": {
        "base_url": "http://127.0.0.1:8000/api",
        "timeout_s": 30,
        "max_retries": 2,
        "retry_backoff_s": 0.5,
    },
    "storage": {
        "counter_path": ".stagecheck/counters.json",
        "session_path": ".stagecheck/session.json",
    },
    "known_identifiers": {
        "batch_limit": 100,
    },
}

ENV_API_URL = "STAGECHECK_API_URL"
ENV_TOKEN = "STAGECHECK_TOKEN"


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _require_number(cfg: Dict[str, Any], section: str, key: str, minimum: float) -> None:
    value = cfg[section].get(key)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}")
    if number < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}, got {value!r}")


def load_config(path: Path) -> Dict[str, Any]:
    """
    Read config.yml, fill defaults, then apply environment overrides.

    Raises FileNotFoundError when the file is missing and ConfigError when it
    is not a mapping or holds out-of-range values.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")

    cfg = _merge(DEFAULTS, data)

    if os.getenv(ENV_API_URL):
        cfg["api"]["base_url"] = os.environ[ENV_API_URL]
    if os.getenv(ENV_TOKEN):
        cfg["api"]["token"] = os.environ[ENV_TOKEN]

    if not str(cfg["api"].get("base_url") or "").strip():
        raise ConfigError("api.base_url is required")
    _require_number(cfg, "api", "timeout_s", 0.1)
    _require_number(cfg, "api", "max_retries", 0)
    _require_number(cfg, "api", "retry_backoff_s", 0)
    _require_number(cfg, "known_identifiers", "batch_limit", 1)
    return cfg
