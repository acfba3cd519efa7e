"""Configuration loading utilities for the chat gateway.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_GATEWAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CHAT_GATEWAY__`` (e.g., CHAT_GATEWAY__PROVIDER__TIMEOUT=5).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "store": {"backend": "file", "data_dir": "data"},
    "provider": {
        "base_url": "https://openrouter.ai/api/v1",
        "timeout": 30.0,
        "referer": "",
        "title": "LifeCoach AI",
    },
    "models": {
        "text": ["openrouter/free"],
        "vision": ["google/gemma-3-27b-it:free"],
    },
    "quota": {},
    "memory": {"max_sessions": 3},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_GATEWAY__."""
    prefix = "CHAT_GATEWAY__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., CHAT_GATEWAY__STORE__DATA_DIR -> cfg["store"]["data_dir"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Comma lists become YAML-style lists (model candidates, CORS origins)
        if "," in value:
            sub[leaf] = [v.strip() for v in value.split(",") if v.strip()]
        elif value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat gateway.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_GATEWAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration merged over :data:`DEFAULTS`, with environment
        overrides applied.
    """
    if path is None:
        path = os.environ.get("CHAT_GATEWAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def provider_api_key(cfg: Dict[str, Any]) -> str:
    """Bearer credential: ``provider.api_key`` or the OPENROUTER_API_KEY env var."""
    key = (cfg.get("provider") or {}).get("api_key")
    return str(key or os.environ.get("OPENROUTER_API_KEY", "")).strip()
