from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "provider": {
        "host": "planet.com",
        "base_url": None,
        "product_type": "PSScene",
        "shards": 4,
        "connect_timeout": 3.05,
        "read_timeout": 10.0,
        "retry": {
            "total": 4,
            "backoff_factor": 0.5,
            "status_forcelist": [500, 502, 503, 504],
        },
    },
    "compositor": {"timeout_s": 15.0},
    "keys": {"api_key": None, "path": None},
    "server": {"port": 8080, "cors_origins": ["*"]},
    "logging": {"level": None},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML params merged over DEFAULTS.

    Path precedence: explicit arg, env IMAGERY_CONFIG, config/params.yaml.
    A missing file yields the defaults; a malformed one raises.
    """
    path = path or os.environ.get("IMAGERY_CONFIG") or DEFAULT_CONFIG_PATH
    if not Path(path).exists():
        return copy.deepcopy(DEFAULTS)
    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return _deep_merge(DEFAULTS, loaded)
