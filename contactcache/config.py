"""Config loader. Loads config.local.yaml from the app home, provides get()/require().

The file is optional: every tunable has a default at its call site, so a
missing file simply means "use the defaults".

    resolver:
      min_score: 60
    probe:
      batch_size: 10
      batch_pause_seconds: 0.5
    confirmation:
      ttl_seconds: 300
"""

import yaml
from pathlib import Path
from typing import Any

from contactcache.common import APP_DIR

LOCAL_CONFIG_FILE = APP_DIR / "config.local.yaml"

_config: dict = {}
_loaded = False


def load() -> dict:
    """Load config.local.yaml. Safe to call multiple times (cached)."""
    global _config, _loaded
    if _loaded:
        return _config

    if LOCAL_CONFIG_FILE.exists():
        with open(LOCAL_CONFIG_FILE) as f:
            _config = yaml.safe_load(f) or {}
        if not isinstance(_config, dict):
            raise ValueError(
                f"Config file {LOCAL_CONFIG_FILE} must contain a mapping, "
                f"got {type(_config).__name__}"
            )
    else:
        _config = {}

    _loaded = True
    return _config


def get(dotpath: str, default: Any = None) -> Any:
    """Get a config value by dot-separated path. e.g. get('probe.batch_size')"""
    load()
    keys = dotpath.split(".")
    node = _config
    for key in keys:
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            return default
    return node


def require(dotpath: str) -> Any:
    """Get a config value or raise if missing/falsy (None, '', 0, False)."""
    value = get(dotpath)
    if not value:
        raise ValueError(
            f"Required config '{dotpath}' is missing or falsy (got {value!r}). "
            f"Check {LOCAL_CONFIG_FILE}."
        )
    return value


def reload() -> dict:
    """Force reload from disk (useful for tests)."""
    global _loaded
    _loaded = False
    return load()
