"""
Shared paths and constants used by the daemon, the CLI and the service facade.

Everything lives under one app home so tests (and a second install) can point
the whole tree somewhere else with CONTACTCACHE_HOME.
"""
from __future__ import annotations

import os
from pathlib import Path

# Paths
HOME = Path.home()
APP_DIR = Path(os.environ.get("CONTACTCACHE_HOME", HOME / ".contactcache")).expanduser()
CACHE_DIR = APP_DIR / "cache"
STATE_DIR = APP_DIR / "state"
LOGS_DIR = APP_DIR / "logs"

# Snapshot files (one per logical dataset)
CONTACTS_CACHE_FILE = "contacts-cache.json"
CAPABILITIES_CACHE_FILE = "message-capabilities-cache.json"
CACHE_METADATA_FILE = "cache-metadata.json"

# Daemon state
DAEMON_CONFIG_FILE = STATE_DIR / "daemon-config.json"
PID_FILE = STATE_DIR / "cache-daemon.pid"
LOG_FILE = LOGS_DIR / "daemon.log"
LIFECYCLE_LOG_FILE = LOGS_DIR / "daemon_lifecycle.log"

# Bridge
OSASCRIPT = "/usr/bin/osascript"

SCHEMA_VERSION = 1


def ensure_dirs() -> None:
    """Create the app home layout if missing."""
    for d in (CACHE_DIR, STATE_DIR, LOGS_DIR):
        d.mkdir(parents=True, exist_ok=True)
