"""Exceptions for conditions that are truly exceptional.

Expected conditions (no match, stale cache, expired token, declined send)
are reported through result models, not raised.
"""


class ContactCacheError(Exception):
    """Base class for contactcache errors."""


class BridgeError(ContactCacheError):
    """An automation bridge call failed."""


class BridgeUnavailable(BridgeError):
    """The bridge cannot be reached at all (osascript missing, app hung, not authorized)."""


class CacheStoreError(ContactCacheError):
    """Persisted cache state could not be read or written."""


class DaemonAlreadyRunning(ContactCacheError):
    """Another refresh daemon holds the liveness marker."""

    def __init__(self, pid=None):
        self.pid = pid
        msg = f"Another daemon instance is already running (PID {pid})" if pid else \
            "Another daemon instance is already running"
        super().__init__(msg)
