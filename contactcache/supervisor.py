"""
Single-instance guard for the refresh daemon.

Primary guard: a non-blocking fcntl.flock on a sibling .lock file, held for
the daemon's lifetime. Secondary guard: the JSON liveness marker records the
owner's PID; a marker naming a live process other than us refuses the start,
a marker naming a dead process, or a reused PID now running something
else, is discarded.

Known limitation: where flock is unavailable (or the lock file sits on a
filesystem that ignores it), two processes starting at the same instant can
both pass the PID check.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import subprocess
from pathlib import Path
from typing import IO, Optional

from pydantic import ValidationError

from contactcache.common import PID_FILE
from contactcache.models import LivenessMarker

log = logging.getLogger(__name__)

DAEMON_MODULE = "contactcache.daemon"


def pid_alive(pid: int) -> bool:
    """Check if a process exists (signal 0 probes without delivering anything)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def is_daemon_process(pid: int) -> bool:
    """Verify the PID runs our daemon (not a reused PID after reboot)."""
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.debug(f"Could not inspect PID {pid} command line: {e}")
        return True
    return DAEMON_MODULE in result.stdout


class ProcessSupervisor:
    """Owns the liveness marker and its lock."""

    def __init__(self, marker_path: Path = PID_FILE):
        self.marker_path = Path(marker_path)
        self.lock_path = self.marker_path.with_name(self.marker_path.name + ".lock")
        self._lock_fh: Optional[IO] = None

    @property
    def held(self) -> bool:
        return self._lock_fh is not None

    def read_marker(self) -> Optional[LivenessMarker]:
        if not self.marker_path.exists():
            return None
        try:
            text = self.marker_path.read_text().strip()
        except OSError as e:
            log.warning(f"Could not read liveness marker {self.marker_path}: {e}")
            return None
        if not text:
            return None
        try:
            return LivenessMarker.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError):
            # Legacy/plain marker: just a PID
            try:
                return LivenessMarker(pid=int(text))
            except ValueError:
                log.warning(f"Unparseable liveness marker {self.marker_path}, ignoring")
                return None

    def _write_marker(self, marker: LivenessMarker) -> None:
        self.marker_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.marker_path.with_name(self.marker_path.name + ".tmp")
        tmp_path.write_text(json.dumps(marker.model_dump(mode="json"), indent=2))
        os.replace(tmp_path, self.marker_path)

    def clear_marker(self) -> None:
        self.marker_path.unlink(missing_ok=True)

    def live_pid(self) -> Optional[int]:
        """PID of the live daemon, or None. A stale marker is removed."""
        marker = self.read_marker()
        if marker is None:
            return None
        if not pid_alive(marker.pid):
            log.info(f"Discarding stale liveness marker for dead PID {marker.pid}")
        elif marker.pid != os.getpid() and not is_daemon_process(marker.pid):
            log.info(f"Discarding stale liveness marker: PID {marker.pid} is not a contactcache daemon")
        else:
            return marker.pid
        self.clear_marker()
        return None

    def acquire(self) -> bool:
        """Claim single-instance ownership for this process. False if another daemon owns it."""
        if self.held:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.lock_path, "a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            log.warning(f"Daemon lock {self.lock_path} is held by another process")
            return False

        pid = self.live_pid()
        if pid is not None and pid != os.getpid():
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            fh.close()
            log.warning(f"Liveness marker names live PID {pid}")
            return False

        self._lock_fh = fh
        self._write_marker(LivenessMarker(pid=os.getpid()))
        return True

    def update(self, **fields) -> None:
        """Rewrite our marker with new fields (e.g. next_update_at)."""
        if not self.held:
            return
        marker = self.read_marker() or LivenessMarker(pid=os.getpid())
        self._write_marker(marker.model_copy(update=fields))

    def release(self) -> None:
        """Drop the marker and the lock. Safe to call twice."""
        if not self.held:
            return
        marker = self.read_marker()
        if marker is None or marker.pid == os.getpid():
            self.clear_marker()
        try:
            fcntl.flock(self._lock_fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_fh.close()
            self._lock_fh = None
