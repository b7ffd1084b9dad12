#!/usr/bin/env python3
"""
Contacts Cache Daemon

Keeps the persisted contacts/capabilities snapshot fresh:
- Refuses to start while another instance holds the liveness marker
- Refreshes once at startup if the snapshot is older than the update interval
- Re-runs the full extraction on a repeating timer
- The timer is re-armed only after a refresh finishes, so refreshes never overlap

States: stopped -> starting -> running -> stopping -> stopped

Signals (foreground process):
    SIGTERM / SIGINT   stop
    SIGHUP             reload daemon-config.json (re-arms the timer if the interval changed)
    SIGUSR1            refresh now
"""
from __future__ import annotations

import json
import logging
import os
import signal
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from contactcache import config
from contactcache.common import DAEMON_CONFIG_FILE, LIFECYCLE_LOG_FILE, ensure_dirs
from contactcache.errors import CacheStoreError, ContactCacheError, DaemonAlreadyRunning
from contactcache.extraction import ExtractionPipeline
from contactcache.models import CacheMetadata, DaemonConfig, DaemonState, DaemonStatus, utcnow
from contactcache.store import CacheStore
from contactcache.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

# Separate lifecycle logger for start/stop/refresh events
lifecycle_log = logging.getLogger("lifecycle")

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
LOG_LEVELS = {"error": logging.ERROR, "info": logging.INFO, "debug": logging.DEBUG}

# How long `contactcache update` waits for a running daemon to finish a refresh
DEFAULT_REFRESH_WAIT = 600


def setup_logging(level: str = "info") -> None:
    """stdout logging (cli.py redirects stdout to daemon.log) plus the lifecycle file."""
    logging.basicConfig(
        level=LOG_LEVELS.get(level, logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    if not lifecycle_log.handlers:
        LIFECYCLE_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(LIFECYCLE_LOG_FILE)
        handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
        lifecycle_log.addHandler(handler)
        lifecycle_log.setLevel(logging.INFO)


class DaemonConfigStore:
    """daemon-config.json, merged over defaults."""

    def __init__(self, path: Path = DAEMON_CONFIG_FILE):
        self.path = Path(path)

    def load(self, persist_defaults: bool = True) -> DaemonConfig:
        if not self.path.exists():
            cfg = DaemonConfig()
            if persist_defaults:
                self.save(cfg)
                log.info(f"Created default daemon config at {self.path}")
            return cfg
        try:
            data = json.loads(self.path.read_text())
            return DaemonConfig.model_validate({**DaemonConfig().model_dump(), **data})
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as e:
            log.error(f"Error loading daemon config {self.path}, using defaults: {e}")
            return DaemonConfig()

    def save(self, cfg: DaemonConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(cfg.model_dump(), indent=2) + "\n")
        os.replace(tmp_path, self.path)

    def set(self, **changes: Any) -> DaemonConfig:
        """Validate and persist changes. Raises ValueError on unknown keys or bad values."""
        unknown = set(changes) - set(DaemonConfig.model_fields)
        if unknown:
            raise ValueError(
                f"Unknown config key(s): {', '.join(sorted(unknown))}. "
                f"Valid keys: {', '.join(DaemonConfig.model_fields)}"
            )
        current = self.load()
        try:
            updated = DaemonConfig.model_validate({**current.model_dump(), **changes})
        except ValidationError as e:
            raise ValueError(str(e)) from e
        self.save(updated)
        return updated


class RefreshDaemon:
    """Scheduler around ExtractionPipeline -> CacheStore.save."""

    def __init__(self,
                 store: Optional[CacheStore] = None,
                 pipeline: Optional[ExtractionPipeline] = None,
                 supervisor: Optional[ProcessSupervisor] = None,
                 config_store: Optional[DaemonConfigStore] = None,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.store = store or CacheStore()
        self.pipeline = pipeline or ExtractionPipeline()
        self.supervisor = supervisor or ProcessSupervisor()
        self.config_store = config_store or DaemonConfigStore()
        self.config = DaemonConfig()
        self._timer_factory = timer_factory
        self._timer: Optional[threading.Timer] = None
        self._state = DaemonState.STOPPED
        self._lock = threading.RLock()  # RLock: stop() may run in a signal handler on the main thread
        self._refresh_lock = threading.Lock()
        self._stopped = threading.Event()
        self.next_update_at: Optional[datetime] = None
        self.last_refresh_ok: Optional[bool] = None

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == DaemonState.RUNNING

    # ── refresh ───────────────────────────────────────────────

    def refresh(self) -> bool:
        """One full extraction + save. Failures are logged, never raised."""
        with self._refresh_lock:
            log.info("Starting cache refresh...")
            started = utcnow()
            try:
                snapshot = self.pipeline.run()
                saved = self.store.save(snapshot)
            except ContactCacheError as e:
                log.error(f"Cache refresh failed, keeping previous snapshot: {e}")
                lifecycle_log.info(f"REFRESH | FAILED | {type(e).__name__}: {e}")
                self._record_refresh(False)
                return False
            except Exception as e:
                log.exception(f"Unexpected error during cache refresh: {e}")
                lifecycle_log.info(f"REFRESH | FAILED | {type(e).__name__}: {e}")
                self._record_refresh(False)
                return False

            duration = (utcnow() - started).total_seconds()
            log.info(f"Cache refresh completed in {duration:.2f}s")
            lifecycle_log.info(
                f"REFRESH | OK | contacts={saved.metadata.contacts_count} "
                f"capabilities={saved.metadata.capabilities_count} duration={duration:.1f}s"
            )
            self._record_refresh(True)
            return True

    def _record_refresh(self, ok: bool) -> None:
        # The marker is how `contactcache update` learns the outcome of a SIGUSR1 refresh
        self.last_refresh_ok = ok
        self.supervisor.update(last_refresh_ok=ok, last_refresh_at=utcnow())

    # ── timer ─────────────────────────────────────────────────

    def _arm(self) -> None:
        """(Re)schedule the next tick one interval from now. Caller holds self._lock."""
        if self._timer is not None:
            self._timer.cancel()
        interval = self.config.interval_seconds
        self._timer = self._timer_factory(interval, self._tick)
        self._timer.daemon = True
        self._timer.start()
        self.next_update_at = utcnow() + timedelta(seconds=interval)
        self.supervisor.update(next_update_at=self.next_update_at)
        log.info(f"Next update scheduled in {self.config.update_interval_hours}h")

    def _tick(self) -> None:
        if not self.is_running:
            return
        self.refresh()
        with self._lock:
            if self.is_running:
                self._arm()

    def request_refresh(self) -> threading.Thread:
        """Refresh out of band (worker thread), then restart the interval."""
        def _run():
            self.refresh()
            with self._lock:
                if self.is_running:
                    self._arm()

        t = threading.Thread(target=_run, daemon=True, name="RefreshRequest")
        t.start()
        return t

    # ── lifecycle ─────────────────────────────────────────────

    def start(self) -> bool:
        """Start the daemon. True once running, False if disabled in config.

        Raises DaemonAlreadyRunning if another instance owns the marker.
        """
        with self._lock:
            if self._state != DaemonState.STOPPED:
                log.warning(f"Daemon already {self._state.value}")
                return self.is_running
            self._state = DaemonState.STARTING
            self._stopped.clear()

        if not self.supervisor.acquire():
            with self._lock:
                self._state = DaemonState.STOPPED
            raise DaemonAlreadyRunning(self.supervisor.live_pid())

        try:
            self.config = self.config_store.load()
            if not self.config.enabled:
                log.warning("Daemon is disabled in config")
                self._shutdown_to_stopped()
                return False

            try:
                stale = self.store.is_stale(self.config.update_interval_hours)
            except CacheStoreError as e:
                log.warning(f"Existing cache unreadable, treating as stale: {e}")
                stale = True

            if stale:
                log.info("Cache is stale, performing initial update...")
                self.refresh()
            else:
                log.info("Cache is fresh, skipping initial update")

            with self._lock:
                if self._state != DaemonState.STARTING:
                    # stop() arrived during the initial refresh
                    return False
                self._state = DaemonState.RUNNING
                self._arm()
        except Exception:
            self._shutdown_to_stopped()
            raise

        lifecycle_log.info(
            f"DAEMON | START | pid={os.getpid()} interval={self.config.update_interval_hours}h"
        )
        log.info("Contacts cache daemon started")
        return True

    def _shutdown_to_stopped(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.next_update_at = None
            self.supervisor.release()
            self._state = DaemonState.STOPPED
            self._stopped.set()

    def stop(self) -> None:
        """Cancel the timer and release the marker. An in-flight refresh runs to completion."""
        with self._lock:
            if self._state in (DaemonState.STOPPED, DaemonState.STOPPING):
                return
            log.info("Stopping contacts cache daemon...")
            self._state = DaemonState.STOPPING
            self._shutdown_to_stopped()
        lifecycle_log.info(f"DAEMON | STOP | pid={os.getpid()}")
        log.info("Daemon stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    # ── config ────────────────────────────────────────────────

    def _apply_config(self, new: DaemonConfig) -> None:
        with self._lock:
            old = self.config
            self.config = new
            if new.log_level != old.log_level:
                logging.getLogger().setLevel(LOG_LEVELS.get(new.log_level, logging.INFO))
            if self.is_running and new.update_interval_hours != old.update_interval_hours:
                log.info(f"Update interval changed {old.update_interval_hours}h -> {new.update_interval_hours}h")
                self._arm()

    def update_config(self, **changes: Any) -> DaemonConfig:
        """Persist config changes; a new interval re-arms the timer immediately."""
        new = self.config_store.set(**changes)
        self._apply_config(new)
        return new

    def reload_config(self) -> DaemonConfig:
        new = self.config_store.load()
        self._apply_config(new)
        return new

    # ── foreground entry ──────────────────────────────────────

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, lambda *_: self.stop())
        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGHUP, lambda *_: self.reload_config())
        signal.signal(signal.SIGUSR1, lambda *_: self.request_refresh())

    def run_forever(self) -> int:
        """Start, then block until stopped. Returns a process exit code."""
        self.install_signal_handlers()
        try:
            if not self.start():
                return 0
        except DaemonAlreadyRunning as e:
            log.error(str(e))
            return 1
        # Short waits so signal handlers get a chance to run
        while not self.wait(1.0):
            pass
        return 0


# ──────────────────────────────────────────────────────────────
# Helpers for the CLI and the service facade (other processes)
# ──────────────────────────────────────────────────────────────

def _format_delta(delta: timedelta) -> str:
    total_minutes = max(0, int(delta.total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"


def daemon_status(store: Optional[CacheStore] = None,
                  supervisor: Optional[ProcessSupervisor] = None,
                  config_store: Optional[DaemonConfigStore] = None,
                  now: Optional[datetime] = None) -> DaemonStatus:
    """Snapshot of daemon + cache health. A marker for a dead process is cleared."""
    store = store or CacheStore()
    supervisor = supervisor or ProcessSupervisor()
    config_store = config_store or DaemonConfigStore()
    now = now or utcnow()

    pid = supervisor.live_pid()
    cfg = config_store.load(persist_defaults=False)
    try:
        metadata = store.load_metadata()
    except CacheStoreError as e:
        log.warning(f"Cache metadata unreadable: {e}")
        metadata = CacheMetadata()

    age_hours = None
    if metadata.last_full_update is not None:
        age_hours = round((now - metadata.last_full_update).total_seconds() / 3600, 1)
    stale = age_hours is None or age_hours > cfg.update_interval_hours

    if pid is None:
        next_update = "not scheduled (daemon not running)"
    else:
        marker = supervisor.read_marker()
        if marker and marker.next_update_at:
            next_update = f"in {_format_delta(marker.next_update_at - now)} ({marker.next_update_at.isoformat()})"
        else:
            next_update = f"~{cfg.update_interval_hours:g} hours"

    return DaemonStatus(
        running=pid is not None,
        pid=pid,
        cache_age_hours=age_hours,
        cache_size_mb=round(store.size_bytes() / (1024 * 1024), 2),
        contacts_count=metadata.contacts_count,
        capabilities_count=metadata.capabilities_count,
        stale=stale,
        next_update=next_update,
        config=cfg,
    )


def _wait_for_daemon_refresh(pid: int, store: CacheStore, supervisor: ProcessSupervisor,
                             since: Optional[datetime], timeout: float, poll_interval: float,
                             sleep: Callable[[float], None],
                             clock: Callable[[], float]) -> tuple[bool, str]:
    """Poll the liveness marker until the daemon records a refresh newer than `since`."""
    deadline = clock() + timeout
    while clock() < deadline:
        sleep(poll_interval)
        if supervisor.live_pid() != pid:
            return False, f"Daemon (PID {pid}) exited before finishing the refresh"
        marker = supervisor.read_marker()
        if marker is None or marker.last_refresh_at is None or marker.last_refresh_at == since:
            continue
        if not marker.last_refresh_ok:
            return False, f"Cache refresh failed in daemon (PID {pid}), see daemon.log"
        metadata = store.load_metadata()
        return True, (
            f"Cache updated by daemon (PID {pid}): {metadata.contacts_count} contacts, "
            f"{metadata.capabilities_count} capabilities"
        )
    return False, f"Timed out after {timeout:.0f}s waiting for daemon (PID {pid}) to refresh"


def refresh_now(store: Optional[CacheStore] = None,
                pipeline: Optional[ExtractionPipeline] = None,
                supervisor: Optional[ProcessSupervisor] = None,
                timeout: Optional[float] = None,
                poll_interval: float = 0.5,
                sleep: Callable[[float], None] = time.sleep,
                clock: Callable[[], float] = time.monotonic) -> tuple[bool, str]:
    """Force a refresh and report how it went.

    A running daemon is asked to do it (it stays the only writer) and this call
    blocks until the daemon records the outcome or `timeout` runs out. Without a
    daemon the refresh runs synchronously here.
    """
    supervisor = supervisor or ProcessSupervisor()
    store = store or CacheStore()
    pid = supervisor.live_pid()
    if pid is not None and pid != os.getpid():
        marker = supervisor.read_marker()
        since = marker.last_refresh_at if marker else None
        try:
            os.kill(pid, signal.SIGUSR1)
        except ProcessLookupError:
            log.info(f"Daemon PID {pid} vanished, refreshing in this process")
        else:
            if timeout is None:
                timeout = float(config.get("daemon.refresh_wait_seconds", DEFAULT_REFRESH_WAIT))
            log.info(f"Refresh requested from running daemon (PID {pid}), waiting up to {timeout:.0f}s")
            return _wait_for_daemon_refresh(pid, store, supervisor, since,
                                            timeout, poll_interval, sleep, clock)

    pipeline = pipeline or ExtractionPipeline()
    try:
        saved = store.save(pipeline.run())
    except ContactCacheError as e:
        log.error(f"Cache refresh failed: {e}")
        return False, f"Cache refresh failed: {e}"
    return True, (
        f"Cache updated: {saved.metadata.contacts_count} contacts, "
        f"{saved.metadata.capabilities_count} capabilities"
    )


def main() -> int:
    ensure_dirs()
    config_store = DaemonConfigStore()
    setup_logging(config_store.load().log_level)
    log.info("=" * 60)
    log.info("Contacts cache daemon starting...")
    log.info("=" * 60)
    daemon = RefreshDaemon(config_store=config_store)
    return daemon.run_forever()


if __name__ == "__main__":
    sys.exit(main())
