#!/usr/bin/env python3
"""CLI for managing the contacts cache daemon and querying the cache."""
from __future__ import annotations

import argparse
import json
import os
import signal
import subprocess
import sys
import time

from contactcache.common import LOG_FILE, ensure_dirs
from contactcache.daemon import DaemonConfigStore, daemon_status, refresh_now
from contactcache.errors import ContactCacheError
from contactcache.service import ContactsService
from contactcache.supervisor import ProcessSupervisor, pid_alive

START_TIMEOUT = 10.0  # seconds to wait for the daemon to write its marker


def cmd_start(args):
    """Start the daemon in the background."""
    supervisor = ProcessSupervisor()
    pid = supervisor.live_pid()
    if pid:
        print(f"Daemon already running (PID {pid})")
        return 1

    ensure_dirs()

    log_fh = open(LOG_FILE, "a")
    process = subprocess.Popen(
        [sys.executable, "-m", "contactcache.daemon"],
        stdout=log_fh,
        stderr=subprocess.STDOUT,
        start_new_session=True,  # Detach from terminal
    )
    log_fh.close()  # Popen has duped the fd

    # The daemon writes its own liveness marker once it owns the lock
    deadline = time.monotonic() + START_TIMEOUT
    while time.monotonic() < deadline:
        if process.poll() is not None:
            print(f"Daemon exited during startup (code {process.returncode})")
            print(f"Logs: {LOG_FILE}")
            return 1
        if supervisor.live_pid() == process.pid:
            break
        time.sleep(0.2)
    else:
        print(f"Daemon launched (PID {process.pid}) but has not reported in yet; "
              f"it may still be running its initial refresh")
        print(f"Logs: {LOG_FILE}")
        return 0

    print(f"Daemon started (PID {process.pid})")
    print(f"Logs: {LOG_FILE}")
    return 0


def cmd_stop(args):
    """Stop the daemon."""
    supervisor = ProcessSupervisor()
    pid = supervisor.live_pid()
    if not pid:
        print("Daemon not running")
        return 1

    print(f"Stopping daemon (PID {pid})...")

    # start_new_session=True in cmd_start makes the daemon its own process group leader
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        print("Process already dead")
        supervisor.clear_marker()
        return 0
    except PermissionError:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            print("Process already dead")
            supervisor.clear_marker()
            return 0

    # An in-flight refresh finishes before the daemon exits
    for _ in range(20):
        if not pid_alive(pid):
            break
        time.sleep(0.5)
    else:
        print("Force killing...")
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    supervisor.clear_marker()
    print("Daemon stopped")
    return 0


def cmd_restart(args):
    """Stop (if running) and start again."""
    if ProcessSupervisor().live_pid():
        cmd_stop(args)
        time.sleep(0.5)
    return cmd_start(args)


def cmd_status(args):
    """Show daemon and cache status."""
    status = daemon_status()
    if getattr(args, "json", False):
        print(json.dumps(status.model_dump(mode="json"), indent=2))
        return 0 if status.running else 1

    if status.running:
        print(f"Daemon running (PID {status.pid})")
    else:
        print("Daemon not running")
    age = "never updated" if status.cache_age_hours is None else f"{status.cache_age_hours} hours"
    print(f"  Cache age:       {age}{' (stale)' if status.stale else ''}")
    print(f"  Cache size:      {status.cache_size_mb} MB")
    print(f"  Contacts:        {status.contacts_count}")
    print(f"  Capabilities:    {status.capabilities_count}")
    print(f"  Next update:     {status.next_update}")
    print(f"  Update interval: {status.config.update_interval_hours:g} hours")
    print(f"  Enabled:         {'yes' if status.config.enabled else 'no'}")
    return 0 if status.running else 1


def cmd_update(args):
    """Force one refresh now."""
    print("Triggering cache update...")
    ok, message = refresh_now()
    print(message)
    return 0 if ok else 1


def cmd_config(args):
    """Show or change daemon-config.json."""
    config_store = DaemonConfigStore()

    if args.action == "set":
        if not args.key or args.value is None:
            print("Usage: contactcache config set <key> <value>")
            return 1
        try:
            cfg = config_store.set(**{args.key: args.value})
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        print(f"Set {args.key} = {getattr(cfg, args.key)}")

        # Let a running daemon pick it up (re-arms its timer if the interval changed)
        pid = ProcessSupervisor().live_pid()
        if pid:
            try:
                os.kill(pid, signal.SIGHUP)
                print(f"Daemon (PID {pid}) notified")
            except ProcessLookupError:
                pass
        return 0

    cfg = config_store.load()
    if args.key:
        if args.key not in type(cfg).model_fields:
            print(f"Unknown config key: {args.key}")
            return 1
        print(getattr(cfg, args.key))
    else:
        print(json.dumps(cfg.model_dump(), indent=2))
    return 0


def cmd_run(args):
    """Run the daemon in the foreground."""
    from contactcache import daemon
    return daemon.main()


def cmd_logs(args):
    """Tail the daemon log file."""
    if not LOG_FILE.exists():
        print(f"Log file not found: {LOG_FILE}")
        return 1

    cmd = ["tail"]
    if args.follow:
        cmd.append("-f")
    cmd.extend(["-n", str(args.lines), str(LOG_FILE)])

    try:
        subprocess.run(cmd)
    except KeyboardInterrupt:
        pass
    return 0


def cmd_find(args):
    """Resolve a name to a contact."""
    try:
        entry = ContactsService().find_contact(args.name)
    except ContactCacheError as e:
        print(f"Error: {e}")
        return 1
    if not entry:
        print(f'Contact "{args.name}" not found')
        return 1
    print(entry.name)
    for phone in entry.phone_numbers:
        print(f"  phone: {phone}")
    for email in entry.emails:
        print(f"  email: {email}")
    return 0


def cmd_matches(args):
    """List ranked candidates for a search term."""
    try:
        matches = ContactsService().find_best_matches(args.term, args.limit)
    except ContactCacheError as e:
        print(f"Error: {e}")
        return 1
    if not matches:
        print(f'No matches for "{args.term}"')
        return 1
    for m in matches:
        print(f"{m.score:4d}  {m.entry.name:30s} {', '.join(m.entry.phone_numbers)}")
    return 0


def cmd_phone(args):
    """Reverse lookup a phone number."""
    try:
        name = ContactsService().find_contact_by_phone(args.number)
    except ContactCacheError as e:
        print(f"Error: {e}")
        return 1
    if not name:
        print(f"Phone number {args.number} not found")
        return 1
    print(name)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="contactcache",
        description="Manage the contacts cache daemon"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # start / stop / restart
    subparsers.add_parser("start", help="Start the daemon")
    subparsers.add_parser("stop", help="Stop the daemon")
    subparsers.add_parser("restart", help="Restart the daemon")

    # status
    status_parser = subparsers.add_parser("status", help="Show daemon and cache status")
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")

    # update
    subparsers.add_parser("update", help="Force an immediate cache update and wait for the result")

    # config
    config_parser = subparsers.add_parser("config", help="Show or change daemon config")
    config_parser.add_argument("action", nargs="?", choices=["get", "set"], default="get")
    config_parser.add_argument("key", nargs="?", help="Config key (update_interval_hours, enabled, auto_start, log_level)")
    config_parser.add_argument("value", nargs="?", help="New value (for set)")

    # run
    subparsers.add_parser("run", help="Run the daemon in the foreground")

    # logs
    logs_parser = subparsers.add_parser("logs", help="Tail the log file")
    logs_parser.add_argument("-n", "--lines", type=int, default=50, help="Number of lines")
    logs_parser.add_argument("-f", "--follow", action="store_true", help="Follow log output (tail -f)")

    # lookups
    find_parser = subparsers.add_parser("find", help="Resolve a contact by name")
    find_parser.add_argument("name", help="Contact name (fuzzy)")

    matches_parser = subparsers.add_parser("matches", help="Ranked fuzzy matches for a name")
    matches_parser.add_argument("term", help="Search term")
    matches_parser.add_argument("-l", "--limit", type=int, default=5, help="Max results")

    phone_parser = subparsers.add_parser("phone", help="Find the contact owning a phone number")
    phone_parser.add_argument("number", help="Phone number in any format")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "start": cmd_start,
        "stop": cmd_stop,
        "restart": cmd_restart,
        "status": cmd_status,
        "update": cmd_update,
        "config": cmd_config,
        "run": cmd_run,
        "logs": cmd_logs,
        "find": cmd_find,
        "matches": cmd_matches,
        "phone": cmd_phone,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
