"""
bridge - AppleScript access to Contacts.app and Messages.app

Everything that talks to the platform goes through here. Calls are slow
(seconds for a full Contacts enumeration) and can fail; callers decide what a
failure means. run_applescript() reports (success, output); AppleScriptBridge
turns failures into BridgeError / BridgeUnavailable.

No call is retried here. A hung app is reported as unavailable.
"""
from __future__ import annotations

import logging
import re
import subprocess
from typing import Optional

from contactcache.common import OSASCRIPT
from contactcache.errors import BridgeError, BridgeUnavailable
from contactcache.models import MessageClassification

log = logging.getLogger(__name__)

# osascript error numbers that mean "the bridge itself is unusable"
#   -600   application isn't running
#   -1712  AppleEvent timed out
#   -1743  not authorized to send Apple events
UNAVAILABLE_ERRORS = ("-600", "-1712", "-1743")
_TIMEOUT_MARKER = "timed out"

FIELD_SEP = "\t"
LIST_SEP = "|"

PROBE_RICH = "imessage"
PROBE_BASIC = "sms"
PROBE_NONE = "none"


# One line per person that has at least one phone: name<TAB>phone|phone<TAB>email|email
LIST_DIRECTORY_SCRIPT = '''
tell application "Contacts"
    set output to ""
    repeat with p in every person
        try
            set phoneList to ""
            repeat with ph in phones of p
                set v to value of ph
                if v is not missing value and v is not "" then
                    if phoneList is "" then
                        set phoneList to v
                    else
                        set phoneList to phoneList & "|" & v
                    end if
                end if
            end repeat

            if phoneList is not "" then
                set emailList to ""
                repeat with em in emails of p
                    set v to value of em
                    if v is not missing value and v is not "" then
                        if emailList is "" then
                            set emailList to v
                        else
                            set emailList to emailList & "|" & v
                        end if
                    end if
                end repeat
                set output to output & (name of p) & tab & phoneList & tab & emailList & linefeed
            end if
        end try
    end repeat
    return output
end tell
'''

# Tier 1: iMessage association (existing chat or buddy). Tier 2: SMS association.
# Anything else is "none" and the caller applies its heuristic.
PROBE_SCRIPT = '''
tell application "Messages"
    repeat with c in every chat
        try
            repeat with pt in participants of c
                if handle of pt contains "{number}" then
                    if service type of account of c is iMessage then
                        return "imessage"
                    else if service type of account of c is SMS then
                        return "sms"
                    end if
                end if
            end repeat
        end try
    end repeat

    try
        set targetService to 1st account whose service type = iMessage
        set targetBuddy to participant "{number}" of targetService
        if targetBuddy exists then
            return "imessage"
        end if
    end try

    try
        set targetService to 1st account whose service type = SMS
        set targetBuddy to participant "{number}" of targetService
        if targetBuddy exists then
            return "sms"
        end if
    end try

    return "none"
end tell
'''

SEND_VIA_SERVICE_SCRIPT = '''
tell application "Messages"
    set targetService to 1st account whose service type = {service}
    set targetBuddy to participant "{number}" of targetService
    send "{body}" to targetBuddy
end tell
'''

SEND_DEFAULT_SCRIPT = '''
tell application "Messages"
    send "{body}" to participant "{number}"
end tell
'''


def escape(value: str) -> str:
    """Escape a value for interpolation inside an AppleScript string literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def run_applescript(script: str, timeout: int = 15) -> tuple[bool, str]:
    """Run AppleScript and return (success, output).

    On failure output is osascript's stderr (or a description of the timeout).
    Raises BridgeUnavailable only when osascript itself cannot be executed.
    """
    try:
        result = subprocess.run(
            [OSASCRIPT, "-e", script],
            capture_output=True, text=True, timeout=timeout
        )
    except FileNotFoundError as e:
        raise BridgeUnavailable(f"osascript not found at {OSASCRIPT}") from e
    except subprocess.TimeoutExpired:
        return False, f"osascript timed out after {timeout}s"

    if result.returncode == 0:
        return True, result.stdout.strip("\n")
    return False, result.stderr.strip()


def ensure_app_running(app: str) -> None:
    """Launch an application if it isn't running. Best effort."""
    try:
        subprocess.run(
            [OSASCRIPT, "-e", f'tell application "{app}" to launch'],
            capture_output=True, text=True, timeout=5
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        log.warning(f"Could not launch {app}: {e}")


class AppleScriptBridge:
    """The automation bridge used by extraction, probing and sending."""

    def __init__(self, list_timeout: int = 600, probe_timeout: int = 15, send_timeout: int = 30):
        self.list_timeout = list_timeout
        self.probe_timeout = probe_timeout
        self.send_timeout = send_timeout

    def _run(self, script: str, timeout: int, what: str) -> str:
        success, output = run_applescript(script, timeout=timeout)
        if success:
            return output
        if _TIMEOUT_MARKER in output or any(code in output for code in UNAVAILABLE_ERRORS):
            raise BridgeUnavailable(f"{what}: {output}")
        raise BridgeError(f"{what}: {output}")

    def list_directory(self) -> str:
        """Raw enumeration output, one line per person with phones."""
        ensure_app_running("Contacts")
        return self._run(LIST_DIRECTORY_SCRIPT, self.list_timeout, "Contacts enumeration failed")

    def probe_service(self, canonical_number: str) -> str:
        """Return 'imessage', 'sms' or 'none' for a canonical number."""
        script = PROBE_SCRIPT.replace("{number}", escape(canonical_number))
        output = self._run(script, self.probe_timeout, f"Probe of {canonical_number} failed").strip()
        if output not in (PROBE_RICH, PROBE_BASIC, PROBE_NONE):
            raise BridgeError(f"Unexpected probe result for {canonical_number}: {output!r}")
        return output

    def send_message(self, canonical_number: str, body: str,
                     classification: Optional[MessageClassification] = None) -> None:
        """Send a message. Raises BridgeError if Messages.app rejects it."""
        number = escape(canonical_number)
        text = escape(body)
        if classification == MessageClassification.RICH:
            script = SEND_VIA_SERVICE_SCRIPT.format(service="iMessage", number=number, body=text)
        elif classification == MessageClassification.BASIC:
            script = SEND_VIA_SERVICE_SCRIPT.format(service="SMS", number=number, body=text)
        else:
            script = SEND_DEFAULT_SCRIPT.format(number=number, body=text)
        self._run(script, self.send_timeout, f"Send to {canonical_number} failed")
        log.info(f"Sent message to {canonical_number} ({len(body)} chars)")


def parse_directory_line(line: str) -> Optional[tuple[str, list[str], list[str]]]:
    """Split one enumeration line into (name, phones, emails). None if unusable."""
    if not line.strip():
        return None
    parts = line.split(FIELD_SEP)
    if len(parts) < 2:
        return None
    name = parts[0].strip()
    phones = [p.strip() for p in parts[1].split(LIST_SEP) if p.strip()]
    emails = []
    if len(parts) > 2 and parts[2].strip():
        emails = [e.strip() for e in parts[2].split(LIST_SEP) if e.strip()]
    if not name:
        return None
    return name, phones, emails


_WS_RE = re.compile(r"\s+")


def clean_name(name: str) -> str:
    """Collapse internal whitespace in a display name."""
    return _WS_RE.sub(" ", name).strip()
