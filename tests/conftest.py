"""
Shared fixtures for contactcache tests.

Nothing here touches Contacts.app or Messages.app: FakeBridge stands in for
the AppleScript bridge, and the app home is pointed at a throwaway directory
before any contactcache module computes its paths.
"""
from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Keep every default path (cache, state, logs, config.local.yaml) out of the real home
os.environ["CONTACTCACHE_HOME"] = tempfile.mkdtemp(prefix="contactcache-test-")

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from contactcache import config  # noqa: E402
from contactcache.errors import BridgeError  # noqa: E402
from contactcache.models import CacheSnapshot, ContactEntry  # noqa: E402

FIXED_NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_config(tmp_path):
    """Each test starts with no config.local.yaml (all defaults)."""
    saved_path = config.LOCAL_CONFIG_FILE
    config.LOCAL_CONFIG_FILE = tmp_path / "no-config.local.yaml"
    config._config = {}
    config._loaded = False
    yield
    config.LOCAL_CONFIG_FILE = saved_path
    config._config = {}
    config._loaded = False


class FakeBridge:
    """In-memory bridge: scripted directory output and probe answers, records sends."""

    def __init__(self, directory: str = "", probes: dict | None = None):
        self.directory = directory
        self.probes = probes or {}
        self.list_error: Exception | None = None
        self.send_error: Exception | None = None
        self.list_calls = 0
        self.probe_calls: list[str] = []
        self.sent: list[tuple] = []

    def list_directory(self) -> str:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return self.directory

    def probe_service(self, canonical_number: str) -> str:
        self.probe_calls.append(canonical_number)
        result = self.probes.get(canonical_number, "none")
        if isinstance(result, Exception):
            raise result
        return result

    def send_message(self, canonical_number, body, classification=None):
        if self.send_error:
            raise self.send_error
        self.sent.append((canonical_number, body, classification))


SAMPLE_DIRECTORY = "\n".join([
    "Ana Samat\t+1 (617) 555-1234|617-555-9999\tana@example.com",
    "Liliana Ortiz\t+34 618 823 793\t",
    "Bob Smith\t(415) 555-0100\tbob@example.com|bobby@example.com",
    "No Phone Person\t\tnobody@example.com",
])


@pytest.fixture
def fake_bridge():
    return FakeBridge(
        directory=SAMPLE_DIRECTORY,
        probes={
            "+16175551234": "imessage",
            "+16175559999": "sms",
            "+34618823793": BridgeError("execution error: Messages got an error (-1728)"),
        },
    )


def make_entry(name: str, *phones: str, emails=None) -> ContactEntry:
    return ContactEntry(
        name=name,
        phone_numbers=list(phones),
        emails=emails or [],
        last_updated=FIXED_NOW,
    )


@pytest.fixture
def sample_snapshot():
    """Small directory covering the tricky name-matching cases."""
    return CacheSnapshot.from_records(
        [
            make_entry("Ana Samat", "+16175551234", "617-555-9999"),
            make_entry("Liliana Ortiz", "+34618823793"),
            make_entry("Bob Smith", "(415) 555-0100"),
            make_entry("Mary Ann Jones", "2125550111"),
        ],
        [],
    )
