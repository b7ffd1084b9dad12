"""
Cache store: persisted snapshot of the contact and capability indexes.

Three JSON files, one per dataset. A save serializes all three in memory,
writes each to a temp file next to its destination and only then swaps them
in with os.replace, metadata last. Readers never see a truncated file.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from contactcache.common import (
    CACHE_DIR,
    CACHE_METADATA_FILE,
    CAPABILITIES_CACHE_FILE,
    CONTACTS_CACHE_FILE,
    SCHEMA_VERSION,
)
from contactcache.errors import CacheStoreError
from contactcache.models import (
    CacheMetadata,
    CacheSnapshot,
    CapabilityRecord,
    ContactEntry,
    utcnow,
)

log = logging.getLogger(__name__)


def _dumps(payload) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


class CacheStore:
    """Reads and atomically replaces the persisted snapshot."""

    def __init__(self, cache_dir: Path = CACHE_DIR):
        self.cache_dir = Path(cache_dir)
        self.contacts_file = self.cache_dir / CONTACTS_CACHE_FILE
        self.capabilities_file = self.cache_dir / CAPABILITIES_CACHE_FILE
        self.metadata_file = self.cache_dir / CACHE_METADATA_FILE

    # ── reading ───────────────────────────────────────────────

    def _read_json(self, path: Path):
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CacheStoreError(f"Failed to read {path}: {e}") from e

    def load_metadata(self) -> CacheMetadata:
        if not self.metadata_file.exists():
            return CacheMetadata()
        try:
            return CacheMetadata.model_validate(self._read_json(self.metadata_file))
        except ValidationError as e:
            raise CacheStoreError(f"Invalid cache metadata in {self.metadata_file}: {e}") from e

    def load(self) -> CacheSnapshot:
        """Load the persisted snapshot. No files yet means an empty snapshot, not an error."""
        snapshot = CacheSnapshot()
        try:
            if self.contacts_file.exists():
                for item in self._read_json(self.contacts_file):
                    entry = ContactEntry.model_validate(item)
                    snapshot.contacts[entry.key] = entry
            if self.capabilities_file.exists():
                for item in self._read_json(self.capabilities_file):
                    record = CapabilityRecord.model_validate(item)
                    snapshot.capabilities[record.canonical_number] = record
        except (ValidationError, TypeError) as e:
            raise CacheStoreError(f"Invalid cache data in {self.cache_dir}: {e}") from e
        snapshot.metadata = self.load_metadata()

        if snapshot.metadata.schema_version != SCHEMA_VERSION:
            log.warning(
                f"Cache schema v{snapshot.metadata.schema_version} != v{SCHEMA_VERSION}, "
                f"loading anyway"
            )
        log.debug(f"Loaded {len(snapshot.contacts)} contacts, {len(snapshot.capabilities)} capabilities")
        return snapshot

    # ── writing ───────────────────────────────────────────────

    def save(self, snapshot: CacheSnapshot, now: Optional[datetime] = None) -> CacheSnapshot:
        """Persist a full snapshot and return it with fresh metadata."""
        metadata = CacheMetadata(
            last_full_update=now or utcnow(),
            contacts_count=len(snapshot.contacts),
            capabilities_count=len(snapshot.capabilities),
            schema_version=SCHEMA_VERSION,
        )
        saved = CacheSnapshot(
            contacts=snapshot.contacts,
            capabilities=snapshot.capabilities,
            metadata=metadata,
        )

        payloads = [
            (self.contacts_file, _dumps(
                [saved.contacts[k].model_dump(mode="json") for k in sorted(saved.contacts)])),
            (self.capabilities_file, _dumps(
                [saved.capabilities[k].model_dump(mode="json") for k in sorted(saved.capabilities)])),
            (self.metadata_file, _dumps(metadata.model_dump(mode="json"))),
        ]

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            tmp_paths = []
            for path, text in payloads:
                tmp_path = path.with_name(path.name + ".tmp")
                with open(tmp_path, "w", encoding="utf-8") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    f.write(text)
                    f.flush()
                    os.fsync(f.fileno())
                tmp_paths.append((tmp_path, path))
            for tmp_path, path in tmp_paths:
                os.replace(tmp_path, path)  # Atomic rename
        except OSError as e:
            raise CacheStoreError(f"Failed to write cache in {self.cache_dir}: {e}") from e

        log.info(
            f"Cache saved: {metadata.contacts_count} contacts, "
            f"{metadata.capabilities_count} capabilities, {self.size_bytes() / 1024:.1f}KB"
        )
        return saved

    # ── freshness ─────────────────────────────────────────────

    def age(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Time since the last successful save, or None if there never was one."""
        last = self.load_metadata().last_full_update
        if last is None:
            return None
        return (now or utcnow()) - last

    def is_stale(self, max_age_hours: float = 24, now: Optional[datetime] = None) -> bool:
        age = self.age(now)
        return age is None or age > timedelta(hours=max_age_hours)

    def size_bytes(self) -> int:
        total = 0
        for path in (self.contacts_file, self.capabilities_file, self.metadata_file):
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    def signature(self) -> Optional[int]:
        """Changes whenever a new snapshot lands (metadata is replaced last)."""
        try:
            return self.metadata_file.stat().st_mtime_ns
        except FileNotFoundError:
            return None
