"""
Extraction pipeline: Contacts.app -> ContactEntry list, Messages.app -> CapabilityRecord list.

The contact index is authoritative, so any bridge failure during enumeration
aborts the whole run and the caller keeps its last good snapshot. Capability
data is advisory: a failed probe for one number is recorded as unknown with
low confidence and probing carries on.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from contactcache import config
from contactcache.bridge import (
    PROBE_BASIC,
    PROBE_RICH,
    AppleScriptBridge,
    clean_name,
    parse_directory_line,
)
from contactcache.errors import BridgeError
from contactcache.models import (
    CacheSnapshot,
    CapabilityRecord,
    CapabilitySource,
    ContactEntry,
    MessageClassification,
    utcnow,
)
from contactcache.phone import DOMESTIC_PREFIX, normalize

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_PAUSE = 0.5  # seconds


class ExtractionPipeline:
    """Builds a full CacheSnapshot from the automation bridge."""

    def __init__(self, bridge: Optional[AppleScriptBridge] = None,
                 batch_size: Optional[int] = None,
                 batch_pause: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.bridge = bridge or AppleScriptBridge()
        self.batch_size = batch_size or int(config.get("probe.batch_size", DEFAULT_BATCH_SIZE))
        if batch_pause is None:
            batch_pause = float(config.get("probe.batch_pause_seconds", DEFAULT_BATCH_PAUSE))
        self.batch_pause = batch_pause
        self._sleep = sleep

    # ── contacts ──────────────────────────────────────────────

    def extract_all(self) -> list[ContactEntry]:
        """Enumerate the directory once. Bridge errors propagate."""
        start = time.perf_counter()
        raw = self.bridge.list_directory()
        now = utcnow()

        by_key: dict[str, ContactEntry] = {}
        skipped = 0
        for line in raw.splitlines():
            parsed = parse_directory_line(line)
            if not parsed:
                continue
            name, phones, emails = parsed
            if not phones:
                skipped += 1
                continue
            entry = ContactEntry(
                name=clean_name(name),
                phone_numbers=phones,
                emails=emails,
                last_updated=now,
            )
            # Duplicate display names: last one wins
            by_key[entry.key] = entry

        elapsed_ms = (time.perf_counter() - start) * 1000
        log.info(f"Extracted {len(by_key)} contacts in {elapsed_ms:.0f}ms (skipped {skipped} without phones)")
        return list(by_key.values())

    # ── capabilities ──────────────────────────────────────────

    def probe_number(self, canonical_number: str) -> CapabilityRecord:
        """Probe one number. Never raises; a failed probe becomes unknown/low confidence."""
        try:
            result = self.bridge.probe_service(canonical_number)
        except BridgeError as e:
            log.warning(f"Probe failed for {canonical_number}: {e}")
            return CapabilityRecord.build(
                canonical_number, MessageClassification.UNKNOWN, CapabilitySource.ERROR
            )

        if result == PROBE_RICH:
            return CapabilityRecord.build(
                canonical_number, MessageClassification.RICH, CapabilitySource.ASSOCIATION
            )
        if result == PROBE_BASIC:
            return CapabilityRecord.build(
                canonical_number, MessageClassification.BASIC, CapabilitySource.ASSOCIATION
            )
        return self._heuristic(canonical_number)

    @staticmethod
    def _heuristic(canonical_number: str) -> CapabilityRecord:
        # Domestic numbers are optimistically assumed to be on iMessage
        if canonical_number.startswith(DOMESTIC_PREFIX):
            classification = MessageClassification.RICH
        else:
            classification = MessageClassification.BASIC
        return CapabilityRecord.build(canonical_number, classification, CapabilitySource.HEURISTIC)

    def probe_capabilities(self, numbers: Iterable[str]) -> list[CapabilityRecord]:
        """Probe every number in batches, pausing between batches to spare Messages.app."""
        ordered = sorted(set(numbers))
        if not ordered:
            return []

        start = time.perf_counter()
        total_batches = (len(ordered) + self.batch_size - 1) // self.batch_size
        records: list[CapabilityRecord] = []
        for i in range(0, len(ordered), self.batch_size):
            batch = ordered[i:i + self.batch_size]
            log.debug(f"Probing batch {i // self.batch_size + 1}/{total_batches} ({len(batch)} numbers)")
            for number in batch:
                records.append(self.probe_number(number))
            if i + self.batch_size < len(ordered) and self.batch_pause > 0:
                self._sleep(self.batch_pause)

        elapsed_ms = (time.perf_counter() - start) * 1000
        failed = sum(1 for r in records if r.source == CapabilitySource.ERROR)
        log.info(f"Probed {len(records)} numbers in {elapsed_ms:.0f}ms ({failed} failed)")
        return records

    # ── full run ──────────────────────────────────────────────

    def run(self) -> CacheSnapshot:
        """Extract contacts, probe their numbers, and assemble an unsaved snapshot."""
        contacts = self.extract_all()
        numbers: set[str] = set()
        for entry in contacts:
            for phone in entry.phone_numbers:
                canonical = normalize(phone)
                if canonical:
                    numbers.add(canonical)
        capabilities = self.probe_capabilities(numbers)
        return CacheSnapshot.from_records(contacts, capabilities)
