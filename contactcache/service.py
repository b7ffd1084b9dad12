"""
ContactsService - the query/refresh/confirm API handed to the tool dispatcher.

Reads come from the persisted snapshot (reloaded whenever the daemon lands a
new one). When the cache has never been built, name and number lookups fall
back to one live Contacts enumeration, kept in memory only; the daemon stays
the only writer.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from contactcache.bridge import AppleScriptBridge
from contactcache.confirmation import ConfirmationWorkflow
from contactcache.daemon import DaemonConfigStore, refresh_now
from contactcache.errors import CacheStoreError
from contactcache.extraction import ExtractionPipeline
from contactcache.models import (
    CacheSnapshot,
    CapabilityRecord,
    ConfirmResult,
    ContactEntry,
    IssueResult,
    MessageClassification,
    ScoredContact,
)
from contactcache.phone import normalize
from contactcache.resolver import Resolver
from contactcache.store import CacheStore
from contactcache.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)


class ContactsService:
    def __init__(self,
                 store: Optional[CacheStore] = None,
                 bridge: Optional[AppleScriptBridge] = None,
                 pipeline: Optional[ExtractionPipeline] = None,
                 supervisor: Optional[ProcessSupervisor] = None,
                 config_store: Optional[DaemonConfigStore] = None):
        self.store = store or CacheStore()
        self.bridge = bridge or AppleScriptBridge()
        self.pipeline = pipeline or ExtractionPipeline(self.bridge)
        self.supervisor = supervisor or ProcessSupervisor()
        self.config_store = config_store or DaemonConfigStore()
        self._resolver: Optional[Resolver] = None
        self._signature: Optional[int] = None
        self._live: Optional[Resolver] = None
        self._lock = threading.Lock()
        self.confirmations = ConfirmationWorkflow(
            get_resolver=self._lookup_resolver,
            bridge=self.bridge,
            prober=self.pipeline.probe_number,
        )

    # ── snapshot access ───────────────────────────────────────

    def resolver(self) -> Resolver:
        """Resolver over the newest persisted snapshot (reloaded when it changes)."""
        with self._lock:
            signature = self.store.signature()
            if self._resolver is None or signature != self._signature:
                snapshot = self.store.load()
                self._resolver = Resolver(snapshot)
                self._signature = signature
                log.info(f"Using cached contacts ({len(snapshot.contacts)} contacts)")
            return self._resolver

    def _lookup_resolver(self) -> Resolver:
        """Cached resolver, or a live in-memory one when the cache is empty."""
        try:
            cached = self.resolver()
        except CacheStoreError as e:
            log.error(f"Cache unreadable, falling back to live Contacts lookup: {e}")
            cached = None
        if cached is not None and not cached.snapshot.is_empty:
            return cached
        if self._live is None:
            log.warning("Cache empty, falling back to live Contacts enumeration")
            contacts = self.pipeline.extract_all()
            self._live = Resolver(CacheSnapshot.from_records(contacts, []))
        return self._live

    # ── queries ───────────────────────────────────────────────

    def find_contact(self, name: str) -> Optional[ContactEntry]:
        match = self._lookup_resolver().find_by_name(name)
        return match.entry if match else None

    def find_numbers(self, name: str) -> list[str]:
        entry = self.find_contact(name)
        return list(entry.phone_numbers) if entry else []

    def find_contact_by_phone(self, number: str) -> Optional[str]:
        return self._lookup_resolver().find_by_phone(number)

    def find_best_matches(self, term: str, limit: int = 5) -> list[ScoredContact]:
        return self._lookup_resolver().find_best_matches(term, limit)

    def all_numbers(self) -> dict[str, list[str]]:
        snapshot = self._lookup_resolver().snapshot
        return {entry.name: list(entry.phone_numbers) for entry in snapshot.contacts.values()}

    def capability_for(self, number: str) -> Optional[CapabilityRecord]:
        return self.resolver().capability_for(number)

    def detect_message_type(self, number: str) -> MessageClassification:
        """Cached classification, else a live probe (not written back; the daemon owns writes)."""
        record = self.capability_for(number)
        if record is not None:
            return record.classification
        canonical = normalize(number)
        if not canonical:
            return MessageClassification.UNKNOWN
        log.info(f"No cached capability for {canonical}, falling back to live detection")
        return self.pipeline.probe_number(canonical).classification

    # ── cache management ──────────────────────────────────────

    def cache_status(self) -> dict:
        cfg = self.config_store.load(persist_defaults=False)
        age = self.store.age()
        metadata = self.store.load_metadata()
        return {
            "age_hours": None if age is None else round(age.total_seconds() / 3600, 1),
            "stale": self.store.is_stale(cfg.update_interval_hours),
            "contacts_count": metadata.contacts_count,
            "capabilities_count": metadata.capabilities_count,
            "size_mb": round(self.store.size_bytes() / (1024 * 1024), 2),
            "pending_confirmations": self.confirmations.pending_count(),
        }

    def refresh(self) -> tuple[bool, str]:
        ok, message = refresh_now(self.store, self.pipeline, self.supervisor)
        if ok:
            self._live = None
        return ok, message

    # ── sending ───────────────────────────────────────────────

    def prepare_send(self, recipient: str, message: str, message_type: str = "auto",
                     verify_contact: bool = True) -> IssueResult:
        return self.confirmations.issue(recipient, message, message_type, verify_contact)

    def confirm_send(self, token: str, user_response: Optional[str] = None) -> ConfirmResult:
        return self.confirmations.confirm(token, user_response)
