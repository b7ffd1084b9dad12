"""
Data model for the contacts cache.

Snapshot records (ContactEntry, CapabilityRecord) are frozen: a refresh
replaces them wholesale, nothing edits a field in place.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from contactcache import config
from contactcache.common import SCHEMA_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageClassification(str, Enum):
    RICH = "direct-rich-messaging"   # iMessage
    BASIC = "basic-messaging"        # SMS
    UNKNOWN = "unknown"


class CapabilitySource(str, Enum):
    ASSOCIATION = "association"  # Messages.app knows the number on a service
    HEURISTIC = "heuristic"      # no association, guessed from the country code
    ERROR = "error"              # the probe itself failed


# Confidence is looked up, never passed in. Keys are overridable through
# probe.confidence.<key> in config.local.yaml; defaults are the historical values.
DEFAULT_CONFIDENCE: dict[str, float] = {
    "rich": 0.9,
    "basic": 0.8,
    "unknown": 0.3,
    "error": 0.1,
}


def confidence_for(classification: MessageClassification, source: CapabilitySource) -> float:
    """Fixed table keyed by classification. A failed probe is the only exception."""
    if source == CapabilitySource.ERROR:
        key = "error"
    else:
        key = {
            MessageClassification.RICH: "rich",
            MessageClassification.BASIC: "basic",
            MessageClassification.UNKNOWN: "unknown",
        }[classification]
    return float(config.get(f"probe.confidence.{key}", DEFAULT_CONFIDENCE[key]))


class ContactEntry(BaseModel, frozen=True):
    """One directory person with at least one phone number."""

    name: str
    phone_numbers: list[str]
    emails: list[str] = Field(default_factory=list)
    last_updated: datetime

    @field_validator("phone_numbers")
    @classmethod
    def _has_phone(cls, v: list[str]) -> list[str]:
        if not any(p.strip() for p in v):
            raise ValueError("contact entry needs at least one non-empty phone number")
        return v

    @property
    def key(self) -> str:
        return self.name.lower()


class CapabilityRecord(BaseModel, frozen=True):
    """Messaging capability of one canonical number."""

    canonical_number: str
    classification: MessageClassification
    confidence: float = Field(ge=0.0, le=1.0)
    last_tested: datetime
    source: CapabilitySource = CapabilitySource.ASSOCIATION

    @classmethod
    def build(cls, canonical_number: str, classification: MessageClassification,
              source: CapabilitySource, tested_at: Optional[datetime] = None) -> "CapabilityRecord":
        return cls(
            canonical_number=canonical_number,
            classification=classification,
            confidence=confidence_for(classification, source),
            last_tested=tested_at or utcnow(),
            source=source,
        )


class CacheMetadata(BaseModel):
    last_full_update: Optional[datetime] = None
    contacts_count: int = 0
    capabilities_count: int = 0
    schema_version: int = SCHEMA_VERSION


class CacheSnapshot(BaseModel):
    """Contact index keyed by lowercased name, capability index keyed by canonical number."""

    contacts: dict[str, ContactEntry] = Field(default_factory=dict)
    capabilities: dict[str, CapabilityRecord] = Field(default_factory=dict)
    metadata: CacheMetadata = Field(default_factory=CacheMetadata)

    @classmethod
    def from_records(cls, contacts: list[ContactEntry],
                     capabilities: list[CapabilityRecord]) -> "CacheSnapshot":
        contact_map = {c.key: c for c in sorted(contacts, key=lambda c: c.key)}
        cap_map = {r.canonical_number: r
                   for r in sorted(capabilities, key=lambda r: r.canonical_number)}
        return cls(
            contacts=contact_map,
            capabilities=cap_map,
            metadata=CacheMetadata(
                contacts_count=len(contact_map),
                capabilities_count=len(cap_map),
            ),
        )

    @property
    def is_empty(self) -> bool:
        return not self.contacts


class ScoredContact(BaseModel, frozen=True):
    entry: ContactEntry
    score: int


# ──────────────────────────────────────────────────────────────
# Confirmation workflow
# ──────────────────────────────────────────────────────────────

class PendingConfirmation(BaseModel, frozen=True):
    token: str
    recipient_display_name: str
    phone_number: str
    message_body: str
    message_type: MessageClassification
    created_at: datetime


class ConfirmOutcome(str, Enum):
    SENT = "sent"
    DECLINED = "declined"
    INVALID_OR_EXPIRED = "invalid_or_expired"
    SEND_FAILED = "send_failed"


class IssueResult(BaseModel):
    success: bool
    message: str
    needs_confirmation: bool = False
    token: Optional[str] = None
    recipient_name: Optional[str] = None
    phone_number: Optional[str] = None
    message_preview: Optional[str] = None
    message_type: Optional[MessageClassification] = None
    alternatives: list[str] = Field(default_factory=list)


class ConfirmResult(BaseModel):
    success: bool
    outcome: ConfirmOutcome
    message: str
    recipient_name: Optional[str] = None
    phone_number: Optional[str] = None
    message_type: Optional[MessageClassification] = None


# ──────────────────────────────────────────────────────────────
# Daemon
# ──────────────────────────────────────────────────────────────

class DaemonState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class DaemonConfig(BaseModel):
    update_interval_hours: float = Field(default=24, gt=0)
    enabled: bool = True
    auto_start: bool = True
    log_level: Literal["error", "info", "debug"] = "info"

    @property
    def interval_seconds(self) -> float:
        return self.update_interval_hours * 3600


class LivenessMarker(BaseModel):
    pid: int
    started_at: datetime = Field(default_factory=utcnow)
    next_update_at: Optional[datetime] = None
    last_refresh_at: Optional[datetime] = None
    last_refresh_ok: Optional[bool] = None


class DaemonStatus(BaseModel):
    running: bool
    pid: Optional[int] = None
    cache_age_hours: Optional[float] = None
    cache_size_mb: float = 0.0
    contacts_count: int = 0
    capabilities_count: int = 0
    stale: bool = True
    next_update: str = "unknown"
    config: DaemonConfig
