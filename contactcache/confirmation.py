"""
Two-step send: issue() resolves the recipient and parks the message behind a
single-use token; confirm() sends exactly what was shown at issue time.

confirm() never takes recipient, number or body from its caller. The stored
PendingConfirmation is the only source of truth, so what the user approved
is what goes out. Tokens live in this object only and die with the process.
"""
from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from contactcache import config
from contactcache.bridge import AppleScriptBridge
from contactcache.errors import BridgeError
from contactcache.models import (
    CapabilityRecord,
    ConfirmOutcome,
    ConfirmResult,
    IssueResult,
    MessageClassification,
    PendingConfirmation,
    utcnow,
)
from contactcache.phone import is_international, looks_like_phone_number, normalize
from contactcache.resolver import Resolver

log = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=5)
AFFIRMATIVE_RESPONSES = frozenset({"yes", "y", "confirm", "send", "ok", "proceed"})
TOKEN_PREFIX = "confirm_"

# Caller-facing message_type values
EXPLICIT_TYPES = {
    "imessage": MessageClassification.RICH,
    "sms": MessageClassification.BASIC,
    MessageClassification.RICH.value: MessageClassification.RICH,
    MessageClassification.BASIC.value: MessageClassification.BASIC,
}


def make_token(now: datetime) -> str:
    """confirm_<epoch ms>_<64 random bits>."""
    return f"{TOKEN_PREFIX}{int(now.timestamp() * 1000)}_{secrets.token_hex(8)}"


def select_phone_number(numbers: list[str]) -> Optional[str]:
    """Canonical form of the best number to text: '+'-formatted numbers first."""
    for raw in numbers:
        if is_international(raw):
            canonical = normalize(raw)
            if canonical:
                return canonical
    for raw in numbers:
        canonical = normalize(raw)
        if canonical:
            return canonical
    return None


class ConfirmationWorkflow:
    """Ledger of pending sends keyed by token."""

    def __init__(self,
                 get_resolver: Callable[[], Resolver],
                 bridge: Optional[AppleScriptBridge] = None,
                 prober: Optional[Callable[[str], CapabilityRecord]] = None,
                 ttl: Optional[timedelta] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._get_resolver = get_resolver
        self.bridge = bridge or AppleScriptBridge()
        self._prober = prober
        if ttl is None:
            ttl = timedelta(seconds=float(config.get("confirmation.ttl_seconds", DEFAULT_TTL.total_seconds())))
        self.ttl = ttl
        self._clock = clock
        self._pending: dict[str, PendingConfirmation] = {}
        self._lock = threading.Lock()

    # ── ledger ────────────────────────────────────────────────

    def _expired(self, pending: PendingConfirmation, now: datetime) -> bool:
        return now - pending.created_at >= self.ttl

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop expired tokens. Returns how many were removed."""
        now = now or self._clock()
        with self._lock:
            expired = [t for t, p in self._pending.items() if self._expired(p, now)]
            for token in expired:
                del self._pending[token]
        if expired:
            log.debug(f"Swept {len(expired)} expired confirmation token(s)")
        return len(expired)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ── issue ─────────────────────────────────────────────────

    def _classify(self, resolver: Resolver, canonical: str, message_type: str) -> Optional[MessageClassification]:
        requested = (message_type or "auto").strip().lower()
        if requested in EXPLICIT_TYPES:
            return EXPLICIT_TYPES[requested]
        if requested != "auto":
            return None

        record = resolver.capability_for(canonical)
        if record is not None:
            log.debug(f"Cached message type for {canonical}: {record.classification.value} ({record.confidence})")
            return record.classification
        if self._prober is None:
            return MessageClassification.UNKNOWN
        log.info(f"No cached capability for {canonical}, probing live")
        return self._prober(canonical).classification

    def issue(self, recipient: str, message: str, message_type: str = "auto",
              verify_contact: bool = True) -> IssueResult:
        """Resolve the recipient and park the send behind a token. Does not send."""
        now = self._clock()
        self.sweep(now)

        if not recipient or not recipient.strip():
            return IssueResult(success=False, message="No recipient given.")
        if not message or not message.strip():
            return IssueResult(success=False, message="Message body is empty.")

        resolver = self._get_resolver()
        alternatives: list[str] = []

        if looks_like_phone_number(recipient):
            canonical = normalize(recipient)
            if not canonical:
                return IssueResult(success=False, message=f"Invalid phone number format: {recipient}")
            name = resolver.find_by_phone(recipient) if verify_contact else None
            display_name = name or recipient.strip()
        else:
            match = resolver.find_by_name(recipient)
            if match is None:
                return IssueResult(
                    success=False,
                    message=f'No contact found matching "{recipient}". '
                            f"Try a different name or use the phone number directly.",
                )
            entry = match.entry
            canonical = select_phone_number(entry.phone_numbers)
            if not canonical:
                return IssueResult(
                    success=False,
                    recipient_name=entry.name,
                    message=f'Contact "{entry.name}" found but has no valid phone numbers.',
                )
            display_name = entry.name
            alternatives = [
                s.entry.name for s in resolver.find_best_matches(recipient, 3)
                if s.entry.key != entry.key
            ][:2]
            if alternatives:
                log.info(f"Multiple contacts match {recipient!r}. Using: {entry.name}. Alternatives: {', '.join(alternatives)}")

        classification = self._classify(resolver, canonical, message_type)
        if classification is None:
            return IssueResult(success=False, message=f"Unsupported message type: {message_type}")

        token = make_token(now)
        pending = PendingConfirmation(
            token=token,
            recipient_display_name=display_name,
            phone_number=canonical,
            message_body=message,
            message_type=classification,
            created_at=now,
        )
        with self._lock:
            self._pending[token] = pending

        minutes = int(self.ttl.total_seconds() // 60)
        summary = (
            f"Ready to send to {display_name} ({canonical}) via {classification.value}.\n"
            f'Message: "{message}"\n'
            f"Confirm within {minutes} minutes with token {token}."
        )
        return IssueResult(
            success=True,
            needs_confirmation=True,
            message=summary,
            token=token,
            recipient_name=display_name,
            phone_number=canonical,
            message_preview=message,
            message_type=classification,
            alternatives=alternatives,
        )

    # ── confirm ───────────────────────────────────────────────

    def confirm(self, token: str, user_response: Optional[str] = None) -> ConfirmResult:
        """Send the parked message. No user_response (or an empty one) counts as yes."""
        now = self._clock()
        self.sweep(now)

        with self._lock:
            pending = self._pending.get(token)
            if pending is None or self._expired(pending, now):
                self._pending.pop(token, None)
                return ConfirmResult(
                    success=False,
                    outcome=ConfirmOutcome.INVALID_OR_EXPIRED,
                    message="Invalid or expired confirmation token. Please start the send process again.",
                )

            if user_response and user_response.strip().lower() not in AFFIRMATIVE_RESPONSES:
                del self._pending[token]
                log.info(f"Send to {pending.phone_number} declined by user ({user_response!r})")
                return ConfirmResult(
                    success=False,
                    outcome=ConfirmOutcome.DECLINED,
                    message="Message sending cancelled by user.",
                    recipient_name=pending.recipient_display_name,
                    phone_number=pending.phone_number,
                    message_type=pending.message_type,
                )

            # Consume before sending so a concurrent confirm can't reuse it
            del self._pending[token]

        try:
            self.bridge.send_message(pending.phone_number, pending.message_body, pending.message_type)
        except BridgeError as e:
            log.error(f"Send to {pending.phone_number} failed: {e}")
            return ConfirmResult(
                success=False,
                outcome=ConfirmOutcome.SEND_FAILED,
                message=f"Failed to send confirmed message: {e}",
                recipient_name=pending.recipient_display_name,
                phone_number=pending.phone_number,
                message_type=pending.message_type,
            )

        return ConfirmResult(
            success=True,
            outcome=ConfirmOutcome.SENT,
            message=(
                f"Message sent to {pending.recipient_display_name} ({pending.phone_number}) "
                f"via {pending.message_type.value}"
            ),
            recipient_name=pending.recipient_display_name,
            phone_number=pending.phone_number,
            message_type=pending.message_type,
        )
