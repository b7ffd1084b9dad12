"""
Phone number normalization.

normalize() produces the canonical key used by the capability index and by
every phone comparison. Canonical form is E.164-ish: +1XXXXXXXXXX for North
American numbers, international numbers kept as dialed.
"""
from __future__ import annotations

import re
from typing import Optional

_NON_DIAL_RE = re.compile(r"[^\d+]")
_PHONE_QUERY_RE = re.compile(r"^\+?[0-9\s\-().]+$")

_NANP_CANONICAL_RE = re.compile(r"^\+1\d{10}$")
_NANP_WITH_TRUNK_RE = re.compile(r"^1\d{10}$")
_NANP_BARE_RE = re.compile(r"^\d{10}$")

MIN_DIGITS = 10
DOMESTIC_PREFIX = "+1"


def clean(raw: Optional[str]) -> str:
    """Digits only, with a '+' kept only if it leads."""
    if not raw or not isinstance(raw, str):
        return ""
    kept = _NON_DIAL_RE.sub("", raw)
    digits = kept.replace("+", "")
    return f"+{digits}" if kept.startswith("+") and digits else digits


def normalize(raw: Optional[str]) -> Optional[str]:
    """Canonical form of a phone number, or None if it has fewer than 10 digits.

    Heuristics, first match wins:
        +1 and 10 digits      -> unchanged
        1 and 10 digits       -> '+' prepended
        10 digits             -> '+1' prepended
        '+' and >10 digits    -> unchanged (international)
        anything else         -> unchanged if it leads with '+' or '1',
                                 otherwise '+1' prepended
    """
    cleaned = clean(raw)
    digits = cleaned.lstrip("+")
    if len(digits) < MIN_DIGITS:
        return None

    if _NANP_CANONICAL_RE.match(cleaned):
        return cleaned
    if _NANP_WITH_TRUNK_RE.match(cleaned):
        return f"+{cleaned}"
    if _NANP_BARE_RE.match(cleaned):
        return f"{DOMESTIC_PREFIX}{cleaned}"
    if cleaned.startswith("+") and len(digits) > MIN_DIGITS:
        return cleaned
    if cleaned.startswith(("+", "1")):
        return cleaned
    return f"{DOMESTIC_PREFIX}{cleaned}"


def equivalent_forms(raw: Optional[str]) -> set[str]:
    """Canonical form plus the de-prefixed spellings a directory may store.

    +16175551234 -> {+16175551234, 16175551234, 6175551234}
    +34618823793 -> {+34618823793, 34618823793}
    """
    canonical = normalize(raw)
    if not canonical:
        return set()
    forms = {canonical}
    if canonical.startswith("+"):
        forms.add(canonical[1:])
    if _NANP_CANONICAL_RE.match(canonical):
        forms.add(canonical[2:])
    return forms


def is_international(raw: Optional[str]) -> bool:
    """True when the number is already written with a leading '+'."""
    return bool(raw) and raw.strip().startswith("+")


def looks_like_phone_number(text: Optional[str]) -> bool:
    """Whether a recipient query is a number rather than a contact name."""
    if not text:
        return False
    return bool(_PHONE_QUERY_RE.match(text.strip())) and any(c.isdigit() for c in text)
