"""
Name and phone resolution over a loaded CacheSnapshot.

Both name scorers are ordered rule tables evaluated top to bottom, first
match wins; scores are never summed across rules. find_by_name() is the
precision path used before acting on a contact: anything scoring below
MIN_NAME_SCORE is treated as no match, which keeps a short first name from
landing on an unrelated longer name that merely contains it.
"""
from __future__ import annotations

import logging
import re
from typing import Callable, Optional

from contactcache import config
from contactcache.models import CacheSnapshot, CapabilityRecord, ContactEntry, ScoredContact
from contactcache.phone import equivalent_forms, normalize

log = logging.getLogger(__name__)

MIN_NAME_SCORE = 60

Predicate = Callable[[str, str], bool]  # (candidate_key, query) -> bool

# (label, score, predicate) for find_by_name
NAME_RULES: list[tuple[str, int, Predicate]] = [
    ("exact", 100, lambda key, q: key == q),
    ("leading_word", 90, lambda key, q: key.startswith(q + " ")),
    ("prefix", 80, lambda key, q: key.startswith(q)),
    ("middle_word", 70, lambda key, q: f" {q} " in key),
    ("trailing_word", 60, lambda key, q: key.endswith(" " + q)),
    ("substring", 20, lambda key, q: q in key),
]

WORD_PREFIX_CREDIT = 30
WORD_CONTAINS_CREDIT = 15
WORD_CREDIT_CAP = 65
SIMILARITY_FLOOR = 0.6
SIMILARITY_SCALE = 50

_WORDS_RE = re.compile(r"\s+")


def score_name(key: str, query: str) -> tuple[int, Optional[str]]:
    """Score of the first NAME_RULES rule that applies, with its label."""
    for label, score, predicate in NAME_RULES:
        if predicate(key, query):
            return score, label
    return 0, None


def _word_credit(name: str, query: str) -> int:
    total = 0
    for q_word in _WORDS_RE.split(query):
        if not q_word:
            continue
        for n_word in _WORDS_RE.split(name):
            if n_word.startswith(q_word):
                total += WORD_PREFIX_CREDIT
            elif q_word in n_word:
                total += WORD_CONTAINS_CREDIT
    return min(total, WORD_CREDIT_CAP)


def similarity(a: str, b: str) -> float:
    """Share of positions in the longer string where both strings agree."""
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    matches = sum(1 for i, ch in enumerate(shorter) if ch == longer[i])
    return matches / len(longer)


def _similarity_score(name: str, query: str) -> int:
    sim = similarity(query, name)
    return int(sim * SIMILARITY_SCALE) if sim > SIMILARITY_FLOOR else 0


# (label, scorer) for find_best_matches; scorer returns 0 when it doesn't apply
MATCH_RULES: list[tuple[str, Callable[[str, str], int]]] = [
    ("exact", lambda name, q: 100 if name == q else 0),
    ("prefix", lambda name, q: 90 if name.startswith(q) else 0),
    ("word_bounded", lambda name, q: 80 if (f" {q}" in name or f"{q} " in name) else 0),
    ("substring", lambda name, q: 70 if q in name else 0),
    ("word_credit", _word_credit),
    ("similarity", _similarity_score),
]


def score_match(name: str, query: str) -> int:
    if not name or not query:
        return 0
    for _label, scorer in MATCH_RULES:
        score = scorer(name, query)
        if score > 0:
            return score
    return 0


class Resolver:
    """Read-only queries against one snapshot."""

    def __init__(self, snapshot: CacheSnapshot, min_score: Optional[int] = None):
        self.snapshot = snapshot
        if min_score is None:
            min_score = int(config.get("resolver.min_score", MIN_NAME_SCORE))
        self.min_score = min_score
        self._phone_index: Optional[dict[str, str]] = None

    def find_by_name(self, query: str) -> Optional[ScoredContact]:
        """Best contact for a name query, or None if nothing reaches min_score.

        Ties keep the first candidate in snapshot order (ascending key).
        """
        q = (query or "").strip().lower()
        if not q:
            return None

        contacts = self.snapshot.contacts
        if q in contacts:
            return ScoredContact(entry=contacts[q], score=100)

        best: Optional[ContactEntry] = None
        best_score = 0
        best_label = None
        for key, entry in contacts.items():
            score, label = score_name(key, q)
            if score > best_score:
                best, best_score, best_label = entry, score, label

        if best is None or best_score < self.min_score:
            if best is not None:
                log.debug(f"Best match for {query!r} was {best.name!r} at {best_score} ({best_label}), below {self.min_score}")
            return None
        return ScoredContact(entry=best, score=best_score)

    def find_best_matches(self, query: str, limit: int = 5) -> list[ScoredContact]:
        """Ranked candidates for pickers. Stable sort, so equal scores keep snapshot order."""
        q = (query or "").strip().lower()
        if not q or limit <= 0:
            return []
        scored = []
        for entry in self.snapshot.contacts.values():
            score = score_match(entry.name.lower(), q)
            if score > 0:
                scored.append(ScoredContact(entry=entry, score=score))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:limit]

    def _build_phone_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        for entry in self.snapshot.contacts.values():
            for phone in entry.phone_numbers:
                for form in equivalent_forms(phone):
                    index.setdefault(form, entry.name)
        return index

    def find_by_phone(self, raw_number: str) -> Optional[str]:
        """Display name of the contact owning a number, matching across +1 / bare forms."""
        if self._phone_index is None:
            self._phone_index = self._build_phone_index()
        for form in sorted(equivalent_forms(raw_number)):
            name = self._phone_index.get(form)
            if name:
                return name
        return None

    def capability_for(self, raw_number: str) -> Optional[CapabilityRecord]:
        """Cached capability, or None meaning 'unknown, ask the live probe'."""
        canonical = normalize(raw_number)
        if not canonical:
            return None
        return self.snapshot.capabilities.get(canonical)
