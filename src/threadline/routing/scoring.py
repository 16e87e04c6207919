"""Keyword extraction and pluggable thread scoring.

The metadata and context strategies rank candidate threads through a
``ScoringStrategy``. The shipped scorers are fixed keyword heuristics; a
learned classifier can be dropped in behind the same protocol.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from threadline.models import Thread

SECONDS_PER_DAY = 86_400

DEFAULT_KNOWN_CITIES: tuple[str, ...] = (
    "durham",
    "raleigh",
    "chapel hill",
    "cary",
    "greensboro",
    "winston-salem",
    "charlotte",
    "asheville",
    "wilmington",
)

_STREET_PATTERN = re.compile(
    r"\b\d+\s+[a-z]+"
    r"(?:\s+(?:st|street|ave|avenue|rd|road|dr|drive|ln|lane|blvd|boulevard|ct|court"
    r"|pl|place|way))?",
    re.IGNORECASE,
)
_STATE_PATTERN = re.compile(
    r"\b(?:nc|sc|va|ga|tn|fl|al|ms|la|tx|ca|ny|nj|pa|ma|ct|ri|vt|nh|me|md|de|wv|ky|oh|in"
    r"|il|mi|wi|mn|ia|mo|ar|ok|ks|ne|nd|sd|mt|wy|co|nm|az|ut|nv|id|or|wa|ak|hi)\b",
    re.IGNORECASE,
)

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "from", "as", "is", "was", "are", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should", "may",
        "might", "can", "this", "that", "these", "those", "i", "you", "he", "she",
        "it", "we", "they", "me", "him", "her", "us", "them", "my", "your", "his",
        "its", "our", "their", "what", "which", "who", "whom", "whose", "where",
        "when", "why", "how", "all", "each", "every", "both", "few", "more", "most",
        "other", "some", "such", "no", "nor", "not", "only", "own", "same", "so",
        "than", "too", "very", "just", "now",
    }
)  # fmt: skip

MAX_CONTEXT_KEYWORDS = 10
_MIN_KEYWORD_LENGTH = 3


def days_since(then: datetime, now: datetime) -> float:
    return (now - then).total_seconds() / SECONDS_PER_DAY


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def city_pattern(known_cities: Iterable[str]) -> re.Pattern[str]:
    """Build a whole-word alternation over *known_cities*; spaces match any run."""
    alternatives = [
        r"\s+".join(re.escape(part) for part in city.lower().split())
        for city in known_cities
        if city.strip()
    ]
    if not alternatives:
        # Matches nothing
        return re.compile(r"(?!x)x")
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


_DEFAULT_CITY_PATTERN = city_pattern(DEFAULT_KNOWN_CITIES)


def extract_address_keywords(
    text: str, *, cities: re.Pattern[str] = _DEFAULT_CITY_PATTERN
) -> list[str]:
    """Pull at most one street, one city and one state token out of *text*.

    Each pattern contributes its first match only, lowercased.
    """
    lowered = text.lower()
    keywords: list[str] = []
    for pattern in (_STREET_PATTERN, cities, _STATE_PATTERN):
        match = pattern.search(lowered)
        if match:
            keywords.append(match.group(0))
    return keywords


def extract_context_keywords(text: str, *, limit: int = MAX_CONTEXT_KEYWORDS) -> list[str]:
    """Whitespace-tokenize, drop stop words and short tokens, keep the first *limit*."""
    keywords = [
        word
        for word in text.lower().split()
        if len(word) >= _MIN_KEYWORD_LENGTH and word not in STOP_WORDS
    ]
    return keywords[:limit]


# ---------------------------------------------------------------------------
# Scoring strategies
# ---------------------------------------------------------------------------


class ScoringStrategy(Protocol):
    """Scores how well a thread matches a message's keywords."""

    threshold: int

    def score(self, thread: Thread, keywords: Sequence[str], now: datetime) -> int: ...


def _last_message_text(thread: Thread) -> str:
    return thread.last_message.text.lower() if thread.last_message else ""


class AddressKeywordScorer:
    """Scores address-like keywords against thread metadata.

    Per keyword: +3 address, +2 city, +1 state, +1 group name, +1 last
    message text (substring containment, case-insensitive).
    """

    def __init__(self, threshold: int = 2) -> None:
        self.threshold = threshold

    def score(self, thread: Thread, keywords: Sequence[str], now: datetime) -> int:  # noqa: ARG002
        address = thread.metadata_text("address")
        city = thread.metadata_text("city")
        state = thread.metadata_text("state")
        group_name = (thread.group_name or "").lower()
        last_text = _last_message_text(thread)

        total = 0
        for keyword in keywords:
            if address and keyword in address:
                total += 3
            if city and keyword in city:
                total += 2
            if state and keyword in state:
                total += 1
            if group_name and keyword in group_name:
                total += 1
            if last_text and keyword in last_text:
                total += 1
        return total


class ContextKeywordScorer:
    """Scores free-text keywords against the thread's recent conversation.

    Per keyword: +2 in the last message text, +1 in the group name. A thread
    updated within ``recent_days`` gets a flat +1.
    """

    def __init__(self, threshold: int = 3, *, recent_days: float = 7) -> None:
        self.threshold = threshold
        self.recent_days = recent_days

    def score(self, thread: Thread, keywords: Sequence[str], now: datetime) -> int:
        group_name = (thread.group_name or "").lower()
        last_text = _last_message_text(thread)

        total = 0
        for keyword in keywords:
            if last_text and keyword in last_text:
                total += 2
            if group_name and keyword in group_name:
                total += 1
        if days_since(thread.updated_at, now) < self.recent_days:
            total += 1
        return total


@dataclass(frozen=True)
class ScoredThread:
    thread: Thread
    score: int


def rank_threads(
    threads: Sequence[Thread],
    keywords: Sequence[str],
    scorer: ScoringStrategy,
    now: datetime,
) -> list[ScoredThread]:
    """Score *threads* and keep those at or above the scorer's threshold.

    Highest score first. The input is most-recent-first and the sort is
    stable, so ties go to the most recently updated thread.
    """
    scored = [ScoredThread(thread, scorer.score(thread, keywords, now)) for thread in threads]
    qualifying = [item for item in scored if item.score >= scorer.threshold]
    return sorted(qualifying, key=lambda item: item.score, reverse=True)


__all__ = [
    "DEFAULT_KNOWN_CITIES",
    "MAX_CONTEXT_KEYWORDS",
    "STOP_WORDS",
    "AddressKeywordScorer",
    "ContextKeywordScorer",
    "ScoredThread",
    "ScoringStrategy",
    "city_pattern",
    "clamp",
    "days_since",
    "extract_address_keywords",
    "extract_context_keywords",
    "rank_threads",
]
