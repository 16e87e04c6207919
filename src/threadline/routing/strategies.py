"""The three routing strategies, tried in fixed priority order.

Each strategy only reads thread and identity state; attaching the message is
the orchestrator's job. ``None`` means "no opinion" and lets the next
strategy run.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from threadline.identity.resolver import IdentityResolver
from threadline.models import DecisionMethod, NormalizedMessage
from threadline.routing.results import RoutingResult, StrategyKind
from threadline.routing.scoring import (
    DEFAULT_KNOWN_CITIES,
    AddressKeywordScorer,
    ContextKeywordScorer,
    ScoringStrategy,
    city_pattern,
    clamp,
    days_since,
    extract_address_keywords,
    extract_context_keywords,
    rank_threads,
)
from threadline.stores.base import ThreadField, ThreadStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Recency boundaries in days, shared by all confidence rules
_RECENT_DAYS = 7
_STALE_DAYS = 30


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RoutingStrategy(Protocol):
    kind: StrategyKind

    def accepts(self, message: NormalizedMessage) -> bool:
        """False when the message lacks the signal this strategy needs."""
        ...

    async def evaluate(
        self, message: NormalizedMessage, organization_id: str
    ) -> RoutingResult | None: ...


# ---------------------------------------------------------------------------
# Confidence rules
# ---------------------------------------------------------------------------


def identity_confidence(age_days: float) -> float:
    """0.9 within a week, 0.7 within a month, 0.5 beyond. Never increases with age."""
    if age_days > _STALE_DAYS:
        return 0.5
    if age_days > _RECENT_DAYS:
        return 0.7
    return 0.9


def metadata_confidence(base: float, age_days: float) -> float:
    confidence = base
    if age_days > _RECENT_DAYS:
        confidence *= 0.9
    if age_days > _STALE_DAYS:
        confidence *= 0.8
    return clamp(confidence, 0.5, 0.95)


def context_confidence(best_score: int, keyword_count: int, age_days: float) -> float:
    ratio = best_score / (keyword_count * 2 + 1)
    if ratio > 0.8:
        confidence = 0.75
    elif ratio > 0.4:
        confidence = 0.6
    else:
        confidence = 0.5
    if age_days < _RECENT_DAYS:
        confidence += 0.05
    elif age_days > _STALE_DAYS:
        confidence -= 0.1
    return clamp(confidence, 0.4, 0.85)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class IdentityStrategy:
    """Route to the sender's most recently active thread."""

    kind = StrategyKind.IDENTITY

    def __init__(
        self,
        resolver: IdentityResolver,
        threads: ThreadStore,
        *,
        thread_limit: int = 10,
        clock: Clock = _utc_now,
    ) -> None:
        self._resolver = resolver
        self._threads = threads
        self._thread_limit = thread_limit
        self._clock = clock

    def accepts(self, message: NormalizedMessage) -> bool:
        return bool(message.sender_identifier.strip())

    async def evaluate(
        self, message: NormalizedMessage, organization_id: str
    ) -> RoutingResult | None:
        user_id = await self._resolver.lookup(message.sender_identifier, organization_id)
        if user_id is None:
            return None

        threads = await self._threads.list_for_participant(
            user_id, organization_id=organization_id, limit=self._thread_limit
        )
        if not threads:
            logger.debug("Sender resolved to %s but has no threads", user_id)
            return None

        best = threads[0]
        age_days = days_since(best.updated_at, self._clock())
        return RoutingResult(
            thread_id=best.id,
            confidence=identity_confidence(age_days),
            method=DecisionMethod.IDENTITY,
            reason=f"Matched by participant identity: {user_id} ({len(threads)} thread(s) found)",
        )


_ID_FIELDS: tuple[tuple[str, ThreadField, str], ...] = (
    ("propertyId", "property_id", "property"),
    ("projectId", "project_id", "project"),
)


class MetadataStrategy:
    """Route on structured ids from the channel, then on address keywords."""

    kind = StrategyKind.METADATA

    def __init__(
        self,
        threads: ThreadStore,
        *,
        scorer: ScoringStrategy | None = None,
        known_cities: Iterable[str] = DEFAULT_KNOWN_CITIES,
        scan_limit: int = 100,
        id_match_limit: int = 10,
        clock: Clock = _utc_now,
    ) -> None:
        self._threads = threads
        self._scorer = scorer if scorer is not None else AddressKeywordScorer()
        self._cities: re.Pattern[str] = city_pattern(known_cities)
        self._scan_limit = scan_limit
        self._id_match_limit = id_match_limit
        self._clock = clock

    def accepts(self, message: NormalizedMessage) -> bool:  # noqa: ARG002
        return True

    async def evaluate(
        self, message: NormalizedMessage, organization_id: str
    ) -> RoutingResult | None:
        now = self._clock()

        # The first id present decides; an id that matches nothing ends the search
        for metadata_key, thread_field, label in _ID_FIELDS:
            value = message.channel_metadata.get(metadata_key)
            if not value:
                continue
            matches = await self._threads.find_by_field(
                thread_field,
                str(value),
                organization_id=organization_id,
                limit=self._id_match_limit,
            )
            if not matches:
                logger.debug("No thread carries %s id %s", label, value)
                return None
            best = matches[0]
            return RoutingResult(
                thread_id=best.id,
                confidence=metadata_confidence(0.85, days_since(best.updated_at, now)),
                method=DecisionMethod.METADATA,
                reason=f"Matched by {label} id: {value}",
            )

        if not message.text.strip():
            return None
        keywords = extract_address_keywords(message.text, cities=self._cities)
        if not keywords:
            return None

        candidates = await self._threads.list_recent(
            organization_id=organization_id, limit=self._scan_limit
        )
        ranked = rank_threads(candidates, keywords, self._scorer, now)
        if not ranked:
            return None

        best = ranked[0]
        return RoutingResult(
            thread_id=best.thread.id,
            confidence=metadata_confidence(0.6, days_since(best.thread.updated_at, now)),
            method=DecisionMethod.METADATA,
            reason=f"Matched by address keywords: {', '.join(keywords)} (score {best.score})",
        )


class ContextStrategy:
    """Route on content overlap with recent threads' conversation."""

    kind = StrategyKind.CONTEXT

    def __init__(
        self,
        threads: ThreadStore,
        *,
        scorer: ScoringStrategy | None = None,
        scan_limit: int = 100,
        clock: Clock = _utc_now,
    ) -> None:
        self._threads = threads
        self._scorer = scorer if scorer is not None else ContextKeywordScorer()
        self._scan_limit = scan_limit
        self._clock = clock

    def accepts(self, message: NormalizedMessage) -> bool:
        return bool(message.text.strip())

    async def evaluate(
        self, message: NormalizedMessage, organization_id: str
    ) -> RoutingResult | None:
        keywords = extract_context_keywords(message.text)
        if not keywords:
            return None

        now = self._clock()
        candidates = await self._threads.list_recent(
            organization_id=organization_id, limit=self._scan_limit
        )
        ranked = rank_threads(candidates, keywords, self._scorer, now)
        if not ranked:
            return None

        best = ranked[0]
        return RoutingResult(
            thread_id=best.thread.id,
            confidence=context_confidence(
                best.score, len(keywords), days_since(best.thread.updated_at, now)
            ),
            method=DecisionMethod.CONTEXT,
            reason=(
                f"Matched by conversation context: {', '.join(keywords[:3])} "
                f"(score {best.score})"
            ),
        )


def default_strategies(
    resolver: IdentityResolver,
    threads: ThreadStore,
    *,
    participant_thread_limit: int = 10,
    recent_thread_scan_limit: int = 100,
    known_cities: Iterable[str] = DEFAULT_KNOWN_CITIES,
    clock: Clock = _utc_now,
) -> Sequence[RoutingStrategy]:
    """The fixed priority list: identity, then metadata, then context."""
    return (
        IdentityStrategy(resolver, threads, thread_limit=participant_thread_limit, clock=clock),
        MetadataStrategy(
            threads, known_cities=known_cities, scan_limit=recent_thread_scan_limit, clock=clock
        ),
        ContextStrategy(threads, scan_limit=recent_thread_scan_limit, clock=clock),
    )


__all__ = [
    "ContextStrategy",
    "IdentityStrategy",
    "MetadataStrategy",
    "RoutingStrategy",
    "context_confidence",
    "default_strategies",
    "identity_confidence",
    "metadata_confidence",
]
