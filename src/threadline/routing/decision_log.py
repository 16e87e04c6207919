"""Append-only audit log of routing decisions.

Writes are best effort: a store failure is logged and counted, never raised,
so routing does not depend on the log being available. A decision lost that
way is not retried.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime

from threadline.errors import MissingFieldError, RoutingValidationError
from threadline.models import DecisionMethod, RoutingDecision
from threadline.routing.telemetry import get_routing_telemetry
from threadline.stores.base import DecisionCursor, DecisionFilter, DecisionLogStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
DEFAULT_ORGANIZATION_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


def encode_cursor(decision: RoutingDecision) -> str:
    raw = f"{decision.created_at.isoformat()}|{decision.id}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> DecisionCursor:
    """Parse an opaque page cursor. Raises ``RoutingValidationError`` if malformed."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        created_raw, decision_id = base64.urlsafe_b64decode(padded).decode().split("|", 1)
        created_at = datetime.fromisoformat(created_raw)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise RoutingValidationError(f"Invalid cursor: {cursor!r}") from exc
    if not decision_id:
        raise RoutingValidationError(f"Invalid cursor: {cursor!r}")
    return DecisionCursor(created_at=created_at, id=decision_id)


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), MAX_PAGE_SIZE))


@dataclass(frozen=True)
class DecisionPage:
    """One page of decisions, newest first."""

    items: list[RoutingDecision]
    next_cursor: str | None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class DecisionLog:
    def __init__(self, store: DecisionLogStore) -> None:
        self._store = store

    async def record(self, decision: RoutingDecision) -> bool:
        """Append *decision*. Returns False when the write was dropped."""
        try:
            await self._store.append(decision)
        except Exception:  # noqa: BLE001
            get_routing_telemetry().record_decision_log_write_failed()
            logger.warning(
                "Failed to record routing decision for message %s",
                decision.message_id,
                exc_info=True,
            )
            return False
        return True

    async def query_by_organization(
        self,
        organization_id: str,
        *,
        method: DecisionMethod | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = DEFAULT_ORGANIZATION_PAGE_SIZE,
        cursor: str | None = None,
    ) -> DecisionPage:
        """All decisions of an organization, optionally by method and time window."""
        return await self._query(
            DecisionFilter(
                organization_id=_required(organization_id, "organization_id"),
                method=DecisionMethod(method) if method else None,
                since=since,
                until=until,
            ),
            limit=limit,
            cursor=cursor,
        )

    async def query_by_sender(
        self,
        sender_identifier: str,
        organization_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> DecisionPage:
        return await self._query(
            DecisionFilter(
                organization_id=_required(organization_id, "organization_id"),
                sender_identifier=_required(sender_identifier, "sender_identifier"),
            ),
            limit=limit,
            cursor=cursor,
        )

    async def query_by_thread(
        self,
        thread_id: str,
        organization_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: str | None = None,
    ) -> DecisionPage:
        return await self._query(
            DecisionFilter(
                organization_id=_required(organization_id, "organization_id"),
                thread_id=_required(thread_id, "thread_id"),
            ),
            limit=limit,
            cursor=cursor,
        )

    async def _query(
        self, decision_filter: DecisionFilter, *, limit: int, cursor: str | None
    ) -> DecisionPage:
        page_size = _clamp_limit(limit)
        after = decode_cursor(cursor) if cursor else None
        rows = await self._store.query(decision_filter, limit=page_size + 1, after=after)
        items = rows[:page_size]
        next_cursor = encode_cursor(items[-1]) if len(rows) > page_size else None
        return DecisionPage(items=items, next_cursor=next_cursor)


def _required(value: str | None, field_name: str) -> str:
    if value is None or not value.strip():
        raise MissingFieldError(field_name)
    return value


__all__ = [
    "DEFAULT_ORGANIZATION_PAGE_SIZE",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "DecisionLog",
    "DecisionPage",
    "decode_cursor",
    "encode_cursor",
]
