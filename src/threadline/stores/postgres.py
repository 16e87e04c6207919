"""PostgreSQL store backends on asyncpg.

Each table keeps the full camelCase record in a ``doc`` JSONB column next to
the handful of columns the queries filter and order on. The schema is owned by
the ``routing`` Alembic chain (see ``alembic/versions/routing``).

Every store takes an object exposing ``fetch``/``fetchrow``/``execute``, i.e.
either an ``asyncpg.Pool`` or a :class:`threadline.db.Database`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from threadline.errors import ThreadNotFoundError
from threadline.models import (
    Channel,
    DeadLetterRecord,
    IdentityLink,
    LastMessage,
    PendingRetryRecord,
    RoutingDecision,
    Thread,
    ThreadMessage,
    UnassignedMessage,
)
from threadline.stores.base import DecisionCursor, DecisionFilter, ThreadField

logger = logging.getLogger(__name__)

_THREAD_FIELD_COLUMNS: dict[str, str] = {
    "property_id": "property_id",
    "project_id": "project_id",
}

# Threads without an organization match any organization filter
_THREAD_ORG_CLAUSE = "($%d::text IS NULL OR organization_id IS NULL OR organization_id = $%d)"


class _Executor(Protocol):
    async def fetch(self, query: str, *args: Any) -> list[Any]: ...

    async def fetchrow(self, query: str, *args: Any) -> Any: ...

    async def execute(self, query: str, *args: Any) -> str: ...


def _parse_jsonb(value: Any) -> dict[str, Any]:
    """Parse a JSONB value (may be a string or already a dict)."""
    if isinstance(value, str):
        return json.loads(value)
    if isinstance(value, dict):
        return value
    return dict(value)


def _dump(record: Any) -> str:
    return json.dumps(record.to_document())


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``'UPDATE 1'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class PostgresIdentityLinkStore:
    def __init__(self, db: _Executor) -> None:
        self._db = db

    async def get(self, link_id: str) -> IdentityLink | None:
        row = await self._db.fetchrow("SELECT doc FROM identity_links WHERE id = $1", link_id)
        return IdentityLink.model_validate(_parse_jsonb(row["doc"])) if row else None

    async def list_for_organization(self, organization_id: str) -> list[IdentityLink]:
        rows = await self._db.fetch(
            "SELECT doc FROM identity_links WHERE organization_id = $1 ORDER BY created_at, id",
            organization_id,
        )
        return [IdentityLink.model_validate(_parse_jsonb(row["doc"])) for row in rows]

    async def list_organization_ids(self) -> list[str]:
        rows = await self._db.fetch(
            "SELECT DISTINCT organization_id FROM identity_links ORDER BY organization_id"
        )
        return [row["organization_id"] for row in rows]

    async def save(self, link: IdentityLink) -> None:
        await self._db.execute(
            """
            INSERT INTO identity_links (id, organization_id, user_id, doc, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6)
            ON CONFLICT (id) DO UPDATE
            SET doc = EXCLUDED.doc, updated_at = EXCLUDED.updated_at
            """,
            link.id,
            link.organization_id,
            link.user_id,
            _dump(link),
            link.created_at,
            link.updated_at,
        )


class PostgresThreadStore:
    def __init__(self, db: _Executor) -> None:
        self._db = db

    async def get(self, thread_id: str) -> Thread | None:
        row = await self._db.fetchrow("SELECT doc FROM threads WHERE id = $1", thread_id)
        return Thread.model_validate(_parse_jsonb(row["doc"])) if row else None

    async def _select(self, where: str, *args: Any) -> list[Thread]:
        rows = await self._db.fetch(
            f"SELECT doc FROM threads WHERE {where} ORDER BY updated_at DESC, id", *args
        )
        return [Thread.model_validate(_parse_jsonb(row["doc"])) for row in rows]

    async def list_for_participant(
        self, user_id: str, *, organization_id: str | None = None, limit: int = 10
    ) -> list[Thread]:
        return await self._select(
            "doc->'participants' ? $1 AND " + _THREAD_ORG_CLAUSE % (2, 2) + " LIMIT $3",
            user_id,
            organization_id,
            limit,
        )

    async def list_recent(
        self, *, organization_id: str | None = None, limit: int = 100
    ) -> list[Thread]:
        return await self._select(_THREAD_ORG_CLAUSE % (1, 1) + " LIMIT $2", organization_id, limit)

    async def find_by_field(
        self,
        field: ThreadField,
        value: str,
        *,
        organization_id: str | None = None,
        limit: int = 10,
    ) -> list[Thread]:
        column = _THREAD_FIELD_COLUMNS.get(field)
        if column is None:
            raise ValueError(f"Unsupported thread field: {field!r}")
        return await self._select(
            f"{column} = $1 AND " + _THREAD_ORG_CLAUSE % (2, 2) + " LIMIT $3",
            value,
            organization_id,
            limit,
        )

    async def create(self, thread: Thread) -> str:
        await self._db.execute(
            """
            INSERT INTO threads (
                id, organization_id, property_id, project_id, doc, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
            """,
            thread.id,
            thread.organization_id,
            thread.property_id,
            thread.project_id,
            _dump(thread),
            thread.created_at,
            thread.updated_at,
        )
        return thread.id

    async def add_channel_source(self, thread_id: str, channel: Channel) -> None:
        status = await self._db.execute(
            """
            UPDATE threads
            SET doc = jsonb_set(
                doc,
                '{channelSources}',
                COALESCE(doc->'channelSources', '[]'::jsonb) || to_jsonb($2::text)
            )
            WHERE id = $1 AND NOT (COALESCE(doc->'channelSources', '[]'::jsonb) ? $2)
            """,
            thread_id,
            str(channel),
        )
        if _affected(status) == 0:
            row = await self._db.fetchrow("SELECT 1 FROM threads WHERE id = $1", thread_id)
            if row is None:
                raise ThreadNotFoundError(thread_id)

    async def append_message(self, message: ThreadMessage) -> None:
        last_message = LastMessage(
            text=message.text,
            sender_id=message.sender_id,
            sender_name=message.sender_name or None,
            timestamp=message.created_at,
        )
        row = await self._db.fetchrow(
            """
            UPDATE threads
            SET updated_at = GREATEST(updated_at, $3),
                doc = jsonb_set(
                    jsonb_set(doc, '{lastMessage}', $2::jsonb),
                    '{updatedAt}',
                    to_jsonb(GREATEST(updated_at, $3))
                )
            WHERE id = $1
            RETURNING id
            """,
            message.thread_id,
            _dump(last_message),
            message.created_at,
        )
        if row is None:
            raise ThreadNotFoundError(message.thread_id)
        await self._db.execute(
            """
            INSERT INTO thread_messages (thread_id, id, doc, created_at)
            VALUES ($1, $2, $3::jsonb, $4)
            ON CONFLICT (thread_id, id) DO NOTHING
            """,
            message.thread_id,
            message.id,
            _dump(message),
            message.created_at,
        )

    async def list_messages(self, thread_id: str) -> list[ThreadMessage]:
        rows = await self._db.fetch(
            "SELECT doc FROM thread_messages WHERE thread_id = $1 ORDER BY created_at, id",
            thread_id,
        )
        return [ThreadMessage.model_validate(_parse_jsonb(row["doc"])) for row in rows]


class PostgresDecisionLogStore:
    def __init__(self, db: _Executor) -> None:
        self._db = db

    async def append(self, decision: RoutingDecision) -> None:
        await self._db.execute(
            """
            INSERT INTO routing_decisions (
                id, organization_id, message_id, sender_identifier, thread_id,
                method, confidence, decided_at, created_at, doc
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
            """,
            decision.id,
            decision.organization_id,
            decision.message_id,
            decision.sender_identifier,
            decision.thread_id,
            str(decision.method),
            decision.confidence,
            decision.timestamp,
            decision.created_at,
            _dump(decision),
        )

    async def query(
        self,
        decision_filter: DecisionFilter,
        *,
        limit: int,
        after: DecisionCursor | None = None,
    ) -> list[RoutingDecision]:
        conditions = ["organization_id = $1"]
        args: list[Any] = [decision_filter.organization_id]

        def bind(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        if decision_filter.sender_identifier is not None:
            conditions.append(f"sender_identifier = {bind(decision_filter.sender_identifier)}")
        if decision_filter.thread_id is not None:
            conditions.append(f"thread_id = {bind(decision_filter.thread_id)}")
        if decision_filter.method is not None:
            conditions.append(f"method = {bind(str(decision_filter.method))}")
        if decision_filter.since is not None:
            conditions.append(f"decided_at >= {bind(decision_filter.since)}")
        if decision_filter.until is not None:
            conditions.append(f"decided_at <= {bind(decision_filter.until)}")
        if after is not None:
            conditions.append(f"(created_at, id) < ({bind(after.created_at)}, {bind(after.id)})")

        query = (
            "SELECT doc FROM routing_decisions WHERE "
            + " AND ".join(conditions)
            + f" ORDER BY created_at DESC, id DESC LIMIT {bind(limit)}"
        )
        rows = await self._db.fetch(query, *args)
        return [RoutingDecision.model_validate(_parse_jsonb(row["doc"])) for row in rows]


class PostgresPendingRetryStore:
    def __init__(self, db: _Executor) -> None:
        self._db = db

    async def add(self, record: PendingRetryRecord) -> None:
        await self._db.execute(
            """
            INSERT INTO pending_retry (
                id, organization_id, retry_count, permanently_failed,
                next_eligible_at, created_at, updated_at, doc
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
            """,
            record.id,
            record.organization_id,
            record.retry_count,
            record.permanently_failed,
            record.next_eligible_at,
            record.created_at,
            record.updated_at,
            _dump(record),
        )

    async def get(self, record_id: str) -> PendingRetryRecord | None:
        row = await self._db.fetchrow("SELECT doc FROM pending_retry WHERE id = $1", record_id)
        return PendingRetryRecord.model_validate(_parse_jsonb(row["doc"])) if row else None

    async def list_active(self, *, max_retries: int, limit: int) -> list[PendingRetryRecord]:
        rows = await self._db.fetch(
            """
            SELECT doc FROM pending_retry
            WHERE retry_count < $1 AND NOT permanently_failed
            ORDER BY next_eligible_at, id
            LIMIT $2
            """,
            max_retries,
            limit,
        )
        return [PendingRetryRecord.model_validate(_parse_jsonb(row["doc"])) for row in rows]

    async def update(self, record: PendingRetryRecord) -> None:
        await self._db.execute(
            """
            UPDATE pending_retry
            SET retry_count = $2,
                permanently_failed = $3,
                next_eligible_at = $4,
                updated_at = $5,
                doc = $6::jsonb
            WHERE id = $1
            """,
            record.id,
            record.retry_count,
            record.permanently_failed,
            record.next_eligible_at,
            record.updated_at,
            _dump(record),
        )

    async def delete(self, record_id: str) -> bool:
        status = await self._db.execute("DELETE FROM pending_retry WHERE id = $1", record_id)
        return _affected(status) > 0


class PostgresDeadLetterStore:
    def __init__(self, db: _Executor) -> None:
        self._db = db

    async def add(self, record: DeadLetterRecord) -> None:
        await self._db.execute(
            """
            INSERT INTO dead_letters (id, organization_id, failed_at, doc)
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO UPDATE SET failed_at = EXCLUDED.failed_at, doc = EXCLUDED.doc
            """,
            record.id,
            record.organization_id,
            record.failed_at or record.updated_at,
            _dump(record),
        )

    async def get(self, record_id: str) -> DeadLetterRecord | None:
        row = await self._db.fetchrow("SELECT doc FROM dead_letters WHERE id = $1", record_id)
        return DeadLetterRecord.model_validate(_parse_jsonb(row["doc"])) if row else None

    async def list_failed(
        self, *, organization_id: str | None = None, limit: int = 50
    ) -> list[DeadLetterRecord]:
        rows = await self._db.fetch(
            """
            SELECT doc FROM dead_letters
            WHERE $1::text IS NULL OR organization_id = $1
            ORDER BY failed_at DESC, id
            LIMIT $2
            """,
            organization_id,
            limit,
        )
        return [DeadLetterRecord.model_validate(_parse_jsonb(row["doc"])) for row in rows]

    async def update(self, record: DeadLetterRecord) -> None:
        await self._db.execute(
            "UPDATE dead_letters SET doc = $2::jsonb WHERE id = $1",
            record.id,
            _dump(record),
        )


class PostgresUnassignedMessageStore:
    def __init__(self, db: _Executor) -> None:
        self._db = db

    async def add(self, record: UnassignedMessage) -> None:
        await self._db.execute(
            """
            INSERT INTO pending_routing (id, organization_id, assigned_thread_id, created_at, doc)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            """,
            record.id,
            record.organization_id,
            record.assigned_thread_id,
            record.created_at,
            _dump(record),
        )

    async def get(self, record_id: str) -> UnassignedMessage | None:
        row = await self._db.fetchrow("SELECT doc FROM pending_routing WHERE id = $1", record_id)
        return UnassignedMessage.model_validate(_parse_jsonb(row["doc"])) if row else None

    async def update(self, record: UnassignedMessage) -> None:
        await self._db.execute(
            "UPDATE pending_routing SET assigned_thread_id = $2, doc = $3::jsonb WHERE id = $1",
            record.id,
            record.assigned_thread_id,
            _dump(record),
        )

    async def list_open(self, organization_id: str, *, limit: int = 50) -> list[UnassignedMessage]:
        rows = await self._db.fetch(
            """
            SELECT doc FROM pending_routing
            WHERE organization_id = $1 AND assigned_thread_id IS NULL
            ORDER BY created_at, id
            LIMIT $2
            """,
            organization_id,
            limit,
        )
        return [UnassignedMessage.model_validate(_parse_jsonb(row["doc"])) for row in rows]


__all__ = [
    "PostgresDeadLetterStore",
    "PostgresDecisionLogStore",
    "PostgresIdentityLinkStore",
    "PostgresPendingRetryStore",
    "PostgresThreadStore",
    "PostgresUnassignedMessageStore",
]
