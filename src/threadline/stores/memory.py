"""In-process store backends.

Used for single-process deployments without PostgreSQL and throughout the
test suite. Records are immutable pydantic models, so returned objects can be
shared safely without copying.
"""

from __future__ import annotations

from datetime import datetime

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


def _visible(thread: Thread, organization_id: str | None) -> bool:
    # Threads without an organization predate tenancy fields and match any filter
    return (
        organization_id is None
        or thread.organization_id is None
        or thread.organization_id == organization_id
    )


class MemoryIdentityLinkStore:
    def __init__(self) -> None:
        self._links: dict[str, IdentityLink] = {}

    async def get(self, link_id: str) -> IdentityLink | None:
        return self._links.get(link_id)

    async def list_for_organization(self, organization_id: str) -> list[IdentityLink]:
        return [link for link in self._links.values() if link.organization_id == organization_id]

    async def list_organization_ids(self) -> list[str]:
        return sorted({link.organization_id for link in self._links.values()})

    async def save(self, link: IdentityLink) -> None:
        self._links[link.id] = link


class MemoryThreadStore:
    def __init__(self) -> None:
        self._threads: dict[str, Thread] = {}
        self._messages: dict[str, dict[str, ThreadMessage]] = {}

    def _sorted(self, threads: list[Thread], limit: int) -> list[Thread]:
        return sorted(threads, key=lambda t: t.updated_at, reverse=True)[:limit]

    async def get(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    async def list_for_participant(
        self, user_id: str, *, organization_id: str | None = None, limit: int = 10
    ) -> list[Thread]:
        return self._sorted(
            [
                thread
                for thread in self._threads.values()
                if user_id in thread.participants and _visible(thread, organization_id)
            ],
            limit,
        )

    async def list_recent(
        self, *, organization_id: str | None = None, limit: int = 100
    ) -> list[Thread]:
        return self._sorted(
            [thread for thread in self._threads.values() if _visible(thread, organization_id)],
            limit,
        )

    async def find_by_field(
        self,
        field: ThreadField,
        value: str,
        *,
        organization_id: str | None = None,
        limit: int = 10,
    ) -> list[Thread]:
        return self._sorted(
            [
                thread
                for thread in self._threads.values()
                if getattr(thread, field) == value and _visible(thread, organization_id)
            ],
            limit,
        )

    async def create(self, thread: Thread) -> str:
        if thread.id in self._threads:
            raise ValueError(f"Thread already exists: {thread.id}")
        self._threads[thread.id] = thread
        self._messages[thread.id] = {}
        return thread.id

    async def add_channel_source(self, thread_id: str, channel: Channel) -> None:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        self._threads[thread_id] = thread.with_channel_source(channel)

    async def append_message(self, message: ThreadMessage) -> None:
        thread = self._threads.get(message.thread_id)
        if thread is None:
            raise ThreadNotFoundError(message.thread_id)
        self._messages.setdefault(thread.id, {})[message.id] = message
        self._threads[thread.id] = thread.model_copy(
            update={
                "last_message": LastMessage(
                    text=message.text,
                    sender_id=message.sender_id,
                    sender_name=message.sender_name or None,
                    timestamp=message.created_at,
                ),
                "updated_at": max(thread.updated_at, message.created_at),
            }
        )

    async def list_messages(self, thread_id: str) -> list[ThreadMessage]:
        return sorted(self._messages.get(thread_id, {}).values(), key=lambda m: m.created_at)


def _decision_sort_key(decision: RoutingDecision) -> tuple[datetime, str]:
    return (decision.created_at, decision.id)


class MemoryDecisionLogStore:
    def __init__(self) -> None:
        self._decisions: list[RoutingDecision] = []

    def __len__(self) -> int:
        return len(self._decisions)

    async def append(self, decision: RoutingDecision) -> None:
        self._decisions.append(decision)

    async def query(
        self,
        decision_filter: DecisionFilter,
        *,
        limit: int,
        after: DecisionCursor | None = None,
    ) -> list[RoutingDecision]:
        matching = [d for d in self._decisions if decision_filter.matches(d)]
        if after is not None:
            bound = (after.created_at, after.id)
            matching = [d for d in matching if _decision_sort_key(d) < bound]
        return sorted(matching, key=_decision_sort_key, reverse=True)[:limit]


class MemoryPendingRetryStore:
    def __init__(self) -> None:
        self._records: dict[str, PendingRetryRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def add(self, record: PendingRetryRecord) -> None:
        self._records[record.id] = record

    async def get(self, record_id: str) -> PendingRetryRecord | None:
        return self._records.get(record_id)

    async def list_active(self, *, max_retries: int, limit: int) -> list[PendingRetryRecord]:
        active = [
            record
            for record in self._records.values()
            if record.retry_count < max_retries and not record.permanently_failed
        ]
        return sorted(active, key=lambda r: r.next_eligible_at)[:limit]

    async def update(self, record: PendingRetryRecord) -> None:
        self._records[record.id] = record

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None


class MemoryDeadLetterStore:
    def __init__(self) -> None:
        self._records: dict[str, DeadLetterRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def add(self, record: DeadLetterRecord) -> None:
        self._records[record.id] = record

    async def get(self, record_id: str) -> DeadLetterRecord | None:
        return self._records.get(record_id)

    async def list_failed(
        self, *, organization_id: str | None = None, limit: int = 50
    ) -> list[DeadLetterRecord]:
        records = [
            record
            for record in self._records.values()
            if organization_id is None or record.organization_id == organization_id
        ]
        return sorted(records, key=lambda r: r.failed_at or r.updated_at, reverse=True)[:limit]

    async def update(self, record: DeadLetterRecord) -> None:
        self._records[record.id] = record


class MemoryUnassignedMessageStore:
    def __init__(self) -> None:
        self._records: dict[str, UnassignedMessage] = {}

    async def add(self, record: UnassignedMessage) -> None:
        self._records[record.id] = record

    async def get(self, record_id: str) -> UnassignedMessage | None:
        return self._records.get(record_id)

    async def update(self, record: UnassignedMessage) -> None:
        self._records[record.id] = record

    async def list_open(self, organization_id: str, *, limit: int = 50) -> list[UnassignedMessage]:
        records = [
            record
            for record in self._records.values()
            if record.organization_id == organization_id and not record.is_assigned
        ]
        return sorted(records, key=lambda r: r.created_at)[:limit]


__all__ = [
    "MemoryDeadLetterStore",
    "MemoryDecisionLogStore",
    "MemoryIdentityLinkStore",
    "MemoryPendingRetryStore",
    "MemoryThreadStore",
    "MemoryUnassignedMessageStore",
]
