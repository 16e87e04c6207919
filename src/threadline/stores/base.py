"""Storage interfaces consumed by the resolver, router and retry sweeper.

Two backends implement these protocols: ``stores.memory`` for single-process
runs and tests, and ``stores.postgres`` on top of asyncpg.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

from threadline.models import (
    Channel,
    DeadLetterRecord,
    DecisionMethod,
    IdentityLink,
    PendingRetryRecord,
    RoutingDecision,
    Thread,
    ThreadMessage,
    UnassignedMessage,
)

ThreadField = Literal["property_id", "project_id"]


@dataclass(frozen=True)
class DecisionCursor:
    """Position after the last decision of a page (newest-first ordering)."""

    created_at: datetime
    id: str


@dataclass(frozen=True)
class DecisionFilter:
    organization_id: str
    sender_identifier: str | None = None
    thread_id: str | None = None
    method: DecisionMethod | None = None
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, decision: RoutingDecision) -> bool:
        if decision.organization_id != self.organization_id:
            return False
        if self.sender_identifier is not None and (
            decision.sender_identifier != self.sender_identifier
        ):
            return False
        if self.thread_id is not None and decision.thread_id != self.thread_id:
            return False
        if self.method is not None and decision.method != self.method:
            return False
        if self.since is not None and decision.timestamp < self.since:
            return False
        if self.until is not None and decision.timestamp > self.until:
            return False
        return True


class IdentityLinkStore(Protocol):
    async def get(self, link_id: str) -> IdentityLink | None: ...

    async def list_for_organization(self, organization_id: str) -> list[IdentityLink]:
        """Every link of the organization, in stable storage order."""
        ...

    async def list_organization_ids(self) -> list[str]: ...

    async def save(self, link: IdentityLink) -> None:
        """Insert or replace the link with ``link.id``."""
        ...


class ThreadStore(Protocol):
    async def get(self, thread_id: str) -> Thread | None: ...

    async def list_for_participant(
        self, user_id: str, *, organization_id: str | None = None, limit: int = 10
    ) -> list[Thread]:
        """Threads the user participates in, most recently updated first."""
        ...

    async def list_recent(
        self, *, organization_id: str | None = None, limit: int = 100
    ) -> list[Thread]:
        """Most recently updated threads first."""
        ...

    async def find_by_field(
        self,
        field: ThreadField,
        value: str,
        *,
        organization_id: str | None = None,
        limit: int = 10,
    ) -> list[Thread]:
        """Threads whose *field* equals *value*, most recently updated first."""
        ...

    async def create(self, thread: Thread) -> str: ...

    async def add_channel_source(self, thread_id: str, channel: Channel) -> None:
        """Record *channel* on the thread. Adding a present channel is a no-op."""
        ...

    async def append_message(self, message: ThreadMessage) -> None:
        """Persist *message* and refresh the thread's ``lastMessage``/``updatedAt``."""
        ...


class DecisionLogStore(Protocol):
    async def append(self, decision: RoutingDecision) -> None: ...

    async def query(
        self,
        decision_filter: DecisionFilter,
        *,
        limit: int,
        after: DecisionCursor | None = None,
    ) -> list[RoutingDecision]:
        """Matching decisions ordered by ``(createdAt desc, id desc)``."""
        ...


class PendingRetryStore(Protocol):
    async def add(self, record: PendingRetryRecord) -> None: ...

    async def get(self, record_id: str) -> PendingRetryRecord | None: ...

    async def list_active(self, *, max_retries: int, limit: int) -> list[PendingRetryRecord]:
        """Records below the retry cap and not terminal, oldest eligibility first."""
        ...

    async def update(self, record: PendingRetryRecord) -> None: ...

    async def delete(self, record_id: str) -> bool: ...


class DeadLetterStore(Protocol):
    async def add(self, record: DeadLetterRecord) -> None: ...

    async def get(self, record_id: str) -> DeadLetterRecord | None: ...

    async def list_failed(
        self, *, organization_id: str | None = None, limit: int = 50
    ) -> list[DeadLetterRecord]:
        """Most recently failed first."""
        ...

    async def update(self, record: DeadLetterRecord) -> None: ...


class UnassignedMessageStore(Protocol):
    async def add(self, record: UnassignedMessage) -> None: ...

    async def get(self, record_id: str) -> UnassignedMessage | None: ...

    async def update(self, record: UnassignedMessage) -> None: ...

    async def list_open(self, organization_id: str, *, limit: int = 50) -> list[UnassignedMessage]:
        """Unassigned records of the organization, oldest first."""
        ...


__all__ = [
    "DeadLetterStore",
    "DecisionCursor",
    "DecisionFilter",
    "DecisionLogStore",
    "IdentityLinkStore",
    "PendingRetryStore",
    "ThreadField",
    "ThreadStore",
    "UnassignedMessageStore",
]
