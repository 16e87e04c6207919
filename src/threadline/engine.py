"""Wiring: stores, resolver, orchestrator, sweeper and ingest handler.

``RoutingEngine`` is the one object the API, CLI and scheduled jobs hold.
Build it over the in-process backend with :func:`build_memory_engine` or over
PostgreSQL with :func:`build_postgres_engine` / :func:`connect_engine`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from threadline.config import ThreadlineConfig
from threadline.db import Database
from threadline.identity.cache import TTLIdentityCache
from threadline.identity.resolver import IdentityResolver
from threadline.ingest import InboundMessageHandler
from threadline.retry.policy import RetryPolicy
from threadline.retry.sweeper import RetrySweeper
from threadline.routing.decision_log import DecisionLog
from threadline.routing.orchestrator import RoutingOrchestrator
from threadline.routing.strategies import default_strategies
from threadline.stores.base import (
    DeadLetterStore,
    DecisionLogStore,
    IdentityLinkStore,
    PendingRetryStore,
    ThreadStore,
    UnassignedMessageStore,
)
from threadline.stores.memory import (
    MemoryDeadLetterStore,
    MemoryDecisionLogStore,
    MemoryIdentityLinkStore,
    MemoryPendingRetryStore,
    MemoryThreadStore,
    MemoryUnassignedMessageStore,
)
from threadline.stores.postgres import (
    PostgresDeadLetterStore,
    PostgresDecisionLogStore,
    PostgresIdentityLinkStore,
    PostgresPendingRetryStore,
    PostgresThreadStore,
    PostgresUnassignedMessageStore,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StoreSet:
    identity_links: IdentityLinkStore
    threads: ThreadStore
    decisions: DecisionLogStore
    pending_retries: PendingRetryStore
    dead_letters: DeadLetterStore
    unassigned: UnassignedMessageStore


@dataclass
class RoutingEngine:
    """Everything needed to route, retry, and inspect messages."""

    config: ThreadlineConfig
    stores: StoreSet
    resolver: IdentityResolver
    decision_log: DecisionLog
    orchestrator: RoutingOrchestrator
    sweeper: RetrySweeper
    ingest: InboundMessageHandler
    database: Database | None = None

    async def close(self) -> None:
        if self.database is not None:
            await self.database.close()


def build_engine(
    stores: StoreSet,
    config: ThreadlineConfig | None = None,
    *,
    clock: Clock = _utc_now,
    database: Database | None = None,
) -> RoutingEngine:
    config = config or ThreadlineConfig()
    resolver = IdentityResolver(
        stores.identity_links,
        cache=TTLIdentityCache(ttl_seconds=config.identity.cache_ttl_seconds),
        clock=clock,
    )
    decision_log = DecisionLog(stores.decisions)
    orchestrator = RoutingOrchestrator(
        resolver=resolver,
        threads=stores.threads,
        decision_log=decision_log,
        unassigned=stores.unassigned,
        strategies=default_strategies(
            resolver,
            stores.threads,
            participant_thread_limit=config.routing.participant_thread_limit,
            recent_thread_scan_limit=config.routing.recent_thread_scan_limit,
            known_cities=config.routing.known_cities,
            clock=clock,
        ),
        create_thread_on_miss=config.routing.create_thread_on_miss,
        clock=clock,
    )
    sweeper = RetrySweeper(
        router=orchestrator,
        pending=stores.pending_retries,
        dead_letters=stores.dead_letters,
        policy=RetryPolicy(
            max_retries=config.retry.max_retries,
            base_delay_seconds=config.retry.base_delay_seconds,
        ),
        batch_limit=config.retry.batch_limit,
        clock=clock,
    )
    return RoutingEngine(
        config=config,
        stores=stores,
        resolver=resolver,
        decision_log=decision_log,
        orchestrator=orchestrator,
        sweeper=sweeper,
        ingest=InboundMessageHandler(orchestrator, sweeper),
        database=database,
    )


def memory_stores() -> StoreSet:
    return StoreSet(
        identity_links=MemoryIdentityLinkStore(),
        threads=MemoryThreadStore(),
        decisions=MemoryDecisionLogStore(),
        pending_retries=MemoryPendingRetryStore(),
        dead_letters=MemoryDeadLetterStore(),
        unassigned=MemoryUnassignedMessageStore(),
    )


def build_memory_engine(
    config: ThreadlineConfig | None = None, *, clock: Clock = _utc_now
) -> RoutingEngine:
    return build_engine(memory_stores(), config, clock=clock)


def build_postgres_engine(
    database: Database, config: ThreadlineConfig | None = None, *, clock: Clock = _utc_now
) -> RoutingEngine:
    """Wire the postgres backends over an already-connected *database*."""
    stores = StoreSet(
        identity_links=PostgresIdentityLinkStore(database),
        threads=PostgresThreadStore(database),
        decisions=PostgresDecisionLogStore(database),
        pending_retries=PostgresPendingRetryStore(database),
        dead_letters=PostgresDeadLetterStore(database),
        unassigned=PostgresUnassignedMessageStore(database),
    )
    return build_engine(stores, config, clock=clock, database=database)


async def connect_engine(config: ThreadlineConfig) -> RoutingEngine:
    """Open the connection pool and return a postgres-backed engine."""
    database = Database.from_config(config.database)
    await database.connect()
    logger.info("Routing engine connected to %s", database.settings.label)
    return build_postgres_engine(database, config)


__all__ = [
    "RoutingEngine",
    "StoreSet",
    "build_engine",
    "build_memory_engine",
    "build_postgres_engine",
    "connect_engine",
    "memory_stores",
]
