"""Routing orchestrator: runs the strategy chain and applies its outcome.

Every routing attempt ends in exactly one ``RoutingDecision`` written through
the decision log. Strategy failures are contained: a raising strategy is
logged and treated as "no match". Failures of the steps that must succeed
(creating a thread, persisting the message) propagate to the caller after the
failure decision is logged; callers enqueue the message for retry.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from opentelemetry import trace

from threadline.core.logging import routing_context
from threadline.errors import (
    AssignmentConflictError,
    MissingFieldError,
    ThreadCreationError,
    ThreadNotFoundError,
    UnassignedMessageNotFoundError,
)
from threadline.identity.resolver import IdentityResolver
from threadline.models import (
    DecisionMethod,
    NormalizedMessage,
    ParticipantDetail,
    RoutingDecision,
    Thread,
    ThreadMessage,
    UnassignedMessage,
)
from threadline.routing.decision_log import DecisionLog
from threadline.routing.results import RoutingResult, RoutingState, RoutingTrail, StrategyKind
from threadline.routing.scoring import days_since
from threadline.routing.strategies import (
    RoutingStrategy,
    default_strategies,
    identity_confidence,
)
from threadline.routing.telemetry import get_routing_telemetry
from threadline.stores.base import ThreadStore, UnassignedMessageStore

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No match found using any routing strategy"
PARKED_REASON = f"{NO_MATCH_REASON}; parked for manual assignment"

_PRIORITY = (StrategyKind.IDENTITY, StrategyKind.METADATA, StrategyKind.CONTEXT)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _check_priority(strategies: Sequence[RoutingStrategy]) -> None:
    kinds = [strategy.kind for strategy in strategies]
    if len(set(kinds)) != len(kinds):
        raise ValueError(f"Duplicate routing strategies: {kinds}")
    ranks = [_PRIORITY.index(kind) for kind in kinds]
    if ranks != sorted(ranks):
        raise ValueError(f"Routing strategies out of priority order: {kinds}")


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


@dataclass(frozen=True)
class DeliveryOutcome:
    """What ``route_and_deliver`` did with a message."""

    result: RoutingResult | None
    created: bool = False
    unassigned_id: str | None = None
    trail: RoutingTrail = field(default_factory=RoutingTrail, compare=False)

    @property
    def delivered(self) -> bool:
        return self.result is not None

    @property
    def handled(self) -> bool:
        """True once the message is either in a thread or in the manual queue."""
        return self.delivered or self.unassigned_id is not None


class RoutingOrchestrator:
    """Entry point for routing normalized messages.

    Parameters
    ----------
    resolver:
        Identity resolver shared with the identity strategy.
    threads:
        Thread store used for attaching and creating threads.
    decision_log:
        Audit log receiving one decision per routing attempt.
    unassigned:
        Store backing the manual-assignment queue.
    strategies:
        Strategy chain in priority order. Defaults to identity, metadata,
        context.
    create_thread_on_miss:
        When False, unmatched messages are parked for manual assignment
        instead of opening a new thread.
    """

    def __init__(
        self,
        *,
        resolver: IdentityResolver,
        threads: ThreadStore,
        decision_log: DecisionLog,
        unassigned: UnassignedMessageStore,
        strategies: Sequence[RoutingStrategy] | None = None,
        create_thread_on_miss: bool = True,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._resolver = resolver
        self._threads = threads
        self._decision_log = decision_log
        self._unassigned = unassigned
        self._strategies = tuple(
            strategies
            if strategies is not None
            else default_strategies(resolver, threads, clock=clock)
        )
        _check_priority(self._strategies)
        self._create_thread_on_miss = create_thread_on_miss
        self._clock = clock
        self._id_factory = id_factory
        self._creation_locks = KeyedLocks()

    @property
    def strategies(self) -> tuple[RoutingStrategy, ...]:
        return self._strategies

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def route_message(
        self, message: NormalizedMessage, organization_id: str
    ) -> RoutingResult | None:
        """Pick an existing thread for *message*, or None.

        Does not modify threads. Writes one decision: the matched method, or
        ``manual`` with no thread when every strategy declined.
        """
        organization_id = self._validate(message, organization_id)
        started = time.perf_counter()
        tracer = trace.get_tracer("threadline")
        with (
            routing_context(
                organization_id=organization_id,
                message_id=message.id,
                channel=message.channel,
            ),
            tracer.start_as_current_span("threadline.route") as span,
        ):
            span.set_attribute("channel", str(message.channel))
            result, trail = await self._resolve(message, organization_id)
            span.set_attribute("state", trail.state.value)
            if result is None:
                await self._record_failure(message, organization_id, NO_MATCH_REASON)
                outcome = "unresolved"
            else:
                span.set_attribute("method", str(result.method))
                await self._record_result(message, organization_id, result)
                outcome = "resolved"
            get_routing_telemetry().record_decision(
                method=str(result.method) if result else DecisionMethod.MANUAL,
                outcome=outcome,
                latency_ms=(time.perf_counter() - started) * 1000,
            )
            return result

    async def route_and_deliver(
        self, message: NormalizedMessage, organization_id: str
    ) -> DeliveryOutcome:
        """Route *message* and land it somewhere.

        A match attaches the message to that thread and tags the channel. A
        miss opens a new thread for the sender, or parks the message for
        manual assignment when thread creation is disabled or the sender is
        unknown.

        Raises
        ------
        MissingFieldError
            When the message or organization is missing.
        ThreadCreationError
            When the fallback thread could not be created.
        """
        organization_id = self._validate(message, organization_id)
        started = time.perf_counter()
        tracer = trace.get_tracer("threadline")
        with (
            routing_context(
                organization_id=organization_id,
                message_id=message.id,
                channel=message.channel,
            ),
            tracer.start_as_current_span("threadline.route_and_deliver") as span,
        ):
            span.set_attribute("channel", str(message.channel))
            result, trail = await self._resolve(message, organization_id)
            try:
                if result is not None:
                    await self._attach(result.thread_id, message, organization_id)
                    outcome = DeliveryOutcome(result=result, trail=trail)
                elif self._create_thread_on_miss and message.sender_identifier.strip():
                    result, created = await self._create_or_join(message, organization_id)
                    outcome = DeliveryOutcome(result=result, created=created, trail=trail)
                else:
                    pending_id = await self._park(
                        message, organization_id, reason=NO_MATCH_REASON
                    )
                    outcome = DeliveryOutcome(result=None, unassigned_id=pending_id, trail=trail)
            except Exception as exc:
                span.set_status(trace.StatusCode.ERROR, str(exc))
                await self._record_failure(
                    message, organization_id, f"Routing failed: {type(exc).__name__}: {exc}"
                )
                get_routing_telemetry().record_decision(
                    method=DecisionMethod.MANUAL,
                    outcome="error",
                    latency_ms=(time.perf_counter() - started) * 1000,
                )
                raise

            if outcome.result is not None:
                await self._record_result(message, organization_id, outcome.result)
                label = "created" if outcome.created else "resolved"
                method = str(outcome.result.method)
            else:
                await self._record_failure(message, organization_id, PARKED_REASON)
                label = "unassigned"
                method = DecisionMethod.MANUAL
            span.set_attribute("outcome", label)
            get_routing_telemetry().record_decision(
                method=method,
                outcome=label,
                latency_ms=(time.perf_counter() - started) * 1000,
            )
            return outcome

    async def create_thread_for_message(
        self, message: NormalizedMessage, organization_id: str
    ) -> str:
        """Open a single-participant thread for the message's sender.

        An unseen sender gets a freshly minted user id linked to the sender
        identifier. Returns the new thread id.
        """
        organization_id = self._validate(message, organization_id)
        sender = message.sender_identifier.strip()
        if not sender:
            raise MissingFieldError("sender_identifier")
        with routing_context(organization_id=organization_id, message_id=message.id):
            async with self._creation_locks.hold((organization_id, sender)):
                thread_id, _ = await self._create_thread(message, organization_id)
        return thread_id

    async def create_unassigned_message(
        self,
        message: NormalizedMessage,
        organization_id: str,
        *,
        reason: str | None = None,
    ) -> str:
        """Park *message* for an operator. Returns the pending record id."""
        organization_id = self._validate(message, organization_id)
        return await self._park(message, organization_id, reason=reason)

    async def _park(
        self, message: NormalizedMessage, organization_id: str, *, reason: str | None
    ) -> str:
        record = UnassignedMessage(
            id=self._id_factory(),
            message=message,
            organization_id=organization_id,
            reason=reason or "",
            created_at=self._clock(),
        )
        await self._unassigned.add(record)
        logger.info("Parked message %s for manual assignment as %s", message.id, record.id)
        return record.id

    async def assign_unassigned_message(
        self,
        pending_id: str,
        thread_id: str,
        *,
        assigned_by: str | None = None,
    ) -> UnassignedMessage:
        """Attach a parked message to *thread_id* on an operator's behalf.

        Assigning again to the same thread is a no-op.

        Raises
        ------
        UnassignedMessageNotFoundError
            Unknown *pending_id*.
        AssignmentConflictError
            The record was already assigned to a different thread.
        ThreadNotFoundError
            Unknown *thread_id*.
        """
        record = await self._unassigned.get(pending_id)
        if record is None:
            raise UnassignedMessageNotFoundError(pending_id)
        if record.is_assigned:
            if record.assigned_thread_id == thread_id:
                return record
            raise AssignmentConflictError(
                f"Message {pending_id} is already assigned to thread {record.assigned_thread_id}"
            )
        thread = await self._threads.get(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)

        with routing_context(
            organization_id=record.organization_id,
            message_id=record.message.id,
            thread_id=thread.id,
        ):
            await self._attach(thread.id, record.message, record.organization_id)
            updated = record.model_copy(
                update={
                    "assigned_thread_id": thread.id,
                    "assigned_at": self._clock(),
                    "assigned_by": assigned_by,
                }
            )
            await self._unassigned.update(updated)
            await self._decision_log.record(
                self._decision(
                    record.message,
                    record.organization_id,
                    method=DecisionMethod.MANUAL,
                    confidence=1.0,
                    reason=f"Manually assigned by {assigned_by or 'operator'}",
                    thread_id=thread.id,
                )
            )
            logger.info("Assigned parked message %s to thread %s", pending_id, thread.id)
        return updated

    async def list_unassigned(
        self, organization_id: str, *, limit: int = 50
    ) -> list[UnassignedMessage]:
        if not organization_id or not organization_id.strip():
            raise MissingFieldError("organization_id")
        return await self._unassigned.list_open(organization_id, limit=limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(self, message: NormalizedMessage | None, organization_id: str | None) -> str:
        if message is None:
            raise MissingFieldError("message")
        if organization_id is None or not organization_id.strip():
            raise MissingFieldError("organization_id")
        if not message.sender_identifier.strip():
            logger.warning("Message %s has no sender identifier", message.id)
        if not message.text.strip():
            logger.warning("Message %s has empty text", message.id)
        return organization_id.strip()

    async def _resolve(
        self, message: NormalizedMessage, organization_id: str
    ) -> tuple[RoutingResult | None, RoutingTrail]:
        trail = RoutingTrail()
        for strategy in self._strategies:
            trail.advance(RoutingState.attempted(strategy.kind))
            if not strategy.accepts(message):
                trail.skipped.append(strategy.kind)
                continue
            try:
                result = await strategy.evaluate(message, organization_id)
            except Exception:
                trail.errored.append(strategy.kind)
                get_routing_telemetry().record_strategy_error(strategy=str(strategy.kind))
                logger.exception(
                    "%s strategy failed for message %s; trying next strategy",
                    strategy.kind,
                    message.id,
                )
                continue
            if result is not None:
                trail.advance(RoutingState.RESOLVED)
                logger.info(
                    "Routed message %s to thread %s via %s (confidence %.2f)",
                    message.id,
                    result.thread_id,
                    result.method,
                    result.confidence,
                )
                return result, trail
        trail.advance(RoutingState.UNRESOLVED)
        logger.info("No routing strategy matched message %s", message.id)
        return None, trail

    async def _sender_user_id(self, message: NormalizedMessage, organization_id: str) -> str:
        sender = message.sender_identifier.strip()
        if not sender:
            return "unknown"
        try:
            user_id = await self._resolver.lookup(sender, organization_id)
        except Exception:  # noqa: BLE001
            logger.warning("Sender lookup failed for message %s", message.id, exc_info=True)
            user_id = None
        return user_id or sender

    async def _attach(
        self,
        thread_id: str,
        message: NormalizedMessage,
        organization_id: str,
        *,
        sender_id: str | None = None,
    ) -> None:
        await self._threads.add_channel_source(thread_id, message.channel)
        if sender_id is None:
            sender_id = await self._sender_user_id(message, organization_id)
        await self._threads.append_message(
            ThreadMessage.from_message(message, thread_id=thread_id, sender_id=sender_id)
        )

    async def _create_or_join(
        self, message: NormalizedMessage, organization_id: str
    ) -> tuple[RoutingResult, bool]:
        """Create the sender's thread unless a concurrent creator already did."""
        sender = message.sender_identifier.strip()
        async with self._creation_locks.hold((organization_id, sender)):
            user_id = await self._resolver.lookup(sender, organization_id, use_cache=False)
            if user_id is not None:
                threads = await self._threads.list_for_participant(
                    user_id, organization_id=organization_id, limit=1
                )
                if threads:
                    thread = threads[0]
                    await self._attach(thread.id, message, organization_id, sender_id=user_id)
                    logger.info(
                        "Joined thread %s created concurrently for user %s", thread.id, user_id
                    )
                    age_days = days_since(thread.updated_at, self._clock())
                    return (
                        RoutingResult(
                            thread_id=thread.id,
                            confidence=identity_confidence(age_days),
                            method=DecisionMethod.IDENTITY,
                            reason=f"Matched by participant identity: {user_id} "
                            "(thread created concurrently)",
                        ),
                        False,
                    )

            thread_id, user_id = await self._create_thread(message, organization_id)
            await self._threads.append_message(
                ThreadMessage.from_message(message, thread_id=thread_id, sender_id=user_id)
            )
        return (
            RoutingResult(
                thread_id=thread_id,
                confidence=1.0,
                method=DecisionMethod.CREATED,
                reason=f"New thread created for sender {user_id}",
            ),
            True,
        )

    async def _create_thread(
        self, message: NormalizedMessage, organization_id: str
    ) -> tuple[str, str]:
        sender = message.sender_identifier.strip()
        resolved = await self._resolver.obtain_or_mint_user_id(
            sender, organization_id, use_cache=False
        )
        now = self._clock()
        thread = Thread(
            id=self._id_factory(),
            organization_id=organization_id,
            participants=(resolved.user_id,),
            participant_details={resolved.user_id: ParticipantDetail(name=sender)},
            channel_sources=(message.channel,),
            is_group=False,
            unread_count={resolved.user_id: 0},
            created_at=now,
            updated_at=now,
        )
        try:
            thread_id = await self._threads.create(thread)
        except Exception as exc:
            raise ThreadCreationError(f"Failed to create thread for message {message.id}") from exc
        get_routing_telemetry().record_thread_created()
        logger.info(
            "Created thread %s for user %s (minted=%s)",
            thread_id,
            resolved.user_id,
            resolved.minted,
        )
        return thread_id, resolved.user_id

    def _decision(
        self,
        message: NormalizedMessage,
        organization_id: str,
        *,
        method: DecisionMethod,
        confidence: float,
        reason: str,
        thread_id: str | None,
    ) -> RoutingDecision:
        return RoutingDecision(
            id=self._id_factory(),
            message_id=message.id,
            sender_identifier=message.sender_identifier,
            channel=message.channel,
            timestamp=message.timestamp,
            method=method,
            confidence=confidence,
            reason=reason,
            thread_id=thread_id,
            organization_id=organization_id,
            created_at=self._clock(),
        )

    async def _record_result(
        self, message: NormalizedMessage, organization_id: str, result: RoutingResult
    ) -> None:
        await self._decision_log.record(
            self._decision(
                message,
                organization_id,
                method=result.method,
                confidence=result.confidence,
                reason=result.reason,
                thread_id=result.thread_id,
            )
        )

    async def _record_failure(
        self, message: NormalizedMessage, organization_id: str, reason: str
    ) -> None:
        await self._decision_log.record(
            self._decision(
                message,
                organization_id,
                method=DecisionMethod.MANUAL,
                confidence=0.0,
                reason=reason,
                thread_id=None,
            )
        )


__all__ = [
    "NO_MATCH_REASON",
    "PARKED_REASON",
    "DeliveryOutcome",
    "KeyedLocks",
    "RoutingOrchestrator",
]
