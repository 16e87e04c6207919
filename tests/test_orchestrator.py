"""Tests for RoutingOrchestrator: strategy chain, delivery, creation and parking."""

from __future__ import annotations

import asyncio
import re

import pytest

from tests.conftest import ORG, FakeClock, make_message, make_thread, phone
from threadline.config import RoutingConfig, ThreadlineConfig
from threadline.engine import RoutingEngine, build_memory_engine
from threadline.errors import (
    AssignmentConflictError,
    MissingFieldError,
    ThreadCreationError,
    ThreadNotFoundError,
    UnassignedMessageNotFoundError,
)
from threadline.identity.resolver import IdentityResolver
from threadline.models import Channel, DecisionMethod, NormalizedMessage
from threadline.routing.decision_log import DecisionLog
from threadline.routing.orchestrator import (
    NO_MATCH_REASON,
    PARKED_REASON,
    KeyedLocks,
    RoutingOrchestrator,
)
from threadline.routing.results import RoutingResult, RoutingState, StrategyKind
from threadline.routing.strategies import ContextStrategy, MetadataStrategy
from threadline.stores.memory import (
    MemoryDecisionLogStore,
    MemoryIdentityLinkStore,
    MemoryThreadStore,
    MemoryUnassignedMessageStore,
)

pytestmark = pytest.mark.unit


class _StubStrategy:
    def __init__(
        self,
        kind: StrategyKind,
        result: RoutingResult | None = None,
        *,
        error: Exception | None = None,
    ) -> None:
        self.kind = kind
        self.result = result
        self.error = error
        self.calls = 0

    def accepts(self, message: NormalizedMessage) -> bool:  # noqa: ARG002
        return True

    async def evaluate(
        self, message: NormalizedMessage, organization_id: str  # noqa: ARG002
    ) -> RoutingResult | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class _FailingDecisionStore(MemoryDecisionLogStore):
    async def append(self, decision) -> None:
        raise ConnectionError("decision store unavailable")


class _FailingCreateThreadStore(MemoryThreadStore):
    async def create(self, thread) -> str:
        raise ConnectionError("thread store unavailable")


def _orchestrator(
    clock: FakeClock,
    *,
    strategies=None,
    threads: MemoryThreadStore | None = None,
    decisions: MemoryDecisionLogStore | None = None,
) -> RoutingOrchestrator:
    return RoutingOrchestrator(
        resolver=IdentityResolver(MemoryIdentityLinkStore(), clock=clock),
        threads=threads if threads is not None else MemoryThreadStore(),
        decision_log=DecisionLog(decisions if decisions is not None else MemoryDecisionLogStore()),
        unassigned=MemoryUnassignedMessageStore(),
        strategies=strategies,
        clock=clock,
    )


async def _decisions(engine: RoutingEngine):
    page = await engine.decision_log.query_by_organization(ORG, limit=500)
    return page.items


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestStrategyPriority:
    def test_default_chain_is_identity_metadata_context(self, engine: RoutingEngine) -> None:
        assert [s.kind for s in engine.orchestrator.strategies] == [
            StrategyKind.IDENTITY,
            StrategyKind.METADATA,
            StrategyKind.CONTEXT,
        ]

    def test_out_of_order_chain_rejected(self, clock: FakeClock) -> None:
        threads = MemoryThreadStore()
        with pytest.raises(ValueError, match="priority order"):
            _orchestrator(
                clock,
                threads=threads,
                strategies=[ContextStrategy(threads), MetadataStrategy(threads)],
            )

    def test_duplicate_strategy_rejected(self, clock: FakeClock) -> None:
        threads = MemoryThreadStore()
        with pytest.raises(ValueError, match="Duplicate"):
            _orchestrator(
                clock,
                threads=threads,
                strategies=[MetadataStrategy(threads), MetadataStrategy(threads)],
            )

    def test_subset_in_order_accepted(self, clock: FakeClock) -> None:
        threads = MemoryThreadStore()
        orchestrator = _orchestrator(
            clock, threads=threads, strategies=[ContextStrategy(threads)]
        )
        assert len(orchestrator.strategies) == 1


# ---------------------------------------------------------------------------
# route_message
# ---------------------------------------------------------------------------


class TestRouteMessage:
    async def test_first_match_short_circuits(self, clock: FakeClock) -> None:
        hit = RoutingResult("t1", 0.9, DecisionMethod.IDENTITY, "matched")
        identity = _StubStrategy(StrategyKind.IDENTITY, hit)
        metadata = _StubStrategy(StrategyKind.METADATA)
        orchestrator = _orchestrator(clock, strategies=[identity, metadata])

        result = await orchestrator.route_message(make_message(), ORG)

        assert result == hit
        assert metadata.calls == 0

    async def test_identity_wins_over_context(
        self, engine: RoutingEngine, clock: FakeClock
    ) -> None:
        await engine.resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await engine.stores.threads.create(
            make_thread("t-identity", participants=("user-1",), last_text="rent receipt attached")
        )
        await engine.stores.threads.create(
            make_thread("t-context", last_text="the dishwasher is broken")
        )
        clock.advance(days=1)
        message = make_message(text="dishwasher still broken")

        by_context = await ContextStrategy(engine.stores.threads, clock=clock).evaluate(
            message, ORG
        )
        result = await engine.orchestrator.route_message(message, ORG)

        assert by_context is not None
        assert by_context.thread_id == "t-context"
        assert result is not None
        assert result.thread_id == "t-identity"
        assert result.method is DecisionMethod.IDENTITY

    async def test_raising_strategy_treated_as_no_match(self, clock: FakeClock) -> None:
        hit = RoutingResult("t2", 0.6, DecisionMethod.CONTEXT, "context")
        failing = _StubStrategy(StrategyKind.IDENTITY, error=RuntimeError("boom"))
        context = _StubStrategy(StrategyKind.CONTEXT, hit)
        orchestrator = _orchestrator(clock, strategies=[failing, context])

        assert await orchestrator.route_message(make_message(), ORG) == hit

    async def test_miss_records_manual_decision(self, engine: RoutingEngine) -> None:
        result = await engine.orchestrator.route_message(make_message(), ORG)

        assert result is None
        [decision] = await _decisions(engine)
        assert decision.method is DecisionMethod.MANUAL
        assert decision.thread_id is None
        assert decision.confidence == 0.0
        assert decision.reason == NO_MATCH_REASON

    async def test_does_not_modify_threads(self, engine: RoutingEngine) -> None:
        await engine.resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await engine.stores.threads.create(make_thread("t1", participants=("user-1",)))

        result = await engine.orchestrator.route_message(make_message(channel=Channel.EMAIL), ORG)

        assert result is not None
        assert result.thread_id == "t1"
        assert await engine.stores.threads.list_messages("t1") == []
        thread = await engine.stores.threads.get("t1")
        assert thread.channel_sources == (Channel.SMS,)

    async def test_missing_organization_raises(self, engine: RoutingEngine) -> None:
        with pytest.raises(MissingFieldError):
            await engine.orchestrator.route_message(make_message(), "  ")

    async def test_missing_message_raises(self, engine: RoutingEngine) -> None:
        with pytest.raises(MissingFieldError):
            await engine.orchestrator.route_message(None, ORG)


# ---------------------------------------------------------------------------
# route_and_deliver
# ---------------------------------------------------------------------------


class TestRouteAndDeliver:
    async def test_identity_match_attaches_message(self, engine: RoutingEngine) -> None:
        await engine.resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await engine.stores.threads.create(make_thread("t1", participants=("user-1",)))

        outcome = await engine.orchestrator.route_and_deliver(
            make_message(channel=Channel.EMAIL, message_id="m-1"), ORG
        )

        assert outcome.delivered
        assert outcome.created is False
        assert outcome.result.method is DecisionMethod.IDENTITY
        [stored] = await engine.stores.threads.list_messages("t1")
        assert stored.id == "m-1"
        assert stored.sender_id == "user-1"
        thread = await engine.stores.threads.get("t1")
        assert thread.channel_sources == (Channel.SMS, Channel.EMAIL)
        assert thread.last_message.text == "Hello there"

    async def test_channel_sources_never_duplicate(self, engine: RoutingEngine) -> None:
        await engine.resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await engine.stores.threads.create(make_thread("t1", participants=("user-1",)))

        for _ in range(3):
            await engine.orchestrator.route_and_deliver(make_message(channel=Channel.EMAIL), ORG)

        thread = await engine.stores.threads.get("t1")
        assert thread.channel_sources == (Channel.SMS, Channel.EMAIL)

    async def test_property_id_routes_unknown_sender(self, engine: RoutingEngine) -> None:
        await engine.stores.threads.create(make_thread("t-prop", property_id="prop-9"))

        outcome = await engine.orchestrator.route_and_deliver(
            make_message(sender="+15559990000", metadata={"propertyId": "prop-9"}), ORG
        )

        assert outcome.result.thread_id == "t-prop"
        assert outcome.result.method is DecisionMethod.METADATA

    async def test_new_sender_gets_new_thread(self, engine: RoutingEngine) -> None:
        outcome = await engine.orchestrator.route_and_deliver(make_message(), ORG)

        assert outcome.created is True
        assert outcome.result.method is DecisionMethod.CREATED
        assert outcome.result.confidence == 1.0
        thread = await engine.stores.threads.get(outcome.result.thread_id)
        user_id = await engine.resolver.lookup("+15551234567", ORG)
        assert thread.participants == (user_id,)
        assert thread.organization_id == ORG
        assert thread.is_group is False
        assert len(await engine.stores.threads.list_messages(thread.id)) == 1

    async def test_follow_up_from_new_sender_joins_created_thread(
        self, engine: RoutingEngine
    ) -> None:
        first = await engine.orchestrator.route_and_deliver(make_message(), ORG)
        second = await engine.orchestrator.route_and_deliver(make_message(), ORG)

        assert second.created is False
        assert second.result.thread_id == first.result.thread_id
        assert second.result.method is DecisionMethod.IDENTITY

    async def test_one_decision_per_attempt(self, engine: RoutingEngine) -> None:
        await engine.orchestrator.route_and_deliver(make_message(), ORG)
        await engine.orchestrator.route_and_deliver(make_message(), ORG)
        await engine.orchestrator.route_and_deliver(make_message(sender="", text=""), ORG)

        decisions = await _decisions(engine)
        assert len(decisions) == 3
        assert sorted(d.method for d in decisions) == sorted(
            [DecisionMethod.CREATED, DecisionMethod.IDENTITY, DecisionMethod.MANUAL]
        )

    async def test_concurrent_first_messages_create_one_thread(
        self, engine: RoutingEngine
    ) -> None:
        outcomes = await asyncio.gather(
            *(engine.orchestrator.route_and_deliver(make_message(), ORG) for _ in range(3))
        )

        assert {o.result.thread_id for o in outcomes} == {outcomes[0].result.thread_id}
        assert sum(o.created for o in outcomes) == 1
        assert len(await engine.stores.threads.list_recent(organization_id=ORG)) == 1

    async def test_blank_sender_is_parked(self, engine: RoutingEngine) -> None:
        outcome = await engine.orchestrator.route_and_deliver(make_message(sender=""), ORG)

        assert outcome.result is None
        assert outcome.unassigned_id is not None
        assert outcome.handled
        [decision] = await _decisions(engine)
        assert decision.reason == PARKED_REASON

    async def test_parks_when_creation_disabled(self, clock: FakeClock) -> None:
        config = ThreadlineConfig(routing=RoutingConfig(create_thread_on_miss=False))
        engine = build_memory_engine(config, clock=clock)

        outcome = await engine.orchestrator.route_and_deliver(make_message(), ORG)

        assert outcome.unassigned_id is not None
        assert await engine.stores.threads.list_recent(organization_id=ORG) == []
        [parked] = await engine.orchestrator.list_unassigned(ORG)
        assert parked.id == outcome.unassigned_id
        assert parked.reason == NO_MATCH_REASON

    async def test_trail_records_states(self, engine: RoutingEngine) -> None:
        outcome = await engine.orchestrator.route_and_deliver(make_message(sender=""), ORG)

        assert outcome.trail.skipped == [StrategyKind.IDENTITY]
        assert outcome.trail.state is RoutingState.UNRESOLVED
        assert outcome.trail.transitions[0] is RoutingState.IDENTITY_ATTEMPTED

    async def test_thread_creation_failure_propagates(self, clock: FakeClock) -> None:
        decisions = MemoryDecisionLogStore()
        threads = _FailingCreateThreadStore()
        orchestrator = _orchestrator(
            clock, strategies=[ContextStrategy(threads)], threads=threads, decisions=decisions
        )

        with pytest.raises(ThreadCreationError):
            await orchestrator.route_and_deliver(make_message(), ORG)

        assert len(decisions) == 1

    async def test_decision_log_failure_does_not_block_routing(self, clock: FakeClock) -> None:
        threads = MemoryThreadStore()
        orchestrator = _orchestrator(
            clock,
            strategies=[ContextStrategy(threads)],
            threads=threads,
            decisions=_FailingDecisionStore(),
        )

        outcome = await orchestrator.route_and_deliver(make_message(), ORG)

        assert outcome.created is True


# ---------------------------------------------------------------------------
# Manual assignment
# ---------------------------------------------------------------------------


class TestAssignUnassigned:
    async def _parked(self, engine: RoutingEngine) -> str:
        return await engine.orchestrator.create_unassigned_message(
            make_message(message_id="m-parked"), ORG, reason="needs a human"
        )

    async def test_assign_attaches_and_logs(self, engine: RoutingEngine) -> None:
        await engine.stores.threads.create(make_thread("t1"))
        pending_id = await self._parked(engine)

        record = await engine.orchestrator.assign_unassigned_message(
            pending_id, "t1", assigned_by="ops@example.com"
        )

        assert record.assigned_thread_id == "t1"
        assert record.assigned_by == "ops@example.com"
        assert [m.id for m in await engine.stores.threads.list_messages("t1")] == ["m-parked"]
        [decision] = await _decisions(engine)
        assert decision.method is DecisionMethod.MANUAL
        assert decision.thread_id == "t1"
        assert decision.confidence == 1.0
        assert await engine.orchestrator.list_unassigned(ORG) == []

    async def test_reassign_same_thread_is_noop(self, engine: RoutingEngine) -> None:
        await engine.stores.threads.create(make_thread("t1"))
        pending_id = await self._parked(engine)
        await engine.orchestrator.assign_unassigned_message(pending_id, "t1")

        await engine.orchestrator.assign_unassigned_message(pending_id, "t1")

        assert len(await engine.stores.threads.list_messages("t1")) == 1
        assert len(await _decisions(engine)) == 1

    async def test_assign_to_other_thread_conflicts(self, engine: RoutingEngine) -> None:
        await engine.stores.threads.create(make_thread("t1"))
        await engine.stores.threads.create(make_thread("t2"))
        pending_id = await self._parked(engine)
        await engine.orchestrator.assign_unassigned_message(pending_id, "t1")

        with pytest.raises(AssignmentConflictError):
            await engine.orchestrator.assign_unassigned_message(pending_id, "t2")

    async def test_unknown_pending_id(self, engine: RoutingEngine) -> None:
        with pytest.raises(UnassignedMessageNotFoundError):
            await engine.orchestrator.assign_unassigned_message("missing", "t1")

    async def test_unknown_thread(self, engine: RoutingEngine) -> None:
        pending_id = await self._parked(engine)

        with pytest.raises(ThreadNotFoundError):
            await engine.orchestrator.assign_unassigned_message(pending_id, "missing")


class TestCreateThreadForMessage:
    async def test_requires_sender(self, engine: RoutingEngine) -> None:
        with pytest.raises(MissingFieldError):
            await engine.orchestrator.create_thread_for_message(make_message(sender=""), ORG)

    async def test_reuses_existing_user_id(self, engine: RoutingEngine) -> None:
        await engine.resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        thread_id = await engine.orchestrator.create_thread_for_message(make_message(), ORG)

        thread = await engine.stores.threads.get(thread_id)
        assert thread.participants == ("user-1",)
        assert thread.participant_details["user-1"].name == "+15551234567"


    async def test_unknown_sender_gets_minted_user_and_thread(
        self, engine: RoutingEngine
    ) -> None:
        message = make_message(sender="+15559999999", text="hello")

        assert await engine.orchestrator.route_message(message, ORG) is None
        thread_id = await engine.orchestrator.create_thread_for_message(message, ORG)

        thread = await engine.stores.threads.get(thread_id)
        assert thread.channel_sources == (Channel.SMS,)
        [user_id] = thread.participants
        assert re.fullmatch(r"external-user-\d+-[0-9a-z]{7}", user_id)
        assert await engine.resolver.lookup("+15559999999", ORG) == user_id


class TestKeyedLocks:
    async def test_locks_are_released_after_use(self) -> None:
        locks = KeyedLocks()

        async with locks.hold((ORG, "a")):
            assert len(locks) == 1

        assert len(locks) == 0

    async def test_same_key_serializes(self) -> None:
        locks = KeyedLocks()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold((ORG, "a")):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one"), worker("two"))

        assert order == ["one-in", "one-out", "two-in", "two-out"]
