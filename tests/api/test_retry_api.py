"""Tests for the dead-letter and retry sweep endpoints."""

from __future__ import annotations

import pytest

from tests.conftest import ORG, T0, FakeClock, make_message
from threadline.engine import RoutingEngine
from threadline.models import DeadLetterRecord

pytestmark = pytest.mark.unit


@pytest.fixture
async def dead_letter(engine: RoutingEngine) -> DeadLetterRecord:
    record = DeadLetterRecord(
        id="dl-1",
        message=make_message(message_id="m-1"),
        organization_id=ORG,
        retry_count=3,
        last_error="RuntimeError: boom",
        created_at=T0,
        next_eligible_at=T0,
        updated_at=T0,
        failed_at=T0,
    )
    await engine.stores.dead_letters.add(record)
    return record


class TestListDeadLetters:
    async def test_lists_records(self, client, dead_letter):
        resp = await client.get("/api/dead-letters", params={"organization_id": ORG})

        assert resp.status_code == 200
        body = resp.json()
        assert body["meta"]["count"] == 1
        [record] = body["data"]
        assert record["id"] == "dl-1"
        assert record["permanentlyFailed"] is True
        assert record["retryCount"] == 3
        assert record["replayedAt"] is None

    async def test_other_organization_sees_nothing(self, client, dead_letter):
        resp = await client.get("/api/dead-letters", params={"organization_id": "org-2"})

        assert resp.json()["data"] == []


class TestReplay:
    async def test_replay_queues_new_pending_record(
        self, client, engine: RoutingEngine, dead_letter
    ):
        resp = await client.post(
            "/api/dead-letters/dl-1/replay", json={"operatorIdentity": "ops@example.com"}
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["deadLetterId"] == "dl-1"
        pending = await engine.stores.pending_retries.get(data["pendingId"])
        assert pending.message.id == "m-1"
        assert pending.retry_count == 0
        stamped = await engine.stores.dead_letters.get("dl-1")
        assert stamped.replayed_by == "ops@example.com"
        assert stamped.replayed_pending_id == data["pendingId"]

    async def test_second_replay_is_409(self, client, dead_letter):
        body = {"operatorIdentity": "ops@example.com"}
        await client.post("/api/dead-letters/dl-1/replay", json=body)

        resp = await client.post("/api/dead-letters/dl-1/replay", json=body)

        assert resp.status_code == 409
        assert "already replayed" in resp.json()["error"]["message"]

    async def test_unknown_dead_letter_is_404(self, client):
        resp = await client.post(
            "/api/dead-letters/missing/replay", json={"operatorIdentity": "ops@example.com"}
        )

        assert resp.status_code == 404

    async def test_operator_identity_required(self, client, dead_letter):
        resp = await client.post("/api/dead-letters/dl-1/replay", json={})

        assert resp.status_code == 422


class TestSweep:
    async def test_sweep_retries_due_records(
        self, client, engine: RoutingEngine, clock: FakeClock
    ):
        await engine.sweeper.enqueue(make_message(), ORG, "boom")
        clock.advance(minutes=2)

        resp = await client.post("/api/retry/sweep")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["evaluated"] == 1
        assert data["succeeded"] == 1
        assert data["skippedOverlap"] is False
        assert data["deadLetterIds"] == []
        assert len(engine.stores.pending_retries) == 0

    async def test_sweep_defers_records_not_yet_due(self, client, engine: RoutingEngine):
        await engine.sweeper.enqueue(make_message(), ORG, "boom")

        data = (await client.post("/api/retry/sweep")).json()["data"]

        assert data["succeeded"] == 0
        assert len(engine.stores.pending_retries) == 1
