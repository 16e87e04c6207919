"""Tests for the identity link endpoints."""

from __future__ import annotations

import pytest

from tests.conftest import ORG
from threadline.engine import RoutingEngine

pytestmark = pytest.mark.unit

BASE = f"/api/identity/{ORG}"
PHONE = "+15551234567"


async def _link_phone(client, user_id: str = "user-1", value: str = PHONE):
    return await client.post(
        f"{BASE}/users/{user_id}/identities", json={"type": "phone", "value": value}
    )


class TestAddIdentity:
    async def test_returns_201_with_link(self, client):
        resp = await _link_phone(client)

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["userId"] == "user-1"
        assert data["organizationId"] == ORG
        assert data["externalIdentities"] == [
            {
                "type": "phone",
                "value": PHONE,
                "verified": False,
                "verifiedAt": None,
                "verifiedExpiresAt": None,
            }
        ]

    async def test_identity_owned_by_other_user_is_409(self, client):
        await _link_phone(client, "user-1")

        resp = await _link_phone(client, "user-2")

        assert resp.status_code == 409
        assert "user-1" in resp.json()["error"]["message"]

    async def test_invalid_phone_is_400(self, client):
        resp = await _link_phone(client, value="555-1234")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_unknown_type_is_422(self, client):
        resp = await client.post(
            f"{BASE}/users/user-1/identities", json={"type": "fax", "value": PHONE}
        )

        assert resp.status_code == 422


class TestLookup:
    async def test_resolves_linked_identifier(self, client):
        await _link_phone(client)

        resp = await client.get(f"{BASE}/lookup", params={"identifier": PHONE})

        assert resp.status_code == 200
        assert resp.json()["data"] == {"identifier": PHONE, "userId": "user-1"}

    async def test_unknown_identifier_resolves_to_null(self, client):
        resp = await client.get(f"{BASE}/lookup", params={"identifier": "ghost@example.com"})

        assert resp.json()["data"]["userId"] is None

    async def test_lookup_is_scoped_to_organization(self, client):
        await _link_phone(client)

        resp = await client.get("/api/identity/org-2/lookup", params={"identifier": PHONE})

        assert resp.json()["data"]["userId"] is None


class TestGetLink:
    async def test_returns_link(self, client):
        await _link_phone(client)

        resp = await client.get(f"{BASE}/users/user-1")

        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == f"{ORG}-user-1"

    async def test_missing_link_is_404(self, client):
        resp = await client.get(f"{BASE}/users/ghost")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"


class TestRemoveIdentity:
    async def test_returns_204_then_404(self, client, engine: RoutingEngine):
        await _link_phone(client)
        path = f"{BASE}/users/user-1/identities/phone/{PHONE}"

        first = await client.delete(path)
        second = await client.delete(path)

        assert first.status_code == 204
        assert second.status_code == 404
        link = await engine.resolver.get_identity_link("user-1", ORG)
        assert link.external_identities == ()


class TestVerification:
    async def test_verify_then_unverify(self, client, engine: RoutingEngine):
        await _link_phone(client)
        body = {"type": "phone", "value": PHONE, "expiresInDays": 30}

        verified = await client.post(f"{BASE}/verify", json=body)

        assert verified.status_code == 200
        assert verified.json()["data"] == {"type": "phone", "value": PHONE, "updated": True}
        link = await engine.resolver.get_identity_link("user-1", ORG)
        assert link.find("phone", PHONE).verified is True

        unverified = await client.post(f"{BASE}/unverify", json={"type": "phone", "value": PHONE})

        assert unverified.json()["data"]["updated"] is True
        link = await engine.resolver.get_identity_link("user-1", ORG)
        assert link.find("phone", PHONE).verified is False

    async def test_unlinked_identity_reports_not_updated(self, client):
        resp = await client.post(
            f"{BASE}/verify", json={"type": "email", "value": "nobody@example.com"}
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["updated"] is False

    async def test_invalid_email_is_400(self, client):
        resp = await client.post(f"{BASE}/verify", json={"type": "email", "value": "not-an-email"})

        assert resp.status_code == 400
