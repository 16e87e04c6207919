"""Tests for IdentityResolver lookup, linking and verification lifecycle."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tests.conftest import ORG, T0, FakeClock, email, phone
from threadline.errors import IdentityConflictError, InvalidIdentityError, MissingFieldError
from threadline.identity.cache import TTLIdentityCache
from threadline.identity.resolver import IdentityResolver
from threadline.models import ExternalIdentity, IdentityLink, IdentityType
from threadline.stores.memory import MemoryIdentityLinkStore

pytestmark = pytest.mark.unit


@pytest.fixture
def store() -> MemoryIdentityLinkStore:
    return MemoryIdentityLinkStore()


@pytest.fixture
def resolver(store: MemoryIdentityLinkStore, clock: FakeClock) -> IdentityResolver:
    return IdentityResolver(store, clock=clock)


# ---------------------------------------------------------------------------
# lookup
# ---------------------------------------------------------------------------


class TestLookup:
    async def test_unknown_identifier_returns_none(self, resolver: IdentityResolver) -> None:
        assert await resolver.lookup("+15551234567", ORG) is None

    async def test_finds_linked_user(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        assert await resolver.lookup("+15551234567", ORG) == "user-1"

    async def test_lookup_is_scoped_to_organization(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        assert await resolver.lookup("+15551234567", "org-2") is None

    async def test_matches_value_across_identity_types(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", email("tenant@example.com"), ORG)

        assert await resolver.lookup("tenant@example.com", ORG) == "user-1"

    async def test_blank_arguments_raise(self, resolver: IdentityResolver) -> None:
        with pytest.raises(MissingFieldError):
            await resolver.lookup("  ", ORG)
        with pytest.raises(MissingFieldError):
            await resolver.lookup("+15551234567", "")

    async def test_second_lookup_served_from_cache(self, clock: FakeClock) -> None:
        store = AsyncMock()
        store.list_for_organization.return_value = []
        resolver = IdentityResolver(store, clock=clock)

        await resolver.lookup("+15551234567", ORG)
        await resolver.lookup("+15551234567", ORG)

        store.list_for_organization.assert_awaited_once_with(ORG)

    async def test_use_cache_false_reads_store(self, clock: FakeClock) -> None:
        store = AsyncMock()
        store.list_for_organization.return_value = []
        resolver = IdentityResolver(store, clock=clock)

        await resolver.lookup("+15551234567", ORG)
        await resolver.lookup("+15551234567", ORG, use_cache=False)

        assert store.list_for_organization.await_count == 2

    async def test_write_invalidates_cached_miss(self, resolver: IdentityResolver) -> None:
        assert await resolver.lookup("+15551234567", ORG) is None

        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        assert await resolver.lookup("+15551234567", ORG) == "user-1"

    async def test_duplicate_links_pick_first_in_store_order(
        self, store: MemoryIdentityLinkStore, resolver: IdentityResolver
    ) -> None:
        for user_id in ("user-a", "user-b"):
            await store.save(
                IdentityLink(
                    id=IdentityLink.link_id(ORG, user_id),
                    user_id=user_id,
                    organization_id=ORG,
                    external_identities=(phone("+15551234567"),),
                )
            )

        assert await resolver.lookup("+15551234567", ORG) == "user-a"

    async def test_injected_cache_is_used(self, store: MemoryIdentityLinkStore) -> None:
        cache = TTLIdentityCache()
        cache.set((ORG, "+15551234567"), "cached-user")
        resolver = IdentityResolver(store, cache=cache)

        assert resolver.cache is cache
        assert await resolver.lookup("+15551234567", ORG) == "cached-user"


# ---------------------------------------------------------------------------
# add / remove
# ---------------------------------------------------------------------------


class TestAddExternalIdentity:
    async def test_creates_link_with_deterministic_id(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        link = await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        assert link.id == f"{ORG}-user-1"
        assert link.created_at == T0
        assert [i.value for i in link.external_identities] == ["+15551234567"]

    async def test_appends_to_existing_link(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        link = await resolver.add_external_identity("user-1", email("t@example.com"), ORG)

        assert {i.type for i in link.external_identities} == {
            IdentityType.PHONE,
            IdentityType.EMAIL,
        }

    async def test_readding_replaces_in_place(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        link = await resolver.add_external_identity(
            "user-1", phone("+15551234567", verified=True), ORG
        )

        assert len(link.external_identities) == 1
        assert link.external_identities[0].verified is True

    async def test_invalid_format_rejected(self, resolver: IdentityResolver) -> None:
        with pytest.raises(InvalidIdentityError):
            await resolver.add_external_identity("user-1", phone("555-1234"), ORG)

    async def test_identity_owned_by_other_user_conflicts(
        self, resolver: IdentityResolver
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        with pytest.raises(IdentityConflictError) as exc_info:
            await resolver.add_external_identity("user-2", phone("+15551234567"), ORG)
        assert exc_info.value.owner_user_id == "user-1"

    async def test_same_identity_allowed_in_other_organization(
        self, resolver: IdentityResolver
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.add_external_identity("user-2", phone("+15551234567"), "org-2")

        assert await resolver.lookup("+15551234567", "org-2") == "user-2"


class TestLinkHelpers:
    async def test_link_phone_number(self, resolver: IdentityResolver) -> None:
        link = await resolver.link_phone_number("user-1", "+15551234567", ORG)

        [identity] = link.external_identities
        assert identity.type is IdentityType.PHONE
        assert identity.verified is False
        assert await resolver.lookup("+15551234567", ORG) == "user-1"

    async def test_link_phone_number_rejects_bad_format(
        self, resolver: IdentityResolver
    ) -> None:
        with pytest.raises(InvalidIdentityError):
            await resolver.link_phone_number("user-1", "555-1234", ORG)

    async def test_link_email_normalizes_case(self, resolver: IdentityResolver) -> None:
        link = await resolver.link_email("user-1", "Tenant@Example.COM", ORG)

        assert link.external_identities[0].value == "tenant@example.com"
        assert await resolver.lookup("tenant@example.com", ORG) == "user-1"

    async def test_link_platform_id(self, resolver: IdentityResolver) -> None:
        link = await resolver.link_platform_id("user-1", "tg:8812", ORG)

        assert link.external_identities[0].type is IdentityType.PLATFORM_ID


class TestRemoveExternalIdentity:
    async def test_removes_and_keeps_empty_link(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        removed = await resolver.remove_external_identity(
            "user-1", IdentityType.PHONE, "+15551234567", ORG
        )

        assert removed is True
        link = await resolver.get_identity_link("user-1", ORG)
        assert link is not None
        assert link.external_identities == ()
        assert await resolver.lookup("+15551234567", ORG) is None

    async def test_absent_identity_returns_false(self, resolver: IdentityResolver) -> None:
        assert (
            await resolver.remove_external_identity("user-1", IdentityType.PHONE, "+1555", ORG)
            is False
        )


# ---------------------------------------------------------------------------
# verification
# ---------------------------------------------------------------------------


class TestVerification:
    async def test_verify_sets_timestamps(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        assert await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=30)

        [identity] = await resolver.get_external_identities("user-1", ORG)
        assert identity.verified is True
        assert identity.verified_at == T0
        assert identity.verified_expires_at == T0 + timedelta(days=30)

    async def test_verify_unknown_identity_returns_false(
        self, resolver: IdentityResolver
    ) -> None:
        assert await resolver.verify_email("nobody@example.com", ORG) is False

    async def test_verify_validates_format_first(self, resolver: IdentityResolver) -> None:
        with pytest.raises(InvalidIdentityError):
            await resolver.verify_phone_number("not-a-phone", ORG)

    async def test_unverify_clears_fields(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", email("t@example.com"), ORG)
        await resolver.verify_email("t@example.com", ORG, expires_in_days=1)

        assert await resolver.unverify_email("t@example.com", ORG)

        [identity] = await resolver.get_external_identities("user-1", ORG)
        assert identity.verified is False
        assert identity.verified_at is None
        assert identity.verified_expires_at is None

    async def test_platform_id_round_trip(self, resolver: IdentityResolver) -> None:
        platform = ExternalIdentity(type=IdentityType.PLATFORM_ID, value="wa:4471")
        await resolver.add_external_identity("user-1", platform, ORG)

        assert await resolver.verify_platform_id("wa:4471", ORG)
        assert (await resolver.get_external_identities("user-1", ORG))[0].verified is True
        assert await resolver.unverify_platform_id("wa:4471", ORG)
        assert (await resolver.get_external_identities("user-1", ORG))[0].verified is False

    async def test_unverify_phone_validates_format(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.verify_phone_number("+15551234567", ORG)

        with pytest.raises(InvalidIdentityError):
            await resolver.unverify_phone_number("5551234567", ORG)
        assert await resolver.unverify_phone_number("+15551234567", ORG)

    async def test_zero_day_expiry_lapses_immediately(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=0)

        [identity] = await resolver.get_external_identities("user-1", ORG)
        assert identity.verified_expires_at == T0
        clock.advance(seconds=1)
        assert await resolver.expire_verifications(ORG) == 1

    async def test_reverify_refreshes_expiry(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=1)
        clock.advance(hours=12)

        await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=1)

        [identity] = await resolver.get_external_identities("user-1", ORG)
        assert identity.verified_at == clock.now
        assert identity.verified_expires_at == clock.now + timedelta(days=1)

    async def test_expire_verifications_clears_lapsed_only(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.add_external_identity("user-1", email("t@example.com"), ORG)
        await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=1)
        await resolver.verify_email("t@example.com", ORG, expires_in_days=10)
        clock.advance(days=2)

        expired = await resolver.expire_verifications(ORG)

        assert expired == 1
        identities = {
            i.type: i for i in await resolver.get_external_identities("user-1", ORG)
        }
        assert identities[IdentityType.PHONE].verified is False
        assert identities[IdentityType.EMAIL].verified is True

    async def test_expire_verifications_scoped_to_user(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.add_external_identity("user-2", phone("+15557654321"), ORG)
        await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=1)
        await resolver.verify_phone_number("+15557654321", ORG, expires_in_days=1)
        clock.advance(days=2)

        assert await resolver.expire_verifications(ORG, user_id="user-2") == 1

        [identity] = await resolver.get_external_identities("user-1", ORG)
        assert identity.verified is True

    async def test_lapsed_verification_reads_as_unverified(
        self, resolver: IdentityResolver, clock: FakeClock
    ) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)
        await resolver.verify_phone_number("+15551234567", ORG, expires_in_days=1)

        [identity] = await resolver.get_external_identities("user-1", ORG)
        assert identity.is_effectively_verified(clock.now)
        assert not identity.is_effectively_verified(clock.now + timedelta(days=2))


# ---------------------------------------------------------------------------
# obtain_or_mint_user_id
# ---------------------------------------------------------------------------


class TestObtainOrMintUserId:
    async def test_existing_sender_is_not_minted(self, resolver: IdentityResolver) -> None:
        await resolver.add_external_identity("user-1", phone("+15551234567"), ORG)

        resolved = await resolver.obtain_or_mint_user_id("+15551234567", ORG)

        assert resolved.user_id == "user-1"
        assert resolved.minted is False

    async def test_unseen_sender_minted_and_linked(self, resolver: IdentityResolver) -> None:
        resolved = await resolver.obtain_or_mint_user_id("tenant@example.com", ORG)

        assert resolved.minted is True
        assert resolved.user_id.startswith("external-user-")
        assert await resolver.lookup("tenant@example.com", ORG) == resolved.user_id
        [identity] = await resolver.get_external_identities(resolved.user_id, ORG)
        assert identity.type is IdentityType.EMAIL

    async def test_unparseable_sender_linked_as_platform_id(
        self, resolver: IdentityResolver
    ) -> None:
        resolved = await resolver.obtain_or_mint_user_id("bad@address", ORG)

        [identity] = await resolver.get_external_identities(resolved.user_id, ORG)
        assert identity.type is IdentityType.PLATFORM_ID
