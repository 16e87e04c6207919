"""Resolve external identifiers to internal user ids within an organization.

The resolver is the only writer of identity links. Every mutation
invalidates the organization's cache entries so a subsequent lookup observes
the write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from threadline.errors import IdentityConflictError, MissingFieldError
from threadline.identity.cache import IdentityCache, TTLIdentityCache
from threadline.identity.validation import (
    infer_identity_type,
    is_valid_identifier,
    mint_user_id,
    validate_identifier,
)
from threadline.models import ExternalIdentity, IdentityLink, IdentityType
from threadline.routing.telemetry import get_routing_telemetry
from threadline.stores.base import IdentityLinkStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _require(value: str | None, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise MissingFieldError(field_name)
    return str(value).strip()


@dataclass(frozen=True)
class ResolvedUser:
    """Outcome of ``obtain_or_mint_user_id``."""

    user_id: str
    minted: bool


class IdentityResolver:
    """Maps ``(organization, external identifier)`` to a user id.

    Parameters
    ----------
    store:
        Backing identity link store.
    cache:
        Lookup cache; defaults to a 5-minute in-process TTL cache.
    clock:
        Wall-clock source for verification timestamps.
    """

    def __init__(
        self,
        store: IdentityLinkStore,
        *,
        cache: IdentityCache | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._cache = cache if cache is not None else TTLIdentityCache()
        self._clock = clock

    @property
    def cache(self) -> IdentityCache:
        return self._cache

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def lookup(
        self, external_identifier: str, organization_id: str, *, use_cache: bool = True
    ) -> str | None:
        """Return the user id owning *external_identifier*, or None.

        Matches on identifier value across all identity types. When more than
        one link matches, a warning is logged and the first link in store
        order wins. Misses are cached like hits.
        """
        identifier = _require(external_identifier, "external_identifier")
        organization_id = _require(organization_id, "organization_id")
        key = (organization_id, identifier)

        if use_cache:
            entry = self._cache.get(key)
            get_routing_telemetry().record_identity_cache(hit=entry is not None)
            if entry is not None:
                return entry.user_id

        links = await self._store.list_for_organization(organization_id)
        matches = [link for link in links if link.holds_value(identifier)]

        user_id: str | None = None
        if matches:
            if len(matches) > 1:
                get_routing_telemetry().record_identity_integrity_anomaly()
                logger.warning(
                    "Identifier matched %d identity links; using first (user=%s, candidates=%s)",
                    len(matches),
                    matches[0].user_id,
                    [link.user_id for link in matches],
                )
            user_id = matches[0].user_id

        self._cache.set(key, user_id)
        return user_id

    async def get_identity_link(self, user_id: str, organization_id: str) -> IdentityLink | None:
        user_id = _require(user_id, "user_id")
        organization_id = _require(organization_id, "organization_id")
        return await self._store.get(IdentityLink.link_id(organization_id, user_id))

    async def get_external_identities(
        self, user_id: str, organization_id: str
    ) -> list[ExternalIdentity]:
        link = await self.get_identity_link(user_id, organization_id)
        return list(link.external_identities) if link else []

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def add_external_identity(
        self,
        user_id: str,
        identity: ExternalIdentity,
        organization_id: str,
    ) -> IdentityLink:
        """Attach *identity* to the user's link, creating the link if needed.

        Idempotent: re-adding the same ``(type, value)`` replaces the existing
        entry in place.

        Raises
        ------
        InvalidIdentityError
            When the value does not match its type's format.
        IdentityConflictError
            When another user of the organization already holds the identity.
        """
        user_id = _require(user_id, "user_id")
        organization_id = _require(organization_id, "organization_id")
        validate_identifier(identity.type, identity.value)

        link_id = IdentityLink.link_id(organization_id, user_id)
        for other in await self._store.list_for_organization(organization_id):
            if other.id != link_id and other.find(identity.type, identity.value) is not None:
                raise IdentityConflictError(str(identity.type), identity.value, other.user_id)

        now = self._clock()
        existing = await self._store.get(link_id)
        if existing is None:
            link = IdentityLink(
                id=link_id,
                user_id=user_id,
                organization_id=organization_id,
                external_identities=(identity,),
                created_at=now,
                updated_at=now,
            )
        else:
            identities = list(existing.external_identities)
            for index, current in enumerate(identities):
                if current.matches(identity.type, identity.value):
                    identities[index] = identity
                    break
            else:
                identities.append(identity)
            link = existing.model_copy(
                update={"external_identities": tuple(identities), "updated_at": now}
            )

        await self._store.save(link)
        self._cache.invalidate_prefix(organization_id)
        logger.info(
            "Linked %s identity to user %s (created=%s)",
            identity.type,
            user_id,
            existing is None,
        )
        return link

    async def link_phone_number(
        self, user_id: str, phone: str, organization_id: str
    ) -> IdentityLink:
        """Link an unverified E.164 phone number to *user_id*."""
        return await self.add_external_identity(
            user_id, ExternalIdentity(type=IdentityType.PHONE, value=phone), organization_id
        )

    async def link_email(self, user_id: str, email: str, organization_id: str) -> IdentityLink:
        """Link an unverified email address, stored trimmed and lowercased."""
        validate_identifier(IdentityType.EMAIL, email)
        return await self.add_external_identity(
            user_id,
            ExternalIdentity(type=IdentityType.EMAIL, value=email.strip().lower()),
            organization_id,
        )

    async def link_platform_id(
        self, user_id: str, platform_id: str, organization_id: str
    ) -> IdentityLink:
        return await self.add_external_identity(
            user_id,
            ExternalIdentity(type=IdentityType.PLATFORM_ID, value=platform_id),
            organization_id,
        )

    async def remove_external_identity(
        self,
        user_id: str,
        identity_type: IdentityType | str,
        value: str,
        organization_id: str,
    ) -> bool:
        """Detach one identity. An emptied link is kept. Returns False if absent."""
        link = await self.get_identity_link(user_id, organization_id)
        if link is None or link.find(identity_type, value) is None:
            return False
        remaining = tuple(
            identity
            for identity in link.external_identities
            if not identity.matches(identity_type, value)
        )
        await self._store.save(
            link.model_copy(
                update={"external_identities": remaining, "updated_at": self._clock()}
            )
        )
        self._cache.invalidate_prefix(link.organization_id)
        logger.info("Removed %s identity from user %s", identity_type, user_id)
        return True

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(
        self,
        identity_type: IdentityType | str,
        value: str,
        organization_id: str,
        *,
        expires_in_days: float | None = None,
    ) -> bool:
        """Mark the identity verified. Returns False when no link holds it.

        Re-verifying refreshes ``verifiedAt`` and the expiry.
        """
        now = self._clock()
        expires_at = now + timedelta(days=expires_in_days) if expires_in_days is not None else None
        return await self._update_identity(
            identity_type,
            value,
            organization_id,
            verified=True,
            verified_at=now,
            verified_expires_at=expires_at,
        )

    async def unverify(
        self, identity_type: IdentityType | str, value: str, organization_id: str
    ) -> bool:
        """Clear verification. Returns False when no link holds the identity."""
        return await self._update_identity(
            identity_type,
            value,
            organization_id,
            verified=False,
            verified_at=None,
            verified_expires_at=None,
        )

    async def verify_phone_number(
        self, phone: str, organization_id: str, *, expires_in_days: float | None = None
    ) -> bool:
        validate_identifier(IdentityType.PHONE, phone)
        return await self.verify(
            IdentityType.PHONE, phone, organization_id, expires_in_days=expires_in_days
        )

    async def verify_email(
        self, email: str, organization_id: str, *, expires_in_days: float | None = None
    ) -> bool:
        validate_identifier(IdentityType.EMAIL, email)
        return await self.verify(
            IdentityType.EMAIL, email, organization_id, expires_in_days=expires_in_days
        )

    async def verify_platform_id(
        self, platform_id: str, organization_id: str, *, expires_in_days: float | None = None
    ) -> bool:
        validate_identifier(IdentityType.PLATFORM_ID, platform_id)
        return await self.verify(
            IdentityType.PLATFORM_ID, platform_id, organization_id, expires_in_days=expires_in_days
        )

    async def unverify_phone_number(self, phone: str, organization_id: str) -> bool:
        validate_identifier(IdentityType.PHONE, phone)
        return await self.unverify(IdentityType.PHONE, phone, organization_id)

    async def unverify_email(self, email: str, organization_id: str) -> bool:
        validate_identifier(IdentityType.EMAIL, email)
        return await self.unverify(IdentityType.EMAIL, email, organization_id)

    async def unverify_platform_id(self, platform_id: str, organization_id: str) -> bool:
        validate_identifier(IdentityType.PLATFORM_ID, platform_id)
        return await self.unverify(IdentityType.PLATFORM_ID, platform_id, organization_id)

    async def expire_verifications(
        self,
        organization_id: str,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Clear verification on every identity whose expiry has passed.

        Scoped to one user when *user_id* is given. Returns the number of
        identities changed.
        """
        organization_id = _require(organization_id, "organization_id")
        current = now or self._clock()
        if user_id is not None:
            link = await self.get_identity_link(user_id, organization_id)
            links = [link] if link is not None else []
        else:
            links = await self._store.list_for_organization(organization_id)

        expired_total = 0
        for link in links:
            expired = 0
            identities = []
            for identity in link.external_identities:
                if identity.is_verification_expired(current):
                    expired += 1
                    identity = identity.model_copy(
                        update={"verified": False, "verified_at": None, "verified_expires_at": None}
                    )
                identities.append(identity)
            if expired:
                await self._store.save(
                    link.model_copy(
                        update={"external_identities": tuple(identities), "updated_at": current}
                    )
                )
                expired_total += expired

        if expired_total:
            self._cache.invalidate_prefix(organization_id)
            logger.info(
                "Expired %d identity verification(s) in organization %s",
                expired_total,
                organization_id,
            )
        return expired_total

    async def _update_identity(
        self,
        identity_type: IdentityType | str,
        value: str,
        organization_id: str,
        **changes: object,
    ) -> bool:
        organization_id = _require(organization_id, "organization_id")
        identity_type = IdentityType(identity_type)
        for link in await self._store.list_for_organization(organization_id):
            current = link.find(identity_type, value)
            if current is None:
                continue
            identities = tuple(
                identity.model_copy(update=changes)
                if identity.matches(identity_type, value)
                else identity
                for identity in link.external_identities
            )
            await self._store.save(
                link.model_copy(
                    update={"external_identities": identities, "updated_at": self._clock()}
                )
            )
            self._cache.invalidate_prefix(organization_id)
            return True
        logger.info("No identity link holds %s identifier in organization", identity_type)
        return False

    # ------------------------------------------------------------------
    # Fallback creation support
    # ------------------------------------------------------------------

    async def obtain_or_mint_user_id(
        self, sender_identifier: str, organization_id: str, *, use_cache: bool = True
    ) -> ResolvedUser:
        """Resolve the sender, minting and linking a new user id when unseen."""
        sender = _require(sender_identifier, "sender_identifier")
        existing = await self.lookup(sender, organization_id, use_cache=use_cache)
        if existing is not None:
            return ResolvedUser(user_id=existing, minted=False)

        user_id = mint_user_id()
        identity_type = infer_identity_type(sender)
        if not is_valid_identifier(identity_type, sender):
            identity_type = IdentityType.PLATFORM_ID
        identity = ExternalIdentity(type=identity_type, value=sender)
        await self.add_external_identity(user_id, identity, organization_id)
        logger.info("Minted user %s for unseen sender", user_id)
        return ResolvedUser(user_id=user_id, minted=True)


__all__ = ["IdentityResolver", "ResolvedUser"]
