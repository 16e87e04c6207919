"""Persisted and exchanged records for the routing engine.

Every model serializes with camelCase keys (``model_dump(by_alias=True)``)
because those key names are the storage contract shared with existing thread
and routing-log documents. Input accepts either camelCase or snake_case.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class Channel(enum.StrEnum):
    """Transport a message arrived on."""

    SMS = "sms"
    CHAT_PLATFORM = "chat-platform"
    EMAIL = "email"
    IN_APP = "in-app"


class Direction(enum.StrEnum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class DeliveryStatus(enum.StrEnum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class IdentityType(enum.StrEnum):
    """Kind of external identifier held by an identity link."""

    PHONE = "phone"
    EMAIL = "email"
    PLATFORM_ID = "platform-id"


class DecisionMethod(enum.StrEnum):
    """Method recorded on a persisted routing decision.

    ``manual`` covers both routing failures (no thread) and operator
    assignments out of the pending queue.
    """

    IDENTITY = "identity"
    METADATA = "metadata"
    CONTEXT = "context"
    CREATED = "created"
    MANUAL = "manual"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_document(self) -> dict[str, Any]:
        """Return the JSON-safe camelCase document stored for this record."""
        return self.model_dump(mode="json", by_alias=True)


class NormalizedMessage(_Record):
    """A channel-agnostic inbound or outbound message."""

    id: NonEmptyStr
    thread_id: str = ""
    channel: Channel
    direction: Direction = Direction.INCOMING
    sender_identifier: str = ""
    recipient_identifier: str = ""
    text: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)
    delivery_status: DeliveryStatus = DeliveryStatus.DELIVERED
    channel_metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)


class ExternalIdentity(_Record):
    """One external identifier owned by an internal user."""

    type: IdentityType
    value: NonEmptyStr
    verified: bool = False
    verified_at: datetime | None = None
    verified_expires_at: datetime | None = None

    @field_validator("verified_at", "verified_expires_at")
    @classmethod
    def _verification_utc(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    def matches(self, identity_type: IdentityType | str, value: str) -> bool:
        return self.type == identity_type and self.value == value

    def is_verification_expired(self, now: datetime | None = None) -> bool:
        """True when the identity was verified but the verification has lapsed."""
        if not self.verified or self.verified_expires_at is None:
            return False
        return self.verified_expires_at < (now or _utc_now())

    def is_effectively_verified(self, now: datetime | None = None) -> bool:
        """Readers must treat a lapsed verification as unverified."""
        return self.verified and not self.is_verification_expired(now)


class IdentityLink(_Record):
    """Binds external identifiers to one user inside one organization."""

    id: NonEmptyStr
    user_id: NonEmptyStr
    organization_id: NonEmptyStr
    external_identities: tuple[ExternalIdentity, ...] = ()
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @staticmethod
    def link_id(organization_id: str, user_id: str) -> str:
        return f"{organization_id}-{user_id}"

    def find(self, identity_type: IdentityType | str, value: str) -> ExternalIdentity | None:
        for identity in self.external_identities:
            if identity.matches(identity_type, value):
                return identity
        return None

    def holds_value(self, value: str) -> bool:
        return any(identity.value == value for identity in self.external_identities)


class ParticipantDetail(_Record):
    name: str = ""
    avatar_url: str | None = None


class LastMessage(_Record):
    text: str = ""
    sender_id: str = ""
    sender_name: str | None = None
    timestamp: datetime | None = None


class Thread(_Record):
    """An ongoing conversation the router attaches messages to."""

    id: NonEmptyStr
    organization_id: str | None = None
    participants: tuple[str, ...] = ()
    participant_details: dict[str, ParticipantDetail] = Field(default_factory=dict)
    channel_sources: tuple[Channel, ...] = ()
    is_group: bool = False
    group_name: str | None = None
    property_id: str | None = None
    project_id: str | None = None
    custom_metadata: dict[str, Any] = Field(default_factory=dict)
    last_message: LastMessage | None = None
    unread_count: dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _thread_times_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    def with_channel_source(self, channel: Channel) -> Thread:
        """Return this thread with *channel* recorded; unchanged if already present."""
        if channel in self.channel_sources:
            return self
        return self.model_copy(update={"channel_sources": (*self.channel_sources, channel)})

    def metadata_text(self, key: str) -> str:
        value = self.custom_metadata.get(key)
        return str(value).lower() if value else ""


class ThreadMessage(_Record):
    """A message persisted under a thread."""

    id: NonEmptyStr
    thread_id: NonEmptyStr
    sender_id: str
    sender_name: str = ""
    text: str = ""
    channel: Channel
    direction: Direction = Direction.INCOMING
    status: DeliveryStatus = DeliveryStatus.DELIVERED
    sender_identifier: str = ""
    recipient_identifier: str = ""
    channel_message_id: str = ""
    channel_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def from_message(
        cls, message: NormalizedMessage, *, thread_id: str, sender_id: str
    ) -> ThreadMessage:
        return cls(
            id=message.id,
            thread_id=thread_id,
            sender_id=sender_id,
            sender_name=message.sender_identifier,
            text=message.text,
            channel=message.channel,
            direction=message.direction,
            status=message.delivery_status,
            sender_identifier=message.sender_identifier,
            recipient_identifier=message.recipient_identifier,
            channel_message_id=message.id,
            channel_metadata=message.channel_metadata,
            created_at=message.timestamp,
        )


class RoutingDecision(_Record):
    """Audit entry written once per routing attempt."""

    id: NonEmptyStr
    message_id: str
    sender_identifier: str = ""
    channel: Channel
    timestamp: datetime
    method: DecisionMethod
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str
    thread_id: str | None = None
    organization_id: NonEmptyStr
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def succeeded(self) -> bool:
        return self.thread_id is not None


class PendingRetryRecord(_Record):
    """A message whose routing raised, awaiting the retry sweep."""

    id: NonEmptyStr
    message: NormalizedMessage
    organization_id: NonEmptyStr
    retry_count: int = Field(default=0, ge=0)
    last_error: str = ""
    created_at: datetime = Field(default_factory=_utc_now)
    next_eligible_at: datetime
    updated_at: datetime = Field(default_factory=_utc_now)
    permanently_failed: bool = False
    failed_at: datetime | None = None


class DeadLetterRecord(PendingRetryRecord):
    """Terminal copy of a pending record that exhausted its retry budget."""

    permanently_failed: bool = True
    replayed_at: datetime | None = None
    replayed_pending_id: str | None = None
    replayed_by: str | None = None


class UnassignedMessage(_Record):
    """A message parked for an operator to assign to a thread."""

    id: NonEmptyStr
    message: NormalizedMessage
    organization_id: NonEmptyStr
    reason: str = ""
    created_at: datetime = Field(default_factory=_utc_now)
    assigned_thread_id: str | None = None
    assigned_at: datetime | None = None
    assigned_by: str | None = None

    @property
    def is_assigned(self) -> bool:
        return self.assigned_thread_id is not None


__all__ = [
    "Channel",
    "DeadLetterRecord",
    "DecisionMethod",
    "DeliveryStatus",
    "Direction",
    "ExternalIdentity",
    "IdentityLink",
    "IdentityType",
    "LastMessage",
    "NonEmptyStr",
    "NormalizedMessage",
    "ParticipantDetail",
    "PendingRetryRecord",
    "RoutingDecision",
    "Thread",
    "ThreadMessage",
    "UnassignedMessage",
]
