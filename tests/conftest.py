"""Shared fixtures: a controllable clock, an in-memory engine and record factories."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from threadline.engine import RoutingEngine, build_memory_engine
from threadline.models import (
    Channel,
    ExternalIdentity,
    IdentityType,
    LastMessage,
    NormalizedMessage,
    Thread,
)
from threadline.routing.telemetry import reset_routing_telemetry_for_tests

ORG = "org-1"
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


_message_ids = itertools.count(1)


def make_message(
    *,
    sender: str = "+15551234567",
    text: str = "Hello there",
    channel: Channel = Channel.SMS,
    timestamp: datetime = T0,
    metadata: dict[str, Any] | None = None,
    message_id: str | None = None,
) -> NormalizedMessage:
    return NormalizedMessage(
        id=message_id or f"msg-{next(_message_ids)}",
        channel=channel,
        sender_identifier=sender,
        recipient_identifier="+15550000000",
        text=text,
        timestamp=timestamp,
        channel_metadata=metadata or {},
    )


def make_thread(
    thread_id: str,
    *,
    participants: tuple[str, ...] = (),
    organization_id: str | None = ORG,
    updated_at: datetime = T0,
    last_text: str | None = None,
    group_name: str | None = None,
    property_id: str | None = None,
    project_id: str | None = None,
    custom_metadata: dict[str, Any] | None = None,
    channels: tuple[Channel, ...] = (Channel.SMS,),
) -> Thread:
    return Thread(
        id=thread_id,
        organization_id=organization_id,
        participants=participants,
        channel_sources=channels,
        is_group=group_name is not None,
        group_name=group_name,
        property_id=property_id,
        project_id=project_id,
        custom_metadata=custom_metadata or {},
        last_message=(
            LastMessage(text=last_text, sender_id="someone", timestamp=updated_at)
            if last_text is not None
            else None
        ),
        created_at=updated_at,
        updated_at=updated_at,
    )


def phone(value: str, **kwargs: Any) -> ExternalIdentity:
    return ExternalIdentity(type=IdentityType.PHONE, value=value, **kwargs)


def email(value: str, **kwargs: Any) -> ExternalIdentity:
    return ExternalIdentity(type=IdentityType.EMAIL, value=value, **kwargs)


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    """Reset telemetry singletons between tests."""
    reset_routing_telemetry_for_tests()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock: FakeClock) -> RoutingEngine:
    return build_memory_engine(clock=clock)


@pytest.fixture
def message_factory() -> Callable[..., NormalizedMessage]:
    return make_message
