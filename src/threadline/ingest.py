"""Inbound message handler for channel adapters.

Channel webhooks must never see a routing failure: the handler routes and
delivers the message, and on any routing error hands it to the retry sweeper
and still acknowledges.

Key behaviors:
- Validation errors (missing message or organization) are acknowledged as
  ``rejected``; they are never retried.
- Routing errors are queued for retry and acknowledged as ``queued``.
- A failure to queue is logged and acknowledged as ``dropped``.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from threadline.core.logging import routing_context
from threadline.errors import RoutingValidationError
from threadline.models import NormalizedMessage
from threadline.retry.sweeper import RetrySweeper, describe_error
from threadline.routing.orchestrator import RoutingOrchestrator

logger = logging.getLogger(__name__)

IngestStatus = Literal["routed", "created", "unassigned", "queued", "rejected", "dropped"]


class IngestAck(BaseModel):
    """Acknowledgement returned for every inbound message."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True
    )

    message_id: str | None
    acknowledged: bool = True
    status: IngestStatus
    thread_id: str | None = None
    unassigned_id: str | None = None
    pending_retry_id: str | None = None
    detail: str | None = None


class InboundMessageHandler:
    """Routes inbound messages and always acknowledges them."""

    def __init__(self, orchestrator: RoutingOrchestrator, sweeper: RetrySweeper) -> None:
        self._orchestrator = orchestrator
        self._sweeper = sweeper

    async def handle(self, message: NormalizedMessage | None, organization_id: str) -> IngestAck:
        message_id = message.id if message is not None else None
        try:
            outcome = await self._orchestrator.route_and_deliver(message, organization_id)
        except RoutingValidationError as exc:
            logger.warning("Rejected inbound message %s: %s", message_id, exc)
            return IngestAck(message_id=message_id, status="rejected", detail=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Routing failed for message %s; queueing for retry", message_id, exc_info=True
            )
            return await self._queue(message, organization_id, exc)

        if outcome.result is not None:
            return IngestAck(
                message_id=message_id,
                status="created" if outcome.created else "routed",
                thread_id=outcome.result.thread_id,
            )
        return IngestAck(
            message_id=message_id,
            status="unassigned",
            unassigned_id=outcome.unassigned_id,
        )

    async def _queue(
        self, message: NormalizedMessage, organization_id: str, error: Exception
    ) -> IngestAck:
        with routing_context(organization_id=organization_id, message_id=message.id):
            try:
                record = await self._sweeper.enqueue(message, organization_id, error)
            except Exception:
                logger.exception("Could not queue message %s for retry", message.id)
                return IngestAck(
                    message_id=message.id, status="dropped", detail=describe_error(error)
                )
        return IngestAck(
            message_id=message.id,
            status="queued",
            pending_retry_id=record.id,
            detail=describe_error(error),
        )


__all__ = ["IngestAck", "IngestStatus", "InboundMessageHandler"]
