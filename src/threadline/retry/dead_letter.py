"""Dead-letter inspection and replay with lineage preservation."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from threadline.models import DeadLetterRecord
from threadline.retry.sweeper import RetrySweeper
from threadline.stores.base import DeadLetterStore

logger = logging.getLogger(__name__)


async def list_dead_letters(
    store: DeadLetterStore, *, organization_id: str | None = None, limit: int = 50
) -> list[DeadLetterRecord]:
    """Most recently failed records first."""
    return await store.list_failed(organization_id=organization_id, limit=max(1, min(limit, 500)))


async def replay_dead_letter(
    store: DeadLetterStore,
    sweeper: RetrySweeper,
    *,
    dead_letter_id: str,
    operator_identity: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Re-queue a dead-lettered message for a fresh round of retries.

    The dead-letter record is kept and stamped with the replay time,
    operator, and the id of the new pending record. Each record can be
    replayed once.

    Returns:
        Result dict with replay outcome
    """
    dead_letter = await store.get(dead_letter_id)
    if dead_letter is None:
        return {
            "success": False,
            "error": "dead_letter_not_found",
            "message": f"No dead-letter entry found with id {dead_letter_id}",
        }

    if dead_letter.replayed_at is not None:
        return {
            "success": False,
            "error": "already_replayed",
            "message": f"This message was already replayed at {dead_letter.replayed_at}",
            "pending_id": dead_letter.replayed_pending_id,
        }

    pending = await sweeper.enqueue(
        dead_letter.message,
        dead_letter.organization_id,
        f"replayed from dead letter {dead_letter.id}: {dead_letter.last_error}",
    )
    await store.update(
        dead_letter.model_copy(
            update={
                "replayed_at": now or datetime.now(UTC),
                "replayed_pending_id": pending.id,
                "replayed_by": operator_identity,
            }
        )
    )
    logger.info(
        "Dead letter %s replayed by %s as pending record %s",
        dead_letter.id,
        operator_identity,
        pending.id,
    )
    return {
        "success": True,
        "dead_letter_id": dead_letter.id,
        "pending_id": pending.id,
        "next_eligible_at": pending.next_eligible_at.isoformat(),
    }


__all__ = ["list_dead_letters", "replay_dead_letter"]
