"""Retry queue and dead-letter endpoints.

- ``GET /api/dead-letters``: permanently failed messages, newest first
- ``POST /api/dead-letters/{dead_letter_id}/replay``: queue one for a new
  round of retries
- ``POST /api/retry/sweep``: run a retry sweep now
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from threadline.api.deps import get_engine
from threadline.api.models import ApiMeta, ApiResponse, ReplayRequest, ReplayResult, SweepResult
from threadline.engine import RoutingEngine
from threadline.errors import ConflictError, DeadLetterNotFoundError
from threadline.models import DeadLetterRecord
from threadline.retry.dead_letter import list_dead_letters, replay_dead_letter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["retry"])


@router.get("/api/dead-letters", response_model=ApiResponse[list[DeadLetterRecord]])
async def get_dead_letters(
    organization_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[list[DeadLetterRecord]]:
    records = await list_dead_letters(
        engine.stores.dead_letters, organization_id=organization_id, limit=limit
    )
    return ApiResponse[list[DeadLetterRecord]](data=records, meta=ApiMeta(count=len(records)))


@router.post("/api/dead-letters/{dead_letter_id}/replay", response_model=ApiResponse[ReplayResult])
async def replay(
    dead_letter_id: str,
    request: ReplayRequest,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[ReplayResult]:
    result = await replay_dead_letter(
        engine.stores.dead_letters,
        engine.sweeper,
        dead_letter_id=dead_letter_id,
        operator_identity=request.operator_identity,
    )
    if not result["success"]:
        if result["error"] == "dead_letter_not_found":
            raise DeadLetterNotFoundError(dead_letter_id)
        raise ConflictError(result["message"])
    return ApiResponse[ReplayResult](
        data=ReplayResult(
            dead_letter_id=result["dead_letter_id"],
            pending_id=result["pending_id"],
            next_eligible_at=result["next_eligible_at"],
        )
    )


@router.post("/api/retry/sweep", response_model=ApiResponse[SweepResult])
async def run_sweep(engine: RoutingEngine = Depends(get_engine)) -> ApiResponse[SweepResult]:
    summary = await engine.sweeper.sweep()
    return ApiResponse[SweepResult](data=SweepResult.model_validate(summary.as_dict()))
