"""Manual-assignment queue endpoints.

- ``GET /api/unassigned``: open parked messages, oldest first
- ``POST /api/unassigned/{pending_id}/assign``: attach one to a thread
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from threadline.api.deps import get_engine
from threadline.api.models import ApiMeta, ApiResponse, AssignRequest
from threadline.engine import RoutingEngine
from threadline.models import UnassignedMessage

router = APIRouter(prefix="/api/unassigned", tags=["unassigned"])


@router.get("", response_model=ApiResponse[list[UnassignedMessage]])
async def list_unassigned(
    organization_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[list[UnassignedMessage]]:
    records = await engine.orchestrator.list_unassigned(organization_id, limit=limit)
    return ApiResponse[list[UnassignedMessage]](data=records, meta=ApiMeta(count=len(records)))


@router.post("/{pending_id}/assign", response_model=ApiResponse[UnassignedMessage])
async def assign_unassigned(
    pending_id: str,
    request: AssignRequest,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[UnassignedMessage]:
    record = await engine.orchestrator.assign_unassigned_message(
        pending_id, request.thread_id, assigned_by=request.assigned_by
    )
    return ApiResponse[UnassignedMessage](data=record)
