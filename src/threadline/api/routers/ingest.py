"""Inbound message endpoint.

- ``POST /api/ingest``: route one normalized message. Always answers 202 with
  an acknowledgement; routing failures are queued for retry, not surfaced.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from threadline.api.deps import get_engine
from threadline.api.models import ApiResponse, IngestRequest
from threadline.engine import RoutingEngine
from threadline.ingest import IngestAck

router = APIRouter(prefix="/api/ingest", tags=["ingest"])


@router.post("", response_model=ApiResponse[IngestAck], status_code=202)
async def ingest_message(
    request: IngestRequest,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[IngestAck]:
    organization_id = request.organization_id or engine.config.default_organization_id or ""
    ack = await engine.ingest.handle(request.message, organization_id)
    return ApiResponse[IngestAck](data=ack)
