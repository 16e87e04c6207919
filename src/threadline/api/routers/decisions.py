"""Routing decision log endpoint.

- ``GET /api/decisions``: newest-first decisions of an organization, narrowed
  by sender, thread, or method/time window. Keyset pagination via ``cursor``.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from threadline.api.deps import get_engine
from threadline.api.models import CursorMeta, CursorPage
from threadline.engine import RoutingEngine
from threadline.models import DecisionMethod, RoutingDecision
from threadline.routing.decision_log import MAX_PAGE_SIZE

router = APIRouter(prefix="/api/decisions", tags=["decisions"])


@router.get("", response_model=CursorPage[RoutingDecision])
async def list_decisions(
    organization_id: str = Query(..., min_length=1),
    sender: str | None = Query(None, description="Only decisions for this sender identifier"),
    thread_id: str | None = Query(None, description="Only decisions that chose this thread"),
    method: DecisionMethod | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    cursor: str | None = Query(None, description="nextCursor from the previous page"),
    engine: RoutingEngine = Depends(get_engine),
) -> CursorPage[RoutingDecision]:
    """Sender and thread filters take precedence over method/time filters.

    The two are separate indexes, so asking for both at once is rejected.
    """
    if sender and thread_id:
        raise HTTPException(status_code=422, detail="Pass either sender or thread_id, not both")
    log = engine.decision_log
    if sender:
        page = await log.query_by_sender(sender, organization_id, limit=limit, cursor=cursor)
    elif thread_id:
        page = await log.query_by_thread(thread_id, organization_id, limit=limit, cursor=cursor)
    else:
        page = await log.query_by_organization(
            organization_id,
            method=method,
            since=since,
            until=until,
            limit=limit,
            cursor=cursor,
        )
    return CursorPage[RoutingDecision](
        data=page.items,
        meta=CursorMeta(next_cursor=page.next_cursor, has_more=page.has_more),
    )
