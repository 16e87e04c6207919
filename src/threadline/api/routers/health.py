"""Liveness endpoint: ``GET /api/health``."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from threadline.api.deps import get_engine
from threadline.engine import RoutingEngine

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health(engine: RoutingEngine = Depends(get_engine)) -> dict:
    return {
        "status": "ok",
        "backend": "postgres" if engine.database is not None else "memory",
        "retry_sweep_running": engine.sweeper.running,
    }
