"""FastAPI dependencies for the operator API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from threadline.engine import RoutingEngine

if TYPE_CHECKING:
    from fastapi import FastAPI


def get_engine() -> RoutingEngine:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("RoutingEngine not initialized")


def wire_engine(app: FastAPI, engine: RoutingEngine) -> None:
    """Point every ``get_engine`` dependency at *engine*."""
    app.state.engine = engine
    app.dependency_overrides[get_engine] = lambda: engine


__all__ = ["get_engine", "wire_engine"]
