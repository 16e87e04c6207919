"""Shared fixtures for operator API tests.

The app serves an in-memory engine on the shared fake clock, so every test
starts from empty stores and no database is required.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from threadline.api.app import create_app
from threadline.engine import RoutingEngine


@pytest.fixture
def app(engine: RoutingEngine) -> FastAPI:
    return create_app(engine=engine)


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
