from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from flowgate.apps.api.main import create_app


@asynccontextmanager
async def api_client(app: FastAPI | None = None) -> AsyncIterator[AsyncClient]:
    # Build the app after env overrides; 500s come back as responses instead of raising.
    transport = ASGITransport(app=app or create_app(), raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
