"""Tests for the pgclaim.handlers.index module and routes."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from pgclaim.config import Config


@pytest.mark.asyncio
async def test_get_internal_index(client: AsyncClient, config: Config) -> None:
    """Test ``GET /``"""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == config.name
    assert isinstance(data["version"], str)
    assert isinstance(data["description"], str)


@pytest.mark.asyncio
async def test_get_index(client: AsyncClient, config: Config) -> None:
    """Test ``GET /pgclaim``"""
    response = await client.get("/pgclaim")
    assert response.status_code == 200
    data = response.json()
    metadata = data["metadata"]
    assert metadata["name"] == config.name
    assert isinstance(metadata["version"], str)
    assert isinstance(metadata["description"], str)
