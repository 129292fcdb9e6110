"""Test fixtures for pgclaim controller tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import respx
import structlog
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from safir.testing.slack import MockSlackWebhook, mock_slack_webhook

from pgclaim.config import Config
from pgclaim.factory import Factory, ProcessContext
from pgclaim.main import create_app

from .support.config import configure
from .support.constants import TEST_BASE_URL
from .support.kubernetes import MockCustomObjectsApi, patch_kubernetes


@pytest_asyncio.fixture
async def config() -> Config:
    """Construct default configuration for tests."""
    return await configure("standard")


@pytest_asyncio.fixture
async def app(
    config: Config,
    mock_kubernetes: MockCustomObjectsApi,
    mock_slack: MockSlackWebhook,
) -> AsyncIterator[FastAPI]:
    """Return a configured test application.

    Wraps the application in a lifespan manager so that startup and shutdown
    events are sent during test execution.
    """
    app = create_app()
    async with LifespanManager(app):
        yield app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Return an ``httpx.AsyncClient`` configured to talk to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url=TEST_BASE_URL
    ) as client:
        yield client


@pytest_asyncio.fixture
async def process_context(
    config: Config,
    mock_kubernetes: MockCustomObjectsApi,
    mock_slack: MockSlackWebhook,
) -> AsyncIterator[ProcessContext]:
    """Create a process context without starting background tasks.

    Tests using this fixture drive reconciliation directly.
    """
    context = await ProcessContext.from_config(config)
    yield context
    await context.aclose()


@pytest.fixture
def factory(process_context: ProcessContext) -> Factory:
    """Create a component factory for tests."""
    return Factory(process_context, structlog.get_logger(__name__))


@pytest.fixture
def mock_kubernetes() -> Iterator[MockCustomObjectsApi]:
    yield from patch_kubernetes()


@pytest.fixture
def mock_slack(
    config: Config, respx_mock: respx.Router
) -> Iterator[MockSlackWebhook]:
    config.slack_webhook = SecretStr("https://slack.example.com/webhook")
    yield mock_slack_webhook(config.slack_webhook, respx_mock)
    config.slack_webhook = None
