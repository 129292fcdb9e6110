"""The main application factory for the pgclaim controller."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from importlib.metadata import metadata, version

import structlog
import uvicorn
from fastapi import FastAPI
from safir.kubernetes import initialize_kubernetes
from safir.logging import configure_logging, configure_uvicorn_logging
from safir.middleware.x_forwarded import XForwardedMiddleware
from safir.sentry import initialize_sentry
from safir.slack.webhook import SlackRouteErrorHandler

from .dependencies.config import config_dependency
from .dependencies.context import context_dependency
from .handlers import admission, databases, index

__all__ = ["create_app", "run"]


def create_app() -> FastAPI:
    """Create the FastAPI application.

    This is in a function rather than using a global variable (as is more
    typical for FastAPI) because we want to defer configuration loading until
    after the test suite has a chance to override the path to the
    configuration file.
    """
    initialize_sentry(release=version("pgclaim"))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await initialize_kubernetes()
        config = config_dependency.config
        await context_dependency.initialize(config)

        yield

        await context_dependency.aclose()

    # Configure logging.
    config = config_dependency.config
    configure_logging(
        name="pgclaim", profile=config.profile, log_level=config.log_level
    )
    configure_uvicorn_logging(config.log_level)

    # Create the application object.
    app = FastAPI(
        title=config.name,
        description=metadata("pgclaim")["Summary"],
        version=version("pgclaim"),
        openapi_url=f"{config.path_prefix}/openapi.json",
        docs_url=f"{config.path_prefix}/docs",
        redoc_url=f"{config.path_prefix}/redoc",
        lifespan=lifespan,
    )

    # Attach the routers.
    app.include_router(index.internal_router)
    app.include_router(index.external_router, prefix=config.path_prefix)
    app.include_router(databases.router, prefix=config.path_prefix)
    app.include_router(admission.router, prefix=config.path_prefix)

    # Register middleware.
    app.add_middleware(XForwardedMiddleware)

    # Configure Slack alerts.
    logger = structlog.get_logger(__name__)
    if config.slack_webhook:
        webhook = config.slack_webhook.get_secret_value()
        SlackRouteErrorHandler.initialize(webhook, config.name, logger)
        logger.debug("Initialized Slack webhook")

    return app


def run() -> None:
    """Run the controller under uvicorn.

    Admission webhooks must be served over TLS. If ``PGCLAIM_TLS_CERT`` and
    ``PGCLAIM_TLS_KEY`` are set in the environment, they name the certificate
    and key, and uvicorn serves HTTPS on port 8443. Otherwise it serves plain
    HTTP on port 8080, which is only suitable behind a TLS-terminating proxy.
    """
    certfile = os.getenv("PGCLAIM_TLS_CERT")
    keyfile = os.getenv("PGCLAIM_TLS_KEY")
    uvicorn.run(
        "pgclaim.main:create_app",
        factory=True,
        host="0.0.0.0",  # noqa: S104
        port=8443 if certfile else 8080,
        ssl_certfile=certfile,
        ssl_keyfile=keyfile,
        log_config=None,
    )
