"""Component factory and global and per-request context management."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Self

import structlog
from kubernetes_asyncio.client import ApiClient
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .background import BackgroundTaskManager
from .config import Config
from .models.v1.database import ReconcileState
from .services.admission import AdmissionService
from .services.applier import CLUSTER_OWNED_FIELDS, ClusterApplier
from .services.builder.cluster import ClusterBuilder
from .services.reconciler import DatabaseReconciler
from .services.status import StatusProjector
from .services.validator import DatabaseValidator
from .storage.kubernetes.custom import DatabaseStorage, PostgresClusterStorage
from .workqueue import ExponentialBackoff, WorkQueue

__all__ = ["Factory", "ProcessContext"]


@dataclass(frozen=True, slots=True)
class ProcessContext:
    """Per-process global application state.

    This object holds all of the per-process singletons and is managed by
    `~pgclaim.dependencies.context.ContextDependency`. It is used by the
    `Factory` class as a source of dependencies to inject into created
    service objects, and by the context dependency as a source of singletons
    that should also be exposed to route handlers via the request context.
    """

    config: Config
    """pgclaim controller configuration."""

    kubernetes_client: ApiClient
    """Shared Kubernetes client."""

    queue: WorkQueue
    """Queue of databases to reconcile."""

    reconciler: DatabaseReconciler
    """Database reconciler, which also tracks reconcile state."""

    background: BackgroundTaskManager
    """Manager for background tasks (watches, resync, workers)."""

    @classmethod
    async def from_config(cls, config: Config) -> Self:
        """Create a new process context from the controller configuration.

        Parameters
        ----------
        config
            pgclaim controller configuration.

        Returns
        -------
        ProcessContext
            Shared context for a pgclaim controller process.
        """
        kubernetes_client = ApiClient()

        # This logger is used only by process-global singletons. Everything
        # else will use a per-request logger that includes more context about
        # the request.
        logger = structlog.get_logger(__name__)

        slack_client = None
        if config.slack_webhook:
            slack_client = SlackWebhookClient(
                config.slack_webhook.get_secret_value(), config.name, logger
            )

        database_storage = DatabaseStorage(kubernetes_client, logger)
        cluster_storage = PostgresClusterStorage(kubernetes_client, logger)
        reconcile = config.reconcile
        reconciler = DatabaseReconciler(
            config=reconcile,
            validator=DatabaseValidator(config.platform, logger),
            builder=ClusterBuilder(config.platform),
            applier=ClusterApplier(
                storage=cluster_storage,
                owned_fields=CLUSTER_OWNED_FIELDS,
                logger=logger,
            ),
            projector=StatusProjector(reconcile, logger),
            database_storage=database_storage,
            cluster_storage=cluster_storage,
            backoff=ExponentialBackoff(
                reconcile.backoff_base, reconcile.backoff_ceiling
            ),
            slack_client=slack_client,
            logger=logger,
        )
        queue = WorkQueue()
        return cls(
            config=config,
            kubernetes_client=kubernetes_client,
            queue=queue,
            reconciler=reconciler,
            background=BackgroundTaskManager(
                config=reconcile,
                namespace=config.namespace,
                queue=queue,
                reconciler=reconciler,
                database_storage=database_storage,
                cluster_storage=cluster_storage,
                slack_client=slack_client,
                logger=logger,
            ),
        )

    async def aclose(self) -> None:
        """Free allocated resources."""
        await self.kubernetes_client.close()

    async def start(self) -> None:
        """Start the background tasks running."""
        await self.background.start()

    async def stop(self) -> None:
        """Clean up a process context.

        Called during shutdown, or before recreating the process context using
        a different configuration.
        """
        await self.background.stop()


class Factory:
    """Build pgclaim controller components.

    Uses the contents of a `ProcessContext` to construct the components of
    the application on demand.

    Parameters
    ----------
    context
        Shared process context.
    logger
        Logger to use for messages.
    """

    def __init__(self, context: ProcessContext, logger: BoundLogger) -> None:
        self._context = context
        self._logger = logger

    def create_admission_service(self) -> AdmissionService:
        """Create a service for answering admission requests.

        Returns
        -------
        AdmissionService
            Newly-created admission service.
        """
        validator = DatabaseValidator(
            self._context.config.platform, self._logger
        )
        return AdmissionService(validator, self._logger)

    def list_reconcile_states(self) -> list[ReconcileState]:
        """Return the reconcile state of every known database.

        Returns
        -------
        list of ReconcileState
            Reconcile state, sorted by namespace and name.
        """
        return self._context.reconciler.list_states()

    def set_logger(self, logger: BoundLogger) -> None:
        """Replace the internal logger.

        Used by the context dependency to update the logger for all
        newly-created components when it's rebound with additional context.

        Parameters
        ----------
        logger
            New logger.
        """
        self._logger = logger
