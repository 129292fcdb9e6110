"""pgclaim controller background processing."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from aiojobs import Scheduler
from safir.datetime import current_datetime
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .config import ReconcileConfig
from .constants import DATABASE_GROUP, DATABASE_KIND, WATCH_RETRY_DELAY
from .models.domain.database import DatabaseKey
from .services.reconciler import DatabaseReconciler
from .storage.kubernetes.custom import DatabaseStorage, PostgresClusterStorage
from .timeout import Timeout
from .workqueue import WorkQueue

__all__ = ["BackgroundTaskManager"]


class BackgroundTaskManager:
    """Manage pgclaim controller background tasks.

    While the controller is running, it needs to perform several continuous
    background tasks, namely:

    #. Watch ``PostgresDatabase`` objects and queue each one that changes.
    #. Watch ``PostgresCluster`` objects and queue the database that owns
       each one that changes.
    #. Periodically queue every ``PostgresDatabase``, which picks up changes
       to the platform configuration and anything the watches missed.
    #. Run a pool of workers that take databases from the queue and
       reconcile them, then queue them again after the delay the reconciler
       asks for.

    This class manages all of these background tasks. It only does the task
    management; all of the work of reconciling is done by the reconciler.

    This class is created during startup and tracked as part of the
    `~pgclaim.factory.ProcessContext`.

    Parameters
    ----------
    config
        Reconcile configuration.
    namespace
        Namespace to watch, or `None` to watch all namespaces.
    queue
        Work queue shared by the watches and the workers.
    reconciler
        Database reconciler.
    database_storage
        Storage for ``PostgresDatabase`` objects.
    cluster_storage
        Storage for ``PostgresCluster`` objects.
    slack_client
        Optional Slack webhook client for alerts.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        config: ReconcileConfig,
        namespace: str | None,
        queue: WorkQueue,
        reconciler: DatabaseReconciler,
        database_storage: DatabaseStorage,
        cluster_storage: PostgresClusterStorage,
        slack_client: SlackWebhookClient | None,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._namespace = namespace
        self._queue = queue
        self._reconciler = reconciler
        self._databases = database_storage
        self._clusters = cluster_storage
        self._slack = slack_client
        self._logger = logger

        self._scheduler: Scheduler | None = None

    async def start(self) -> None:
        """Start all background tasks."""
        if self._scheduler:
            msg = "Background tasks already running, cannot start"
            self._logger.warning(msg)
            return
        self._scheduler = Scheduler()
        coros = [
            self._watch(self._watch_databases, "watching databases"),
            self._watch(self._watch_clusters, "watching clusters"),
            self._loop(
                self.resync,
                self._config.resync_interval,
                "queuing all databases",
            ),
        ]
        coros.extend(self._work() for _ in range(self._config.workers))
        self._logger.info(
            "Starting background tasks", workers=self._config.workers
        )
        for coro in coros:
            await self._scheduler.spawn(coro)

    async def stop(self) -> None:
        """Stop the background tasks."""
        if not self._scheduler:
            msg = "Background tasks were already stopped"
            self._logger.warning(msg)
            return
        self._logger.info("Stopping background tasks")
        self._queue.shutdown()
        await self._scheduler.close()
        self._scheduler = None

    async def resync(self) -> None:
        """Queue every ``PostgresDatabase`` for reconciliation."""
        timeout = Timeout("Listing databases", self._config.request_timeout)
        async with timeout.enforce():
            objs = await self._databases.list(self._namespace, timeout)
        for obj in objs:
            metadata = obj["metadata"]
            key = DatabaseKey(metadata["namespace"], metadata["name"])
            self._queue.add(key)
        self._logger.debug("Queued all databases", count=len(objs))

    async def _loop(
        self,
        call: Callable[[], Awaitable[None]],
        interval: timedelta,
        description: str,
    ) -> None:
        """Wrap a coroutine in a periodic scheduling loop.

        The provided coroutine is run on every interval, starting
        immediately.

        Parameters
        ----------
        call
            Async function to run repeatedly.
        interval
            Scheduling interval to use.
        description
            Description of the background task for error reporting.
        """
        while True:
            start = current_datetime(microseconds=True)
            try:
                await call()
            except Exception as e:
                # On failure, log the exception but otherwise continue as
                # normal, including the delay. This will provide some time for
                # whatever the problem was to be resolved.
                elapsed = current_datetime(microseconds=True) - start
                msg = f"Uncaught exception {description}"
                self._logger.exception(msg, delay=elapsed.total_seconds())
                if self._slack:
                    await self._slack.post_uncaught_exception(e)
            delay = interval - (current_datetime(microseconds=True) - start)
            if delay.total_seconds() < 1:
                msg = f"{description.capitalize()} is running continuously"
                self._logger.warning(msg)
            else:
                await asyncio.sleep(delay.total_seconds())

    async def _watch(
        self, call: Callable[[], Awaitable[None]], description: str
    ) -> None:
        """Run a watch forever, restarting it after failures.

        Parameters
        ----------
        call
            Async function that watches until it fails.
        description
            Description of the watch for error reporting.
        """
        while True:
            try:
                await call()
            except Exception as e:
                self._logger.exception(f"Uncaught exception {description}")
                if self._slack:
                    await self._slack.post_uncaught_exception(e)
            await asyncio.sleep(WATCH_RETRY_DELAY.total_seconds())

    async def _watch_databases(self) -> None:
        async for event in self._databases.watch(self._namespace):
            metadata = event.object["metadata"]
            key = DatabaseKey(metadata["namespace"], metadata["name"])
            self._queue.add(key)

    async def _watch_clusters(self) -> None:
        async for event in self._clusters.watch(self._namespace):
            metadata = event.object["metadata"]
            if owner := _find_database_owner(metadata):
                self._queue.add(DatabaseKey(metadata["namespace"], owner))

    async def _work(self) -> None:
        """Reconcile databases from the queue forever."""
        while True:
            key = await self._queue.get()
            try:
                delay = await self._reconciler.process(key)
            except Exception as e:
                # The reconciler handles all errors from a pass, so this is a
                # bug. Keep the worker alive and retry at the slowest rate.
                msg = "Uncaught exception processing database"
                self._logger.exception(msg, database=str(key))
                if self._slack:
                    await self._slack.post_uncaught_exception(e)
                delay = self._config.backoff_ceiling
            finally:
                self._queue.done(key)
            if delay is not None:
                self._queue.add_after(key, delay)


def _find_database_owner(metadata: dict[str, Any]) -> str | None:
    """Return the name of the ``PostgresDatabase`` controlling an object."""
    for reference in metadata.get("ownerReferences") or []:
        if not reference.get("controller"):
            continue
        group = reference.get("apiVersion", "").split("/")[0]
        if reference.get("kind") == DATABASE_KIND and group == DATABASE_GROUP:
            return reference.get("name")
    return None
