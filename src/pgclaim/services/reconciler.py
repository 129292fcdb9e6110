"""Reconciliation of ``PostgresDatabase`` objects."""

from __future__ import annotations

import copy
from datetime import timedelta
from typing import Any

import sentry_sdk
from aiohttp import ClientError
from safir.datetime import current_datetime, format_datetime_for_logging
from safir.slack.blockkit import SlackException
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from ..config import ReconcileConfig
from ..constants import FINALIZER
from ..exceptions import (
    ApplyConflictError,
    ControllerTimeoutError,
    DatabaseValidationError,
    KubernetesError,
    OwnershipConflictError,
)
from ..models.domain.database import (
    ApplyOutcome,
    DatabaseKey,
    DatabaseObject,
    DesiredDatabase,
    ReconcileResult,
)
from ..models.domain.kubernetes import PropagationPolicy
from ..models.v1.database import DatabasePhase, DatabaseStatus, ReconcileState
from ..storage.kubernetes.custom import DatabaseStorage, PostgresClusterStorage
from ..timeout import Timeout
from ..workqueue import ExponentialBackoff
from .applier import ClusterApplier
from .builder.cluster import ClusterBuilder
from .status import StatusProjector
from .validator import DatabaseValidator

__all__ = ["DatabaseReconciler"]


class DatabaseReconciler:
    """Drive ``PostgresDatabase`` objects towards their desired state.

    Each call to `reconcile` is one self-contained pass over a single
    database: read it, validate it, translate it, apply the result, and
    project the status of the cluster back onto it. Passes re-read all state
    from Kubernetes, so they may be repeated any number of times.

    `process` wraps a pass with the retry policy and returns when the
    database should be reconciled again. It is what the workers call.

    Parameters
    ----------
    config
        Reconcile configuration.
    validator
        Validator for database specs.
    builder
        Translator from databases to clusters.
    applier
        Applier of translated clusters.
    projector
        Projector of cluster status.
    database_storage
        Storage for ``PostgresDatabase`` objects.
    cluster_storage
        Storage for ``PostgresCluster`` objects.
    backoff
        Backoff policy for failed passes.
    slack_client
        Optional Slack webhook client for alerts.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        config: ReconcileConfig,
        validator: DatabaseValidator,
        builder: ClusterBuilder,
        applier: ClusterApplier,
        projector: StatusProjector,
        database_storage: DatabaseStorage,
        cluster_storage: PostgresClusterStorage,
        backoff: ExponentialBackoff,
        slack_client: SlackWebhookClient | None,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._validator = validator
        self._builder = builder
        self._applier = applier
        self._projector = projector
        self._databases = database_storage
        self._clusters = cluster_storage
        self._backoff = backoff
        self._slack = slack_client
        self._logger = logger

        # Reconcile bookkeeping for each known database, for debugging only.
        # Nothing in the reconcile logic depends on it.
        self._states: dict[DatabaseKey, ReconcileState] = {}

    def list_states(self) -> list[ReconcileState]:
        """List the reconcile state of all known databases.

        Returns
        -------
        list of ReconcileState
            State of each database, sorted by namespace and name.
        """
        return [self._states[k] for k in sorted(self._states)]

    async def process(self, key: DatabaseKey) -> timedelta | None:
        """Reconcile a database, handling any errors.

        Parameters
        ----------
        key
            Database to reconcile.

        Returns
        -------
        datetime.timedelta or None
            How long to wait before reconciling the database again, or `None`
            if it no longer needs reconciling.
        """
        logger = self._logger.bind(namespace=key.namespace, name=key.name)
        try:
            result = await self.reconcile(key)
        except OwnershipConflictError as e:
            logger.warning("Cannot manage PostgresCluster", error=str(e))
            self._record_failure(key, e)
            self._backoff.forget(key)
            await self._mark_failed(key, str(e))
            return self._config.poll_interval
        except Exception as e:
            delay = self._backoff.failure(key)
            failures = self._backoff.failures(key)
            self._record_failure(key, e)
            if _is_retryable(e):
                logger.warning(
                    "Reconcile failed, will retry",
                    error=str(e),
                    failures=failures,
                    delay=delay.total_seconds(),
                )
            else:
                logger.exception("Unexpected error reconciling database")
                if failures == 1:
                    await self._maybe_post_exception(e, key)
            since = self._backoff.failing_since(key)
            now = current_datetime(microseconds=True)
            if since and now - since >= self._config.retry_deadline:
                started = format_datetime_for_logging(since)
                msg = f"Reconcile failing since {started}: {e}"
                await self._mark_failed(key, msg)
            return delay

        self._backoff.forget(key)
        if result.status is None and result.requeue_after is None:
            self._states.pop(key, None)
        else:
            state = self._get_state(key)
            state.failures = 0
            state.last_error = None
            state.last_success = current_datetime()
            if result.status:
                state.phase = result.status.phase
        return result.requeue_after

    async def reconcile(self, key: DatabaseKey) -> ReconcileResult:
        """Run one reconcile pass over a database.

        Parameters
        ----------
        key
            Database to reconcile.

        Returns
        -------
        ReconcileResult
            Result of the pass.

        Raises
        ------
        ApplyConflictError
            Raised if the cluster changed while it was being updated.
        ControllerTimeoutError
            Raised if the pass did not finish within the request timeout.
        KubernetesError
            Raised for failures of Kubernetes API calls.
        OwnershipConflictError
            Raised if the cluster is controlled by some other object.
        """
        timeout = Timeout(
            "Reconciling database", self._config.request_timeout, str(key)
        )
        logger = self._logger.bind(namespace=key.namespace, name=key.name)
        async with timeout.enforce():
            raw = await self._databases.read(key.name, key.namespace, timeout)
            if not raw:
                logger.debug("Database no longer exists")
                return ReconcileResult()
            obj = DatabaseObject.from_dict(raw)
            self._get_state(key).generation = obj.generation
            if obj.deletion_timestamp:
                return await self._delete(obj, timeout, logger)
            obj = await self._ensure_finalizer(obj, timeout)
            return await self._reconcile(obj, timeout, logger)

    async def _reconcile(
        self, obj: DatabaseObject, timeout: Timeout, logger: BoundLogger
    ) -> ReconcileResult:
        previous = obj.status or DatabaseStatus()
        try:
            spec = self._validator.validate(obj, previous.accepted_spec)
        except DatabaseValidationError as e:
            logger.info("Database spec rejected", error=str(e))
            status = previous.model_copy(
                update={"phase": DatabasePhase.FAILED, "message": str(e)}
            )
            await self._write_status(obj, status, timeout)
            return ReconcileResult(
                requeue_after=self._config.poll_interval, status=status
            )

        database = DesiredDatabase(
            name=obj.name,
            namespace=obj.namespace,
            generation=obj.generation,
            spec=spec,
        )
        cluster = self._builder.build(database)
        live = await self._clusters.read(obj.name, obj.namespace, timeout)
        result = await self._applier.apply(cluster, live, obj, timeout)
        if result.outcome == ApplyOutcome.CONFLICT:
            msg = f"PostgresCluster {obj.namespace}/{obj.name} changed"
            raise ApplyConflictError(f"{msg} during apply")

        now = current_datetime()
        status = self._projector.project(
            database, result.cluster, previous, now
        )
        status.accepted_spec = self._validator.accept(spec, obj.generation)
        if status.phase != previous.phase:
            logger.info(
                "Database phase changed",
                old=previous.phase.value,
                new=status.phase.value,
                message=status.message,
            )
        await self._write_status(obj, status, timeout)
        if status.phase in (DatabasePhase.PENDING, DatabasePhase.CREATING):
            requeue = self._config.progress_interval
        else:
            requeue = self._config.poll_interval
        return ReconcileResult(requeue_after=requeue, status=status)

    async def _delete(
        self, obj: DatabaseObject, timeout: Timeout, logger: BoundLogger
    ) -> ReconcileResult:
        """Delete the cluster of a database, then release the finalizer."""
        if FINALIZER not in obj.finalizers:
            return ReconcileResult()
        previous = obj.status or DatabaseStatus()
        status = previous.model_copy(
            update={
                "phase": DatabasePhase.DELETING,
                "message": "Deleting PostgresCluster",
            }
        )
        obj = await self._write_status(obj, status, timeout)

        live = await self._clusters.read(obj.name, obj.namespace, timeout)
        if live and self._is_owned(live, obj):
            if not live["metadata"].get("deletionTimestamp"):
                logger.info("Deleting PostgresCluster")
                await self._clusters.delete(
                    obj.name,
                    obj.namespace,
                    timeout,
                    propagation_policy=PropagationPolicy.FOREGROUND,
                )
            return ReconcileResult(
                requeue_after=self._config.progress_interval, status=status
            )

        logger.info("Releasing finalizer")
        body = copy.deepcopy(obj.raw)
        finalizers = [f for f in obj.finalizers if f != FINALIZER]
        body["metadata"]["finalizers"] = finalizers
        await self._databases.replace(body, timeout)
        return ReconcileResult()

    async def _ensure_finalizer(
        self, obj: DatabaseObject, timeout: Timeout
    ) -> DatabaseObject:
        if FINALIZER in obj.finalizers:
            return obj
        body = copy.deepcopy(obj.raw)
        body["metadata"]["finalizers"] = [*obj.finalizers, FINALIZER]
        result = await self._databases.replace(body, timeout)
        return DatabaseObject.from_dict(result)

    def _get_state(self, key: DatabaseKey) -> ReconcileState:
        if key not in self._states:
            self._states[key] = ReconcileState(
                namespace=key.namespace, name=key.name
            )
        return self._states[key]

    def _is_owned(self, cluster: dict[str, Any], obj: DatabaseObject) -> bool:
        references = cluster["metadata"].get("ownerReferences") or []
        return any(r.get("uid") == obj.uid for r in references)

    async def _mark_failed(self, key: DatabaseKey, message: str) -> None:
        """Set the phase of a database to failed after an error.

        Errors while doing so are logged and otherwise ignored, since the
        pass that failed is already being retried.
        """
        logger = self._logger.bind(namespace=key.namespace, name=key.name)
        timeout = Timeout(
            "Updating database status", self._config.request_timeout, str(key)
        )
        try:
            async with timeout.enforce():
                raw = await self._databases.read(
                    key.name, key.namespace, timeout
                )
                if not raw:
                    return
                obj = DatabaseObject.from_dict(raw)
                if obj.deletion_timestamp:
                    return
                previous = obj.status or DatabaseStatus()
                status = previous.model_copy(
                    update={"phase": DatabasePhase.FAILED, "message": message}
                )
                await self._write_status(obj, status, timeout)
        except (ControllerTimeoutError, KubernetesError) as e:
            logger.warning("Unable to mark database failed", error=str(e))
            return
        self._get_state(key).phase = DatabasePhase.FAILED

    async def _maybe_post_exception(
        self, exc: Exception, key: DatabaseKey
    ) -> None:
        """Post an exception to an external service.

        This will post the exception to Slack if Slack reporting is configured
        and Sentry if Sentry is enabled.

        Parameters
        ----------
        exc
            Exception to report.
        key
            Database whose reconcile raised the exception.
        """
        sentry_sdk.capture_exception(exc)
        if not self._slack:
            return
        if isinstance(exc, SlackException):
            await self._slack.post_exception(exc)
        else:
            await self._slack.post_uncaught_exception(exc)

    def _record_failure(self, key: DatabaseKey, exc: Exception) -> None:
        state = self._get_state(key)
        state.failures += 1
        state.last_error = str(exc)

    async def _write_status(
        self, obj: DatabaseObject, status: DatabaseStatus, timeout: Timeout
    ) -> DatabaseObject:
        """Write the status of a database if it changed.

        Returns
        -------
        DatabaseObject
            Database as stored after the write.
        """
        if obj.status and obj.status.to_kubernetes() == status.to_kubernetes():
            return obj
        body = copy.deepcopy(obj.raw)
        body["status"] = status.to_kubernetes()
        result = await self._databases.replace_status(body, timeout)
        return DatabaseObject.from_dict(result)


def _is_retryable(exc: Exception) -> bool:
    """Whether a failed pass is expected to succeed when retried."""
    if isinstance(exc, KubernetesError):
        return exc.is_retryable
    return isinstance(
        exc, (ApplyConflictError, ClientError, ControllerTimeoutError)
    )
