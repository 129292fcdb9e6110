"""Projection of ``PostgresCluster`` status onto ``PostgresDatabase``."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from safir.datetime import parse_isodatetime
from structlog.stdlib import BoundLogger

from ..config import ReconcileConfig
from ..constants import (
    ANNOTATION_GENERATION,
    BACKUP_REPO_NAME,
    INSTANCE_SET_NAME,
    POSTGRES_PORT,
)
from ..models.domain.database import DesiredDatabase
from ..models.domain.kubernetes import ConditionStatus
from ..models.v1.database import DatabasePhase, DatabaseStatus

__all__ = ["StatusProjector"]


class StatusProjector:
    """Fold the status of a ``PostgresCluster`` into a database status.

    Projection is a pure function of its arguments. The current time is
    passed in rather than read from the clock so that the grace period for
    terminal conditions can be tested.

    Parameters
    ----------
    config
        Reconcile configuration, which supplies the failure conditions.
    logger
        Logger to use.
    """

    def __init__(self, config: ReconcileConfig, logger: BoundLogger) -> None:
        self._config = config
        self._logger = logger

    def project(
        self,
        database: DesiredDatabase,
        cluster: dict[str, Any] | None,
        previous: DatabaseStatus | None,
        now: datetime,
    ) -> DatabaseStatus:
        """Compute the status of a database.

        Parameters
        ----------
        database
            Validated database.
        cluster
            Live ``PostgresCluster``, or `None` if it does not exist yet.
        previous
            Status currently stored on the database, if any.
        now
            Current time.

        Returns
        -------
        DatabaseStatus
            New status. ``acceptedSpec`` is carried over from ``previous``
            unchanged.
        """
        previous = previous or DatabaseStatus()
        status = DatabaseStatus(
            observed_generation=previous.observed_generation,
            last_backup_time=previous.last_backup_time,
            accepted_spec=previous.accepted_spec,
        )
        if cluster is None:
            status.phase = DatabasePhase.PENDING
            status.message = "Waiting for PostgresCluster to be created"
            return status

        cluster_status = cluster.get("status") or {}
        status.endpoint = self._build_endpoint(database)
        instances = self._find(
            cluster_status.get("instances"), INSTANCE_SET_NAME
        )
        status.ready_replicas = instances.get("readyReplicas") or 0
        if backup_time := self._last_backup_time(cluster_status):
            previous_time = status.last_backup_time
            if not previous_time or backup_time > previous_time:
                status.last_backup_time = backup_time

        if failure := self._find_failure(cluster_status, now):
            status.phase = DatabasePhase.FAILED
            status.message = failure
            return status

        if waiting := self._find_waiting(database, cluster, instances):
            status.phase = DatabasePhase.CREATING
            status.message = waiting
            return status

        status.phase = DatabasePhase.READY
        status.observed_generation = database.generation
        return status

    def _build_endpoint(self, database: DesiredDatabase) -> str:
        if database.spec.replicas > 1:
            service = f"{database.name}-pgbouncer"
        else:
            service = f"{database.name}-primary"
        return f"{service}.{database.namespace}.svc:{POSTGRES_PORT}"

    def _find(
        self, items: list[dict[str, Any]] | None, wanted: str
    ) -> dict[str, Any]:
        """Find the status entry with the given name."""
        for item in items or []:
            if item.get("name") == wanted:
                return item
        return {}

    def _find_failure(
        self, cluster_status: dict[str, Any], now: datetime
    ) -> str | None:
        """Return a message describing a terminal condition, if any."""
        for condition in cluster_status.get("conditions") or []:
            kind = condition.get("type")
            reason = condition.get("reason")
            detail = condition.get("message") or reason or "no details"
            if (
                kind in self._config.failure_conditions
                and condition.get("status") == ConditionStatus.TRUE
            ):
                return f"PostgresCluster reports {kind}: {detail}"
            if reason not in self._config.terminal_reasons:
                continue
            since = condition.get("lastTransitionTime")
            if not since:
                continue
            try:
                started = parse_isodatetime(since)
            except ValueError:
                self._logger.warning(
                    "Ignoring condition with invalid transition time",
                    condition=kind,
                    time=since,
                )
                continue
            if now - started >= self._config.failure_grace_period:
                return f"PostgresCluster {kind} is {reason}: {detail}"
        return None

    def _find_waiting(
        self,
        database: DesiredDatabase,
        cluster: dict[str, Any],
        instances: dict[str, Any],
    ) -> str | None:
        """Return a message describing what the cluster is waiting on."""
        spec = database.spec
        metadata = cluster.get("metadata") or {}
        cluster_status = cluster.get("status") or {}

        # The owned fields must have been written for this generation and
        # then seen by the operator, or the rest of the status may be stale.
        annotations = metadata.get("annotations") or {}
        written = annotations.get(ANNOTATION_GENERATION)
        observed = cluster_status.get("observedGeneration")
        if written != str(database.generation):
            return "Waiting for PostgresCluster to be updated"
        if observed is None or observed != metadata.get("generation"):
            return "Waiting for operator to observe the latest changes"

        replicas = instances.get("replicas") or 0
        ready = instances.get("readyReplicas") or 0
        updated = instances.get("updatedReplicas") or 0
        if not replicas == ready == updated == spec.replicas:
            return f"Waiting for instances ({ready}/{spec.replicas} ready)"

        if spec.replicas > 1:
            proxy = cluster_status.get("proxy") or {}
            pgbouncer = proxy.get("pgBouncer") or {}
            proxy_ready = pgbouncer.get("readyReplicas") or 0
            if proxy_ready < spec.replicas:
                return (
                    f"Waiting for connection pooler ({proxy_ready}"
                    f"/{spec.replicas} ready)"
                )

        if spec.backup_enabled:
            pgbackrest = cluster_status.get("pgbackrest") or {}
            repo = self._find(pgbackrest.get("repos"), BACKUP_REPO_NAME)
            if not repo.get("stanzaCreated"):
                return "Waiting for backup repository"

        if spec.monitoring_enabled:
            monitoring = cluster_status.get("monitoring") or {}
            if not monitoring.get("exporterConfiguration"):
                return "Waiting for metrics exporter"

        return None

    def _last_backup_time(
        self, cluster_status: dict[str, Any]
    ) -> datetime | None:
        """Return the completion time of the latest successful backup."""
        pgbackrest = cluster_status.get("pgbackrest") or {}
        backups = list(pgbackrest.get("scheduledBackups") or [])
        if manual := pgbackrest.get("manualBackup"):
            backups.append(manual)
        latest = None
        for backup in backups:
            completed = backup.get("completionTime")
            if not completed or not backup.get("succeeded"):
                continue
            try:
                completion = parse_isodatetime(completed)
            except ValueError:
                continue
            if not latest or completion > latest:
                latest = completion
        return latest
