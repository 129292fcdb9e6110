"""Construction of ``PostgresCluster`` objects for databases."""

from __future__ import annotations

import json
from typing import Any

from ...config import PlatformConfig
from ...constants import (
    ANNOTATION_GENERATION,
    BACKUP_REPO_NAME,
    CLUSTER_GROUP,
    CLUSTER_KIND,
    CLUSTER_VERSION,
    INSTANCE_SET_NAME,
    LABEL_DATABASE,
    LABEL_MANAGED_BY,
    MANAGED_BY,
)
from ...models.domain.database import DesiredDatabase
from ...models.v1.database import ResourceQuantities

__all__ = ["ClusterBuilder"]

_CLUSTER_LABEL = f"{CLUSTER_GROUP}/cluster"
"""Label set by the operator on all pods of a cluster."""

_INSTANCE_SET_LABEL = f"{CLUSTER_GROUP}/instance-set"
"""Label set by the operator on the pods of an instance set."""


class ClusterBuilder:
    """Construct ``PostgresCluster`` objects from validated databases.

    Building is a pure function of the database and the platform
    configuration. It never consults the clock, the live cluster, or any
    other state, so equal inputs always produce identical objects.

    Parameters
    ----------
    config
        Platform configuration.
    """

    def __init__(self, config: PlatformConfig) -> None:
        self._config = config

    def build(self, database: DesiredDatabase) -> dict[str, Any]:
        """Construct the ``PostgresCluster`` for a database.

        Parameters
        ----------
        database
            Validated and defaulted database.

        Returns
        -------
        dict
            ``PostgresCluster`` custom object, without owner references.
        """
        spec = database.spec
        cluster_spec: dict[str, Any] = {
            "image": self._config.postgres_images[spec.version],
            "postgresVersion": spec.version,
            "instances": [self._build_instance_set(database)],
        }
        if spec.replicas > 1:
            cluster_spec["proxy"] = {
                "pgBouncer": {
                    "image": self._config.pgbouncer_image,
                    "replicas": spec.replicas,
                }
            }
        if spec.backup_enabled:
            cluster_spec["backups"] = self._build_backups(database)
        if spec.monitoring_enabled:
            monitoring = self._config.monitoring
            cluster_spec["monitoring"] = {
                "pgmonitor": {
                    "exporter": {
                        "image": monitoring.exporter_image,
                        "configuration": [
                            {"configMap": {"name": monitoring.config_map}}
                        ],
                    }
                }
            }
        return {
            "apiVersion": f"{CLUSTER_GROUP}/{CLUSTER_VERSION}",
            "kind": CLUSTER_KIND,
            "metadata": {
                "name": database.name,
                "namespace": database.namespace,
                "labels": {
                    LABEL_MANAGED_BY: MANAGED_BY,
                    LABEL_DATABASE: database.name,
                },
                "annotations": {
                    ANNOTATION_GENERATION: str(database.generation),
                },
            },
            "spec": cluster_spec,
        }

    def serialize(self, cluster: dict[str, Any]) -> str:
        """Render a built cluster in a canonical form.

        Parameters
        ----------
        cluster
            Cluster as returned by `build`.

        Returns
        -------
        str
            Canonical JSON encoding, suitable for byte-level comparison.
        """
        return json.dumps(cluster, sort_keys=True, separators=(",", ":"))

    def _build_instance_set(self, database: DesiredDatabase) -> dict[str, Any]:
        spec = database.spec
        volume_claim: dict[str, Any] = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": spec.storage_size}},
        }
        if self._config.storage_class_name:
            volume_claim["storageClassName"] = self._config.storage_class_name
        instance_set: dict[str, Any] = {
            "name": INSTANCE_SET_NAME,
            "replicas": spec.replicas,
            "dataVolumeClaimSpec": volume_claim,
            "resources": self._build_resources(database),
        }

        # Spread instances across nodes where possible. This is a preference
        # rather than a requirement so that small clusters can still
        # schedule every instance.
        if spec.replicas > 1:
            selector = {
                _CLUSTER_LABEL: database.name,
                _INSTANCE_SET_LABEL: INSTANCE_SET_NAME,
            }
            instance_set["affinity"] = {
                "podAntiAffinity": {
                    "preferredDuringSchedulingIgnoredDuringExecution": [
                        {
                            "weight": 100,
                            "podAffinityTerm": {
                                "topologyKey": "kubernetes.io/hostname",
                                "labelSelector": {"matchLabels": selector},
                            },
                        }
                    ]
                }
            }
        return instance_set

    def _build_resources(self, database: DesiredDatabase) -> dict[str, Any]:
        defaults = self._config.resources
        overrides = database.spec.resource_overrides
        requests = defaults.requests
        limits = defaults.limits
        if overrides:
            requests = self._merge(requests, overrides.requests)
            limits = self._merge(limits, overrides.limits)
        return {
            "requests": requests.model_dump(exclude_none=True),
            "limits": limits.model_dump(exclude_none=True),
        }

    def _build_backups(self, database: DesiredDatabase) -> dict[str, Any]:
        backup = self._config.backup
        repo = BACKUP_REPO_NAME
        path = f"/pgbackrest/{database.namespace}/{database.name}/{repo}"
        return {
            "pgbackrest": {
                "image": backup.image,
                "global": {
                    f"{repo}-path": path,
                    f"{repo}-retention-full": str(backup.retention_days),
                    f"{repo}-retention-full-type": "time",
                },
                "repos": [
                    {
                        "name": repo,
                        "schedules": {
                            "full": backup.full_schedule,
                            "differential": backup.differential_schedule,
                        },
                        "s3": {
                            "bucket": backup.repository.bucket,
                            "endpoint": backup.repository.endpoint,
                            "region": backup.repository.region,
                        },
                    }
                ],
            }
        }

    def _merge(
        self,
        defaults: ResourceQuantities,
        override: ResourceQuantities | None,
    ) -> ResourceQuantities:
        """Merge an override over the defaults, leaf by leaf."""
        if not override:
            return defaults
        return ResourceQuantities(
            cpu=override.cpu or defaults.cpu,
            memory=override.memory or defaults.memory,
        )
