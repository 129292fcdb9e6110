"""Global constants."""

from datetime import timedelta
from pathlib import Path

__all__ = [
    "ANNOTATION_APPROVED_STORAGE",
    "ANNOTATION_GENERATION",
    "BACKUP_REPO_NAME",
    "CLUSTER_GROUP",
    "CLUSTER_KIND",
    "CLUSTER_PLURAL",
    "CLUSTER_VERSION",
    "CONFIGURATION_PATH",
    "DATABASE_GROUP",
    "DATABASE_KIND",
    "DATABASE_PLURAL",
    "DATABASE_VERSION",
    "FINALIZER",
    "INSTANCE_SET_NAME",
    "LABEL_DATABASE",
    "LABEL_MANAGED_BY",
    "MANAGED_BY",
    "POSTGRES_PORT",
    "WATCH_RETRY_DELAY",
]

CONFIGURATION_PATH = Path("/etc/pgclaim/config.yaml")
"""Default path to controller configuration.

May be overridden by setting ``PGCLAIM_CONFIG_PATH`` in the environment.
"""

DATABASE_GROUP = "pgclaim.dev"
"""API group of the ``PostgresDatabase`` custom resource."""

DATABASE_VERSION = "v1alpha1"
"""API version of the ``PostgresDatabase`` custom resource."""

DATABASE_PLURAL = "postgresdatabases"
"""Plural name of the ``PostgresDatabase`` custom resource."""

DATABASE_KIND = "PostgresDatabase"
"""Kind of the developer-facing custom resource."""

CLUSTER_GROUP = "postgres-operator.crunchydata.com"
"""API group of the ``PostgresCluster`` custom resource."""

CLUSTER_VERSION = "v1beta1"
"""API version of the ``PostgresCluster`` custom resource."""

CLUSTER_PLURAL = "postgresclusters"
"""Plural name of the ``PostgresCluster`` custom resource."""

CLUSTER_KIND = "PostgresCluster"
"""Kind of the custom resource managed by the database operator."""

FINALIZER = "pgclaim.dev/finalizer"
"""Finalizer held on every ``PostgresDatabase`` until its cluster is gone."""

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
"""Label carrying the ownership marker checked by the admission policy."""

MANAGED_BY = "pgclaim"
"""Value of the ownership marker label."""

LABEL_DATABASE = "pgclaim.dev/database"
"""Label naming the ``PostgresDatabase`` a cluster was created for."""

ANNOTATION_GENERATION = "pgclaim.dev/generation"
"""Annotation recording the generation reflected in a cluster's spec."""

ANNOTATION_APPROVED_STORAGE = "pgclaim.dev/approved-storage-size"
"""Annotation approving growth of ``storageSize`` to the given value.

Storage growth is never applied silently, since the underlying volume layer
may not support expansion. Setting this annotation on the
``PostgresDatabase`` to exactly the new ``storageSize`` approves the
expansion.
"""

INSTANCE_SET_NAME = "instance1"
"""Name of the single instance set in generated clusters."""

BACKUP_REPO_NAME = "repo1"
"""Name of the pgBackRest repository in generated clusters."""

POSTGRES_PORT = 5432
"""Port on which PostgreSQL and pgBouncer services listen."""

WATCH_RETRY_DELAY = timedelta(seconds=5)
"""How long to pause before restarting a watch that failed."""
