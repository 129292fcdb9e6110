"""API-visible models for ``PostgresDatabase`` objects."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

__all__ = [
    "AcceptedSpec",
    "DatabasePhase",
    "DatabaseSpec",
    "DatabaseStatus",
    "ReconcileState",
    "ResourceOverrides",
    "ResourceQuantities",
]


class DatabasePhase(Enum):
    """Coarse lifecycle state of a database shown to developers.

    The phase reflects the readiness reported by the ``PostgresCluster``, not
    whether the controller managed to write it. A successful write moves a
    database to creating, never directly to ready.
    """

    PENDING = "Pending"
    CREATING = "Creating"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"


class ResourceQuantities(BaseModel):
    """CPU and memory quantities, either of which may be omitted."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    cpu: Annotated[
        str | None,
        Field(
            title="CPU",
            description="Kubernetes CPU quantity",
            examples=["500m", "2"],
        ),
    ] = None

    memory: Annotated[
        str | None,
        Field(
            title="Memory",
            description="Kubernetes memory quantity",
            examples=["4Gi"],
        ),
    ] = None


class ResourceOverrides(BaseModel):
    """Partial override of the platform default resources.

    Each leaf that is set replaces the corresponding platform default. Leaves
    that are not set keep the default.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    requests: Annotated[
        ResourceQuantities | None, Field(title="Resource requests")
    ] = None

    limits: Annotated[
        ResourceQuantities | None, Field(title="Resource limits")
    ] = None


class DatabaseSpec(BaseModel):
    """Developer-facing description of a PostgreSQL database.

    This is the ``spec`` of a ``PostgresDatabase`` object. Range checks,
    quantity parsing and immutability are enforced by
    `~pgclaim.services.validator.DatabaseValidator` rather than here so that
    each failure maps to a specific exception.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        extra="forbid",
        frozen=True,
        populate_by_name=True,
    )

    version: Annotated[
        int,
        Field(
            title="PostgreSQL major version",
            description="Must be a version supported by the platform",
            examples=[17],
            strict=True,
        ),
    ]

    replicas: Annotated[
        int,
        Field(
            title="Number of instances",
            description=(
                "1 runs a standalone instance. 3 or more (odd recommended)"
                " runs a highly available cluster with a connection pooler."
            ),
            examples=[3],
            strict=True,
        ),
    ] = 1

    storage_size: Annotated[
        str,
        Field(
            title="Storage size",
            description="Size of the data volume of each instance",
            examples=["100Gi"],
            strict=True,
        ),
    ]

    backup_enabled: Annotated[
        bool, Field(title="Whether to schedule backups", strict=True)
    ] = True

    monitoring_enabled: Annotated[
        bool, Field(title="Whether to run the metrics exporter", strict=True)
    ] = True

    resource_overrides: Annotated[
        ResourceOverrides | None,
        Field(title="Overrides of the platform default resources"),
    ] = None

    def to_kubernetes(self) -> dict[str, Any]:
        """Serialize to the form stored in Kubernetes, defaults included."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AcceptedSpec(BaseModel):
    """Immutable fields of the last spec that passed validation.

    Updates are checked against this rather than against the live
    ``PostgresCluster``, which may lag behind or have been edited.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    version: Annotated[int, Field(title="PostgreSQL major version")]

    storage_size: Annotated[str, Field(title="Storage size")]

    generation: Annotated[
        int, Field(title="Generation at which the spec was accepted")
    ]


class DatabaseStatus(BaseModel):
    """Status of a ``PostgresDatabase``, written only by the controller."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="ignore", populate_by_name=True
    )

    phase: Annotated[DatabasePhase, Field(title="Lifecycle phase")] = (
        DatabasePhase.PENDING
    )

    observed_generation: Annotated[
        int | None,
        Field(
            title="Observed generation",
            description=(
                "Generation that has been applied to the cluster and observed"
                " ready"
            ),
        ),
    ] = None

    endpoint: Annotated[
        str | None,
        Field(
            title="Connection endpoint",
            examples=["orders-pgbouncer.shop.svc:5432"],
        ),
    ] = None

    ready_replicas: Annotated[
        int, Field(title="Number of ready PostgreSQL instances")
    ] = 0

    message: Annotated[
        str | None, Field(title="Human-readable explanation of the phase")
    ] = None

    last_backup_time: Annotated[
        datetime | None,
        Field(title="Completion time of the most recent successful backup"),
    ] = None

    accepted_spec: Annotated[
        AcceptedSpec | None, Field(title="Last accepted immutable fields")
    ] = None

    def to_kubernetes(self) -> dict[str, Any]:
        """Serialize to the form stored in Kubernetes."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReconcileState(BaseModel):
    """Reconciliation bookkeeping for one database, for debugging."""

    namespace: Annotated[str, Field(title="Namespace")]

    name: Annotated[str, Field(title="Name")]

    phase: Annotated[
        DatabasePhase | None, Field(title="Phase written on the last pass")
    ] = None

    generation: Annotated[
        int | None, Field(title="Generation seen on the last pass")
    ] = None

    failures: Annotated[
        int, Field(title="Consecutive failed passes", examples=[0])
    ] = 0

    last_error: Annotated[
        str | None, Field(title="Error from the last failed pass")
    ] = None

    last_success: Annotated[
        datetime | None, Field(title="Time of the last successful pass")
    ] = None
