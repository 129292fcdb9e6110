"""Global configuration parsing."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Self

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict
from safir.logging import LogLevel, Profile
from safir.pydantic import HumanTimedelta

from .models.v1.database import ResourceQuantities
from .units import cpu_to_millicores, quantity_to_bytes

__all__ = [
    "BackupConfig",
    "BackupRepositoryConfig",
    "Config",
    "MonitoringConfig",
    "PlatformConfig",
    "PlatformResources",
    "ReconcileConfig",
]


class BackupRepositoryConfig(BaseModel):
    """S3 object store that receives pgBackRest backups."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    bucket: Annotated[
        str,
        Field(title="Bucket", examples=["postgres-backups"]),
    ]

    endpoint: Annotated[
        str,
        Field(title="S3 endpoint", examples=["s3.us-east-1.amazonaws.com"]),
    ]

    region: Annotated[str, Field(title="S3 region", examples=["us-east-1"])]


class BackupConfig(BaseModel):
    """Platform-fixed backup policy."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    image: Annotated[
        str,
        Field(
            title="pgBackRest image",
            examples=[
                "registry.developers.crunchydata.com/crunchydata/"
                "crunchy-pgbackrest:ubi9-2.54.0-1"
            ],
        ),
    ]

    retention_days: Annotated[
        int,
        Field(
            title="Retention of full backups in days",
            ge=1,
            examples=[14],
        ),
    ] = 14

    full_schedule: Annotated[
        str,
        Field(title="Cron schedule for full backups", examples=["0 1 * * 0"]),
    ] = "0 1 * * 0"

    differential_schedule: Annotated[
        str,
        Field(
            title="Cron schedule for differential backups",
            examples=["0 1 * * 1-6"],
        ),
    ] = "0 1 * * 1-6"

    repository: Annotated[
        BackupRepositoryConfig, Field(title="Backup repository")
    ]


class MonitoringConfig(BaseModel):
    """Platform-fixed monitoring configuration."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    exporter_image: Annotated[
        str,
        Field(
            title="Metrics exporter image",
            examples=[
                "registry.developers.crunchydata.com/crunchydata/"
                "crunchy-postgres-exporter:ubi9-0.15.0-12"
            ],
        ),
    ]

    config_map: Annotated[
        str,
        Field(
            title="Exporter configuration ConfigMap",
            description=(
                "ConfigMap in the database namespace holding the exporter"
                " configuration that points it at the platform monitoring"
                " endpoint"
            ),
            examples=["pgclaim-exporter-config"],
        ),
    ]


class PlatformResources(BaseModel):
    """Default CPU and memory for PostgreSQL instances."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    requests: Annotated[
        ResourceQuantities, Field(title="Default resource requests")
    ] = ResourceQuantities(cpu="500m", memory="1Gi")

    limits: Annotated[
        ResourceQuantities, Field(title="Default resource limits")
    ] = ResourceQuantities(cpu="2", memory="4Gi")

    @model_validator(mode="after")
    def _validate_complete(self) -> Self:
        for kind in ("requests", "limits"):
            quantities = getattr(self, kind)
            if not quantities.cpu or not quantities.memory:
                raise ValueError(f"Default {kind} must set cpu and memory")
            cpu_to_millicores(quantities.cpu)
            quantity_to_bytes(quantities.memory)
        return self


class PlatformConfig(BaseModel):
    """Static platform tables consumed when building clusters.

    Changing any of these is an operator action. The change reaches every
    database on its next reconcile.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    postgres_images: Annotated[
        dict[int, str],
        Field(
            title="PostgreSQL image for each supported major version",
            description=(
                "The keys of this table are the only versions developers may"
                " request"
            ),
            min_length=1,
        ),
    ]

    pgbouncer_image: Annotated[str, Field(title="pgBouncer image")]

    max_replicas: Annotated[
        int, Field(title="Maximum number of instances", ge=1)
    ] = 5

    storage_class_name: Annotated[
        str | None,
        Field(
            title="Storage class for data volumes",
            description="If not set, the default storage class is used",
        ),
    ] = None

    resources: Annotated[
        PlatformResources, Field(title="Default instance resources")
    ] = PlatformResources()

    backup: Annotated[BackupConfig, Field(title="Backup policy")]

    monitoring: Annotated[MonitoringConfig, Field(title="Monitoring setup")]

    @property
    def supported_versions(self) -> list[int]:
        """Supported PostgreSQL major versions in ascending order."""
        return sorted(self.postgres_images)


class ReconcileConfig(BaseModel):
    """Scheduling and retry policy of the reconcile loop."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    workers: Annotated[
        int, Field(title="Number of concurrent reconcile workers", ge=1)
    ] = 4

    poll_interval: Annotated[
        HumanTimedelta,
        Field(
            title="Slow poll interval",
            description=(
                "How often a settled database is reconciled without any"
                " event, to catch drift not reported by watches"
            ),
        ),
    ] = timedelta(minutes=5)

    progress_interval: Annotated[
        HumanTimedelta,
        Field(
            title="Progress poll interval",
            description="How often a database that is not settled is checked",
        ),
    ] = timedelta(seconds=15)

    resync_interval: Annotated[
        HumanTimedelta,
        Field(
            title="Full resync interval",
            description="How often every database is queued for reconcile",
        ),
    ] = timedelta(minutes=30)

    backoff_base: Annotated[
        HumanTimedelta, Field(title="First retry delay after a failure")
    ] = timedelta(seconds=1)

    backoff_ceiling: Annotated[
        HumanTimedelta, Field(title="Maximum retry delay")
    ] = timedelta(minutes=5)

    retry_deadline: Annotated[
        HumanTimedelta,
        Field(
            title="Retry deadline",
            description=(
                "How long retryable failures may persist before the database"
                " is marked failed"
            ),
        ),
    ] = timedelta(minutes=15)

    request_timeout: Annotated[
        HumanTimedelta,
        Field(title="Timeout for all Kubernetes calls in one pass"),
    ] = timedelta(seconds=30)

    failure_grace_period: Annotated[
        HumanTimedelta,
        Field(
            title="Failure grace period",
            description=(
                "How long a cluster may report a terminal reason (such as a"
                " crash loop) before the database is marked failed"
            ),
        ),
    ] = timedelta(minutes=10)

    failure_conditions: Annotated[
        list[str],
        Field(
            title="Failure condition types",
            description=(
                "Cluster condition types that mark the database failed"
                " immediately when their status is True"
            ),
        ),
    ] = ["Failed"]

    terminal_reasons: Annotated[
        list[str],
        Field(
            title="Terminal condition reasons",
            description=(
                "Cluster condition reasons that mark the database failed once"
                " they have persisted past the failure grace period"
            ),
        ),
    ] = ["CrashLoopBackOff", "Unschedulable", "ImagePullBackOff"]

    @model_validator(mode="after")
    def _validate_backoff(self) -> Self:
        if self.backoff_ceiling < self.backoff_base:
            raise ValueError("backoffCeiling must be at least backoffBase")
        return self


class Config(BaseSettings):
    """pgclaim controller configuration."""

    model_config = SettingsConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    log_level: Annotated[
        LogLevel,
        Field(
            title="Log level",
            description="Python logging level",
            examples=[LogLevel.INFO],
        ),
    ] = LogLevel.INFO

    name: Annotated[
        str,
        Field(
            title="Name of application",
            description="Used when reporting problems to Slack",
        ),
    ] = "pgclaim"

    namespace: Annotated[
        str | None,
        Field(
            title="Namespace to watch",
            description="If not set, databases in all namespaces are managed",
        ),
    ] = None

    path_prefix: Annotated[
        str, Field(title="URL prefix for controller API")
    ] = "/pgclaim"

    profile: Annotated[
        Profile,
        Field(
            title="Application logging profile",
            description=(
                "``production`` uses JSON logging. ``development`` uses"
                " logging that may be easier for humans to read but that"
                " cannot be easily parsed by computers or Google Log Explorer."
            ),
            examples=[Profile.development],
        ),
    ] = Profile.production

    slack_webhook: Annotated[
        SecretStr | None,
        Field(
            title="Slack webhook for alerts",
            description=(
                "If set, unexpected reconcile failures and any uncaught"
                " exceptions in the controller will be reported to Slack via"
                " this webhook"
            ),
            validation_alias="PGCLAIM_SLACK_WEBHOOK",
        ),
    ] = None

    platform: Annotated[PlatformConfig, Field(title="Platform tables")]

    reconcile: Annotated[
        ReconcileConfig, Field(title="Reconcile loop policy")
    ] = ReconcileConfig()

    @field_validator("path_prefix")
    @classmethod
    def _validate_path_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("pathPrefix must start with /")
        return v.rstrip("/")

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load the controller configuration from a YAML file.

        Parameters
        ----------
        path
            Path to the configuration file.
        """
        with path.open("r") as f:
            return cls.model_validate(yaml.safe_load(f))
