"""Tests for configuration parsing and validators."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest
from pydantic import ValidationError

from pgclaim.config import Config, PlatformResources, ReconcileConfig
from pgclaim.models.v1.database import ResourceQuantities

from .support.config import configure


def build_platform() -> dict[str, Any]:
    return {
        "postgresImages": {16: "postgres:16"},
        "pgbouncerImage": "pgbouncer:1",
        "backup": {
            "image": "pgbackrest:2",
            "repository": {
                "bucket": "backups",
                "endpoint": "s3.example.com",
                "region": "us-east-1",
            },
        },
        "monitoring": {
            "exporterImage": "exporter:0",
            "configMap": "exporter-config",
        },
    }


@pytest.mark.asyncio
async def test_standard() -> None:
    config = await configure("standard")

    assert config.path_prefix == "/pgclaim"
    assert config.namespace is None
    assert config.platform.supported_versions == [15, 16, 17]
    assert config.platform.max_replicas == 5
    assert config.platform.backup.retention_days == 14
    assert config.reconcile.workers == 2
    assert config.reconcile.poll_interval == timedelta(minutes=5)
    assert config.reconcile.progress_interval == timedelta(seconds=15)
    assert config.reconcile.failure_conditions == ["Failed"]


def test_defaults() -> None:
    config = Config.model_validate({"platform": build_platform()})

    assert config.name == "pgclaim"
    assert config.slack_webhook is None
    assert config.platform.storage_class_name is None
    assert config.platform.resources.requests.cpu == "500m"
    assert config.reconcile.backoff_base == timedelta(seconds=1)
    assert config.reconcile.retry_deadline == timedelta(minutes=15)


def test_path_prefix() -> None:
    config = Config.model_validate(
        {"pathPrefix": "/databases/", "platform": build_platform()}
    )
    assert config.path_prefix == "/databases"

    with pytest.raises(ValidationError):
        Config.model_validate(
            {"pathPrefix": "databases", "platform": build_platform()}
        )


def test_unsupported_keys() -> None:
    platform = build_platform()
    platform["maxInstances"] = 3
    with pytest.raises(ValidationError):
        Config.model_validate({"platform": platform})

    platform = build_platform()
    platform["postgresImages"] = {}
    with pytest.raises(ValidationError):
        Config.model_validate({"platform": platform})


def test_backoff_order() -> None:
    with pytest.raises(ValidationError):
        ReconcileConfig(
            backoff_base=timedelta(minutes=10),
            backoff_ceiling=timedelta(minutes=1),
        )

    config = ReconcileConfig.model_validate(
        {"backoffBase": "2s", "backoffCeiling": "1m"}
    )
    assert config.backoff_base == timedelta(seconds=2)
    assert config.backoff_ceiling == timedelta(minutes=1)


def test_platform_resources() -> None:
    with pytest.raises(ValidationError):
        PlatformResources(requests=ResourceQuantities(cpu="1"))
    with pytest.raises(ValidationError):
        PlatformResources(limits=ResourceQuantities(cpu="lots", memory="1Gi"))
