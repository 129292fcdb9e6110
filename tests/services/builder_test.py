"""Tests for construction of PostgresCluster objects."""

from __future__ import annotations

from typing import Any

import pytest

from pgclaim.config import Config
from pgclaim.models.domain.database import DesiredDatabase
from pgclaim.models.v1.database import DatabaseSpec
from pgclaim.services.builder.cluster import ClusterBuilder

from ..support.data import read_output_json


def build_database(
    name: str = "orders", generation: int = 1, **spec: Any
) -> DesiredDatabase:
    spec.setdefault("version", 17)
    spec.setdefault("storage_size", "100Gi")
    return DesiredDatabase(
        name=name,
        namespace="shop",
        generation=generation,
        spec=DatabaseSpec(**spec),
    )


@pytest.fixture
def builder(config: Config) -> ClusterBuilder:
    return ClusterBuilder(config.platform)


def test_highly_available(builder: ClusterBuilder) -> None:
    cluster = builder.build(build_database(replicas=3))
    assert cluster == read_output_json("standard", "orders-cluster")


def test_standalone(builder: ClusterBuilder) -> None:
    database = build_database(
        replicas=1, backup_enabled=False, monitoring_enabled=False
    )
    cluster = builder.build(database)

    assert cluster["spec"] == {
        "image": "registry.example.com/crunchy-postgres:ubi9-17.4-2",
        "postgresVersion": 17,
        "instances": [
            {
                "name": "instance1",
                "replicas": 1,
                "dataVolumeClaimSpec": {
                    "accessModes": ["ReadWriteOnce"],
                    "resources": {"requests": {"storage": "100Gi"}},
                    "storageClassName": "standard-rwo",
                },
                "resources": {
                    "requests": {"cpu": "500m", "memory": "1Gi"},
                    "limits": {"cpu": "2", "memory": "4Gi"},
                },
            }
        ],
    }


def test_version_image(builder: ClusterBuilder) -> None:
    cluster = builder.build(build_database(version=15))
    assert cluster["spec"]["postgresVersion"] == 15
    assert cluster["spec"]["image"] == (
        "registry.example.com/crunchy-postgres:ubi9-15.12-2"
    )


def test_resource_overrides(builder: ClusterBuilder) -> None:
    database = build_database(
        resource_overrides={
            "requests": {"memory": "2Gi"},
            "limits": {"cpu": "4", "memory": "8Gi"},
        }
    )
    instance_set = builder.build(database)["spec"]["instances"][0]
    assert instance_set["resources"] == {
        "requests": {"cpu": "500m", "memory": "2Gi"},
        "limits": {"cpu": "4", "memory": "8Gi"},
    }


def test_generation(builder: ClusterBuilder) -> None:
    cluster = builder.build(build_database(generation=7))
    annotations = cluster["metadata"]["annotations"]
    assert annotations == {"pgclaim.dev/generation": "7"}


def test_deterministic(config: Config) -> None:
    database = build_database(replicas=3)
    first = ClusterBuilder(config.platform)
    second = ClusterBuilder(config.platform)

    expected = first.serialize(first.build(database))
    for _ in range(5):
        assert second.serialize(second.build(database)) == expected

    # Spec objects that compare equal produce the same cluster, however
    # they were constructed.
    other = build_database(replicas=3, backup_enabled=True)
    assert first.serialize(first.build(other)) == expected
