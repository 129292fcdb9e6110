"""Tests for validation of database specs."""

from __future__ import annotations

from typing import Any

import pytest
import structlog

from pgclaim.config import Config
from pgclaim.constants import ANNOTATION_APPROVED_STORAGE
from pgclaim.exceptions import (
    ImmutableFieldError,
    InvalidQuantityError,
    InvalidSpecError,
    OutOfRangeError,
    UnsupportedVersionError,
)
from pgclaim.models.domain.database import DatabaseObject
from pgclaim.models.v1.database import AcceptedSpec
from pgclaim.services.validator import DatabaseValidator

from ..support.database import make_database


def build_object(
    spec: dict[str, Any], annotations: dict[str, str] | None = None
) -> DatabaseObject:
    obj = make_database("orders", spec, annotations=annotations)
    return DatabaseObject.from_dict(obj)


@pytest.fixture
def validator(config: Config) -> DatabaseValidator:
    return DatabaseValidator(config.platform, structlog.get_logger(__name__))


def test_defaults(validator: DatabaseValidator) -> None:
    obj = build_object({"version": 17, "storageSize": "10Gi"})
    spec = validator.validate(obj)

    assert spec.version == 17
    assert spec.replicas == 1
    assert spec.storage_size == "10Gi"
    assert spec.backup_enabled
    assert spec.monitoring_enabled
    assert spec.resource_overrides is None
    assert spec.to_kubernetes() == {
        "version": 17,
        "replicas": 1,
        "storageSize": "10Gi",
        "backupEnabled": True,
        "monitoringEnabled": True,
    }

    # Validation is repeatable.
    assert validator.validate(obj) == spec


def test_unsupported_version(validator: DatabaseValidator) -> None:
    obj = build_object({"version": 12, "storageSize": "10Gi"})
    with pytest.raises(UnsupportedVersionError) as excinfo:
        validator.validate(obj)
    assert excinfo.value.field == "version"
    assert "15, 16, 17" in str(excinfo.value)


@pytest.mark.parametrize("replicas", [0, -1, 6])
def test_replicas_out_of_range(
    validator: DatabaseValidator, replicas: int
) -> None:
    spec = {"version": 17, "replicas": replicas, "storageSize": "10Gi"}
    with pytest.raises(OutOfRangeError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "replicas"
    assert str(excinfo.value) == (
        f"replicas must be between 1 and 5, not {replicas}"
    )


def test_even_replicas(validator: DatabaseValidator) -> None:
    spec = {"version": 17, "replicas": 4, "storageSize": "10Gi"}
    assert validator.validate(build_object(spec)).replicas == 4


@pytest.mark.parametrize(
    "size", ["lots", "0", "0Gi", "", "100GiB", "100 Gi", "100gi", "10K"]
)
def test_invalid_storage(validator: DatabaseValidator, size: str) -> None:
    obj = build_object({"version": 17, "storageSize": size})
    with pytest.raises(InvalidQuantityError) as excinfo:
        validator.validate(obj)
    assert excinfo.value.field == "storageSize"


def test_malformed(validator: DatabaseValidator) -> None:
    with pytest.raises(InvalidSpecError) as excinfo:
        validator.validate(build_object({"storageSize": "10Gi"}))
    assert excinfo.value.field == "version"

    spec = {"version": 17, "replicas": "3", "storageSize": "10Gi"}
    with pytest.raises(InvalidSpecError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "replicas"

    spec = {"version": "17", "storageSize": "10Gi"}
    with pytest.raises(InvalidSpecError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "version"

    spec = {"version": 17, "storageSize": "10Gi", "tablespaces": ["fast"]}
    with pytest.raises(InvalidSpecError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "tablespaces"


def test_resource_overrides(validator: DatabaseValidator) -> None:
    spec: dict[str, Any] = {
        "version": 17,
        "storageSize": "10Gi",
        "resourceOverrides": {"limits": {"memory": "8Gi"}},
    }
    result = validator.validate(build_object(spec))
    assert result.resource_overrides
    assert result.resource_overrides.limits
    assert result.resource_overrides.limits.memory == "8Gi"

    spec["resourceOverrides"] = {"requests": {"cpu": "lots"}}
    with pytest.raises(InvalidQuantityError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "resourceOverrides.requests.cpu"

    spec["resourceOverrides"] = {"limits": {"cpu": "0m"}}
    with pytest.raises(InvalidQuantityError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "resourceOverrides.limits.cpu"

    spec["resourceOverrides"] = {"limits": {"memory": "huge"}}
    with pytest.raises(InvalidQuantityError) as excinfo:
        validator.validate(build_object(spec))
    assert excinfo.value.field == "resourceOverrides.limits.memory"


def test_immutable_version(validator: DatabaseValidator) -> None:
    accepted = AcceptedSpec(version=16, storage_size="10Gi", generation=1)
    obj = build_object({"version": 17, "storageSize": "10Gi"})
    with pytest.raises(ImmutableFieldError) as excinfo:
        validator.validate(obj, accepted)
    assert excinfo.value.field == "version"
    assert excinfo.value.old == 16
    assert excinfo.value.new == 17
    assert "version cannot be changed from 16 to 17" in str(excinfo.value)

    obj = build_object({"version": 16, "storageSize": "10Gi"})
    assert validator.validate(obj, accepted).version == 16


def test_storage_shrink(validator: DatabaseValidator) -> None:
    accepted = AcceptedSpec(version=17, storage_size="100Gi", generation=1)
    obj = build_object({"version": 17, "storageSize": "50Gi"})
    with pytest.raises(ImmutableFieldError) as excinfo:
        validator.validate(obj, accepted)
    assert excinfo.value.field == "storageSize"
    assert "storage cannot shrink" in str(excinfo.value)

    # A decimal gigabyte is smaller than a binary one.
    obj = build_object({"version": 17, "storageSize": "100G"})
    with pytest.raises(ImmutableFieldError) as excinfo:
        validator.validate(obj, accepted)
    assert excinfo.value.field == "storageSize"
    assert excinfo.value.new == "100G"

    # The same size written differently is not a change.
    obj = build_object({"version": 17, "storageSize": "102400Mi"})
    assert validator.validate(obj, accepted).storage_size == "102400Mi"


def test_storage_growth(validator: DatabaseValidator) -> None:
    accepted = AcceptedSpec(version=17, storage_size="100Gi", generation=1)
    spec = {"version": 17, "storageSize": "200Gi"}
    with pytest.raises(ImmutableFieldError) as excinfo:
        validator.validate(build_object(spec), accepted)
    assert ANNOTATION_APPROVED_STORAGE in str(excinfo.value)

    # Approval of some other size does not count.
    annotations = {ANNOTATION_APPROVED_STORAGE: "150Gi"}
    with pytest.raises(ImmutableFieldError):
        validator.validate(build_object(spec, annotations), accepted)

    annotations = {ANNOTATION_APPROVED_STORAGE: "200Gi"}
    obj = build_object(spec, annotations)
    assert validator.validate(obj, accepted).storage_size == "200Gi"


def test_accept(validator: DatabaseValidator) -> None:
    obj = build_object({"version": 17, "storageSize": "10Gi"})
    spec = validator.validate(obj)
    accepted = validator.accept(spec, 4)
    assert accepted == AcceptedSpec(
        version=17, storage_size="10Gi", generation=4
    )


def test_defaults_patch(validator: DatabaseValidator) -> None:
    raw = {"version": 17, "storageSize": "10Gi", "backupEnabled": False}
    assert validator.build_defaults_patch(raw) == [
        {"op": "add", "path": "/spec/replicas", "value": 1},
        {"op": "add", "path": "/spec/monitoringEnabled", "value": True},
    ]

    raw = {
        "version": 17,
        "replicas": 3,
        "storageSize": "10Gi",
        "backupEnabled": True,
        "monitoringEnabled": False,
    }
    assert validator.build_defaults_patch(raw) == []

    with pytest.raises(InvalidSpecError):
        validator.build_defaults_patch({"replicas": 3})
