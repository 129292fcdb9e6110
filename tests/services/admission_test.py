"""Tests for the admission service."""

from __future__ import annotations

import base64
import json

import pytest

from pgclaim.factory import Factory
from pgclaim.models.v1.admission import (
    AdmissionOperation,
    AdmissionRequest,
    GroupVersionKind,
)

from ..support.database import make_database

DATABASE_KIND = GroupVersionKind(
    group="pgclaim.dev", version="v1alpha1", kind="PostgresDatabase"
)


@pytest.mark.asyncio
async def test_update_without_status(factory: Factory) -> None:
    service = factory.create_admission_service()

    # Until the controller has accepted a spec, updates are checked like
    # creates.
    old = make_database("orders", {"version": 16, "storageSize": "100Gi"})
    obj = make_database("orders", {"version": 17, "storageSize": "50Gi"})
    request = AdmissionRequest(
        uid="b1ab2ba4-8a1c-4f0e-8a0b-2f4a3c1d9e77",
        kind=DATABASE_KIND,
        operation=AdmissionOperation.UPDATE,
        object=obj,
        old_object=old,
    )
    response = service.validate(request)
    assert response.allowed
    assert response.warnings is None


@pytest.mark.asyncio
async def test_generated_name(factory: Factory) -> None:
    service = factory.create_admission_service()

    # Objects created with generateName have no name yet.
    obj = make_database("orders", {"version": 17, "storageSize": "100Gi"})
    del obj["metadata"]["name"]
    obj["metadata"]["generateName"] = "orders-"
    request = AdmissionRequest(
        uid="3c5d0a8e-0a77-4f58-9d33-52a5cbf0f1d2",
        kind=DATABASE_KIND,
        namespace="shop",
        operation=AdmissionOperation.CREATE,
        object=obj,
    )
    assert service.validate(request).allowed

    response = service.mutate(request)
    assert response.allowed
    assert response.patch
    patch = json.loads(base64.b64decode(response.patch))
    assert [op["path"] for op in patch] == [
        "/spec/replicas",
        "/spec/backupEnabled",
        "/spec/monitoringEnabled",
    ]
