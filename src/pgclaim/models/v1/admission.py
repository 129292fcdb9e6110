"""Models for Kubernetes admission webhooks (``admission.k8s.io/v1``)."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

__all__ = [
    "AdmissionOperation",
    "AdmissionRequest",
    "AdmissionResponse",
    "AdmissionReview",
    "AdmissionStatus",
    "GroupVersionKind",
]


class AdmissionOperation(Enum):
    """Operation being admitted."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class GroupVersionKind(BaseModel):
    """Fully-qualified kind of an object."""

    group: Annotated[str, Field(title="API group")] = ""

    version: Annotated[str, Field(title="API version")]

    kind: Annotated[str, Field(title="Kind")]


class AdmissionRequest(BaseModel):
    """Request for admission of an operation on an object."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="ignore", populate_by_name=True
    )

    uid: Annotated[str, Field(title="Request UID")]

    kind: Annotated[GroupVersionKind, Field(title="Kind of the object")]

    name: Annotated[str | None, Field(title="Name of the object")] = None

    namespace: Annotated[
        str | None, Field(title="Namespace of the object")
    ] = None

    operation: Annotated[AdmissionOperation, Field(title="Operation")]

    object: Annotated[
        dict[str, Any] | None, Field(title="Object after the operation")
    ] = None

    old_object: Annotated[
        dict[str, Any] | None, Field(title="Object before the operation")
    ] = None

    dry_run: Annotated[bool, Field(title="Whether this is a dry run")] = False


class AdmissionStatus(BaseModel):
    """Reason for rejecting an operation."""

    code: Annotated[int, Field(title="HTTP status code")] = 422

    message: Annotated[str, Field(title="Explanation shown to the user")]


class AdmissionResponse(BaseModel):
    """Admission decision."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    uid: Annotated[str, Field(title="UID of the request")]

    allowed: Annotated[bool, Field(title="Whether the operation is allowed")]

    status: Annotated[
        AdmissionStatus | None, Field(title="Rejection reason")
    ] = None

    patch_type: Annotated[
        Literal["JSONPatch"] | None, Field(title="Type of patch")
    ] = None

    patch: Annotated[
        str | None, Field(title="Base64-encoded JSON patch")
    ] = None

    warnings: Annotated[
        list[str] | None, Field(title="Warnings shown to the user")
    ] = None


class AdmissionReview(BaseModel):
    """Envelope of admission requests and responses."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="ignore", populate_by_name=True
    )

    api_version: Annotated[
        Literal["admission.k8s.io/v1"], Field(title="API version")
    ] = "admission.k8s.io/v1"

    kind: Annotated[Literal["AdmissionReview"], Field(title="Kind")] = (
        "AdmissionReview"
    )

    request: Annotated[
        AdmissionRequest | None, Field(title="Admission request")
    ] = None

    response: Annotated[
        AdmissionResponse | None, Field(title="Admission response")
    ] = None
