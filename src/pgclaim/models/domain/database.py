"""Internal models for database reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, NamedTuple, Self

from pydantic import ValidationError
from safir.datetime import parse_isodatetime

from ..v1.database import DatabaseSpec, DatabaseStatus

__all__ = [
    "ApplyOutcome",
    "ApplyResult",
    "DatabaseKey",
    "DatabaseObject",
    "DesiredDatabase",
    "FieldChange",
    "ItemKey",
    "PathElement",
    "ReconcileResult",
    "format_path",
]


class DatabaseKey(NamedTuple):
    """Identity of a ``PostgresDatabase``, used as the work queue key."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class DatabaseObject:
    """A ``PostgresDatabase`` as read from Kubernetes.

    The spec is kept unparsed since parsing it is the job of the validator,
    and a malformed spec must still be representable so that the error can
    be written to its status.
    """

    name: str
    """Name of the object."""

    namespace: str
    """Namespace of the object."""

    uid: str
    """Kubernetes UID, used for owner references."""

    generation: int
    """Generation, bumped by Kubernetes on every spec change."""

    resource_version: str | None
    """Resource version, used as a precondition on writes."""

    spec: dict[str, Any]
    """Raw spec as stored in Kubernetes."""

    status: DatabaseStatus | None
    """Parsed status, or `None` if never written or unparseable."""

    annotations: dict[str, str] = field(default_factory=dict)
    """Annotations on the object."""

    finalizers: list[str] = field(default_factory=list)
    """Finalizers on the object."""

    deletion_timestamp: datetime | None = None
    """When deletion was requested, if it has been."""

    raw: dict[str, Any] = field(default_factory=dict)
    """Complete object as returned by Kubernetes."""

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> Self:
        """Parse a ``PostgresDatabase`` returned by the Kubernetes API.

        Parameters
        ----------
        obj
            Custom object as returned by Kubernetes.

        Returns
        -------
        DatabaseObject
            Parsed object.
        """
        metadata = obj["metadata"]
        status = None
        if obj.get("status"):
            try:
                status = DatabaseStatus.model_validate(obj["status"])
            except ValidationError:
                status = None
        deletion = metadata.get("deletionTimestamp")
        deletion_timestamp = parse_isodatetime(deletion) if deletion else None
        return cls(
            name=metadata["name"],
            namespace=metadata["namespace"],
            uid=metadata.get("uid", ""),
            generation=metadata.get("generation", 1),
            resource_version=metadata.get("resourceVersion"),
            spec=obj.get("spec") or {},
            status=status,
            annotations=metadata.get("annotations") or {},
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=deletion_timestamp,
            raw=obj,
        )


@dataclass(frozen=True)
class DesiredDatabase:
    """A validated and defaulted ``PostgresDatabase``.

    This is everything the translation to a ``PostgresCluster`` may depend
    on. Two equal instances always translate to identical clusters.
    """

    name: str
    """Name of the database (and of the generated cluster)."""

    namespace: str
    """Namespace of the database (and of the generated cluster)."""

    generation: int
    """Generation of the spec."""

    spec: DatabaseSpec
    """Normalized spec with all defaults filled in."""


@dataclass(frozen=True)
class ItemKey:
    """Path element addressing the list item whose ``field`` equals ``value``.

    Kubernetes lists of named objects (instance sets, backup repositories,
    owner references) are addressed by key rather than by index, since other
    actors may add or reorder items.
    """

    field: str
    value: str

    def __str__(self) -> str:
        return f"[{self.field}={self.value}]"


PathElement = str | ItemKey
"""Element of a path into a Kubernetes object."""


def format_path(path: tuple[PathElement, ...]) -> str:
    """Render a path into a Kubernetes object for humans.

    Parameters
    ----------
    path
        Path to render.

    Returns
    -------
    str
        Path such as ``spec.instances[name=instance1].replicas``.
    """
    result = ""
    for element in path:
        if isinstance(element, ItemKey) or not result:
            result += str(element)
        else:
            result += f".{element}"
    return result


@dataclass(frozen=True)
class FieldChange:
    """A change to one owned path of a ``PostgresCluster``."""

    path: tuple[PathElement, ...]
    """Path of the field."""

    old: Any
    """Live value, or `None` if absent."""

    new: Any
    """Desired value, or `None` if the field is being removed."""

    remove: bool = False
    """Whether the field is being removed."""

    def __str__(self) -> str:
        return format_path(self.path)


class ApplyOutcome(Enum):
    """Result of applying a translated cluster to Kubernetes."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"


@dataclass
class ApplyResult:
    """Result of one apply."""

    outcome: ApplyOutcome
    """What happened."""

    cluster: dict[str, Any] | None
    """The cluster after the apply, or the live cluster on conflict."""

    changes: list[FieldChange] = field(default_factory=list)
    """Owned-field changes that were written (or would have been)."""


@dataclass
class ReconcileResult:
    """Result of one reconcile pass."""

    requeue_after: timedelta | None = None
    """When to reconcile again absent any event, or `None` for never."""

    status: DatabaseStatus | None = None
    """Status of the database after the pass, if it still exists."""
