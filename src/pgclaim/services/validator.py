"""Validation and defaulting of ``PostgresDatabase`` specs."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError
from structlog.stdlib import BoundLogger

from ..config import PlatformConfig
from ..constants import ANNOTATION_APPROVED_STORAGE
from ..exceptions import (
    ImmutableFieldError,
    InvalidQuantityError,
    InvalidSpecError,
    OutOfRangeError,
    UnsupportedVersionError,
)
from ..models.domain.database import DatabaseObject
from ..models.v1.database import (
    AcceptedSpec,
    DatabaseSpec,
    ResourceOverrides,
)
from ..units import cpu_to_millicores, quantity_to_bytes

__all__ = ["DatabaseValidator"]


class DatabaseValidator:
    """Validate and default ``PostgresDatabase`` specs.

    The validator has no side effects and may be called any number of times
    on the same input. It backs both the reconcile loop, which re-runs it on
    every pass, and the admission webhooks.

    Parameters
    ----------
    config
        Platform configuration, which supplies the supported versions and
        the replica limit.
    logger
        Logger to use.
    """

    def __init__(self, config: PlatformConfig, logger: BoundLogger) -> None:
        self._config = config
        self._logger = logger

    def validate(
        self, obj: DatabaseObject, accepted: AcceptedSpec | None = None
    ) -> DatabaseSpec:
        """Validate the spec of a ``PostgresDatabase``.

        Parameters
        ----------
        obj
            Object to validate.
        accepted
            Last accepted immutable fields of the object, or `None` if no
            spec of this object has been accepted yet.

        Returns
        -------
        DatabaseSpec
            Normalized spec with all defaults filled in.

        Raises
        ------
        ImmutableFieldError
            Raised if the spec changes an immutable field relative to the
            accepted spec.
        InvalidQuantityError
            Raised if the storage size or a resource override is not a valid
            positive quantity.
        InvalidSpecError
            Raised if the spec is malformed.
        OutOfRangeError
            Raised if the number of replicas is out of range.
        UnsupportedVersionError
            Raised if the PostgreSQL version is not supported.
        """
        spec = self._parse(obj.spec)
        if spec.version not in self._config.postgres_images:
            supported = self._config.supported_versions
            raise UnsupportedVersionError(spec.version, supported)
        maximum = self._config.max_replicas
        if not 1 <= spec.replicas <= maximum:
            raise OutOfRangeError("replicas", spec.replicas, 1, maximum)
        storage = self._parse_bytes("storageSize", spec.storage_size)
        if spec.resource_overrides:
            self._validate_overrides(spec.resource_overrides)
        if accepted:
            self._validate_update(obj, spec, storage, accepted)
        if spec.replicas > 1 and spec.replicas % 2 == 0:
            self._logger.warning(
                "Even number of replicas requested, odd is recommended",
                namespace=obj.namespace,
                name=obj.name,
                replicas=spec.replicas,
            )
        return spec

    def accept(self, spec: DatabaseSpec, generation: int) -> AcceptedSpec:
        """Record the immutable fields of a spec that passed validation.

        Parameters
        ----------
        spec
            Validated spec.
        generation
            Generation of the object whose spec was validated.

        Returns
        -------
        AcceptedSpec
            Immutable fields to store in the status of the object.
        """
        return AcceptedSpec(
            version=spec.version,
            storage_size=spec.storage_size,
            generation=generation,
        )

    def build_defaults_patch(
        self, raw: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Build a JSON patch adding defaulted fields to a raw spec.

        Used by the mutating admission webhook. Only top-level fields that
        are missing from the raw spec are added, so the patch never changes
        anything the developer wrote.

        Parameters
        ----------
        raw
            Raw spec as submitted.

        Returns
        -------
        list of dict
            JSON patch operations, empty if nothing needs defaulting.

        Raises
        ------
        InvalidSpecError
            Raised if the spec is malformed and cannot be defaulted.
        """
        spec = self._parse(raw)
        return [
            {"op": "add", "path": f"/spec/{key}", "value": value}
            for key, value in spec.to_kubernetes().items()
            if key not in raw
        ]

    def _parse(self, raw: dict[str, Any]) -> DatabaseSpec:
        """Parse the raw spec, converting validation errors."""
        try:
            return DatabaseSpec.model_validate(raw)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(p) for p in error["loc"]) or None
            if field:
                msg = f"Invalid spec: {field}: {error['msg']}"
            else:
                msg = f"Invalid spec: {error['msg']}"
            raise InvalidSpecError(msg, field) from e

    def _parse_bytes(self, field: str, value: str) -> int:
        try:
            size = quantity_to_bytes(value)
        except ValueError as e:
            raise InvalidQuantityError(field, value) from e
        if size <= 0:
            raise InvalidQuantityError(field, value)
        return size

    def _validate_overrides(self, overrides: ResourceOverrides) -> None:
        for kind in ("requests", "limits"):
            quantities = getattr(overrides, kind)
            if not quantities:
                continue
            if quantities.cpu is not None:
                field = f"resourceOverrides.{kind}.cpu"
                try:
                    millicores = cpu_to_millicores(quantities.cpu)
                except ValueError as e:
                    raise InvalidQuantityError(field, quantities.cpu) from e
                if millicores <= 0:
                    raise InvalidQuantityError(field, quantities.cpu)
            if quantities.memory is not None:
                field = f"resourceOverrides.{kind}.memory"
                self._parse_bytes(field, quantities.memory)

    def _validate_update(
        self,
        obj: DatabaseObject,
        spec: DatabaseSpec,
        storage: int,
        accepted: AcceptedSpec,
    ) -> None:
        """Check a spec against the last accepted immutable fields."""
        if spec.version != accepted.version:
            raise ImmutableFieldError(
                "version",
                accepted.version,
                spec.version,
                "in-place major version upgrades are not supported",
            )

        # The accepted size was validated when it was accepted, so it parses.
        old_storage = quantity_to_bytes(accepted.storage_size)
        if storage < old_storage:
            raise ImmutableFieldError(
                "storageSize",
                accepted.storage_size,
                spec.storage_size,
                "storage cannot shrink",
            )
        if storage > old_storage:
            approved = obj.annotations.get(ANNOTATION_APPROVED_STORAGE)
            if approved != spec.storage_size:
                reason = (
                    f"set annotation {ANNOTATION_APPROVED_STORAGE} to"
                    f" {spec.storage_size} to approve the expansion"
                )
                raise ImmutableFieldError(
                    "storageSize",
                    accepted.storage_size,
                    spec.storage_size,
                    reason,
                )
