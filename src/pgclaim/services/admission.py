"""Admission control for ``PostgresDatabase`` objects."""

from __future__ import annotations

import base64
import json
from typing import Any

from structlog.stdlib import BoundLogger

from ..constants import DATABASE_GROUP, DATABASE_KIND
from ..exceptions import DatabaseValidationError
from ..models.domain.database import DatabaseObject
from ..models.v1.admission import (
    AdmissionOperation,
    AdmissionRequest,
    AdmissionResponse,
    AdmissionStatus,
)
from .validator import DatabaseValidator

__all__ = ["AdmissionService"]


class AdmissionService:
    """Answer admission requests for ``PostgresDatabase`` objects.

    Rejecting invalid specs at admission gives developers immediate
    feedback. The reconciler still validates every spec, since webhooks may
    be disabled or may not have existed when an object was written.

    Parameters
    ----------
    validator
        Validator for database specs.
    logger
        Logger to use.
    """

    def __init__(
        self, validator: DatabaseValidator, logger: BoundLogger
    ) -> None:
        self._validator = validator
        self._logger = logger

    def validate(self, request: AdmissionRequest) -> AdmissionResponse:
        """Decide whether to admit a create or update of a database.

        Updates are checked against the immutable fields accepted for the
        old object. Updates that do not touch the spec, such as changes to
        finalizers or labels, are always admitted.

        Parameters
        ----------
        request
            Admission request.

        Returns
        -------
        AdmissionResponse
            Admission decision.
        """
        obj = self._get_object(request)
        if obj is None:
            return AdmissionResponse(uid=request.uid, allowed=True)
        accepted = None
        if request.operation == AdmissionOperation.UPDATE:
            if request.old_object:
                old = DatabaseObject.from_dict(request.old_object)
                if old.spec == obj.spec:
                    return AdmissionResponse(uid=request.uid, allowed=True)
                if old.status:
                    accepted = old.status.accepted_spec
        try:
            spec = self._validator.validate(obj, accepted)
        except DatabaseValidationError as e:
            self._logger.info(
                "Rejected PostgresDatabase",
                namespace=obj.namespace,
                name=obj.name,
                operation=request.operation.value,
                error=str(e),
            )
            return AdmissionResponse(
                uid=request.uid,
                allowed=False,
                status=AdmissionStatus(message=str(e)),
            )
        warnings = None
        if spec.replicas > 1 and spec.replicas % 2 == 0:
            warnings = [
                f"replicas is {spec.replicas}; an odd number of replicas"
                " is recommended for high availability"
            ]
        return AdmissionResponse(
            uid=request.uid, allowed=True, warnings=warnings
        )

    def mutate(self, request: AdmissionRequest) -> AdmissionResponse:
        """Fill in defaults for a database being created or updated.

        Malformed specs are admitted unchanged and left for validation to
        reject.

        Parameters
        ----------
        request
            Admission request.

        Returns
        -------
        AdmissionResponse
            Admission decision, with a JSON patch adding any defaults.
        """
        obj = self._get_object(request)
        if obj is None:
            return AdmissionResponse(uid=request.uid, allowed=True)
        try:
            patch = self._validator.build_defaults_patch(obj.spec)
        except DatabaseValidationError:
            return AdmissionResponse(uid=request.uid, allowed=True)
        if not patch:
            return AdmissionResponse(uid=request.uid, allowed=True)
        encoded = base64.b64encode(json.dumps(patch).encode()).decode()
        return AdmissionResponse(
            uid=request.uid,
            allowed=True,
            patch_type="JSONPatch",
            patch=encoded,
        )

    def _get_object(self, request: AdmissionRequest) -> DatabaseObject | None:
        """Return the database being admitted, if this is one to check."""
        if request.kind.kind != DATABASE_KIND:
            return None
        if request.kind.group != DATABASE_GROUP:
            return None
        if request.operation not in (
            AdmissionOperation.CREATE,
            AdmissionOperation.UPDATE,
        ):
            return None
        if not request.object:
            return None

        # Objects being created may not have a name or namespace yet.
        obj: dict[str, Any] = dict(request.object)
        metadata = dict(obj.get("metadata") or {})
        metadata.setdefault("name", request.name or "")
        metadata.setdefault("namespace", request.namespace or "")
        obj["metadata"] = metadata
        return DatabaseObject.from_dict(obj)
