"""Apply translated ``PostgresCluster`` objects to Kubernetes."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from structlog.stdlib import BoundLogger

from ..constants import (
    ANNOTATION_GENERATION,
    BACKUP_REPO_NAME,
    DATABASE_GROUP,
    DATABASE_KIND,
    DATABASE_VERSION,
    INSTANCE_SET_NAME,
    LABEL_DATABASE,
    LABEL_MANAGED_BY,
)
from ..exceptions import KubernetesError, OwnershipConflictError
from ..models.domain.database import (
    ApplyOutcome,
    ApplyResult,
    DatabaseObject,
    FieldChange,
    ItemKey,
    PathElement,
)
from ..storage.kubernetes.custom import PostgresClusterStorage
from ..timeout import Timeout

__all__ = [
    "CLUSTER_OWNED_FIELDS",
    "ClusterApplier",
    "OwnedFields",
]

FieldPath = tuple[PathElement, ...]


class _Missing:
    """Marker for a path that does not exist in an object."""

    def __repr__(self) -> str:
        return "<missing>"


_MISSING = _Missing()


@dataclass(frozen=True)
class OwnedFields:
    """Paths of a Kubernetes object that the controller owns.

    Only these paths are ever compared or written. Everything else in the
    object belongs to someone else (the operator's own defaulting, other
    controllers, or humans) and is preserved as-is.
    """

    version: str
    """Version of the allow-list, bumped whenever the set of paths changes."""

    leaves: tuple[FieldPath, ...]
    """Paths compared and written individually.

    A leaf missing from the desired object is removed from the live object,
    and any containers left empty by that are pruned.
    """

    sections: tuple[FieldPath, ...] = ()
    """Optional subtrees that are removed wholesale when not desired.

    When a section is present in the desired object, only the leaves inside
    it are compared, so defaults filled in by the operator survive. When it
    is absent, the entire live subtree is removed, since any remnant (such
    as a defaulted port) would otherwise keep the feature enabled.
    """


_INSTANCE_SET = ("spec", "instances", ItemKey("name", INSTANCE_SET_NAME))
_PGBACKREST = ("spec", "backups", "pgbackrest")
_REPO = (*_PGBACKREST, "repos", ItemKey("name", BACKUP_REPO_NAME))

CLUSTER_OWNED_FIELDS = OwnedFields(
    version="v1",
    leaves=(
        ("metadata", "labels", LABEL_MANAGED_BY),
        ("metadata", "labels", LABEL_DATABASE),
        ("metadata", "annotations", ANNOTATION_GENERATION),
        ("spec", "image"),
        ("spec", "postgresVersion"),
        (*_INSTANCE_SET, "replicas"),
        (*_INSTANCE_SET, "dataVolumeClaimSpec", "accessModes"),
        (*_INSTANCE_SET, "dataVolumeClaimSpec", "storageClassName"),
        (
            *_INSTANCE_SET,
            "dataVolumeClaimSpec",
            "resources",
            "requests",
            "storage",
        ),
        (*_INSTANCE_SET, "resources", "requests", "cpu"),
        (*_INSTANCE_SET, "resources", "requests", "memory"),
        (*_INSTANCE_SET, "resources", "limits", "cpu"),
        (*_INSTANCE_SET, "resources", "limits", "memory"),
        (*_INSTANCE_SET, "affinity", "podAntiAffinity"),
        ("spec", "proxy", "pgBouncer", "image"),
        ("spec", "proxy", "pgBouncer", "replicas"),
        (*_PGBACKREST, "image"),
        (*_PGBACKREST, "global", f"{BACKUP_REPO_NAME}-path"),
        (*_PGBACKREST, "global", f"{BACKUP_REPO_NAME}-retention-full"),
        (*_PGBACKREST, "global", f"{BACKUP_REPO_NAME}-retention-full-type"),
        (*_REPO, "schedules", "full"),
        (*_REPO, "schedules", "differential"),
        (*_REPO, "s3", "bucket"),
        (*_REPO, "s3", "endpoint"),
        (*_REPO, "s3", "region"),
        ("spec", "monitoring", "pgmonitor", "exporter", "image"),
        ("spec", "monitoring", "pgmonitor", "exporter", "configuration"),
    ),
    sections=(
        ("spec", "proxy"),
        ("spec", "backups"),
        ("spec", "monitoring"),
    ),
)
"""Paths of a ``PostgresCluster`` owned by the controller.

This must cover every path that `~pgclaim.services.builder.cluster.\
ClusterBuilder` ever sets, apart from the identity fields.
"""


class ClusterApplier:
    """Bring live ``PostgresCluster`` objects in line with translated ones.

    Parameters
    ----------
    storage
        Storage for ``PostgresCluster`` objects.
    owned_fields
        Paths of the cluster that the controller owns.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        storage: PostgresClusterStorage,
        owned_fields: OwnedFields,
        logger: BoundLogger,
    ) -> None:
        self._storage = storage
        self._owned = owned_fields
        self._logger = logger

    async def apply(
        self,
        desired: dict[str, Any],
        live: dict[str, Any] | None,
        owner: DatabaseObject,
        timeout: Timeout,
    ) -> ApplyResult:
        """Apply a translated cluster.

        Parameters
        ----------
        desired
            Translated cluster.
        live
            Cluster as currently stored in Kubernetes, or `None` if it does
            not exist.
        owner
            ``PostgresDatabase`` the cluster is built from, which becomes its
            controlling owner.
        timeout
            Timeout on the Kubernetes calls.

        Returns
        -------
        ApplyResult
            Outcome of the apply. A lost optimistic concurrency race is
            reported as a conflict outcome rather than raised.

        Raises
        ------
        KubernetesError
            Raised for Kubernetes API failures other than conflicts.
        OwnershipConflictError
            Raised if the live cluster is controlled by some other object.
        """
        desired = self.add_owner(desired, owner)
        name = desired["metadata"]["name"]
        namespace = desired["metadata"]["namespace"]
        logger = self._logger.bind(namespace=namespace, name=name)

        if live is None:
            try:
                created = await self._storage.create(
                    namespace, desired, timeout
                )
            except KubernetesError as e:
                if e.status != 409:
                    raise
                logger.info("PostgresCluster was created concurrently")
                return ApplyResult(
                    outcome=ApplyOutcome.CONFLICT, cluster=None
                )
            logger.info("Created PostgresCluster")
            return ApplyResult(outcome=ApplyOutcome.CREATED, cluster=created)

        self._check_ownership(live, owner)
        if live["metadata"].get("deletionTimestamp"):
            logger.info("PostgresCluster is being deleted, waiting")
            return ApplyResult(outcome=ApplyOutcome.CONFLICT, cluster=live)

        changes = self.compute_changes(desired, live)
        if not changes:
            return ApplyResult(outcome=ApplyOutcome.UNCHANGED, cluster=live)
        body = self.apply_changes(live, changes)
        try:
            updated = await self._storage.replace(body, timeout)
        except KubernetesError as e:
            if e.status != 409:
                raise
            logger.info("PostgresCluster changed while updating it")
            return ApplyResult(
                outcome=ApplyOutcome.CONFLICT, cluster=live, changes=changes
            )
        logger.info(
            "Updated PostgresCluster", changes=[str(c) for c in changes]
        )
        return ApplyResult(
            outcome=ApplyOutcome.UPDATED, cluster=updated, changes=changes
        )

    def add_owner(
        self, cluster: dict[str, Any], owner: DatabaseObject
    ) -> dict[str, Any]:
        """Return a copy of a cluster with a controller owner reference.

        Parameters
        ----------
        cluster
            Translated cluster.
        owner
            Owning ``PostgresDatabase``.

        Returns
        -------
        dict
            Copy of the cluster whose only owner reference is the owner.
        """
        result = copy.deepcopy(cluster)
        result["metadata"]["ownerReferences"] = [
            {
                "apiVersion": f"{DATABASE_GROUP}/{DATABASE_VERSION}",
                "kind": DATABASE_KIND,
                "name": owner.name,
                "uid": owner.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
        return result

    def compute_changes(
        self, desired: dict[str, Any], live: dict[str, Any]
    ) -> list[FieldChange]:
        """Compute the changes that bring the owned paths of live to desired.

        Parameters
        ----------
        desired
            Translated cluster, including owner references.
        live
            Cluster as currently stored in Kubernetes.

        Returns
        -------
        list of FieldChange
            Changes to make, in allow-list order. Empty if the owned subset
            of the live cluster already matches.
        """
        changes = []
        removed: list[FieldPath] = []
        for section in self._owned.sections:
            if _get(desired, section) is not _MISSING:
                continue
            old = _get(live, section)
            if old is not _MISSING:
                changes.append(FieldChange(section, old, None, remove=True))
                removed.append(section)

        references = desired["metadata"].get("ownerReferences", [])
        paths = [
            *self._owned.leaves,
            *(
                ("metadata", "ownerReferences", ItemKey("uid", r["uid"]))
                for r in references
            ),
        ]
        for path in paths:
            if any(path[: len(s)] == s for s in removed):
                continue
            new = _get(desired, path)
            old = _get(live, path)
            if new is _MISSING:
                if old is not _MISSING:
                    change = FieldChange(path, old, None, remove=True)
                    changes.append(change)
            elif new != old:
                old = None if old is _MISSING else old
                changes.append(FieldChange(path, old, new))
        return changes

    def apply_changes(
        self, live: dict[str, Any], changes: list[FieldChange]
    ) -> dict[str, Any]:
        """Return a copy of the live cluster with changes applied.

        Parameters
        ----------
        live
            Cluster as currently stored in Kubernetes.
        changes
            Changes from `compute_changes`.

        Returns
        -------
        dict
            Updated copy, still carrying the resource version of ``live``.
        """
        result = copy.deepcopy(live)
        for change in changes:
            if change.remove:
                _remove(result, change.path)
            else:
                _set(result, change.path, change.new)
        return result

    def _check_ownership(
        self, live: dict[str, Any], owner: DatabaseObject
    ) -> None:
        for reference in live["metadata"].get("ownerReferences") or []:
            if reference.get("controller") and reference["uid"] != owner.uid:
                kind = reference.get("kind", "object")
                controller = f"{kind} {reference.get('name')}"
                raise OwnershipConflictError(
                    owner.namespace, owner.name, controller
                )


def _child(container: Any, element: PathElement) -> Any:
    """Return the child of a container, or the missing marker."""
    if isinstance(element, ItemKey):
        if not isinstance(container, list):
            return _MISSING
        for item in container:
            if isinstance(item, dict):
                if item.get(element.field) == element.value:
                    return item
        return _MISSING
    if not isinstance(container, dict):
        return _MISSING
    value = container.get(element)
    return _MISSING if value is None else value


def _get(obj: dict[str, Any], path: FieldPath) -> Any:
    current: Any = obj
    for element in path:
        current = _child(current, element)
        if current is _MISSING:
            break
    return current


def _set(obj: dict[str, Any], path: FieldPath, value: Any) -> None:
    """Set the value of a path, creating intermediate containers."""
    current: Any = obj
    for element, following in zip(path, path[1:], strict=False):
        child = _child(current, element)
        if child is _MISSING:
            if isinstance(element, ItemKey):
                child = {element.field: element.value}
                current.append(child)
            else:
                child = [] if isinstance(following, ItemKey) else {}
                current[element] = child
        current = child
    leaf = path[-1]
    if isinstance(leaf, ItemKey):
        existing = _child(current, leaf)
        if existing is _MISSING:
            current.append(copy.deepcopy(value))
        else:
            current[current.index(existing)] = copy.deepcopy(value)
    else:
        current[leaf] = copy.deepcopy(value)


def _remove(obj: dict[str, Any], path: FieldPath) -> None:
    """Remove a path and prune the containers left empty.

    A list item counts as empty once only its key field is left. Top-level
    fields such as ``spec`` are never pruned.
    """
    chain: list[tuple[Any, PathElement]] = []
    current: Any = obj
    for element in path:
        child = _child(current, element)
        if child is _MISSING:
            return
        chain.append((current, element))
        current = child

    container, element = chain.pop()
    _delete(container, element)
    while len(chain) > 1:
        container, element = chain.pop()
        child = _child(container, element)
        if isinstance(element, ItemKey):
            if set(child) - {element.field}:
                break
        elif child:
            break
        _delete(container, element)


def _delete(container: Any, element: PathElement) -> None:
    if isinstance(element, ItemKey):
        container.remove(_child(container, element))
    else:
        del container[element]
