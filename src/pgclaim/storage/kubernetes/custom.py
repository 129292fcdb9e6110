"""Storage layer for Kubernetes custom objects."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, ApiException, V1DeleteOptions
from structlog.stdlib import BoundLogger

from ...constants import (
    CLUSTER_GROUP,
    CLUSTER_KIND,
    CLUSTER_PLURAL,
    CLUSTER_VERSION,
    DATABASE_GROUP,
    DATABASE_KIND,
    DATABASE_PLURAL,
    DATABASE_VERSION,
)
from ...exceptions import KubernetesError
from ...models.domain.kubernetes import PropagationPolicy
from ...timeout import Timeout
from .watcher import KubernetesWatcher, WatchEvent

__all__ = [
    "CustomStorage",
    "DatabaseStorage",
    "PostgresClusterStorage",
]


class CustomStorage:
    """Storage layer for one kind of Kubernetes custom object.

    Subclasses bind the group, version, plural and kind of the objects they
    handle. API exceptions are converted to `~pgclaim.exceptions.\
    KubernetesError`, except that reading or deleting an object that does
    not exist is not an error.

    All writes of existing objects send the full object including its
    ``metadata.resourceVersion``, so Kubernetes rejects them with a 409
    status if the object changed since it was read.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    group
        API group for the custom objects to handle.
    version
        API version for the custom objects to handle.
    plural
        API plural under which those custom objects are managed.
    kind
        Name of the custom object kind, used for error reporting.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        api_client: ApiClient,
        group: str,
        version: str,
        plural: str,
        kind: str,
        logger: BoundLogger,
    ) -> None:
        self._api = client.CustomObjectsApi(api_client)
        self._group = group
        self._version = version
        self._plural = plural
        self._kind = kind
        self._logger = logger

    async def create(
        self, namespace: str, body: dict[str, Any], timeout: Timeout
    ) -> dict[str, Any]:
        """Create a new custom object.

        Parameters
        ----------
        namespace
            Namespace of the object.
        body
            Custom object to create.
        timeout
            Timeout on operation.

        Returns
        -------
        dict
            Object as stored by Kubernetes.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server, including
            a 409 status if the object already exists.
        """
        name = body["metadata"]["name"]
        msg = f"Creating {self._kind}"
        self._logger.debug(msg, name=name, namespace=namespace)
        try:
            return await self._api.create_namespaced_custom_object(
                self._group,
                self._version,
                namespace,
                self._plural,
                body,
                _request_timeout=timeout.left(),
            )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error creating object",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e

    async def delete(
        self,
        name: str,
        namespace: str,
        timeout: Timeout,
        *,
        propagation_policy: PropagationPolicy | None = None,
    ) -> None:
        """Delete a custom object.

        If the object does not exist, this is silently treated as success.
        This only requests deletion; the object may linger while finalizers
        or dependents are processed.

        Parameters
        ----------
        name
            Name of the object.
        namespace
            Namespace of the object.
        timeout
            Timeout on operation.
        propagation_policy
            Propagation policy for the object deletion.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        msg = f"Deleting {self._kind}"
        self._logger.debug(msg, name=name, namespace=namespace)
        extra_args: dict[str, Any] = {"_request_timeout": timeout.left()}
        if propagation_policy:
            policy = propagation_policy.value
            extra_args["body"] = V1DeleteOptions(propagation_policy=policy)
        try:
            await self._api.delete_namespaced_custom_object(
                self._group,
                self._version,
                namespace,
                self._plural,
                name,
                **extra_args,
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise KubernetesError.from_exception(
                "Error deleting object",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e

    async def list(
        self, namespace: str | None, timeout: Timeout
    ) -> list[dict[str, Any]]:
        """List the custom objects in a namespace or the whole cluster.

        Parameters
        ----------
        namespace
            Namespace in which to list custom objects, or `None` to list
            them in all namespaces.
        timeout
            Timeout on operation.

        Returns
        -------
        list of dict
            List of custom objects found.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        try:
            if namespace:
                objs = await self._api.list_namespaced_custom_object(
                    self._group,
                    self._version,
                    namespace,
                    self._plural,
                    _request_timeout=timeout.left(),
                )
            else:
                objs = await self._api.list_cluster_custom_object(
                    self._group,
                    self._version,
                    self._plural,
                    _request_timeout=timeout.left(),
                )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error listing objects",
                e,
                kind=self._kind,
                namespace=namespace,
            ) from e
        return objs["items"]

    async def read(
        self, name: str, namespace: str, timeout: Timeout
    ) -> dict[str, Any] | None:
        """Read a custom object.

        Parameters
        ----------
        name
            Name of the custom object.
        namespace
            Namespace of the custom object.
        timeout
            Timeout on operation.

        Returns
        -------
        dict or None
            Custom object, or `None` if it does not exist.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        try:
            return await self._api.get_namespaced_custom_object(
                self._group,
                self._version,
                namespace,
                self._plural,
                name,
                _request_timeout=timeout.left(),
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError.from_exception(
                "Error reading object",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e

    async def replace(
        self, body: dict[str, Any], timeout: Timeout
    ) -> dict[str, Any]:
        """Replace a custom object, guarded by its resource version.

        Parameters
        ----------
        body
            New object, including the ``metadata.resourceVersion`` of the
            object it was derived from.
        timeout
            Timeout on operation.

        Returns
        -------
        dict
            Object as stored by Kubernetes.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server, including
            a 409 status if the object changed since it was read.
        """
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        msg = f"Replacing {self._kind}"
        self._logger.debug(msg, name=name, namespace=namespace)
        try:
            return await self._api.replace_namespaced_custom_object(
                self._group,
                self._version,
                namespace,
                self._plural,
                name,
                body,
                _request_timeout=timeout.left(),
            )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error replacing object",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e

    async def replace_status(
        self, body: dict[str, Any], timeout: Timeout
    ) -> dict[str, Any]:
        """Replace the status of a custom object.

        Parameters
        ----------
        body
            Object carrying the new ``status`` and the resource version of
            the object it was derived from.
        timeout
            Timeout on operation.

        Returns
        -------
        dict
            Object as stored by Kubernetes.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server, including
            a 409 status if the object changed since it was read.
        """
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        try:
            return await self._api.replace_namespaced_custom_object_status(
                self._group,
                self._version,
                namespace,
                self._plural,
                name,
                body,
                _request_timeout=timeout.left(),
            )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error updating object status",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e

    def watch(self, namespace: str | None) -> AsyncIterator[WatchEvent]:
        """Watch custom objects of this kind indefinitely.

        Parameters
        ----------
        namespace
            Namespace to watch, or `None` to watch all namespaces.

        Returns
        -------
        AsyncIterator of WatchEvent
            Events for objects of this kind.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        if namespace:
            method = self._api.list_namespaced_custom_object
        else:
            method = self._api.list_cluster_custom_object
        watcher = KubernetesWatcher(
            method=method,
            kind=self._kind,
            namespace=namespace,
            group=self._group,
            version=self._version,
            plural=self._plural,
            logger=self._logger,
        )
        return self._watch(watcher)

    async def _watch(
        self, watcher: KubernetesWatcher
    ) -> AsyncIterator[WatchEvent]:
        try:
            async for event in watcher.watch():
                yield event
        finally:
            await watcher.close()


class DatabaseStorage(CustomStorage):
    """Storage layer for ``PostgresDatabase`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        super().__init__(
            api_client=api_client,
            group=DATABASE_GROUP,
            version=DATABASE_VERSION,
            plural=DATABASE_PLURAL,
            kind=DATABASE_KIND,
            logger=logger,
        )


class PostgresClusterStorage(CustomStorage):
    """Storage layer for ``PostgresCluster`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        super().__init__(
            api_client=api_client,
            group=CLUSTER_GROUP,
            version=CLUSTER_VERSION,
            plural=CLUSTER_PLURAL,
            kind=CLUSTER_KIND,
            logger=logger,
        )
