"""Long-running watches of Kubernetes custom objects."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Self

from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.watch import Watch
from structlog.stdlib import BoundLogger

from ...constants import WATCH_RETRY_DELAY
from ...exceptions import KubernetesError
from ...models.domain.kubernetes import WatchEventType

__all__ = [
    "KubernetesWatcher",
    "WatchEvent",
]


@dataclass
class WatchEvent:
    """Change to a custom object reported by a watch."""

    action: WatchEventType
    """What happened to the object."""

    object: dict[str, Any]
    """Object after the change, or its last state if it was deleted."""

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> Self:
        """Parse an event returned by the Kubernetes watch API.

        Parameters
        ----------
        event
            Raw watch event.

        Returns
        -------
        WatchEvent
            Parsed event.
        """
        obj = event.get("raw_object") or event["object"]
        return cls(action=WatchEventType(event["type"]), object=obj)

    @property
    def resource_version(self) -> str | None:
        """Resource version of the object, if present."""
        return self.object.get("metadata", {}).get("resourceVersion")


class KubernetesWatcher:
    """Follow every change to custom objects of one kind.

    Kubernetes closes each watch request after a while. The watcher then
    starts another from the last resource version it saw, so iteration only
    ends when the API returns an error. If that resource version has expired
    (status 410), the watch starts over from the current state, which reports
    every existing object again as ``ADDED``.

    Only the storage layer should create watchers. Everyone else should use
    the ``watch`` method of the storage classes.

    Parameters
    ----------
    method
        List method of the custom objects API that supports watches.
    kind
        Kind of the objects, for logging and error reporting.
    namespace
        Namespace to watch, or `None` to watch all namespaces.
    group
        API group of the objects.
    version
        API version of the objects.
    plural
        API plural of the objects.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        method: Callable[..., Awaitable[Any]],
        kind: str,
        namespace: str | None,
        group: str,
        version: str,
        plural: str,
        logger: BoundLogger,
    ) -> None:
        self._method = method
        self._kind = kind
        self._namespace = namespace
        self._logger = logger.bind(kind=kind, namespace=namespace)
        self._args: dict[str, Any] = {
            "group": group,
            "version": version,
            "plural": plural,
            "allow_watch_bookmarks": True,
        }
        if namespace:
            self._args["namespace"] = namespace
        self._resource_version: str | None = None

        # Without an explicit type, kubernetes_asyncio parses the docstring of
        # the list method to find one, which fails for mocks.
        self._watch = Watch(return_type=dict[str, Any])

    async def close(self) -> None:
        """Release the resources of the watch."""
        self._watch.stop()
        await self._watch.close()

    async def watch(self) -> AsyncIterator[WatchEvent]:
        """Yield changes to the watched objects.

        Bookmark events only advance the resource version and are not
        yielded.

        Yields
        ------
        WatchEvent
            Next change.

        Raises
        ------
        KubernetesError
            Raised for errors from the Kubernetes API other than an expired
            watch.
        """
        while True:
            args = dict(self._args)
            if self._resource_version:
                args["resource_version"] = self._resource_version
            try:
                async with self._watch.stream(self._method, **args) as stream:
                    async for raw_event in stream:
                        event = WatchEvent.from_event(raw_event)
                        if version := event.resource_version:
                            self._resource_version = version
                        if event.action != WatchEventType.BOOKMARK:
                            yield event
            except ApiException as e:
                if e.status != 410:
                    raise KubernetesError.from_exception(
                        "Error watching objects",
                        e,
                        kind=self._kind,
                        namespace=self._namespace,
                    ) from e

                # Kubernetes may also expire a watch that was started without
                # a resource version, so pause before retrying to avoid a
                # tight loop against the control plane.
                if self._resource_version:
                    msg = "Resource version expired, restarting watch"
                    version = self._resource_version
                    self._logger.info(msg, resource_version=version)
                    self._resource_version = None
                else:
                    self._logger.info("Watch expired, restarting")
                    delay = WATCH_RETRY_DELAY.total_seconds()
                    await asyncio.sleep(delay)
