"""Mock for the Kubernetes custom objects API.

Safir's `~safir.testing.kubernetes.MockKubernetesApi` stores custom objects
but does not model the parts of the API server that the controller relies on:
resource version preconditions, generation tracking, the status
subresource, finalizers, garbage collection of dependents, and watches. This
mock implements just enough of those semantics to test reconciliation.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import os
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, Mock, patch

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException, V1DeleteOptions
from safir.datetime import current_datetime, isodatetime

__all__ = ["MockCustomObjectsApi", "patch_kubernetes"]


class MockCustomObjectsApi:
    """Mock Kubernetes custom objects API for testing.

    Objects are stored as plain dicts, keyed by plural, then by namespace
    and name. Every write assigns a new resource version drawn from a
    single counter, as the real API server does.

    Attributes
    ----------
    error_callback
        If set, called with the name of the method and its positional
        arguments before any other processing. It may raise an exception to
        simulate an API failure, or return an awaitable to delay the call.
    watches
        Resource version passed to each watch request, in order.
    writes
        Log of every successful write as tuples of the method name, the
        plural, the namespace, and the name of the object.
    """

    def __init__(self) -> None:
        self.error_callback: Callable[..., Awaitable[None] | None] | None
        self.error_callback = None
        self.watches: list[str | None] = []
        self.writes: list[tuple[str, str, str, str]] = []
        self._objects: defaultdict[
            str, defaultdict[str, dict[str, dict[str, Any]]]
        ] = defaultdict(lambda: defaultdict(dict))
        self._events: defaultdict[str, list[dict[str, Any]]]
        self._events = defaultdict(list)
        self._new_events: defaultdict[str, asyncio.Event]
        self._new_events = defaultdict(asyncio.Event)
        self._watch_epochs: defaultdict[str, int] = defaultdict(int)
        self._resource_version = 0

    def get_for_test(
        self, plural: str, namespace: str, name: str
    ) -> dict[str, Any] | None:
        """Return a copy of a stored object without recording a call."""
        obj = self._objects[plural][namespace].get(name)
        return copy.deepcopy(obj) if obj else None

    def list_for_test(self, plural: str) -> list[dict[str, Any]]:
        """Return copies of all stored objects of a kind."""
        return [
            copy.deepcopy(obj)
            for namespace in sorted(self._objects[plural])
            for _, obj in sorted(self._objects[plural][namespace].items())
        ]

    def end_watches_for_test(self, plural: str) -> None:
        """End all open watches of a kind, as the API server does."""
        self._watch_epochs[plural] += 1
        self._new_events[plural].set()
        self._new_events[plural] = asyncio.Event()

    def writes_for_test(self, plural: str | None = None) -> int:
        """Return the number of writes, optionally only of one kind."""
        return len([w for w in self.writes if not plural or w[1] == plural])

    async def create_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        body: dict[str, Any],
        *,
        _request_timeout: float | None = None,
    ) -> dict[str, Any]:
        await self._maybe_error(
            "create_namespaced_custom_object", plural, body
        )
        name = body["metadata"]["name"]
        if name in self._objects[plural][namespace]:
            msg = f"{plural} {namespace}/{name} already exists"
            raise ApiException(status=409, reason=msg)
        obj = copy.deepcopy(body)
        obj.pop("status", None)
        metadata = obj["metadata"]
        metadata["namespace"] = namespace
        metadata["uid"] = str(uuid.uuid4())
        metadata["generation"] = 1
        metadata["creationTimestamp"] = isodatetime(current_datetime())
        metadata["resourceVersion"] = self._next_resource_version()
        self._objects[plural][namespace][name] = obj
        self._record("create", plural, obj)
        return copy.deepcopy(obj)

    async def delete_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        *,
        body: V1DeleteOptions | None = None,
        _request_timeout: float | None = None,
    ) -> dict[str, Any]:
        await self._maybe_error(
            "delete_namespaced_custom_object", plural, name
        )
        obj = self._get(plural, namespace, name)
        if obj["metadata"].get("finalizers"):
            if not obj["metadata"].get("deletionTimestamp"):
                now = isodatetime(current_datetime())
                obj["metadata"]["deletionTimestamp"] = now
                obj["metadata"]["resourceVersion"] = (
                    self._next_resource_version()
                )
                self._record("delete", plural, obj)
        else:
            self._remove(plural, obj)
        return {"kind": "Status", "status": "Success"}

    async def get_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        *,
        _request_timeout: float | None = None,
    ) -> dict[str, Any]:
        await self._maybe_error("get_namespaced_custom_object", plural, name)
        return copy.deepcopy(self._get(plural, namespace, name))

    async def list_cluster_custom_object(
        self,
        group: str,
        version: str,
        plural: str,
        *,
        resource_version: str | None = None,
        allow_watch_bookmarks: bool = False,
        timeout_seconds: int | None = None,
        watch: bool = False,
        _preload_content: bool = True,
        _request_timeout: float | None = None,
    ) -> Any:
        if watch:
            self.watches.append(resource_version)
        await self._maybe_error("list_cluster_custom_object", plural)
        if watch:
            assert not _preload_content
            return self._build_watch_response(plural, None, resource_version)
        return {"items": self.list_for_test(plural)}

    async def list_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        *,
        resource_version: str | None = None,
        allow_watch_bookmarks: bool = False,
        timeout_seconds: int | None = None,
        watch: bool = False,
        _preload_content: bool = True,
        _request_timeout: float | None = None,
    ) -> Any:
        if watch:
            self.watches.append(resource_version)
        await self._maybe_error(
            "list_namespaced_custom_object", plural, namespace
        )
        if watch:
            assert not _preload_content
            return self._build_watch_response(
                plural, namespace, resource_version
            )
        objs = self._objects[plural][namespace]
        return {
            "items": [copy.deepcopy(o) for _, o in sorted(objs.items())]
        }

    async def replace_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
        *,
        _request_timeout: float | None = None,
    ) -> dict[str, Any]:
        await self._maybe_error(
            "replace_namespaced_custom_object", plural, body
        )
        current = self._get(plural, namespace, name)
        self._check_resource_version(current, body)
        obj = copy.deepcopy(body)
        obj.pop("status", None)
        if "status" in current:
            obj["status"] = copy.deepcopy(current["status"])
        metadata = obj["metadata"]
        for immutable in (
            "namespace",
            "uid",
            "creationTimestamp",
            "deletionTimestamp",
        ):
            if immutable in current["metadata"]:
                metadata[immutable] = current["metadata"][immutable]
            else:
                metadata.pop(immutable, None)
        generation = current["metadata"]["generation"]
        if obj.get("spec") != current.get("spec"):
            generation += 1
        metadata["generation"] = generation
        metadata["resourceVersion"] = self._next_resource_version()
        self._objects[plural][namespace][name] = obj
        if metadata.get("deletionTimestamp") and not metadata.get(
            "finalizers"
        ):
            self._remove(plural, obj)
        else:
            self._record("replace", plural, obj)
        return copy.deepcopy(obj)

    async def replace_namespaced_custom_object_status(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
        *,
        _request_timeout: float | None = None,
    ) -> dict[str, Any]:
        await self._maybe_error(
            "replace_namespaced_custom_object_status", plural, body
        )
        current = self._get(plural, namespace, name)
        self._check_resource_version(current, body)
        obj = copy.deepcopy(current)
        if body.get("status") is None:
            obj.pop("status", None)
        else:
            obj["status"] = copy.deepcopy(body["status"])
        obj["metadata"]["resourceVersion"] = self._next_resource_version()
        self._objects[plural][namespace][name] = obj
        self._record("replace_status", plural, obj)
        return copy.deepcopy(obj)

    def _build_watch_response(
        self, plural: str, namespace: str | None, resource_version: str | None
    ) -> Mock:
        """Simulate the streaming response of a watch.

        Without a resource version, the watch starts with synthetic
        ``ADDED`` events for all existing objects, as the real API does.
        """
        events = self._events[plural]
        epoch = self._watch_epochs[plural]
        if resource_version:
            position = len(
                [e for e in events if e["version"] <= int(resource_version)]
            )
            initial = []
        else:
            position = len(events)
            initial = [
                {"type": "ADDED", "object": o}
                for o in self.list_for_test(plural)
                if not namespace or o["metadata"]["namespace"] == namespace
            ]

        async def next_event() -> AsyncIterator[bytes]:
            nonlocal position
            for event in initial:
                yield json.dumps(event).encode() + b"\n"
            while True:
                if self._watch_epochs[plural] != epoch:
                    yield b""
                    return
                wait_event = self._new_events[plural]
                for event in events[position:]:
                    position += 1
                    if namespace and event["namespace"] != namespace:
                        continue
                    raw = {"type": event["type"], "object": event["object"]}
                    yield json.dumps(raw).encode() + b"\n"
                await wait_event.wait()

        event_generator = next_event()

        async def readline() -> bytes:
            return await event_generator.__anext__()

        # The watch only uses a minimal interface of the aiohttp response, so
        # a simple mock is enough.
        response = Mock()
        response.content.readline = AsyncMock()
        response.content.readline.side_effect = readline
        return response

    def _check_resource_version(
        self, current: dict[str, Any], body: dict[str, Any]
    ) -> None:
        wanted = body["metadata"].get("resourceVersion")
        if wanted and wanted != current["metadata"]["resourceVersion"]:
            name = current["metadata"]["name"]
            msg = f"Operation cannot be fulfilled on {name}: object modified"
            raise ApiException(status=409, reason=msg)

    def _get(self, plural: str, namespace: str, name: str) -> dict[str, Any]:
        obj = self._objects[plural][namespace].get(name)
        if not obj:
            msg = f"{plural} {namespace}/{name} not found"
            raise ApiException(status=404, reason=msg)
        return obj

    async def _maybe_error(self, method: str, *args: Any) -> None:
        if self.error_callback:
            result = self.error_callback(method, *args)
            if inspect.isawaitable(result):
                await result

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _record(self, action: str, plural: str, obj: dict[str, Any]) -> None:
        """Record a write and publish the matching watch event."""
        metadata = obj["metadata"]
        namespace = metadata["namespace"]
        self.writes.append((action, plural, namespace, metadata["name"]))
        if action == "create":
            event_type = "ADDED"
        elif action == "remove":
            event_type = "DELETED"
        else:
            event_type = "MODIFIED"
        self._events[plural].append(
            {
                "type": event_type,
                "namespace": namespace,
                "version": int(metadata["resourceVersion"]),
                "object": copy.deepcopy(obj),
            }
        )
        self._new_events[plural].set()
        self._new_events[plural] = asyncio.Event()

    def _remove(self, plural: str, obj: dict[str, Any]) -> None:
        """Remove an object and garbage-collect its dependents."""
        metadata = obj["metadata"]
        namespace = metadata["namespace"]
        del self._objects[plural][namespace][metadata["name"]]
        metadata["resourceVersion"] = self._next_resource_version()
        self._record("remove", plural, obj)
        for other_plural, namespaces in list(self._objects.items()):
            for dependent in list(namespaces[namespace].values()):
                references = dependent["metadata"].get("ownerReferences")
                if any(r["uid"] == metadata["uid"] for r in references or []):
                    self._remove(other_plural, dependent)


def patch_kubernetes() -> Iterator[MockCustomObjectsApi]:
    """Replace the Kubernetes API with a mock class.

    Modeled on `safir.testing.kubernetes.patch_kubernetes`, but only the
    custom objects API is replaced.

    Returns
    -------
    MockCustomObjectsApi
        The mock Kubernetes API object.
    """
    mock_api = MockCustomObjectsApi()
    with patch.object(config, "load_incluster_config"):
        patcher = patch.object(client, "CustomObjectsApi")
        mock_class = patcher.start()
        mock_class.return_value = mock_api
        mock_api_client = Mock(spec=client.ApiClient)
        mock_api_client.close = AsyncMock()
        with patch.object(client, "ApiClient") as mock_client:
            mock_client.return_value = mock_api_client
            os.environ["KUBERNETES_PORT"] = "tcp://10.0.0.1:443"
            yield mock_api
            del os.environ["KUBERNETES_PORT"]
        patcher.stop()
