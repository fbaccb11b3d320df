"""
Object Store - Access to managed clusters and their child objects.

The engine talks to the store only through ManagedObjectStore so the
Kubernetes API server can be swapped for a fake in tests.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from cluster import ManagedCluster, ObjectKey

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A store call failed; callers are expected to retry with backoff."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """The requested object does not exist."""


class ConflictError(StoreError):
    """A write was rejected because the object's version token is stale."""


class ManagedObjectStore(ABC):
    """Optimistic-concurrency store for managed clusters."""

    @abstractmethod
    async def get(self, key: ObjectKey) -> ManagedCluster:
        """
        Fetch the current state of a cluster.

        Raises:
            NotFoundError: If the cluster does not exist.
            StoreError: On any other failure.
        """

    @abstractmethod
    async def update(self, cluster: ManagedCluster) -> ManagedCluster:
        """
        Write metadata (finalizers) of a cluster.

        Raises:
            ConflictError: If ``cluster.resource_version`` is stale.
        """

    @abstractmethod
    async def update_status(self, cluster: ManagedCluster) -> ManagedCluster:
        """
        Write the status subresource of a cluster.

        Raises:
            ConflictError: If ``cluster.resource_version`` is stale.
        """

    @abstractmethod
    async def list_clusters(self) -> List[ManagedCluster]:
        """List every managed cluster visible to the controller."""

    @abstractmethod
    async def get_child(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        """Fetch an owned child object (StatefulSet, Service, ...) as a dict."""

    @abstractmethod
    async def create_event(self, namespace: str, body: Dict[str, Any]) -> None:
        """Record a platform Event in the given namespace."""

    @abstractmethod
    def stream_changes(
        self, kind: str, timeout_seconds: int = 30
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream change notifications for clusters or one owned child kind.

        Yields ``{"type": ..., "object": ...}`` dicts with the object in its
        API layout. The stream ends after ``timeout_seconds``; callers
        restart it.

        Raises:
            StoreError: If the watch fails; status 410 means the watch
                expired and can be restarted right away.
        """


def _translate_api_exception(e: ApiException, what: str) -> StoreError:
    """Map an API server error onto the store error taxonomy."""
    if e.status == 404:
        return NotFoundError(f"{what} not found", status=404)
    if e.status == 409:
        return ConflictError(f"Conflict writing {what}: {e.reason}", status=409)
    return StoreError(f"Error accessing {what}: {e.status} {e.reason}", status=e.status)


class KubernetesObjectStore(ManagedObjectStore):
    """ManagedObjectStore backed by the Kubernetes API server."""

    # kind -> (api group client, resource suffix of the generated client methods)
    CHILD_KINDS = {
        "StatefulSet": ("apps", "stateful_set"),
        "Deployment": ("apps", "deployment"),
        "Pod": ("core", "pod"),
        "Secret": ("core", "secret"),
        "ConfigMap": ("core", "config_map"),
        "Service": ("core", "service"),
    }

    def __init__(
        self,
        group: str,
        version: str,
        plural: str,
        namespace: str = "",
        in_cluster: bool = True,
        kubeconfig: Optional[str] = None,
        kind: str = "OpenSearchCluster",
    ):
        self.group = group
        self.version = version
        self.plural = plural
        self.namespace = namespace
        self.in_cluster = in_cluster
        self.kubeconfig = kubeconfig
        self.kind = kind
        self.api_client: Optional[client.ApiClient] = None
        self.custom_api: Optional[client.CustomObjectsApi] = None
        self.apps_api: Optional[client.AppsV1Api] = None
        self.core_api: Optional[client.CoreV1Api] = None

    def connect(self) -> None:
        """Load cluster credentials and create the API clients."""
        if self.in_cluster:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                logger.info("Not running in-cluster, falling back to kubeconfig")
                config.load_kube_config(config_file=self.kubeconfig)
        else:
            config.load_kube_config(config_file=self.kubeconfig)

        self.api_client = client.ApiClient()
        self.custom_api = client.CustomObjectsApi(self.api_client)
        self.apps_api = client.AppsV1Api(self.api_client)
        self.core_api = client.CoreV1Api(self.api_client)
        logger.info(
            f"Connected to Kubernetes API for {self.plural}.{self.group}/{self.version}"
        )

    def close(self) -> None:
        if self.api_client:
            self.api_client.close()
            logger.info("Closed Kubernetes API client")

    def _ensure_connected(self) -> None:
        if self.custom_api is None:
            raise RuntimeError(
                "Store not connected. Call connect() before performing operations."
            )

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        # The kubernetes client is blocking; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def get(self, key: ObjectKey) -> ManagedCluster:
        self._ensure_connected()
        try:
            obj = await self._call(
                self.custom_api.get_namespaced_custom_object,
                self.group,
                self.version,
                key.namespace,
                self.plural,
                key.name,
            )
        except ApiException as e:
            raise _translate_api_exception(e, f"cluster {key}") from e
        return ManagedCluster.from_dict(obj)

    async def update(self, cluster: ManagedCluster) -> ManagedCluster:
        self._ensure_connected()
        try:
            obj = await self._call(
                self.custom_api.replace_namespaced_custom_object,
                self.group,
                self.version,
                cluster.namespace,
                self.plural,
                cluster.name,
                cluster.to_dict(),
            )
        except ApiException as e:
            raise _translate_api_exception(e, f"cluster {cluster.key}") from e
        return ManagedCluster.from_dict(obj)

    async def update_status(self, cluster: ManagedCluster) -> ManagedCluster:
        self._ensure_connected()
        try:
            obj = await self._call(
                self.custom_api.replace_namespaced_custom_object_status,
                self.group,
                self.version,
                cluster.namespace,
                self.plural,
                cluster.name,
                cluster.to_dict(),
            )
        except ApiException as e:
            raise _translate_api_exception(e, f"status of cluster {cluster.key}") from e
        return ManagedCluster.from_dict(obj)

    async def list_clusters(self) -> List[ManagedCluster]:
        self._ensure_connected()
        try:
            if self.namespace:
                result = await self._call(
                    self.custom_api.list_namespaced_custom_object,
                    self.group,
                    self.version,
                    self.namespace,
                    self.plural,
                )
            else:
                result = await self._call(
                    self.custom_api.list_cluster_custom_object,
                    self.group,
                    self.version,
                    self.plural,
                )
        except ApiException as e:
            raise _translate_api_exception(e, self.plural) from e
        return [ManagedCluster.from_dict(item) for item in result.get("items", [])]

    async def get_child(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        self._ensure_connected()
        api, resource = self._child_api(kind)
        try:
            obj = await self._call(getattr(api, f"read_namespaced_{resource}"), name, namespace)
        except ApiException as e:
            raise _translate_api_exception(e, f"{kind} {namespace}/{name}") from e
        return self.api_client.sanitize_for_serialization(obj)

    async def create_event(self, namespace: str, body: Dict[str, Any]) -> None:
        self._ensure_connected()
        try:
            await self._call(self.core_api.create_namespaced_event, namespace, body)
        except ApiException as e:
            raise _translate_api_exception(e, f"event in {namespace}") from e

    def _child_api(self, kind: str):
        if kind not in self.CHILD_KINDS:
            raise ValueError(f"Unsupported child kind: {kind}")
        api_name, resource = self.CHILD_KINDS[kind]
        return (self.apps_api if api_name == "apps" else self.core_api), resource

    def _list_call(self, kind: str):
        """Return the list function and arguments a watch of kind streams."""
        if kind == self.kind:
            if self.namespace:
                return self.custom_api.list_namespaced_custom_object, (
                    self.group,
                    self.version,
                    self.namespace,
                    self.plural,
                )
            return self.custom_api.list_cluster_custom_object, (
                self.group,
                self.version,
                self.plural,
            )

        api, resource = self._child_api(kind)
        if self.namespace:
            return getattr(api, f"list_namespaced_{resource}"), (self.namespace,)
        return getattr(api, f"list_{resource}_for_all_namespaces"), ()

    async def stream_changes(
        self, kind: str, timeout_seconds: int = 30
    ) -> AsyncIterator[Dict[str, Any]]:
        self._ensure_connected()
        list_fn, args = self._list_call(kind)

        watcher = watch.Watch()
        stream = watcher.stream(list_fn, *args, timeout_seconds=timeout_seconds)
        try:
            while True:
                try:
                    # Each read blocks until the next event or the server timeout
                    event = await self._call(next, stream, None)
                except ApiException as e:
                    raise _translate_api_exception(e, f"watch of {kind}") from e
                if event is None:
                    return

                obj = event.get("raw_object")
                if obj is None:
                    obj = self.api_client.sanitize_for_serialization(event.get("object"))
                if isinstance(obj, dict):
                    obj.setdefault("kind", kind)
                yield {"type": event.get("type"), "object": obj}
        finally:
            watcher.stop()
