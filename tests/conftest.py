"""Pytest configuration and fixtures."""

import asyncio
import copy
from typing import Any, Dict, List, Optional

import pytest

from cluster import ManagedCluster, ObjectKey
from components.base import APPLY_ORDER, ComponentReconciler, ReconcileResult
from components.registry import ComponentRegistry
from config import ControllerConfig
from controller import ClusterReconciler
from store import ConflictError, ManagedObjectStore, NotFoundError


class FakeStore(ManagedObjectStore):
    """
    In-memory store with optimistic concurrency.

    Mimics the API server: writes must carry the current resourceVersion,
    metadata writes leave status untouched and vice versa, and an object
    marked for deletion disappears once its finalizers are gone.
    """

    def __init__(self):
        self.objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self.children: Dict[tuple, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        # Number of forced conflicts per write operation
        self.conflicts = {"update": 0, "update_status": 0}
        self.get_error: Optional[Exception] = None
        # Scripted watch events or errors per kind
        self.watch_events: Dict[str, list] = {}
        self.watched: List[str] = []
        self._version = 0

    def put(self, obj: Dict[str, Any]) -> ObjectKey:
        obj = copy.deepcopy(obj)
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)
        key = ObjectKey(obj["metadata"]["namespace"], obj["metadata"]["name"])
        self.objects[key] = obj
        return key

    def cluster(self, key: ObjectKey) -> ManagedCluster:
        return ManagedCluster.from_dict(self.objects[key])

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] != "get"]

    async def get(self, key):
        self.calls.append(("get", key))
        if self.get_error is not None:
            raise self.get_error
        if key not in self.objects:
            raise NotFoundError(f"cluster {key} not found", status=404)
        return ManagedCluster.from_dict(self.objects[key])

    async def update(self, cluster):
        return self._write("update", cluster)

    async def update_status(self, cluster):
        return self._write("update_status", cluster)

    def _write(self, op, cluster):
        self.calls.append((op, cluster.key))
        if self.conflicts[op] > 0:
            self.conflicts[op] -= 1
            raise ConflictError("forced conflict", status=409)

        current = self.objects.get(cluster.key)
        if current is None:
            raise NotFoundError(f"cluster {cluster.key} not found", status=404)
        if current["metadata"]["resourceVersion"] != cluster.resource_version:
            raise ConflictError("stale resourceVersion", status=409)

        new = cluster.to_dict()
        if op == "update":
            new["status"] = copy.deepcopy(current.get("status"))
        else:
            new["metadata"]["finalizers"] = list(
                current["metadata"].get("finalizers", [])
            )
            new["spec"] = copy.deepcopy(current.get("spec"))

        self._version += 1
        new["metadata"]["resourceVersion"] = str(self._version)

        if new["metadata"].get("deletionTimestamp") and not new["metadata"].get(
            "finalizers"
        ):
            del self.objects[cluster.key]
        else:
            self.objects[cluster.key] = new
        return ManagedCluster.from_dict(new)

    async def list_clusters(self):
        return [ManagedCluster.from_dict(o) for o in self.objects.values()]

    async def get_child(self, kind, namespace, name):
        try:
            return copy.deepcopy(self.children[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found", status=404)

    async def create_event(self, namespace, body):
        self.events.append(body)

    async def stream_changes(self, kind, timeout_seconds=30):
        self.watched.append(kind)
        for item in self.watch_events.pop(kind, []):
            if isinstance(item, Exception):
                raise item
            yield item
        # Idle like an open watch with no changes
        await asyncio.Event().wait()


class ComponentScript:
    """Scripted outcomes and call log shared by recording components."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.results: Dict[tuple, ReconcileResult] = {}
        self.errors: Dict[tuple, Exception] = {}

    def run(self, name: str, mode: str) -> ReconcileResult:
        self.calls.append((name, mode))
        if (name, mode) in self.errors:
            raise self.errors[(name, mode)]
        return self.results.get((name, mode), ReconcileResult())

    def names(self, mode: str) -> List[str]:
        return [name for name, m in self.calls if m == mode]


def build_registry(script: ComponentScript) -> ComponentRegistry:
    registry = ComponentRegistry()
    for component_name in APPLY_ORDER:

        class RecordingComponent(ComponentReconciler):
            name = component_name

            async def reconcile(self):
                return script.run(self.name, "reconcile")

            async def delete_resources(self):
                return script.run(self.name, "delete")

        registry.register_component(RecordingComponent)
    return registry


def make_cluster(
    name: str = "my-cluster",
    namespace: str = "default",
    finalizers: Optional[List[str]] = None,
    phase: Optional[str] = None,
    initialized: bool = False,
    deleting: bool = False,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "apiVersion": "opensearch.opster.io/v1",
        "kind": "OpenSearchCluster",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "1234-abcd",
            "generation": 1,
            "finalizers": list(finalizers or []),
        },
        "spec": {
            "general": {"version": "2.11.0", "serviceName": name},
            "nodePools": [
                {"component": "masters", "replicas": 3, "roles": ["cluster_manager", "data"]},
                {"component": "nodes", "replicas": 2, "roles": ["data"]},
            ],
        },
    }
    status: Dict[str, Any] = {}
    if phase is not None:
        status["phase"] = phase
        status["componentsStatus"] = [
            {"component": "Restarter", "status": "InProgress", "description": "masters"}
        ]
    if initialized:
        status["initialized"] = True
    if status:
        obj["status"] = status
    if deleting:
        obj["metadata"]["deletionTimestamp"] = "2024-01-15T10:30:00Z"
    return obj


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def script():
    return ComponentScript()


@pytest.fixture
def registry(script):
    return build_registry(script)


@pytest.fixture
def controller_config():
    return ControllerConfig(conflict_retry_duration=0, conflict_retry_jitter=0)


@pytest.fixture
def reconciler(store, registry, controller_config):
    return ClusterReconciler(store=store, registry=registry, config=controller_config)
