"""
Cluster model - The managed OpenSearchCluster object and its status.

Mirrors the Kubernetes custom object layout so clusters can be read from
and written back to the API server without losing unknown fields.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

# Guard marker owned by the engine; blocks physical deletion until teardown ran
FINALIZER_NAME = "Opster"

MASTER_ROLES = ("master", "cluster_manager")


class ClusterPhase(Enum):
    """Lifecycle phase of a managed cluster."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"

    @classmethod
    def parse(cls, value: Optional[str]) -> Union["ClusterPhase", str, None]:
        """
        Parse a stored phase value.

        Returns None for an unset phase and the raw string for values this
        controller does not model.
        """
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return value


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name identity of a managed cluster."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "ObjectKey":
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Invalid object key '{value}', expected namespace/name")
        return cls(namespace=namespace, name=name)


class Finalizers:
    """Ordered set of finalizer markers."""

    def __init__(self, names: Optional[Iterable[str]] = None):
        self._names: List[str] = []
        for name in names or []:
            self.add(name)

    def add(self, name: str) -> bool:
        if name in self._names:
            return False
        self._names.append(name)
        return True

    def remove(self, name: str) -> bool:
        if name not in self._names:
            return False
        self._names.remove(name)
        return True

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Finalizers):
            return self._names == other._names
        return NotImplemented

    def __repr__(self) -> str:
        return f"Finalizers({self._names!r})"

    def to_list(self) -> List[str]:
        return list(self._names)


@dataclass
class ComponentStatus:
    """Last known condition reported by one pipeline component."""

    component: str = ""
    status: str = ""
    description: str = ""
    conditions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComponentStatus":
        return cls(
            component=data.get("component", ""),
            status=data.get("status", ""),
            description=data.get("description", ""),
            conditions=list(data.get("conditions") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "component": self.component,
            "status": self.status,
            "description": self.description,
        }
        if self.conditions:
            data["conditions"] = list(self.conditions)
        return data


@dataclass
class ClusterStatus:
    """Engine-owned status of a managed cluster."""

    phase: Union[ClusterPhase, str, None] = None
    initialized: bool = False
    components_status: List[ComponentStatus] = field(default_factory=list)
    # Status fields written by components; preserved verbatim
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusterStatus":
        data = dict(data or {})
        phase = ClusterPhase.parse(data.pop("phase", None))
        initialized = bool(data.pop("initialized", False))
        components = [
            ComponentStatus.from_dict(c) for c in data.pop("componentsStatus", None) or []
        ]
        return cls(
            phase=phase,
            initialized=initialized,
            components_status=components,
            extra=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.extra)
        if self.phase is not None:
            data["phase"] = (
                self.phase.value if isinstance(self.phase, ClusterPhase) else self.phase
            )
        data["initialized"] = self.initialized
        data["componentsStatus"] = [c.to_dict() for c in self.components_status]
        return data


@dataclass
class NodePool:
    """A node pool descriptor from the cluster spec."""

    component: str
    replicas: int = 1
    roles: List[str] = field(default_factory=list)

    @property
    def is_master_eligible(self) -> bool:
        return any(role in MASTER_ROLES for role in self.roles)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodePool":
        replicas = data.get("replicas")
        return cls(
            component=data.get("component", ""),
            replicas=1 if replicas is None else int(replicas),
            roles=list(data.get("roles") or []),
        )


@dataclass
class ManagedCluster:
    """
    The root managed object.

    ``spec`` is kept as the raw dict authored by the operator of the
    cluster; the engine only ever writes ``status`` and ``finalizers``.
    """

    key: ObjectKey
    spec: Dict[str, Any] = field(default_factory=dict)
    status: ClusterStatus = field(default_factory=ClusterStatus)
    finalizers: Finalizers = field(default_factory=Finalizers)
    deletion_timestamp: Optional[str] = None
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    generation: int = 0
    # Remaining metadata and top-level fields (labels, apiVersion, ...)
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def node_pools(self) -> List[NodePool]:
        return [NodePool.from_dict(p) for p in self.spec.get("nodePools") or []]

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ManagedCluster":
        """Build a cluster from a Kubernetes custom object dict."""
        raw = copy.deepcopy(obj)
        metadata = raw.pop("metadata", {}) or {}
        spec = raw.pop("spec", {}) or {}
        status = raw.pop("status", None)
        key = ObjectKey(
            namespace=metadata.pop("namespace", "") or "",
            name=metadata.pop("name", "") or "",
        )
        return cls(
            key=key,
            spec=spec,
            status=ClusterStatus.from_dict(status),
            finalizers=Finalizers(metadata.pop("finalizers", None) or []),
            deletion_timestamp=metadata.pop("deletionTimestamp", None),
            resource_version=metadata.pop("resourceVersion", None),
            uid=metadata.pop("uid", None),
            generation=int(metadata.pop("generation", 0) or 0),
            metadata=metadata,
            raw=raw,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to the Kubernetes custom object layout."""
        metadata = copy.deepcopy(self.metadata)
        metadata["name"] = self.key.name
        metadata["namespace"] = self.key.namespace
        metadata["finalizers"] = self.finalizers.to_list()
        if self.deletion_timestamp:
            metadata["deletionTimestamp"] = self.deletion_timestamp
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        if self.uid is not None:
            metadata["uid"] = self.uid
        if self.generation:
            metadata["generation"] = self.generation

        obj = copy.deepcopy(self.raw)
        obj["metadata"] = metadata
        obj["spec"] = copy.deepcopy(self.spec)
        obj["status"] = self.status.to_dict()
        return obj
