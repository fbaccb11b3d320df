"""
Events - Progress and error events keyed to managed clusters.

Events are fanned out to in-process subscribers (the SSE watch endpoint)
through an EventBus and recorded as platform Events on the cluster.
Recording is best effort: a failed event never fails a reconciliation.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from cluster import ManagedCluster

logger = logging.getLogger(__name__)

EVENT_SOURCE = "opensearch-operator"


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventType(Enum):
    """Severity of a cluster event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class ClusterEvent:
    """A human-readable event about one managed cluster."""

    event_type: EventType
    namespace: str
    name: str
    reason: str
    message: str
    timestamp: str
    uid: Optional[str] = None

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "event_type": self.event_type.value,
            "namespace": self.namespace,
            "name": self.name,
            "reason": self.reason,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    def to_k8s_event(self, api_version: str, kind: str) -> Dict[str, Any]:
        """Render the event as a core/v1 Event body."""
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{self.name}.",
                "namespace": self.namespace,
            },
            "involvedObject": {
                "apiVersion": api_version,
                "kind": kind,
                "name": self.name,
                "namespace": self.namespace,
                "uid": self.uid,
            },
            "reason": self.reason,
            "message": self.message,
            "type": self.event_type.value,
            "source": {"component": EVENT_SOURCE},
            "firstTimestamp": self.timestamp,
            "lastTimestamp": self.timestamp,
            "count": 1,
        }

    @classmethod
    def for_cluster(
        cls,
        cluster: ManagedCluster,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> "ClusterEvent":
        return cls(
            event_type=event_type,
            namespace=cluster.namespace,
            name=cluster.name,
            reason=reason,
            message=message,
            timestamp=_utc_now(),
            uid=cluster.uid,
        )


@dataclass
class _Watcher:
    """Queue of one watch stream and the clusters it selected."""

    queue: asyncio.Queue
    namespace: Optional[str] = None
    name: Optional[str] = None

    def selects(self, event: ClusterEvent) -> bool:
        if self.namespace is not None and event.namespace != self.namespace:
            return False
        return self.name is None or event.name == self.name


class EventSubscription:
    """Async iterator over the events delivered to one watcher; ends on None."""

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[ClusterEvent]:
        return self

    async def __anext__(self) -> ClusterEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    Fans cluster events out to watch streams.

    A watcher selects the clusters it follows when it subscribes: all of
    them, one namespace, or one cluster. Events are matched on publish, so
    a watcher's queue only ever holds its own clusters. When a queue is
    full the event is dropped for that watcher instead of blocking the
    reconcile that recorded it.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._watchers: Dict[str, _Watcher] = {}

    async def publish(self, event: ClusterEvent) -> None:
        for subscriber_id, watcher in list(self._watchers.items()):
            if not watcher.selects(event):
                continue
            try:
                watcher.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Watch {subscriber_id} is behind, dropped {event.reason} "
                    f"for {event.namespace}/{event.name}"
                )

    async def subscribe(
        self,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Start a watch stream.

        Args:
            namespace: Only follow clusters in this namespace
            name: Only follow clusters with this name

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._watchers[subscriber_id] = _Watcher(queue, namespace, name)

        scope = "/".join(p for p in (namespace, name) if p) or "all clusters"
        logger.info(f"New event watch {subscriber_id} on {scope}")
        return subscriber_id, EventSubscription(queue)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Stop a watch stream; its iterator ends once drained."""
        watcher = self._watchers.pop(subscriber_id, None)
        if watcher is None:
            return
        try:
            watcher.queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room for the end marker, the watch is closing anyway
            watcher.queue.get_nowait()
            watcher.queue.put_nowait(None)
        logger.info(f"Closed event watch {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._watchers)


class EventRecorder:
    """
    Records cluster events to the event bus and the object store.

    Never raises: failures are logged and dropped.
    """

    def __init__(
        self,
        store=None,
        event_bus: Optional[EventBus] = None,
        api_version: str = "opensearch.opster.io/v1",
        kind: str = "OpenSearchCluster",
    ):
        self.store = store
        self.event_bus = event_bus
        self.api_version = api_version
        self.kind = kind

    async def record(
        self,
        cluster: ManagedCluster,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        event = ClusterEvent.for_cluster(cluster, event_type, reason, message)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(event)
            except Exception as e:
                logger.warning(f"Failed to publish event {reason} for {cluster.key}: {e}")

        if self.store is not None:
            try:
                await self.store.create_event(
                    cluster.namespace, event.to_k8s_event(self.api_version, self.kind)
                )
            except Exception as e:
                logger.warning(f"Failed to record event {reason} for {cluster.key}: {e}")

    async def normal(self, cluster: ManagedCluster, reason: str, message: str) -> None:
        await self.record(cluster, EventType.NORMAL, reason, message)

    async def warning(self, cluster: ManagedCluster, reason: str, message: str) -> None:
        await self.record(cluster, EventType.WARNING, reason, message)
