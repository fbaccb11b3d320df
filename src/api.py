"""
HTTP API - Health checks, cluster status and event streaming.

Serves liveness/readiness checks for the operator pod, read-only status
summaries of managed clusters, manual reconcile triggers and an SSE watch
of cluster events.
"""

import asyncio
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from cluster import ClusterPhase, ManagedCluster, ObjectKey
from events import EventBus
from store import NotFoundError, StoreError

logger = logging.getLogger(__name__)


class ComponentStatusResponse(BaseModel):
    """Status reported by one component."""

    component: str
    status: str = ""
    description: str = ""


class ClusterResponse(BaseModel):
    """Response model for a managed cluster's status."""

    namespace: str
    name: str
    phase: Optional[str] = Field(None, description="PENDING or RUNNING")
    initialized: bool = False
    deleting: bool = False
    finalizers: List[str] = []
    components: List[ComponentStatusResponse] = []

    @classmethod
    def from_cluster(cls, cluster: ManagedCluster) -> "ClusterResponse":
        phase = cluster.status.phase
        if isinstance(phase, ClusterPhase):
            phase = phase.value
        return cls(
            namespace=cluster.namespace,
            name=cluster.name,
            phase=phase,
            initialized=cluster.status.initialized,
            deleting=cluster.is_being_deleted,
            finalizers=cluster.finalizers.to_list(),
            components=[
                ComponentStatusResponse(
                    component=c.component,
                    status=c.status,
                    description=c.description,
                )
                for c in cluster.status.components_status
            ],
        )


class APIServer:
    """FastAPI application served by uvicorn alongside the manager."""

    def __init__(
        self,
        manager,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
        log_level: str = "info",
    ):
        self.manager = manager
        self.store = manager.store
        self.event_bus = event_bus
        self.host = host
        self.port = port
        self.log_level = log_level
        self.server: Optional[uvicorn.Server] = None

        self.app = FastAPI(
            title="OpenSearch Operator API",
            description="Status and health of managed OpenSearch clusters",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        Configures the following endpoint groups:
        - Probes: GET /, /healthz, /readyz
        - Clusters: GET /api/v1/clusters, GET /api/v1/clusters/{ns}/{name}
        - Reconciliation: POST /api/v1/clusters/{ns}/{name}/reconcile
        - Events: GET /api/v1/events (SSE)
        """

        @self.app.get("/")
        async def root():
            return {"status": "ok", "service": "opensearch-operator"}

        @self.app.get("/healthz")
        async def healthz():
            """Liveness check."""
            return {"status": "ok"}

        @self.app.get("/readyz")
        async def readyz():
            """Readiness check: ready once the manager runs its workers."""
            if not self.manager.running:
                return JSONResponse(status_code=503, content={"status": "not ready"})
            return {"status": "ok"}

        # ==================== Cluster Endpoints ====================

        @self.app.get("/api/v1/clusters", response_model=List[ClusterResponse])
        async def list_clusters(namespace: Optional[str] = None):
            """List managed clusters, optionally in a single namespace."""
            try:
                clusters = await self.store.list_clusters()
            except StoreError as e:
                logger.error(f"Error listing clusters: {e}")
                raise HTTPException(status_code=502, detail=str(e))

            return [
                ClusterResponse.from_cluster(c)
                for c in clusters
                if namespace is None or c.namespace == namespace
            ]

        @self.app.get(
            "/api/v1/clusters/{namespace}/{name}", response_model=ClusterResponse
        )
        async def get_cluster(namespace: str, name: str):
            """Get the status of one managed cluster."""
            try:
                cluster = await self.store.get(ObjectKey(namespace, name))
            except NotFoundError:
                raise HTTPException(status_code=404, detail="Cluster not found")
            except StoreError as e:
                logger.error(f"Error getting cluster {namespace}/{name}: {e}")
                raise HTTPException(status_code=502, detail=str(e))
            return ClusterResponse.from_cluster(cluster)

        @self.app.post("/api/v1/clusters/{namespace}/{name}/reconcile", status_code=202)
        async def trigger_reconciliation(namespace: str, name: str):
            """Queue an immediate reconciliation of a cluster."""
            key = ObjectKey(namespace, name)
            self.manager.trigger(key)
            return {"status": "queued", "cluster": str(key)}

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_events(
            namespace: Optional[str] = None, name: Optional[str] = None
        ):
            """SSE stream of cluster events, optionally filtered."""
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            subscriber_id, subscription = await self.event_bus.subscribe(
                namespace=namespace, name=name
            )

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping API server")
        if self.server:
            self.server.should_exit = True
