"""
Cluster Controller - Reconciliation of a single OpenSearchCluster.

Each call to ClusterReconciler.reconcile() is one level-triggered pass:
the cluster is re-read, deletion is handled behind the finalizer, the
phase state machine is advanced and the component pipeline is run.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from cluster import FINALIZER_NAME, ClusterPhase, ManagedCluster, ObjectKey
from components.base import (
    APPLY_ORDER,
    TEARDOWN_ORDER,
    ComponentContext,
    ReconcileResult,
    run_pipeline,
)
from components.registry import ComponentRegistry, get_registry
from config import ControllerConfig
from events import EventRecorder
from readiness import all_masters_ready
from retry import ReadModifyWrite, apply_with_retry
from store import ManagedObjectStore, NotFoundError

logger = logging.getLogger(__name__)

# Kinds whose changes trigger a reconcile of the owning cluster
WATCHED_KIND = "OpenSearchCluster"
OWNED_KINDS = ("Pod", "Secret", "ConfigMap", "Service", "Deployment", "StatefulSet")

ReadinessCheck = Callable[[ManagedObjectStore, ManagedCluster], Awaitable[bool]]
PhaseHandler = Callable[[ManagedCluster], Awaitable[ReconcileResult]]


class ClusterReconciler:
    """
    Reconciles OpenSearchCluster objects.

    Errors are raised to the caller, which is expected to retry with
    backoff; a returned ReconcileResult says when to run again otherwise.
    """

    def __init__(
        self,
        store: ManagedObjectStore,
        registry: Optional[ComponentRegistry] = None,
        recorder: Optional[EventRecorder] = None,
        config: Optional[ControllerConfig] = None,
        readiness_check: ReadinessCheck = all_masters_ready,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.recorder = recorder or EventRecorder()
        self.config = config or ControllerConfig()
        self.readiness_check = readiness_check
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.backoff = self.config.conflict_backoff

        self._phase_handlers: Dict[ClusterPhase, PhaseHandler] = {
            ClusterPhase.PENDING: self._reconcile_phase_pending,
            ClusterPhase.RUNNING: self._reconcile_phase_running,
        }

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one reconcile pass for the cluster identified by key."""
        logger.info(f"Reconciling OpenSearchCluster {key}")

        try:
            cluster = await self.store.get(key)
        except NotFoundError:
            # Deleted after the request was queued
            logger.info(f"OpenSearchCluster {key} not found, skipping")
            return ReconcileResult()

        if cluster.is_being_deleted:
            return await self._handle_deletion(cluster)

        if FINALIZER_NAME not in cluster.finalizers:
            cluster = await self._add_finalizer(cluster)

        if cluster.status.phase is None:
            # PENDING does no work of its own, first observation goes straight to RUNNING
            cluster = await self._start_running(cluster)

        handler = self._phase_handlers.get(cluster.status.phase)
        if handler is None:
            return self._reconcile_unknown_phase(cluster)
        return await handler(cluster)

    # ==================== Finalizer ====================

    async def _add_finalizer(self, cluster: ManagedCluster) -> ManagedCluster:
        def mutate(c: ManagedCluster) -> None:
            c.finalizers.add(FINALIZER_NAME)

        cluster = await apply_with_retry(
            self.store, ReadModifyWrite(cluster.key, mutate), self.backoff
        )
        logger.info(f"Added finalizer {FINALIZER_NAME} to {cluster.key}")
        return cluster

    async def _remove_finalizer(self, cluster: ManagedCluster) -> ManagedCluster:
        def mutate(c: ManagedCluster) -> None:
            c.finalizers.remove(FINALIZER_NAME)

        cluster = await apply_with_retry(
            self.store, ReadModifyWrite(cluster.key, mutate), self.backoff
        )
        logger.info(f"Removed finalizer {FINALIZER_NAME} from {cluster.key}")
        return cluster

    async def _handle_deletion(self, cluster: ManagedCluster) -> ReconcileResult:
        """
        Tear down a cluster marked for deletion.

        The finalizer is only released once every component finished its
        teardown in a single pass; otherwise the object stays in the store
        and the deletion is retried.
        """
        if FINALIZER_NAME in cluster.finalizers:
            result = await self._delete_external_resources(cluster)
            if result is not None:
                return result
            await self._remove_finalizer(cluster)
        return ReconcileResult()

    async def _delete_external_resources(
        self, cluster: ManagedCluster
    ) -> Optional[ReconcileResult]:
        logger.info(f"Deleting resources of {cluster.key}")
        await self.recorder.normal(cluster, "Deleting", "Deleting cluster resources")

        components = self.registry.build(self._context(cluster), TEARDOWN_ORDER)
        steps = [components[name].delete_resources for name in TEARDOWN_ORDER]
        try:
            result = await run_pipeline(steps)
        except Exception as e:
            logger.error(f"Error deleting resources of {cluster.key}: {e}")
            await self.recorder.warning(cluster, "DeleteFailed", str(e))
            raise

        if result is None:
            logger.info(f"Finished deleting resources of {cluster.key}")
        return result

    # ==================== Phases ====================

    async def _start_running(self, cluster: ManagedCluster) -> ManagedCluster:
        def mutate(c: ManagedCluster) -> None:
            if c.status.phase is None:
                c.status.phase = ClusterPhase.RUNNING
                c.status.components_status = []

        cluster = await apply_with_retry(
            self.store,
            ReadModifyWrite(cluster.key, mutate, subresource="status"),
            self.backoff,
        )
        await self.recorder.normal(cluster, "Running", "Cluster reconciliation started")
        return cluster

    async def _reconcile_phase_pending(self, cluster: ManagedCluster) -> ReconcileResult:
        logger.info(f"Start reconcile - Phase: PENDING ({cluster.key})")

        def mutate(c: ManagedCluster) -> None:
            c.status.phase = ClusterPhase.RUNNING
            c.status.components_status = []

        await apply_with_retry(
            self.store,
            ReadModifyWrite(cluster.key, mutate, subresource="status"),
            self.backoff,
        )
        return ReconcileResult(requeue=True)

    async def _reconcile_phase_running(self, cluster: ManagedCluster) -> ReconcileResult:
        if not cluster.status.initialized:
            initialized = await self.readiness_check(self.store, cluster)

            def mutate(c: ManagedCluster) -> None:
                c.status.initialized = initialized

            cluster = await apply_with_retry(
                self.store,
                ReadModifyWrite(cluster.key, mutate, subresource="status"),
                self.backoff,
            )
            if initialized:
                logger.info(f"All master nodes of {cluster.key} are ready")

        components = self.registry.build(self._context(cluster), APPLY_ORDER)
        steps = [components[name].reconcile for name in APPLY_ORDER]
        try:
            result = await run_pipeline(steps)
        except Exception as e:
            logger.error(f"Error reconciling {cluster.key}: {e}")
            await self.recorder.warning(cluster, "ReconcileFailed", str(e))
            raise

        if result is not None:
            return result

        return ReconcileResult(requeue=True, requeue_after=self.config.requeue_after)

    def _reconcile_unknown_phase(self, cluster: ManagedCluster) -> ReconcileResult:
        phase: Union[ClusterPhase, str, None] = cluster.status.phase
        logger.warning(f"Unknown phase {phase!r} for {cluster.key}, nothing to do")
        return ReconcileResult(requeue=True, requeue_after=self.config.requeue_after)

    def _context(self, cluster: ManagedCluster) -> ComponentContext:
        return ComponentContext(
            store=self.store,
            recorder=self.recorder,
            cluster=cluster,
            shutdown_event=self.shutdown_event,
        )
