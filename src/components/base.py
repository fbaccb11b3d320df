"""
Component Base - Interface for the sub-reconcilers of a cluster.

Each component converges one slice of a cluster (TLS material, security
configuration, node pools, dashboards, ...). Components are shipped as
separate pip packages and discovered through entry points; the engine only
sequences them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from cluster import ManagedCluster, NodePool

logger = logging.getLogger(__name__)

TLS = "tls"
SECURITY_CONFIG = "securityconfig"
CONFIGURATION = "configuration"
CLUSTER = "cluster"
SCALER = "scaler"
DASHBOARDS = "dashboards"
UPGRADE = "upgrade"
RESTART = "restart"

# Later components assume earlier ones have already converged
APPLY_ORDER = (
    TLS,
    SECURITY_CONFIG,
    CONFIGURATION,
    CLUSTER,
    SCALER,
    DASHBOARDS,
    UPGRADE,
    RESTART,
)

TEARDOWN_ORDER = (
    TLS,
    SECURITY_CONFIG,
    CONFIGURATION,
    CLUSTER,
    DASHBOARDS,
)


@dataclass
class ReconcileResult:
    """Result of a reconcile step; tells the scheduler when to run again."""

    requeue: bool = False
    requeue_after: float = 0.0  # seconds


Step = Callable[[], Awaitable[ReconcileResult]]


class ComponentContext:
    """
    Context handed to every component of one reconcile pass.

    Gives components access to the object store, the event recorder and
    the cluster being reconciled.
    """

    def __init__(
        self,
        store,
        recorder,
        cluster: ManagedCluster,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.cluster = cluster
        self.shutdown_event = shutdown_event or asyncio.Event()

    @property
    def node_pools(self) -> List[NodePool]:
        return self.cluster.node_pools


class ComponentReconciler(ABC):
    """
    Abstract base class for cluster components.

    Both ``reconcile`` and ``delete_resources`` must be idempotent and safe
    to abort midway: the engine calls them on every pass and may stop a
    pass at any suspension point.

    Components are discovered via Python entry points in the
    'searchcluster.components' group.
    """

    #: Unique name of the component, one of APPLY_ORDER
    name: str = ""

    def __init__(self, ctx: ComponentContext):
        self.ctx = ctx

    @abstractmethod
    async def reconcile(self) -> ReconcileResult:
        """
        Converge this component's child objects toward the desired state.

        Returns:
            ReconcileResult; ``requeue=True`` stops the pipeline for this pass.
        """
        pass

    async def delete_resources(self) -> ReconcileResult:
        """
        Tear down external resources owned by this component.

        Components without teardown duties keep the default.
        """
        return ReconcileResult()


async def run_pipeline(steps: Sequence[Step]) -> Optional[ReconcileResult]:
    """
    Run steps strictly in order, stopping at the first incomplete one.

    A step that raises stops the pipeline and the exception propagates
    unchanged. A step that asks for a requeue stops the pipeline and its
    result is returned as is. Returns None when every step completed.
    """
    for step in steps:
        result = await step()
        if result is not None and result.requeue:
            logger.debug(f"Pipeline stopped at {_step_name(step)}: requeue requested")
            return result
    return None


def _step_name(step: Step) -> str:
    owner = getattr(step, "__self__", None)
    if owner is not None and getattr(owner, "name", ""):
        return f"{owner.name}.{step.__name__}"
    return getattr(step, "__name__", repr(step))
