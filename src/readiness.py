"""Readiness checks used to mark a cluster as initialized."""

import logging

from cluster import ManagedCluster, NodePool
from store import ManagedObjectStore, StoreError

logger = logging.getLogger(__name__)


def stateful_set_name(cluster: ManagedCluster, node_pool: NodePool) -> str:
    return f"{cluster.name}-{node_pool.component}"


async def all_masters_ready(store: ManagedObjectStore, cluster: ManagedCluster) -> bool:
    """
    Check that every master-eligible node pool is fully ready.

    A node pool is ready when its StatefulSet reports as many ready replicas
    as it desires. A StatefulSet that cannot be read counts as not ready.
    """
    for node_pool in cluster.node_pools:
        if not node_pool.is_master_eligible:
            continue

        name = stateful_set_name(cluster, node_pool)
        try:
            sts = await store.get_child("StatefulSet", cluster.namespace, name)
        except StoreError as e:
            logger.debug(f"StatefulSet {cluster.namespace}/{name} not readable: {e}")
            return False

        desired = (sts.get("spec") or {}).get("replicas")
        if desired is None:
            desired = 1
        ready = (sts.get("status") or {}).get("readyReplicas") or 0
        if ready != desired:
            logger.debug(f"StatefulSet {name}: {ready}/{desired} replicas ready")
            return False

    return True
