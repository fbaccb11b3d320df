"""
Cluster components package.

Components are the sub-reconcilers run by the engine, one per slice of
cluster state. They are discovered via Python entry points
(group: 'searchcluster.components').
"""

from components.base import (
    APPLY_ORDER,
    TEARDOWN_ORDER,
    ComponentContext,
    ComponentReconciler,
    ReconcileResult,
    run_pipeline,
)
from components.registry import ComponentRegistry, get_registry

__all__ = [
    "APPLY_ORDER",
    "TEARDOWN_ORDER",
    "ComponentContext",
    "ComponentReconciler",
    "ReconcileResult",
    "run_pipeline",
    "ComponentRegistry",
    "get_registry",
]
