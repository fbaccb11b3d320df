"""
Component Registry - Discovery and registration of cluster components.

Components are registered as classes and instantiated afresh for every
reconcile pass, bound to that pass's ComponentContext.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, Iterable, Optional, Type

from components.base import APPLY_ORDER, ComponentContext, ComponentReconciler

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "searchcluster.components"


class ComponentRegistry:
    """Central registry of component classes, keyed by component name."""

    def __init__(self):
        self._components: Dict[str, Type[ComponentReconciler]] = {}

    def register_component(self, component_class: Type[ComponentReconciler]) -> None:
        """
        Register a component class.

        Args:
            component_class: The ComponentReconciler subclass to register

        Raises:
            ValueError: If the class does not declare a name
        """
        name = getattr(component_class, "name", "")
        if not name:
            raise ValueError(
                f"Component class {component_class.__name__} does not declare a name"
            )

        if name in self._components:
            logger.warning(f"Overwriting existing component: {name}")
        elif name not in APPLY_ORDER:
            logger.warning(f"Component '{name}' is not part of the pipeline")

        self._components[name] = component_class
        logger.info(f"Registered component: {name}")

    def has_component(self, name: str) -> bool:
        return name in self._components

    def list_components(self) -> list[str]:
        """List all registered component names."""
        return list(self._components.keys())

    def missing(self, required: Iterable[str] = APPLY_ORDER) -> list[str]:
        """Return the required component names that are not registered."""
        return [name for name in required if name not in self._components]

    def build(
        self,
        ctx: ComponentContext,
        required: Iterable[str] = APPLY_ORDER,
    ) -> Dict[str, ComponentReconciler]:
        """
        Instantiate every required component for one reconcile pass.

        Raises:
            ValueError: If a required component is not registered
        """
        required = list(required)
        missing = self.missing(required)
        if missing:
            available = ", ".join(self._components.keys()) or "none"
            raise ValueError(
                f"Unknown components: {', '.join(missing)}. "
                f"Available components: {available}"
            )
        return {name: self._components[name](ctx) for name in required}

    def discover(self, group: str = ENTRY_POINT_GROUP) -> None:
        """Register components advertised through entry points."""
        for ep in entry_points(group=group):
            try:
                self.register_component(ep.load())
            except Exception as e:
                logger.warning(f"Could not load component {ep.name}: {e}")


# Global registry instance
_registry: Optional[ComponentRegistry] = None


def get_registry() -> ComponentRegistry:
    """Get the global component registry singleton."""
    global _registry
    if _registry is None:
        _registry = ComponentRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None
