"""
Main entry point for the OpenSearch cluster operator.

Wires the Kubernetes store, discovered components, the reconciler, the
manager and the API server together and runs them until signalled.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import APIServer
from components.registry import get_registry
from config import get_config
from controller import ClusterReconciler
from events import EventBus, EventRecorder
from manager import Manager
from store import KubernetesObjectStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the manager and API server."""

    def __init__(self):
        self.config = get_config()
        self.store: Optional[KubernetesObjectStore] = None
        self.event_bus: Optional[EventBus] = None
        self.manager: Optional[Manager] = None
        self.api: Optional[APIServer] = None
        self.running = False

    def initialize(self):
        """Initialize all components."""
        logger.info("Initializing OpenSearch operator")
        logging.getLogger().setLevel(self.config.api.log_level.upper())

        registry = get_registry()
        registry.discover()
        missing = registry.missing()
        if missing:
            raise RuntimeError(f"Missing cluster components: {', '.join(missing)}")

        k8s = self.config.kubernetes
        self.store = KubernetesObjectStore(
            group=k8s.group,
            version=k8s.version,
            plural=k8s.plural,
            namespace=k8s.namespace,
            in_cluster=k8s.in_cluster,
            kubeconfig=k8s.kubeconfig,
            kind=k8s.kind,
        )
        self.store.connect()

        self.event_bus = EventBus()
        recorder = EventRecorder(
            store=self.store,
            event_bus=self.event_bus,
            api_version=k8s.api_version,
            kind=k8s.kind,
        )

        reconciler = ClusterReconciler(
            store=self.store,
            registry=registry,
            recorder=recorder,
            config=self.config.controller,
        )
        self.manager = Manager(reconciler, config=self.config.controller)

        api = self.config.api
        self.api = APIServer(
            self.manager,
            event_bus=self.event_bus,
            host=api.host,
            port=api.port,
            log_level=api.log_level,
        )
        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.manager:
            self.initialize()

        self.running = True
        logger.info("Starting OpenSearch operator")

        tasks = [
            asyncio.create_task(self.manager.start()),
            asyncio.create_task(self.api.start()),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping OpenSearch operator")
        self.running = False

        if self.manager:
            await self.manager.stop()

        if self.api:
            await self.api.stop()

        if self.store:
            self.store.close()

        logger.info("OpenSearch operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
