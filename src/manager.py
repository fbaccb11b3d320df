"""
Manager - Work queue and worker pool driving the ClusterReconciler.

Similar to a Kubernetes controller manager: keys are queued on change
notifications and periodic resyncs, de-duplicated per key, and handed to
a bounded number of workers. The result of every reconcile decides when
the key is queued again.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from cluster import ObjectKey
from components.base import ReconcileResult
from config import ControllerConfig
from controller import OWNED_KINDS, WATCHED_KIND, ClusterReconciler
from retry import compute_backoff_delay
from store import StoreError

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Rate-limited work queue of cluster keys.

    A key is never processed by two workers at once: adding a key that is
    being processed marks it dirty and it is queued again on done().
    """

    def __init__(
        self,
        base_delay: float = 1,
        max_delay: float = 300,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._failures: Dict[ObjectKey, int] = {}
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def add(self, key: ObjectKey) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """Queue a key once delay seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        existing = self._timers.get(key)
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        if existing is not None:
            if existing.when() <= due:
                # An earlier requeue is already scheduled
                return
            existing.cancel()
        self._timers[key] = loop.call_at(due, self._fire, key)

    def _fire(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: ObjectKey) -> None:
        """Queue a key after an exponential backoff for its failure count."""
        retries = self._failures.get(key, 0)
        self._failures[key] = retries + 1
        delay = compute_backoff_delay(
            retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter_factor=self.jitter_factor,
        )
        logger.debug(f"Requeue {key} in {delay:.2f}s (retry {retries + 1})")
        self.add_after(key, delay)

    def forget(self, key: ObjectKey) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[ObjectKey]:
        """Wait for the next key; returns None once the queue is shut down."""
        key = await self._queue.get()
        if key is None:
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ObjectKey) -> None:
        """Mark a key as processed, re-queuing it if it changed meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shut_down(self, workers: int = 1) -> None:
        """Stop accepting keys and wake up waiting workers."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for _ in range(workers):
            self._queue.put_nowait(None)

    def __len__(self) -> int:
        return self._queue.qsize()


class Manager:
    """
    Runs the reconcile workers and the periodic resync.

    Concurrency is bounded by max_concurrent_reconciles; a given cluster
    is never reconciled by two workers at the same time.
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        config: Optional[ControllerConfig] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.reconciler = reconciler
        self.store = reconciler.store
        self.config = config or ControllerConfig()
        self.queue = queue or WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        """Start the workers, the resync loop and the watches and wait for them."""
        logger.info(
            f"Starting manager with {self.config.max_concurrent_reconciles} workers"
        )
        self.running = True

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        if self.config.watch_enabled:
            self._tasks.extend(
                asyncio.create_task(self._watch_loop(kind))
                for kind in (WATCHED_KIND, *OWNED_KINDS)
            )

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Manager tasks cancelled")
        except Exception as e:
            logger.error(f"Manager error: {e}")
            raise

    async def stop(self) -> None:
        """Stop the manager gracefully."""
        logger.info("Stopping manager")
        self.running = False
        self.reconciler.shutdown_event.set()
        self.queue.shut_down(workers=self.config.max_concurrent_reconciles)

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    async def _worker(self, worker_id: int) -> None:
        while self.running:
            key = await self.queue.get()
            if key is None:
                break
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
        logger.debug(f"Worker {worker_id} exited")

    async def process(self, key: ObjectKey) -> None:
        """Reconcile one key and schedule its next run from the outcome."""
        try:
            result = await self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            self.queue.add_rate_limited(key)
            return

        self.handle_result(key, result)

    def handle_result(self, key: ObjectKey, result: ReconcileResult) -> None:
        if result.requeue_after > 0:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)

    async def _resync_loop(self) -> None:
        """Periodically queue every cluster to catch missed notifications."""
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
            await asyncio.sleep(self.config.resync_interval)

    async def resync(self) -> int:
        clusters = await self.store.list_clusters()
        for cluster in clusters:
            self.queue.add(cluster.key)
        if clusters:
            logger.info(f"Resync queued {len(clusters)} clusters")
        return len(clusters)

    async def _watch_loop(self, kind: str) -> None:
        """Feed change notifications of one kind into the queue."""
        failures = 0
        while self.running:
            try:
                async for event in self.store.stream_changes(
                    kind, timeout_seconds=self.config.watch_timeout
                ):
                    failures = 0
                    if event.get("type") == "ERROR":
                        logger.warning(f"Watch of {kind} reported: {event.get('object')}")
                        continue
                    self.notify(event["object"])
            except StoreError as e:
                if e.status == 410:
                    logger.info(f"Watch of {kind} expired, restarting")
                    continue
                failures = await self._watch_failed(kind, e, failures)
            except Exception as e:
                failures = await self._watch_failed(kind, e, failures)

    async def _watch_failed(self, kind: str, error: Exception, failures: int) -> int:
        delay = compute_backoff_delay(
            failures,
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        logger.error(f"Watch of {kind} failed: {error}, restarting in {delay:.1f}s")
        await asyncio.sleep(delay)
        return failures + 1

    def trigger(self, key: ObjectKey) -> None:
        """Manually trigger reconciliation of a cluster."""
        logger.info(f"Manually triggering reconciliation for {key}")
        self.queue.add(key)

    def notify(self, obj: Dict[str, Any]) -> Optional[ObjectKey]:
        """
        Map a change notification to the cluster that must be reconciled.

        Changes to a cluster queue the cluster itself; changes to an owned
        child queue its controlling owner. Returns the queued key, if any.
        """
        kind = obj.get("kind")
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace", "")

        if kind == WATCHED_KIND:
            key = ObjectKey(namespace=namespace, name=metadata.get("name", ""))
        elif kind in OWNED_KINDS:
            owner = next(
                (
                    ref
                    for ref in metadata.get("ownerReferences") or []
                    if ref.get("controller") and ref.get("kind") == WATCHED_KIND
                ),
                None,
            )
            if owner is None:
                return None
            key = ObjectKey(namespace=namespace, name=owner.get("name", ""))
        else:
            return None

        if not key.name:
            return None
        self.queue.add(key)
        return key
