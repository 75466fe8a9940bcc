"""
Replication Controller - main reconciliation loop.

Similar to Kubernetes controllers: watch notifications are classified into
PVC keys on a shared work queue, and a pool of workers reconciles one key
at a time until the controller is stopped.
"""

import asyncio
import logging
from typing import List, Optional

from config import ControllerConfig, ReplicationConfig
from events import EventClassifier
from reconciler import Reconciler, ReconcileResult
from workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Owns the work queue, the classifier task draining the ingestion channel
    and the worker tasks running the reconciler.
    """

    def __init__(
        self,
        cache,
        client,
        config: Optional[ControllerConfig] = None,
        replication: Optional[ReplicationConfig] = None,
        reconciler: Optional[Reconciler] = None,
    ):
        self.cache = cache
        self.config = config or ControllerConfig()
        self.replication = replication or ReplicationConfig()
        self.workers = self.config.workers
        self.queue = WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.reconciler = reconciler or Reconciler(
            cache, client, config=self.replication
        )
        self.classifier = EventClassifier(cache.claims, self.queue, self.replication)
        self.channel: asyncio.Queue = asyncio.Queue()
        self.running = False

        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the classifier and the workers; returns once they all exit."""
        if self.queue.shutting_down:
            logger.info("Replication controller stopped before start, not starting")
            return

        logger.info(f"Starting replication controller with {self.workers} workers")
        self.running = True

        self._tasks = [asyncio.create_task(self.classifier.run(self.channel))]
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._run_worker(i)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Replication controller cancelled")
            raise
        finally:
            self.running = False
            logger.info("Stopping replication controller")

    async def stop(self):
        """
        Stop accepting work; in-flight reconciles finish first.

        May be called before start(), which then returns without starting.
        """
        if self.queue.shutting_down:
            return
        logger.info("Stopping replication controller")
        self.queue.shut_down()
        self.channel.put_nowait(None)

    async def _run_worker(self, worker_id: int):
        while await self.process_next_item():
            pass
        logger.debug(f"worker {worker_id} stopped")

    async def process_next_item(self) -> bool:
        """
        Reconcile the next key of the queue.

        Returns:
            False once the queue has been shut down.
        """
        key = await self.queue.get()
        if key is None:
            return False

        try:
            result = await self._reconcile(key)
            if result.success:
                self.queue.forget(key)
            else:
                self.queue.add_rate_limited(key)
        finally:
            self.queue.done(key)
        return True

    async def _reconcile(self, key: str) -> ReconcileResult:
        try:
            return await self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            return ReconcileResult(success=False, message=str(e))
