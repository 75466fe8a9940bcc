"""
Work Queue - deduplicating queue of claim keys with per-key backoff.

A key is held at most once while pending. A key added while a worker is
processing it is marked dirty and handed out again only after the worker
calls done(), so the same key is never reconciled concurrently.
"""

import asyncio
import logging
from random import random
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    asyncio work queue modelled on Kubernetes controller work queues.

    Failed keys are re-added after an exponential delay with jitter:
    ``min(base_delay * 2 ** (failures - 1), max_delay) * (1 ± jitter_factor)``.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty - self._processing)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        """Mark a key as needing processing."""
        if self._shutting_down:
            return
        if key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done() once the in-flight pass finishes
            return
        self._queue.put_nowait(key)

    async def get(self) -> Optional[str]:
        """
        Wait for the next key.

        Returns:
            The key to process, or None once the queue has been shut down.
        """
        key = await self._queue.get()
        if key is None or self._shutting_down:
            # Wake up the next waiting worker as well
            self._queue.put_nowait(None)
            return None

        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        """Mark the end of processing for a key."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add a key once ``delay`` seconds have elapsed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._delayed.get(key)
        if existing is not None and not existing.cancelled():
            if existing.when() <= due:
                return
            existing.cancel()

        self._delayed[key] = loop.call_at(due, self._fire_delayed, key)

    def _fire_delayed(self, key: str) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def backoff_delay(self, failures: int) -> float:
        delay = min(self.base_delay * (2 ** (failures - 1)), self.max_delay)
        return delay * (1 + (random() * 2 - 1) * self.jitter_factor)

    def add_rate_limited(self, key: str) -> None:
        """Re-add a key after a backoff that grows with its failure count."""
        failures = self.num_requeues(key) + 1
        self._failures[key] = failures
        delay = self.backoff_delay(failures)
        logger.info(f"requeueing {key} in {delay:.2f}s (attempt {failures})")
        self.add_after(key, delay)

    def forget(self, key: str) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def shut_down(self) -> None:
        """
        Stop handing out work.

        Pending and delayed keys are dropped; keys already being processed
        finish normally.
        """
        if self._shutting_down:
            return
        self._shutting_down = True

        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._queue.put_nowait(None)
