"""
Reconciliation driver: a de-duplicating work queue and the workers that
drain it.

Reconcilers never sleep. They return a ``Result`` and the driver decides when
the key comes back: after the requested delay, after an exponential backoff
on error, or not at all.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

import structlog

from .meta import ObjectKey
from .metrics import reconcile_duration_seconds, reconcile_total, workqueue_depth

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Result:
    """Requeue directive returned by every reconcile."""

    requeue: bool = False
    requeue_after: float = 0.0


ReconcileFunc = Callable[[ObjectKey], Awaitable[Result]]


class WorkQueue:
    """
    Async work queue with client-go semantics.

    - a key is queued at most once, however many times it is added
    - a key is never handed to two workers at the same time; adding it while
      it is being processed re-queues it when ``done`` is called
    - delayed and rate-limited adds are timers, not sleeping workers
    """

    def __init__(
        self,
        name: str,
        backoff_base: float = 0.005,
        backoff_max: float = 300.0,
    ):
        self.name = name
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self._queue: Deque[ObjectKey] = deque()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._failures: Dict[ObjectKey, int] = {}
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def _update_depth(self):
        workqueue_depth.labels(controller=self.name).set(len(self._queue))

    def add(self, key: ObjectKey):
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._wakeup.set()

    def add_after(self, key: ObjectKey, delay: float):
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            # Keep whichever timer fires first.
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: ObjectKey):
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: ObjectKey):
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        self.add_after(key, min(self.backoff_base * (2**failures), self.backoff_max))

    def forget(self, key: ObjectKey):
        self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def is_scheduled(self, key: ObjectKey) -> bool:
        return key in self._timers

    async def get(self) -> Optional[ObjectKey]:
        """Wait for the next key; ``None`` once the queue is shut down."""
        while True:
            if self._shutting_down:
                return None
            if self._queue:
                key = self._queue.popleft()
                self._dirty.discard(key)
                self._processing.add(key)
                self._update_depth()
                return key
            self._wakeup.clear()
            await self._wakeup.wait()

    def done(self, key: ObjectKey):
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._update_depth()
            self._wakeup.set()

    def shutdown(self):
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._wakeup.set()


class Controller:
    """Runs ``reconcile`` for queued keys on a fixed pool of worker tasks."""

    def __init__(
        self,
        name: str,
        reconcile: ReconcileFunc,
        workers: int = 1,
        backoff_base: float = 0.005,
        backoff_max: float = 300.0,
    ):
        self.name = name
        self._reconcile = reconcile
        self._workers = workers
        self.queue = WorkQueue(name, backoff_base, backoff_max)
        self._tasks: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def enqueue(self, key: ObjectKey):
        self.queue.add(key)

    def enqueue_threadsafe(self, key: ObjectKey):
        """Enqueue from a watch thread."""
        if self._loop is None:
            raise RuntimeError(f"controller {self.name} is not started")
        self._loop.call_soon_threadsafe(self.queue.add, key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self._tasks = [
            asyncio.create_task(self._worker(i)) for i in range(self._workers)
        ]
        logger.info("Controller started", controller=self.name, workers=self._workers)

    async def stop(self):
        self.queue.shutdown()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Controller stopped", controller=self.name)

    async def _worker(self, index: int):
        while True:
            key = await self.queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, key: ObjectKey) -> Optional[Result]:
        """Reconcile one key and schedule its next visit."""
        start = time.perf_counter()
        try:
            result = await self._reconcile(key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Reconcile failed",
                controller=self.name,
                key=str(key),
                error=str(exc),
                requeues=self.queue.num_requeues(key),
            )
            reconcile_total.labels(controller=self.name, result="error").inc()
            self.queue.add_rate_limited(key)
            return None
        finally:
            reconcile_duration_seconds.labels(controller=self.name).observe(
                time.perf_counter() - start
            )

        if result.requeue_after > 0:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
            outcome = "requeue_after"
        elif result.requeue:
            self.queue.add_rate_limited(key)
            outcome = "requeue"
        else:
            self.queue.forget(key)
            outcome = "success"

        reconcile_total.labels(controller=self.name, result=outcome).inc()
        return result
