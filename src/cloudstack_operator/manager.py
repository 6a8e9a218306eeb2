"""Work queue driving the reconcilers.

Level-triggered: a periodic resync enqueues every known object, and each
pass schedules its own next pass (requeue-after). The blocking
reconcilers run in a thread pool, bounded by the reconcile timeout.

QUEUE SEMANTICS:
- A key is queued at most once. Enqueueing a queued key is a no-op.
- Passes for objects of the same cluster never overlap: machines share
  their cluster's lock because they write to its status.
- A pass that times out keeps the lock until its thread returns. Locks
  are dropped once no pass holds or waits for them.
- A key that fails transiently backs off exponentially from
  REQUEUE_DELAY up to BACKOFF_MAX. Any other outcome resets the backoff.
- Shutdown cancels workers and timers. In-flight provider calls are
  abandoned; everything needed to resume is in the status records.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .config import Config
from .errors import ErrorKind
from .machine import MachineReconciler
from .models import ClusterTopology, Machine
from .reconciler import ReconcileResult, TopologyReconciler
from .store import ObjectStore, object_key

logger = logging.getLogger(__name__)


@dataclass
class Reconcilers:
    topology: TopologyReconciler
    machine: MachineReconciler


def reconcile_key(store: ObjectStore, reconcilers: Reconcilers, key: str) -> ReconcileResult | None:
    """Load, reconcile and persist one object. Blocking.

    Returns:
        The pass result, or None if the object no longer exists.
    """
    obj = store.get(key)
    if obj is None:
        return None

    if isinstance(obj, Machine):
        topology = store.get_topology(obj.metadata.namespace, obj.spec.cluster_name)
        result = reconcilers.machine.reconcile(obj, topology)
        store.save(obj)
        if topology is not None:
            store.save(topology)
        return result

    result = reconcilers.topology.reconcile(obj)
    store.save(obj)
    return result


def lock_key_for(obj: ClusterTopology | Machine) -> str:
    if isinstance(obj, Machine):
        return object_key("ClusterTopology", obj.metadata.namespace, obj.spec.cluster_name)
    return obj.key


class ReconcileManager:
    """Bounded worker pool over a deduplicating key queue."""

    def __init__(self, config: Config, store: ObjectStore, reconcilers: Reconcilers) -> None:
        self._config = config
        self._store = store
        self._reconcilers = reconcilers

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._failures: dict[str, int] = defaultdict(int)
        self._lock_keys: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = defaultdict(int)

        self._executor = ThreadPoolExecutor(
            max_workers=config.workers, thread_name_prefix="reconcile"
        )
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        """Run workers and the resync loop until shutdown."""
        logger.info(
            "Starting manager",
            extra={
                "workers": self._config.workers,
                "resync_interval_seconds": self._config.resync_interval_seconds,
            },
        )
        workers = [
            asyncio.create_task(self._worker(index), name=f"worker-{index}")
            for index in range(self._config.workers)
        ]
        try:
            while not self._shutdown_event.is_set():
                await self.resync()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._config.resync_interval_seconds,
                    )
                except TimeoutError:
                    pass
        finally:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self._executor.shutdown(wait=False, cancel_futures=True)
            logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def resync(self) -> None:
        """Enqueue every known object."""
        loop = asyncio.get_running_loop()
        objects = await loop.run_in_executor(self._executor, self._store.list_objects)
        for obj in objects:
            self._lock_keys[obj.key] = lock_key_for(obj)
            self.enqueue(obj.key)
        logger.debug("Resync enqueued objects", extra={"count": len(objects)})

    def enqueue(self, key: str) -> None:
        if key in self._queued or self._shutdown_event.is_set():
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def enqueue_after(self, key: str, delay: float) -> None:
        """Schedule a key, keeping an already scheduled earlier time."""
        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()

        def fire() -> None:
            self._timers.pop(key, None)
            self.enqueue(key)

        self._timers[key] = loop.call_later(delay, fire)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            try:
                await self.process(key)
            except Exception:
                # A broken pass must not take the worker down with it
                logger.exception("Unhandled error processing object", extra={"object": key})
                self.enqueue_after(key, self._backoff(key))
            finally:
                self._queue.task_done()

    async def process(self, key: str) -> ReconcileResult | None:
        """Run one pass for a key and schedule the next one."""
        loop = asyncio.get_running_loop()
        lock_key = self._lock_keys.get(key, key)
        lock = self._locks.setdefault(lock_key, asyncio.Lock())
        self._lock_users[lock_key] += 1
        try:
            async with lock:
                future = loop.run_in_executor(
                    self._executor, reconcile_key, self._store, self._reconcilers, key
                )
                try:
                    result = await asyncio.wait_for(
                        asyncio.shield(future), timeout=self._config.reconcile_timeout_seconds
                    )
                except TimeoutError:
                    logger.error(
                        "Reconciliation timed out",
                        extra={
                            "object": key,
                            "timeout_seconds": self._config.reconcile_timeout_seconds,
                        },
                    )
                    await self._wait_abandoned(key, future)
                    self.enqueue_after(key, self._backoff(key))
                    return None
        finally:
            self._release_lock(lock_key)

        if result is None or result.released:
            self._forget(key)
            return result

        self.enqueue_after(key, self.next_delay(key, result))
        return result

    async def _wait_abandoned(
        self, key: str, future: asyncio.Future[ReconcileResult | None]
    ) -> None:
        # The thread cannot be interrupted. The key stays locked until it
        # returns, so the next pass never overlaps a timed out one.
        try:
            await future
        except Exception as e:
            logger.warning(
                "Timed out reconciliation failed", extra={"object": key, "error": str(e)}
            )

    def _release_lock(self, lock_key: str) -> None:
        self._lock_users[lock_key] -= 1
        if self._lock_users[lock_key] == 0:
            del self._lock_users[lock_key]
            self._locks.pop(lock_key, None)

    def next_delay(self, key: str, result: ReconcileResult) -> float:
        """Seconds until the next pass of a key, updating its backoff."""
        if result.error_kind == ErrorKind.TRANSIENT:
            return self._backoff(key)

        self._failures.pop(key, None)
        if result.requeue_after > 0 or (result.error is not None and not result.terminal):
            return result.requeue_after
        return float(self._config.resync_interval_seconds)

    def _backoff(self, key: str) -> float:
        failures = self._failures[key]
        self._failures[key] = failures + 1
        delay = self._config.requeue_delay_seconds * (2**failures)
        return float(min(delay, self._config.backoff_max_seconds))

    def _forget(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._failures.pop(key, None)
        self._lock_keys.pop(key, None)
        logger.info("Object released", extra={"object": key})
