"""Work queue feeding App names to the reconciler.

A name is queued at most once at a time; requests made while the name is
waiting are folded into the pending one. A request made while the name is
being reconciled queues it again, so the change is never missed. Passes for
the same name never overlap.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Set
from ketch.controllers.reconciler import ReconcileResult
from ketch.sensors import OperatorSensor
from ketch.types.settings import Settings

Reconcile = Callable[[str, str], Awaitable[ReconcileResult]]

EVENT = "event"
REQUEUE = "requeue"
RETRY = "retry"


class ReconcileQueue:
    def __init__(
        self,
        reconcile: Reconcile,
        conf: Settings,
        sensor: OperatorSensor = None,
        logger: logging.Logger = None,
    ) -> None:
        self.reconcile = reconcile
        self.conf = conf
        self.sensor = sensor
        self.logger = logger or logging.getLogger(__name__)

        # Names waiting in the queue
        self.names_in_queue: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        # Serializes passes of the same name across workers
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Consecutive failed passes per name
        self.failures: Dict[str, int] = {}
        self.timers: Dict[str, asyncio.TimerHandle] = {}
        self.workers: List[asyncio.Task] = []

    def __len__(self) -> int:
        return self.queue.qsize()

    def request(self, name: str, trigger_source: str = EVENT) -> bool:
        """Queue `name` for reconciliation.

        Returns:
            False when the name was already waiting in the queue.
        """
        if name in self.names_in_queue:
            return False
        self.names_in_queue.add(name)
        self.queue.put_nowait((name, trigger_source, time.monotonic()))
        if self.sensor:
            self.sensor.on_reconcile_queued(name, self.queue.qsize())
        return True

    def requeue_after(self, name: str, delay: float, trigger_source: str = REQUEUE) -> None:
        """Queue `name` again after `delay` seconds, replacing a pending requeue."""
        timer = self.timers.pop(name, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self.timers[name] = loop.call_later(delay, self._fire, name, trigger_source)

    def _fire(self, name: str, trigger_source: str) -> None:
        self.timers.pop(name, None)
        self.request(name, trigger_source)

    def backoff(self, name: str) -> float:
        """Delay before retrying a failed name, doubling with each failure."""
        failures = self.failures.get(name, 1)
        delay = self.conf.reconcile_error_backoff_seconds * 2 ** (failures - 1)
        return min(delay, self.conf.reconcile_max_backoff_seconds)

    def forget(self, name: str) -> None:
        """Drop all bookkeeping of a deleted App."""
        timer = self.timers.pop(name, None)
        if timer is not None:
            timer.cancel()
        self.failures.pop(name, None)
        lock = self.locks.get(name)
        if lock is not None and not lock.locked():
            del self.locks[name]

    def start(self, workers: Optional[int] = None) -> None:
        workers = workers or self.conf.reconcile_workers
        for i in range(workers):
            self.workers.append(asyncio.create_task(self.worker(), name=f"reconcile-worker-{i}"))
        self.logger.info(f"Started {workers} reconcile workers")

    async def stop(self) -> None:
        for timer in self.timers.values():
            timer.cancel()
        self.timers.clear()
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers.clear()

    async def join(self) -> None:
        """Wait until every queued name has been processed."""
        await self.queue.join()

    async def worker(self) -> None:
        while True:
            name, trigger_source, queued_at = await self.queue.get()
            try:
                # Allow this name to be queued again while it is processed
                self.names_in_queue.discard(name)
                if self.sensor:
                    self.sensor.on_reconcile_dequeued(name, time.monotonic() - queued_at)
                async with self.locks[name]:
                    await self.process(name, trigger_source)
            finally:
                self.queue.task_done()

    async def process(self, name: str, trigger_source: str) -> ReconcileResult:
        """Run one pass for `name` and schedule the next one."""
        start_time = time.monotonic()
        try:
            result = await self.reconcile(name, trigger_source)
        except Exception as e:
            self.logger.exception(f"Unexpected error reconciling app {name}: {e}")
            result = ReconcileResult(error=e)
        self.logger.debug(
            f"Reconciliation for {name} completed in {time.monotonic() - start_time:.2f} seconds"
        )

        if result.requeue_after is not None:
            self.failures.pop(name, None)
            self.requeue_after(name, result.requeue_after)
        elif result.error is not None:
            self.failures[name] = self.failures.get(name, 0) + 1
            delay = self.backoff(name)
            self.logger.info(f"Retrying app {name} in {delay:.1f}s: {result.error}")
            self.requeue_after(name, delay, RETRY)
        else:
            self.failures.pop(name, None)
        return result
