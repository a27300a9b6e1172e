"""Virtual worker pool: one asyncio task per virtual user."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from loadgate.behaviors import BehaviorTable, IterationContext, draw_think_time, sleep_unless
from loadgate.executor import RequestExecutor
from loadgate.metrics import MetricRegistry
from loadgate.models import RunConfig

logger = logging.getLogger(__name__)


@dataclass
class Worker:
    id: int
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task"] = None
    reaper: Optional["asyncio.Task"] = None
    iterations: int = 0

    @property
    def retiring(self) -> bool:
        return self.stop_event.is_set()


class VirtualWorkerPool:
    """Keeps the number of running workers equal to the requested target.

    Shrinking never interrupts a request: excess workers are asked to stop
    and finish their current iteration. A worker still running once the
    grace period has passed is cancelled.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        executor: RequestExecutor,
        behaviors: BehaviorTable,
        config: RunConfig,
        phase_of: Callable[[], str] = lambda: "unclassified",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.executor = executor
        self.behaviors = behaviors
        self.config = config
        self.phase_of = phase_of
        self.clock = clock
        self._workers: Dict[int, Worker] = {}
        self.spawned = 0
        self.max_live = 0

    @property
    def live(self) -> int:
        return sum(1 for w in self._workers.values() if not w.retiring)

    @property
    def retiring(self) -> int:
        return sum(1 for w in self._workers.values() if w.retiring)

    @property
    def workers(self) -> Dict[int, Worker]:
        return dict(self._workers)

    def resize(self, target: int) -> None:
        active = sorted(w.id for w in self._workers.values() if not w.retiring)
        if target > len(active):
            for _ in range(target - len(active)):
                self._spawn(self._next_free_id())
        elif target < len(active):
            # highest ids retire first
            for worker_id in reversed(active[target:]):
                self._retire(self._workers[worker_id])
        self.max_live = max(self.max_live, self.live)

    async def stop(self) -> None:
        """Signal every worker, wait out the grace period, cancel what remains."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.stop_event.set()
            if worker.reaper is not None:
                worker.reaper.cancel()
        tasks = [w.task for w in workers if w.task is not None and not w.task.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self.config.grace_period)
        if pending:
            logger.info("cancelling %d worker(s) still running after the grace period", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _next_free_id(self) -> int:
        worker_id = 1
        while worker_id in self._workers:
            worker_id += 1
        return worker_id

    def _spawn(self, worker_id: int) -> None:
        worker = Worker(id=worker_id)
        worker.task = asyncio.ensure_future(self._run_worker(worker))
        worker.task.add_done_callback(lambda _task, w=worker: self._forget(w))
        self._workers[worker_id] = worker
        self.spawned += 1
        logger.debug("spawned worker %d", worker_id)

    def _forget(self, worker: Worker) -> None:
        if self._workers.get(worker.id) is worker:
            del self._workers[worker.id]
        if worker.reaper is not None and not worker.reaper.done():
            worker.reaper.cancel()

    def _retire(self, worker: Worker) -> None:
        worker.stop_event.set()
        worker.reaper = asyncio.ensure_future(self._reap(worker))
        logger.debug("retiring worker %d", worker.id)

    async def _reap(self, worker: Worker) -> None:
        done, _ = await asyncio.wait([worker.task], timeout=self.config.grace_period)
        if not done:
            logger.info("worker %d exceeded the grace period, cancelling", worker.id)
            worker.task.cancel()

    async def _run_worker(self, worker: Worker) -> None:
        shard = self.registry.shard()
        rng = random.Random(self.config.seed * 1_000_003 + worker.id)
        try:
            while not worker.stop_event.is_set():
                behavior = self.behaviors.select(worker.id, rng)
                ctx = IterationContext(
                    registry=shard,
                    executor=self.executor,
                    config=self.config,
                    worker_id=worker.id,
                    iteration=worker.iterations,
                    behavior=behavior.kind.value,
                    rng=rng,
                    stop_event=worker.stop_event,
                    phase_of=self.phase_of,
                    think_time=behavior.think_time,
                )
                started = self.clock()
                try:
                    await behavior.fn(ctx)
                except Exception as exc:
                    logger.warning(
                        "worker %d iteration %d (%s) raised %s: %s",
                        worker.id,
                        worker.iterations,
                        behavior.kind.value,
                        exc.__class__.__name__,
                        exc,
                    )
                    shard.add("worker_errors", 1, timestamp=time.time(), **ctx.tags())
                elapsed_ms = (self.clock() - started) * 1000.0
                now = time.time()
                shard.add("iterations", 1, timestamp=now, **ctx.tags())
                shard.add("iteration_duration", elapsed_ms, timestamp=now, **ctx.tags())
                worker.iterations += 1
                self._flush(shard)

                if worker.stop_event.is_set():
                    break
                think = behavior.think_time or self.config.think_time
                await sleep_unless(worker.stop_event, draw_think_time(think, rng))
        finally:
            self._flush(shard)

    def _flush(self, shard: MetricRegistry) -> None:
        self.registry.merge(shard)
        shard.reset()
