"""
Virtual User Scheduler

Drives a population of virtual users through timed stages:
- Ramps the live worker count toward each stage's target
- Stops excess workers only between iterations
- Drains workers at the end, force-cancelling stragglers
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from vuload.config import RampPolicy, Stage
from vuload.errors import ConfigurationError, SchedulerTimeout
from vuload.worker import ScenarioRunner

logger = logging.getLogger("vuload.scheduler")


# Type alias for worker factory
WorkerFactory = Callable[[int], ScenarioRunner]


@dataclass
class Worker:
    """One live virtual user."""

    id: int
    runner: ScenarioRunner
    task: asyncio.Task[None]
    stopping: bool = False

    @property
    def running(self) -> bool:
        return not self.task.done()

    def stop(self) -> None:
        self.stopping = True
        self.runner.stop()


@dataclass
class SchedulerStats:
    """What the scheduler did during a run."""

    peak_vus: int = 0
    spawned: int = 0
    forced_cancellations: int = 0
    iterations: int = 0
    aborted: bool = False
    abort_reason: str | None = None
    elapsed_seconds: float = 0.0
    timeouts: list[SchedulerTimeout] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "peak_vus": self.peak_vus,
            "spawned": self.spawned,
            "forced_cancellations": self.forced_cancellations,
            "iterations": self.iterations,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


def desired_vus(previous: int, target: int, progress: float, policy: RampPolicy) -> int:
    """
    Number of workers a stage wants at ``progress`` (0-1) through it.

    Linear ramps round up, so a ramp from 0 starts spawning immediately
    and the result always lies between ``previous`` and ``target``.
    """
    if policy is RampPolicy.IMMEDIATE:
        return target
    progress = min(max(progress, 0.0), 1.0)
    return math.ceil(previous + (target - previous) * progress)


class VUScheduler:
    """
    Ramps virtual users through a sequence of stages.

    Usage:
        scheduler = VUScheduler(stages, lambda vu: ScenarioRunner(vu, ...))
        stats = await scheduler.run()
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        worker_factory: WorkerFactory,
        *,
        start_vus: int = 0,
        graceful_stop: float = 30.0,
        ramp_policy: RampPolicy = RampPolicy.LINEAR,
        tick_interval: float = 0.1,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            stages: Ordered ramp profile
            worker_factory: Builds the ScenarioRunner for a VU id
            start_vus: Workers running when the first stage begins
            graceful_stop: Seconds to wait for workers to drain
            ramp_policy: Linear or immediate transitions between targets
            tick_interval: Seconds between worker count adjustments
        """
        if not stages:
            raise ConfigurationError("stages", ["at least one stage is required"])
        for index, stage in enumerate(stages):
            if stage.duration <= 0 or stage.target < 0:
                raise ConfigurationError(
                    "stages",
                    [f"stage {index}: duration must be > 0 and target >= 0"],
                )
        if start_vus < 0 or graceful_stop < 0 or tick_interval <= 0:
            raise ConfigurationError("scheduler", ["start_vus, graceful_stop and tick_interval out of range"])

        self.stages = tuple(stages)
        self.worker_factory = worker_factory
        self.start_vus = start_vus
        self.graceful_stop = graceful_stop
        self.ramp_policy = ramp_policy
        self.tick_interval = tick_interval

        self.stats = SchedulerStats()
        self._workers: dict[int, Worker] = {}
        self._abort = asyncio.Event()
        self._completed_iterations = 0

    @property
    def live_count(self) -> int:
        """Workers whose task has not finished, including draining ones."""
        return sum(1 for w in self._workers.values() if w.running)

    @property
    def active_count(self) -> int:
        """Workers not asked to stop."""
        return sum(1 for w in self._workers.values() if w.running and not w.stopping)

    @property
    def total_duration(self) -> float:
        return sum(s.duration for s in self.stages)

    def abort(self, reason: str = "aborted") -> None:
        """End the stage sequence early and proceed to draining."""
        if not self._abort.is_set():
            logger.warning(f"Aborting run: {reason}")
            self.stats.aborted = True
            self.stats.abort_reason = reason
            self._abort.set()

    def force_stop(self, reason: str = "forced stop") -> None:
        """Abort and cancel every running worker without waiting for its iteration."""
        self.abort(reason)
        for worker in self._workers.values():
            if worker.running and not worker.task.cancelling():
                logger.warning(f"Force-cancelling VU {worker.id}")
                self.stats.forced_cancellations += 1
                worker.task.cancel()

    async def run(self) -> SchedulerStats:
        """
        Execute all stages, then drain workers.

        Returns:
            SchedulerStats for the run
        """
        run_start = time.monotonic()
        stage_end = run_start
        previous = self.start_vus

        try:
            self._scale_to(previous)

            for index, stage in enumerate(self.stages):
                stage_start = stage_end
                stage_end = stage_start + stage.duration
                logger.info(
                    f"Stage {index + 1}/{len(self.stages)}: "
                    f"{previous} -> {stage.target} VUs over {stage.duration:g}s"
                )

                while not self._abort.is_set():
                    now = time.monotonic()
                    if now >= stage_end:
                        break

                    progress = (now - stage_start) / stage.duration
                    desired = desired_vus(previous, stage.target, progress, self.ramp_policy)
                    self._scale_to(desired)

                    await self._wait_for_abort(min(self.tick_interval, stage_end - now))

                if self.active_count < stage.target and not self._abort.is_set():
                    logger.debug(
                        f"Stage {index + 1} ended with {self.active_count}/{stage.target} VUs active"
                    )
                previous = stage.target

                if self._abort.is_set():
                    break

        finally:
            await self._drain()
            self.stats.elapsed_seconds = time.monotonic() - run_start
            self.stats.iterations = self._completed_iterations

        return self.stats

    async def _wait_for_abort(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._abort.wait(), timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            pass

    def _next_vu_id(self) -> int:
        return next(i for i in itertools.count(1) if i not in self._workers)

    def _reap(self) -> None:
        """Forget workers whose task finished."""
        for vu_id, worker in list(self._workers.items()):
            if worker.running:
                continue
            del self._workers[vu_id]
            self._completed_iterations += worker.runner.iterations
            if not worker.task.cancelled() and worker.task.exception() is not None:
                logger.error(f"VU {vu_id} exited unexpectedly: {worker.task.exception()!r}")

    def _scale_to(self, desired: int) -> None:
        """Spawn or stop workers to approach ``desired`` active workers."""
        self._reap()

        active = [w for w in self._workers.values() if not w.stopping]
        excess = len(active) - desired

        if excess > 0:
            # Newest first
            for worker in sorted(active, key=lambda w: w.id, reverse=True)[:excess]:
                worker.stop()
            logger.debug(f"Stopping {excess} VUs, {desired} remain active")

        # Draining workers still count, so concurrency never overshoots
        missing = desired - len(self._workers)
        for _ in range(max(missing, 0)):
            self._spawn()

        self.stats.peak_vus = max(self.stats.peak_vus, len(self._workers))

    def _spawn(self) -> None:
        vu_id = self._next_vu_id()
        runner = self.worker_factory(vu_id)
        task = asyncio.create_task(runner.loop(), name=f"vu-{vu_id}")
        self._workers[vu_id] = Worker(id=vu_id, runner=runner, task=task)
        self.stats.spawned += 1

    async def _drain(self) -> None:
        """Stop all workers, wait for the grace period, cancel the rest."""
        self._reap()
        if not self._workers:
            return

        for worker in self._workers.values():
            worker.stop()

        logger.info(f"Draining {len(self._workers)} VUs (graceful stop {self.graceful_stop:g}s)")
        tasks = {w.task: w for w in self._workers.values()}
        if self.graceful_stop > 0:
            _, pending = await asyncio.wait(tasks.keys(), timeout=self.graceful_stop)
        else:
            pending = {t for t in tasks if not t.done()}

        for task in pending:
            worker = tasks[task]
            timeout = SchedulerTimeout(worker.id, self.graceful_stop)
            logger.warning(str(timeout))
            self.stats.timeouts.append(timeout)
            self.stats.forced_cancellations += 1
            task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._reap()
